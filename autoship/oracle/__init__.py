"""Reasoning-oracle access for autoship.

Key classes:
- OracleCascade: per-role model cascade with provider selection
- GeminiRunner / ClaudeRunner: CLI process runners
- parse_json_response: structured-output extraction
"""

from autoship.oracle.cascade import OracleCascade, Provider, claude_available, select_provider
from autoship.oracle.parsing import parse_json_response
from autoship.oracle.runners import ClaudeRunner, CliRunner, GeminiRunner, OracleResult

__all__ = [
    # Cascade
    "OracleCascade",
    "Provider",
    "claude_available",
    "select_provider",
    # Runners
    "CliRunner",
    "ClaudeRunner",
    "GeminiRunner",
    "OracleResult",
    # Parsing
    "parse_json_response",
]
