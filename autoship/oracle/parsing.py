"""Structured-output extraction for oracle responses."""

from __future__ import annotations

import json
import re
from typing import Any


def _unwrap_envelope(raw: str) -> str:
    # claude --output-format json wraps the answer as {"type": "result", "result": "..."}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(data, dict) and data.get("type") == "result" and isinstance(data.get("result"), str):
        return data["result"]
    return raw


def parse_json_response(raw: str) -> dict[str, Any] | None:
    """Best-effort extraction of the first JSON object from *raw*.

    LLM responses sometimes include markdown fences or preamble text; this
    helper strips those away before parsing. Returns ``None`` when nothing
    parseable is found so callers can apply their own fallback.
    """
    text = _unwrap_envelope(raw.strip())

    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        try:
            data = json.loads(fenced.group(1).strip())
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{[\s\S]*\}", text)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    return None
