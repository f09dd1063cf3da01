"""Autoship deployer module.

Everything that happens after merge: deploy-config resolution, deployment to
the production target, live verification, troubleshooting with recovery
actions, and rollback by revert commit.

Key classes:
    DeployConfigResolver     - database -> file -> default config resolution
    DeploymentResolver       - target discovery, identity check, rebuild
    LiveVerifier             - health polling, visual review, commit label
    DeploymentTroubleshooter - code vs infrastructure classification
    RecoveryExecutor         - blacklist-guarded recovery actions
    RollbackManager          - git revert + push
"""

from .config import DeployAnalysis, DeployConfigResolver, gather_context, load_config_file
from .resolver import DeploymentResolver, DeployOutcome, compose_command, read_identity
from .rollback import RollbackManager, RollbackOutcome
from .troubleshooter import (
    DeploymentTroubleshooter,
    ProtectedTargets,
    RecoveryExecutor,
    RecoveryOutcome,
)
from .verification import LiveVerifier, VerificationOutcome, discover_health_endpoint

__all__ = [
    # Configuration
    "DeployConfigResolver",
    "DeployAnalysis",
    "gather_context",
    "load_config_file",
    # Deployment
    "DeploymentResolver",
    "DeployOutcome",
    "compose_command",
    "read_identity",
    # Verification
    "LiveVerifier",
    "VerificationOutcome",
    "discover_health_endpoint",
    # Troubleshooting
    "DeploymentTroubleshooter",
    "ProtectedTargets",
    "RecoveryExecutor",
    "RecoveryOutcome",
    # Rollback
    "RollbackManager",
    "RollbackOutcome",
]
