"""Autoship builder module.

Everything that happens before merge: per-task worktree isolation, planning,
coding, diff review and build verification.

Key classes:
    WorktreeManager - Git worktree lifecycle management
    Planner         - Task -> ImplementationPlan via the planner role
    Reviewer        - Diff review via the reviewer role
    Coder           - Implements a plan, commits, pushes and opens the PR
    BuildVerifier   - Language-aware syntax/compile checks
"""

from .coder import Coder
from .planner import Planner, Reviewer
from .verifier import BuildVerifier, detect_project_type
from .worktree import WorktreeManager, parse_porcelain, worktree_name

__all__ = [
    # Worktree management
    "WorktreeManager",
    "parse_porcelain",
    "worktree_name",
    # Planning and review
    "Planner",
    "Reviewer",
    # Coding
    "Coder",
    # Build verification
    "BuildVerifier",
    "detect_project_type",
]
