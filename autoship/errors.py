"""Exception hierarchy for autoship.

``WorkflowError`` subclasses form the orchestrator's failure taxonomy. Each
carries the phase it was raised in and a fixed ``kind`` tag used in results
and notifications.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Raised when an orchestrator phase fails irrecoverably."""

    kind = "workflow"

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        self.message = message
        super().__init__(f"[{phase}] {message}")


class PlanningFailure(WorkflowError):
    kind = "planning"


class CodingFailure(WorkflowError):
    kind = "coding"


class ReviewRejection(CodingFailure):
    kind = "review_rejected"


class BuildVerificationFailure(WorkflowError):
    kind = "build_verification"


class MergeFailure(WorkflowError):
    kind = "merge"


class DeploymentInfrastructureFailure(WorkflowError):
    kind = "deployment_infrastructure"


class DeploymentCodeFailure(WorkflowError):
    kind = "deployment_code"


class LiveVerificationFailure(WorkflowError):
    kind = "live_verification"


class LoopDetected(WorkflowError):
    kind = "loop_detected"

    def __init__(self, phase: str, message: str, depth: int) -> None:
        self.depth = depth
        super().__init__(phase, message)


class SafetyAbort(Exception):
    """A deploy would overwrite an unrelated target. Never retried."""


class ExecutorError(Exception):
    """Raised when an infrastructure command fails and the caller asked to check it."""

    def __init__(self, message: str, command: str = "", returncode: int = -1, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class WorktreeError(Exception):
    """Raised when a worktree operation fails."""

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class OracleError(Exception):
    """Raised when every option in a role's cascade has failed."""

    def __init__(self, role: str, message: str, attempts: list[str] | None = None):
        self.role = role
        self.attempts = attempts or []
        super().__init__(message)


class ScmError(Exception):
    """Raised when a source-control REST call fails."""

    def __init__(self, message: str, status_code: int | None = None, url: str = ""):
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class ScmConfigError(ScmError):
    """Raised when SCM settings are incomplete."""


class DeployConfigError(Exception):
    """Raised when a deploy configuration file cannot be parsed."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(message)
