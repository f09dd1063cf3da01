"""Pydantic v2 models for autoship.

Defines the data that flows between the orchestrator and its collaborators:
tasks and plans, persisted workflow state, declarative deploy configuration,
troubleshooting verdicts and the fix-task chain.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TaskPriority(str, Enum):
    """How urgently a task should be handled."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskType(str, Enum):
    """Kind of change a task asks for."""
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCS = "docs"


class ChangeAction(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class WorkflowPhase(str, Enum):
    """Where a workflow currently is in its lifecycle."""
    PENDING = "pending"
    LOOP_CHECK = "loop_check"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    WORKTREE = "worktree"
    CODING = "coding"
    DEPLOYING_SYNTAX = "deploying_syntax"
    RETRYING = "retrying"
    MERGING = "merging"
    DEPLOYING_PRODUCTION = "deploying_production"
    VERIFYING_LIVE = "verifying_live"
    COMPLETE = "complete"
    FAILED = "failed"
    FIX_TASK_CREATED = "fix_task_created"
    CANCELLED = "cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowStatus(str, Enum):
    """Terminal status reported to the caller."""
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"
    FIX_TASK_CREATED = "fix_task_created"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class DeployMode(str, Enum):
    """How a deploy target is populated before the rebuild."""
    GIT_DIRECT = "git-direct"
    RSYNC = "rsync"
    AUTO = "auto"


class DeployConfigSource(str, Enum):
    DATABASE = "database"
    FILE = "file"
    LLM = "llm"
    DEFAULT = "default"


class ErrorType(str, Enum):
    """Troubleshooter classification of a failed deployment."""
    CODE = "code"
    INFRASTRUCTURE = "infrastructure"
    UNKNOWN = "unknown"


class RecoveryActionType(str, Enum):
    RESTART_CONTAINER = "restart_container"
    REBUILD_CONTAINER = "rebuild_container"
    RUN_MIGRATION = "run_migration"
    WAIT_AND_RETRY = "wait_and_retry"
    CLEAR_VOLUME = "clear_volume"
    ESCALATE = "escalate"


# ---------------------------------------------------------------------------
# Task & Plan Models
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """A unit of work submitted to the orchestrator. Immutable once submitted."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Stable task identifier")
    title: str = Field(..., description="Short human-readable title")
    context: str = Field(default="", description="Free-form description of the change")
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    files_to_modify: list[str] = Field(default_factory=list, alias="filesToModify")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    type: TaskType = Field(default=TaskType.FEATURE)
    project_id: Optional[str] = Field(default=None, alias="projectId")
    created_at: datetime = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FileChange(BaseModel):
    """One file the plan intends to touch."""
    path: str = Field(..., description="Repository-relative path")
    action: ChangeAction = Field(default=ChangeAction.MODIFY)
    description: str = Field(default="")


class ImplementationPlan(BaseModel):
    """Planner output. Amended with error context between coding attempts."""
    model_config = ConfigDict(populate_by_name=True)

    task_id: str
    proposed_changes: list[FileChange] = Field(default_factory=list, alias="proposedChanges")
    verification_plan: str = Field(default="", alias="verificationPlan")
    estimated_effort: str = Field(default="", alias="estimatedEffort")
    context: Optional[str] = Field(default=None)
    project_id: Optional[str] = Field(default=None, alias="projectId")

    def with_error_context(self, error: str) -> "ImplementationPlan":
        """Return a copy whose verification plan carries the previous attempt's error."""
        return self.model_copy(
            update={
                "verification_plan": (
                    f"{self.verification_plan}\n\n**PREVIOUS ERROR (fix this):**\n{error}"
                )
            }
        )

    def summary(self) -> str:
        lines = [f"Effort: {self.estimated_effort or 'unknown'}"]
        for change in self.proposed_changes:
            lines.append(f"- [{change.action.value}] {change.path}: {change.description}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Workflow Models
# ---------------------------------------------------------------------------

class WorkflowOptions(BaseModel):
    skip_approval: bool = Field(default=True)
    notify_on_complete: bool = Field(default=True)
    is_fix_task: bool = Field(default=False)
    original_task_id: Optional[str] = Field(default=None)


class WorkflowInput(BaseModel):
    """What a workflow is started with."""
    task: Task
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)


class WorkflowResult(BaseModel):
    """Structured result every terminal path returns."""
    status: WorkflowStatus
    task_id: str
    pr_url: Optional[str] = None
    plan: Optional[ImplementationPlan] = None
    commit_sha: Optional[str] = None
    error: Optional[str] = None
    fix_task_id: Optional[str] = None
    chain_depth: Optional[int] = None


class WorkflowState(BaseModel):
    """Persisted orchestrator state, saved after every phase transition."""
    workflow_id: str
    task: Task
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)
    phase: WorkflowPhase = Field(default=WorkflowPhase.PENDING)
    plan: Optional[ImplementationPlan] = None
    base_plan: Optional[ImplementationPlan] = None
    pr_url: Optional[str] = None
    commit_sha: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    merged: bool = False
    files_changed: list[str] = Field(default_factory=list)
    approval_status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    approval_comment: Optional[str] = None
    retry_count: int = 0
    deploy_attempts: int = 0
    deployed: bool = False
    worktree_path: Optional[str] = None
    worktree_branch: Optional[str] = None
    worktree_removed: bool = False
    cancel_requested: bool = False
    error: Optional[str] = None
    completed_steps: list[str] = Field(default_factory=list)
    result: Optional[WorkflowResult] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.result is not None


class Worktree(BaseModel):
    """An isolated checkout bound to one task."""
    path: str
    branch: str
    task_id: str = ""


# ---------------------------------------------------------------------------
# Activity Outputs
# ---------------------------------------------------------------------------

class CoderOutput(BaseModel):
    pr_url: str = ""
    files_changed: list[str] = Field(default_factory=list)
    commit_sha: str = ""
    tests_passed: bool = False
    error: Optional[str] = None


class ReviewerOutput(BaseModel):
    approved: bool = False
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    def as_error(self) -> str:
        """Render a rejection as error context for the next coding attempt."""
        issues = "\n".join(f"- {issue}" for issue in self.issues)
        suggestions = "\n".join(f"- {s}" for s in self.suggestions)
        return f"REVIEW ISSUES:\n{issues}\n\nSUGGESTIONS:\n{suggestions}"


class BuildVerification(BaseModel):
    build_success: bool
    tests_passed: bool = False
    project_type: str = "unknown"
    logs: str = ""


# ---------------------------------------------------------------------------
# Deploy Configuration
# ---------------------------------------------------------------------------

class DeployBuildConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base: str = Field(default=".", description="Working directory relative to project root")
    command: str = Field(default="", description="Build command to run before deploy")
    output_dir: str = Field(default="dist", alias="outputDir")


class DeployCommandConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    services: list[str] = Field(default_factory=list, description="Services to rebuild; empty = all")
    pre_command: str = Field(default="", alias="preCommand")
    command: str = Field(default="docker compose up -d --build")
    post_command: str = Field(default="", alias="postCommand")


class DeployVerifyConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    browser_test: bool = Field(default=False, alias="browserTest")
    health_url: str = Field(default="", alias="healthUrl")


class DeployConfig(BaseModel):
    """Schema of the repository-local deploy configuration file."""
    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(default="1")
    mode: DeployMode = Field(default=DeployMode.AUTO)
    build: DeployBuildConfig = Field(default_factory=DeployBuildConfig)
    deploy: DeployCommandConfig = Field(default_factory=DeployCommandConfig)
    verify: DeployVerifyConfig = Field(default_factory=DeployVerifyConfig)


class ResolvedDeployConfig(DeployConfig):
    """A deploy configuration tagged with where it came from."""
    source: DeployConfigSource = Field(default=DeployConfigSource.DEFAULT)
    project_id: Optional[str] = Field(default=None, alias="projectId")


# ---------------------------------------------------------------------------
# Troubleshooting
# ---------------------------------------------------------------------------

class RecoveryAction(BaseModel):
    type: RecoveryActionType
    target: Optional[str] = None
    command: str = ""


class TroubleshootResult(BaseModel):
    """Classification of a failed deployment plus an optional recovery action."""
    model_config = ConfigDict(populate_by_name=True)

    analysis: str = ""
    error_type: ErrorType = Field(default=ErrorType.UNKNOWN, alias="errorType")
    error_summary: str = Field(default="", alias="errorSummary")
    suggested_action: Optional[RecoveryAction] = Field(default=None, alias="suggestedAction")

    @property
    def escalates(self) -> bool:
        """Only an explicit ``escalate`` action stops the deploy loop."""
        return (
            self.suggested_action is not None
            and self.suggested_action.type == RecoveryActionType.ESCALATE
        )


# ---------------------------------------------------------------------------
# Fix-task Chain & Notifications
# ---------------------------------------------------------------------------

class FixTaskLink(BaseModel):
    """Records that ``fix_task_id`` was spawned to repair ``original_task_id``."""
    fix_task_id: str
    original_task_id: str
    depth: int
    created_at: datetime = Field(default_factory=_now)


class Notification(BaseModel):
    subject: str
    body: str
    priority: NotificationPriority = Field(default=NotificationPriority.NORMAL)
