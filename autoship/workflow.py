"""Autoship workflow orchestrator.

``DevelopFeatureWorkflow`` carries one task from plan to production:

    loop guard -> planning -> approval -> worktree -> coding loop
    -> syntax verification -> merge -> production deploy loop
    -> live verification -> completion

Each step is recorded in the persisted ``WorkflowState`` once it completes, so
a restarted process resumes after the last completed step. Every collaborator
call runs under the activity retry policy (15 minute timeout, 3 attempts,
exponential backoff). Every terminal path goes through ``_finish``, which
removes the worktree exactly once, closes an unmerged PR and persists the
result.

Usage::

    autoship run task.json
    autoship approve wf-TASK-1 --comment "looks good"
    autoship run-queued
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel

from autoship.builder import BuildVerifier, Coder, Planner, Reviewer, WorktreeManager
from autoship.config import Config, RetryPolicy
from autoship.deployer import (
    DeployConfigResolver,
    DeploymentResolver,
    DeploymentTroubleshooter,
    LiveVerifier,
    RecoveryExecutor,
    RollbackManager,
)
from autoship.errors import (
    BuildVerificationFailure,
    CodingFailure,
    DeploymentCodeFailure,
    DeploymentInfrastructureFailure,
    LiveVerificationFailure,
    LoopDetected,
    MergeFailure,
    ReviewRejection,
    SafetyAbort,
    ScmError,
    WorkflowError,
)
from autoship.executor import InfrastructureExecutor, ShellExecutor
from autoship.models import (
    ApprovalStatus,
    ErrorType,
    Notification,
    NotificationPriority,
    Task,
    WorkflowInput,
    WorkflowOptions,
    WorkflowPhase,
    WorkflowResult,
    WorkflowState,
    WorkflowStatus,
)
from autoship.notifications import Notifier
from autoship.oracle import OracleCascade
from autoship.prompts import PromptRenderer
from autoship.scm import MergeOptions, ScmFactory
from autoship.store import FixTaskChainStore, FixTaskLauncher, SignalQueue, WorkflowStateStore
from autoship.utils import (
    format_duration,
    load_json,
    print_error,
    print_phase_header,
    print_success,
    print_summary_table,
    print_warning,
    slugify,
    truncate,
)

console = Console()

SleepFn = Callable[[float], Awaitable[None]]

_FAILURE_SUBJECTS = {
    LoopDetected.kind: "LOOP DETECTED",
    BuildVerificationFailure.kind: "Build Verification Failed",
    DeploymentCodeFailure.kind: "Deployment Code Error",
    DeploymentInfrastructureFailure.kind: "Deployment Failed",
    LiveVerificationFailure.kind: "ROLLBACK",
}

_TERMINAL_PHASES = {
    WorkflowStatus.COMPLETED: WorkflowPhase.COMPLETE,
    WorkflowStatus.COMPLETED_WITH_ERRORS: WorkflowPhase.COMPLETE,
    WorkflowStatus.FAILED: WorkflowPhase.FAILED,
    WorkflowStatus.CANCELLED: WorkflowPhase.CANCELLED,
    WorkflowStatus.FIX_TASK_CREATED: WorkflowPhase.FIX_TASK_CREATED,
}


# ---------------------------------------------------------------------------
# Activity execution
# ---------------------------------------------------------------------------


async def run_activity(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: RetryPolicy,
    sleep: SleepFn = asyncio.sleep,
    **kwargs: Any,
) -> Any:
    """Run ``fn`` under the start-to-close timeout, retrying with backoff.

    ``SafetyAbort`` is never retried. The last error is raised once attempts
    are exhausted.
    """
    name = getattr(fn, "__qualname__", getattr(fn, "__name__", "activity"))
    for attempt in range(1, policy.maximum_attempts + 1):
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=policy.start_to_close_timeout)
        except SafetyAbort:
            raise
        except Exception as exc:
            if attempt >= policy.maximum_attempts:
                raise
            delay = policy.delay_for(attempt)
            console.print(
                f"[yellow]{name} failed (attempt {attempt}/{policy.maximum_attempts}): "
                f"{truncate(str(exc) or type(exc).__name__, 200)}; retrying in {delay:.0f}s[/yellow]"
            )
            await sleep(delay)
    raise RuntimeError("unreachable")


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class WorkflowDeps:
    """Everything the orchestrator talks to."""

    planner: Planner
    coder: Coder
    reviewer: Reviewer
    verifier: BuildVerifier
    worktrees: WorktreeManager
    scm: ScmFactory
    resolver: DeploymentResolver
    live_verifier: LiveVerifier
    troubleshooter: DeploymentTroubleshooter
    recovery: RecoveryExecutor
    rollback: RollbackManager
    fix_chains: FixTaskChainStore
    notifier: Notifier
    states: WorkflowStateStore
    signals: SignalQueue
    launch_fix: Callable[[Task, str], Awaitable[Any]]
    executor: InfrastructureExecutor
    sleep: SleepFn = asyncio.sleep

    @classmethod
    def from_config(cls, config: Config, executor: InfrastructureExecutor | None = None) -> "WorkflowDeps":
        """Wire the production collaborators."""
        executor = executor or ShellExecutor()
        oracle = OracleCascade(config.oracle)
        renderer = PromptRenderer()
        scm = ScmFactory(config)
        configs = DeployConfigResolver(config, oracle, renderer)
        return cls(
            planner=Planner(oracle, renderer),
            coder=Coder(config, oracle, executor, scm, renderer),
            reviewer=Reviewer(oracle, executor, renderer),
            verifier=BuildVerifier(config, executor, scm),
            worktrees=WorktreeManager(config, executor, scm),
            scm=scm,
            resolver=DeploymentResolver(config, executor, configs),
            live_verifier=LiveVerifier(config, executor, oracle, renderer),
            troubleshooter=DeploymentTroubleshooter(config, oracle, executor, renderer),
            recovery=RecoveryExecutor(config, executor),
            rollback=RollbackManager(executor),
            fix_chains=FixTaskChainStore(config.fix_chain_path, config.workflow.fix_chain_ttl_days, renderer),
            notifier=Notifier(config.notifications),
            states=WorkflowStateStore(config.workflows_dir),
            signals=SignalQueue(config.signals_dir),
            launch_fix=FixTaskLauncher(config.queue_dir),
            executor=executor,
        )


@dataclass
class CleanupReport:
    """What ``_finish`` managed to clean up. Logged, never raised."""

    worktree_removed: bool = False
    pr_closed: bool = False
    errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            f"Worktree removed: {self.worktree_removed}",
            f"PR closed: {self.pr_closed}",
        ]
        for error in self.errors:
            lines.append(f"[yellow]! {error}[/yellow]")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class DevelopFeatureWorkflow:
    """Persisted, resumable state machine for one task."""

    _STEPS: list[tuple[str, str]] = [
        ("loop_check", "_step_loop_check"),
        ("planning", "_step_planning"),
        ("approval", "_step_approval"),
        ("worktree", "_step_worktree"),
        ("coding", "_step_coding"),
        ("syntax", "_step_syntax"),
        ("merge", "_step_merge"),
        ("deploy", "_step_deploy"),
        ("live_verify", "_step_live_verify"),
        ("complete", "_step_complete"),
    ]

    def __init__(
        self,
        config: Config,
        deps: WorkflowDeps,
        workflow_id: str,
        workflow_input: WorkflowInput | None = None,
    ):
        self.config = config
        self.deps = deps
        self.workflow_id = workflow_id

        existing = deps.states.load(workflow_id)
        if existing is not None:
            self.state = existing
        elif workflow_input is not None:
            self.state = WorkflowState(
                workflow_id=workflow_id, task=workflow_input.task, options=workflow_input.options
            )
        else:
            raise ValueError(f"No saved state for workflow {workflow_id} and no input given")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def task(self) -> Task:
        return self.state.task

    @property
    def options(self) -> WorkflowOptions:
        return self.state.options

    @property
    def project_id(self) -> str | None:
        return self.task.project_id

    async def _save(self) -> None:
        await self.deps.states.save(self.state)

    async def _enter(self, phase: WorkflowPhase) -> None:
        self.state.phase = phase
        print_phase_header(phase.value)
        await self._save()

    async def _activity(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        return await run_activity(fn, *args, policy=self.config.retry, sleep=self.deps.sleep, **kwargs)

    async def _notify(self, subject: str, body: str, priority: NotificationPriority = NotificationPriority.NORMAL) -> None:
        """Send a notification. High priority always goes out; others honour ``notify_on_complete``."""
        if priority is not NotificationPriority.HIGH and not self.options.notify_on_complete:
            return
        await self.deps.notifier.send(Notification(subject=subject, body=body, priority=priority))

    def _result(self, status: WorkflowStatus, **kwargs: Any) -> WorkflowResult:
        values: dict[str, Any] = {
            "task_id": self.task.id,
            "pr_url": self.state.pr_url,
            "plan": self.state.plan,
            "commit_sha": self.state.merge_commit_sha or self.state.commit_sha,
        }
        values.update(kwargs)
        return WorkflowResult(status=status, **values)

    async def _process_signals(self) -> None:
        for signal in await self.deps.signals.drain(self.workflow_id):
            name = signal.get("name")
            payload = signal.get("payload") or {}
            if name == SignalQueue.CANCEL:
                self.state.cancel_requested = True
                console.print("[yellow]Cancellation requested[/yellow]")
            elif name == SignalQueue.APPROVAL and self.state.approval_status is ApprovalStatus.PENDING:
                approved = bool(payload.get("approved"))
                self.state.approval_status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
                self.state.approval_comment = payload.get("comment")
        await self._save()

    def _cancelled(self) -> WorkflowResult:
        return self._result(WorkflowStatus.CANCELLED, error="Workflow cancelled")

    async def _configure_credentials(self, directory: Path) -> None:
        try:
            provider = self.deps.scm.for_project(self.project_id)
        except ScmError as exc:
            print_warning(f"SCM not available for credentials: {exc}")
            return
        if provider is not None:
            await provider.configure_git_credentials(directory, self.deps.executor)

    async def _spawn_fix(self, failure: WorkflowError) -> WorkflowResult:
        """Create and launch the next fix-task in this task's chain."""
        error = failure.message
        subject = _FAILURE_SUBJECTS.get(failure.kind, "Task Failed")
        print_error(f"{subject}: {truncate(error, 300)}")
        original = self.options.original_task_id or self.task.id
        fix_task, depth = await self.deps.fix_chains.create_fix_task(
            original,
            self.task.title,
            error,
            self.state.merge_commit_sha or self.state.commit_sha,
            self.project_id,
        )
        await self.deps.launch_fix(fix_task, original)
        await self._notify(
            f"{subject}: {self.task.title}",
            f"Task {self.task.id} failed and fix task {fix_task.id} was created (chain depth {depth}).\n\n{error}",
            NotificationPriority.HIGH,
        )
        return self._result(
            WorkflowStatus.FIX_TASK_CREATED,
            error=error,
            fix_task_id=fix_task.id,
            chain_depth=depth,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> WorkflowResult:
        """Run (or resume) the workflow. Always returns a result."""
        if self.state.is_terminal:
            assert self.state.result is not None
            return self.state.result

        start = time.monotonic()
        console.print(
            Panel(
                f"[bold bright_cyan]{self.task.title}[/bold bright_cyan]\n"
                f"Task     : {self.task.id}\n"
                f"Workflow : {self.workflow_id}\n"
                f"Project  : {self.project_id or '(default)'}\n"
                f"Resuming : {', '.join(self.state.completed_steps) or 'no'}",
                title="[bold]Workflow Start[/bold]",
                border_style="bright_cyan",
            )
        )

        try:
            for step, method_name in self._STEPS:
                if step in self.state.completed_steps:
                    continue
                if step != "loop_check":
                    await self._process_signals()
                    if self.state.cancel_requested:
                        return await self._finish(self._cancelled(), start)

                result = await getattr(self, method_name)()
                if result is not None:
                    return await self._finish(result, start)
                self.state.completed_steps.append(step)
                await self._save()

            return await self._finish(self._result(WorkflowStatus.FAILED, error="Workflow ended without a result"), start)

        except SafetyAbort as exc:
            console.print(Panel(f"[bold red]{exc}[/bold red]", title="SAFETY ABORT", border_style="red"))
            await self._notify(f"SAFETY ABORT: {self.task.title}", str(exc), NotificationPriority.HIGH)
            return await self._finish(self._result(WorkflowStatus.FAILED, error=str(exc)), start)

        except WorkflowError as exc:
            print_error(f"Workflow failed in {exc.phase} ({exc.kind}): {truncate(exc.message, 500)}")
            subject = _FAILURE_SUBJECTS.get(exc.kind, "Task Failed")
            await self._notify(f"{subject}: {self.task.title}", exc.message, NotificationPriority.HIGH)
            return await self._finish(
                self._result(WorkflowStatus.FAILED, error=exc.message, chain_depth=getattr(exc, "depth", None)),
                start,
            )

        except Exception as exc:
            tb = traceback.format_exc()
            print_error(f"Workflow failed in phase {self.state.phase.value}: {exc}")
            console.print(f"[dim]{tb}[/dim]")
            await self._notify(
                f"Task Failed: {self.task.title}",
                f"Unexpected error in phase {self.state.phase.value}:\n{exc}",
                NotificationPriority.HIGH,
            )
            return await self._finish(self._result(WorkflowStatus.FAILED, error=str(exc) or type(exc).__name__), start)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _step_loop_check(self) -> WorkflowResult | None:
        if not self.options.is_fix_task:
            return None

        await self._enter(WorkflowPhase.LOOP_CHECK)
        original = self.options.original_task_id or self.task.id
        is_loop, depth = self.deps.fix_chains.check_loop(original, self.config.workflow.fix_chain_threshold)
        if not is_loop:
            console.print(f"[dim]Fix chain depth {depth} within threshold[/dim]")
            return None

        base_dir = self.config.project_base_dir(self.project_id)
        try:
            await self._configure_credentials(base_dir)
            rollback = await self.deps.rollback.revert(
                None, f"Fix loop detected for {original} (depth {depth})", base_dir
            )
            console.print(rollback.summary())
        except Exception as exc:
            print_warning(f"Rollback after loop detection failed: {exc}")

        raise LoopDetected(
            WorkflowPhase.LOOP_CHECK.value,
            f"Fix loop detected: chain depth {depth} for task {original} exceeds threshold "
            f"{self.config.workflow.fix_chain_threshold}. The most recent commit was reverted. "
            "Manual intervention required.",
            depth,
        )

    async def _step_planning(self) -> WorkflowResult | None:
        await self._enter(WorkflowPhase.PLANNING)
        base_dir = self.config.project_base_dir(self.project_id)
        self.state.plan = await self._activity(self.deps.planner.plan, self.task, base_dir)
        self.state.base_plan = self.state.plan
        return None

    async def _step_approval(self) -> WorkflowResult | None:
        if self.options.skip_approval:
            self.state.approval_status = ApprovalStatus.APPROVED
            return None

        assert self.state.plan is not None
        if self.state.approval_status is ApprovalStatus.PENDING:
            await self._enter(WorkflowPhase.AWAITING_APPROVAL)
            await self._notify(
                f"Plan Approval Required: {self.task.title}",
                f"{self.state.plan.summary()}\n\n"
                f"Approve: autoship approve {self.workflow_id}\n"
                f"Reject:  autoship reject {self.workflow_id} --comment '...'",
                NotificationPriority.HIGH,
            )

        waited = 0.0
        timeout = self.config.workflow.approval_timeout
        interval = self.config.workflow.signal_poll_interval
        while self.state.approval_status is ApprovalStatus.PENDING:
            await self._process_signals()
            if self.state.cancel_requested:
                return self._cancelled()
            if self.state.approval_status is not ApprovalStatus.PENDING:
                break
            if waited >= timeout:
                return self._result(WorkflowStatus.FAILED, error="Plan not approved within 24 hours")
            await self.deps.sleep(interval)
            waited += interval

        if self.state.approval_status is ApprovalStatus.REJECTED:
            return self._result(
                WorkflowStatus.FAILED,
                error=f"Plan rejected: {self.state.approval_comment or 'No reason given'}",
            )
        print_success("Plan approved")
        return None

    async def _step_worktree(self) -> WorkflowResult | None:
        await self._enter(WorkflowPhase.WORKTREE)
        worktree = await self._activity(
            self.deps.worktrees.create,
            self.task.id,
            self.task.type.value or "feature",
            slugify(self.task.title),
            self.project_id,
        )
        self.state.worktree_path = worktree.path
        self.state.worktree_branch = worktree.branch
        self.state.worktree_removed = False
        return None

    async def _step_coding(self) -> WorkflowResult | None:
        await self._enter(WorkflowPhase.CODING)
        assert self.state.plan is not None and self.state.worktree_path and self.state.worktree_branch

        max_attempts = self.config.workflow.max_coding_attempts
        # Retries amend the planner's original plan, never an already amended one.
        base_plan = self.state.base_plan or self.state.plan
        last_error = self.state.error

        while self.state.retry_count < max_attempts:
            self.state.retry_count += 1
            attempt = self.state.retry_count
            if last_error and attempt > 1:
                self.state.plan = base_plan.with_error_context(last_error)
                self.state.phase = WorkflowPhase.RETRYING
            console.print(f"[bold]Coding attempt {attempt}/{max_attempts}[/bold]")
            await self._save()

            try:
                await self._coding_attempt()
                last_error = None
            except SafetyAbort:
                raise
            except CodingFailure as exc:
                last_error = exc.message
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"

            self.state.error = last_error
            await self._save()
            if last_error is None:
                print_success(f"Coding attempt {attempt} succeeded")
                return None
            print_warning(f"Coding attempt {attempt} failed: {truncate(last_error, 300)}")

        raise CodingFailure(
            WorkflowPhase.CODING.value,
            f"Coding failed after {max_attempts} attempts. Final error: {last_error}",
        )

    async def _coding_attempt(self) -> None:
        """One implement -> verify -> review pass. Raises ``CodingFailure`` on any rejection."""
        plan = self.state.plan
        worktree = self.state.worktree_path

        output = await self._activity(
            self.deps.coder.implement,
            plan,
            worktree,
            self.state.worktree_branch,
            self.project_id,
            existing_pr_url=self.state.pr_url,
        )
        if output.error:
            raise CodingFailure(WorkflowPhase.CODING.value, output.error)
        self.state.pr_url = output.pr_url or self.state.pr_url
        self.state.commit_sha = output.commit_sha or self.state.commit_sha
        self.state.files_changed = output.files_changed

        verification = await self._activity(
            self.deps.verifier.verify, worktree, pull=False, project_id=self.project_id
        )
        if not verification.build_success:
            raise CodingFailure(WorkflowPhase.CODING.value, f"Build verification failed:\n{verification.logs}")

        review = await self._activity(
            self.deps.reviewer.review, self.task, plan, output.files_changed, worktree
        )
        if not review.approved:
            raise ReviewRejection(WorkflowPhase.CODING.value, review.as_error())

    async def _step_syntax(self) -> WorkflowResult | None:
        await self._enter(WorkflowPhase.DEPLOYING_SYNTAX)
        retries = self.config.workflow.build_verify_retries
        verification = None

        for attempt in range(retries + 1):
            verification = await self._activity(
                self.deps.verifier.verify, self.state.worktree_path, pull=True, project_id=self.project_id
            )
            if verification.build_success:
                print_success("Syntax verification passed")
                return None
            if attempt < retries:
                print_warning(
                    f"Syntax verification failed; retrying in {self.config.workflow.build_retry_delay:.0f}s"
                )
                await self.deps.sleep(self.config.workflow.build_retry_delay)

        assert verification is not None
        return await self._spawn_fix(
            BuildVerificationFailure(
                WorkflowPhase.DEPLOYING_SYNTAX.value, f"BUILD VERIFICATION FAILED:\n{verification.logs}"
            )
        )

    async def _step_merge(self) -> WorkflowResult | None:
        await self._enter(WorkflowPhase.MERGING)
        try:
            await self._merge()
        except (MergeFailure, ScmError) as exc:
            self.state.error = f"Merge failed: {getattr(exc, 'message', exc)}"
            print_warning(self.state.error)
        return None

    async def _merge(self) -> None:
        if not self.state.pr_url:
            raise MergeFailure(WorkflowPhase.MERGING.value, "No pull request to merge")
        provider = self.deps.scm.for_project(self.project_id)
        if provider is None:
            raise MergeFailure(WorkflowPhase.MERGING.value, "No SCM provider configured")

        message = f"feat({self.task.id}): {self.task.title}"
        if self.config.skip_external_ci:
            message += " [skip ci]"
        merge = await self._activity(
            provider.merge_pull_request,
            self.state.pr_url,
            MergeOptions(merge_method="squash", delete_branch=True, commit_message=message),
        )
        console.print(merge.summary())
        if not merge.success:
            raise MergeFailure(WorkflowPhase.MERGING.value, merge.error or "merge rejected")

        self.state.merged = True
        self.state.merge_commit_sha = merge.sha
        self.state.error = None

    async def _step_deploy(self) -> WorkflowResult | None:
        if not self.state.merged:
            print_warning("Not merged; skipping production deployment")
            return None

        await self._enter(WorkflowPhase.DEPLOYING_PRODUCTION)
        wf = self.config.workflow
        last_error = ""

        while self.state.deploy_attempts < wf.max_deploy_attempts:
            self.state.deploy_attempts += 1
            attempt = self.state.deploy_attempts
            await self._save()
            console.print(f"[bold]Deploy attempt {attempt}/{wf.max_deploy_attempts}[/bold]")

            outcome = await self._activity(
                self.deps.resolver.deploy,
                self.project_id,
                None,
                self.state.merge_commit_sha or self.state.commit_sha,
                self.state.worktree_path,
            )
            if outcome.success:
                self.state.deployed = True
                return None

            last_error = outcome.error or "Deployment failed"
            diagnosis = await self._activity(
                self.deps.troubleshooter.classify, last_error, outcome.log_text, attempt, self.project_id
            )

            if diagnosis.error_type is ErrorType.CODE:
                return await self._spawn_fix(
                    DeploymentCodeFailure(
                        WorkflowPhase.DEPLOYING_PRODUCTION.value,
                        f"CODE ERROR (from Deployer):\n{diagnosis.error_summary or last_error}",
                    )
                )

            if diagnosis.escalates:
                print_error(f"Troubleshooter escalated: {diagnosis.analysis}")
                break

            if diagnosis.error_type is ErrorType.INFRASTRUCTURE and diagnosis.suggested_action is not None:
                recovery = await self._activity(
                    self.deps.recovery.execute, diagnosis.suggested_action, self.project_id
                )
                console.print(recovery.summary())
                if recovery.success:
                    await self.deps.sleep(wf.recovery_retry_delay)
                    continue

            if self.state.deploy_attempts < wf.max_deploy_attempts:
                await self.deps.sleep(wf.deploy_failure_delay)

        raise DeploymentInfrastructureFailure(
            WorkflowPhase.DEPLOYING_PRODUCTION.value,
            f"Deployment failed after {self.state.deploy_attempts} attempt(s). "
            f"Manual intervention required.\n\n{last_error}",
        )

    async def _step_live_verify(self) -> WorkflowResult | None:
        if not self.state.deployed:
            return None

        await self._enter(WorkflowPhase.VERIFYING_LIVE)
        verification = await self._activity(
            self.deps.live_verifier.verify, self.project_id, self.state.merge_commit_sha
        )
        if verification.success:
            return None

        print_error("Live verification failed; rolling back")
        base_dir = self.config.project_base_dir(self.project_id)
        await self._configure_credentials(base_dir)
        rollback = await self._activity(
            self.deps.rollback.revert,
            self.state.merge_commit_sha,
            "Live verification failed",
            base_dir,
        )
        console.print(rollback.summary())

        redeploy = await self._activity(self.deps.resolver.deploy, self.project_id, None, None, base_dir)
        console.print(redeploy.summary())

        return await self._spawn_fix(
            LiveVerificationFailure(
                WorkflowPhase.VERIFYING_LIVE.value, f"PRODUCTION RUNTIME ERROR:\n{verification.log_text}"
            )
        )

    async def _step_complete(self) -> WorkflowResult | None:
        if not (self.state.merged and self.state.deployed):
            await self._notify(
                f"Task Completed With Errors: {self.task.title}",
                f"PR: {self.state.pr_url or 'n/a'}\n"
                f"Merged: {self.state.merged}\nDeployed: {self.state.deployed}\n\n{self.state.error or ''}",
                NotificationPriority.HIGH,
            )
            return self._result(WorkflowStatus.COMPLETED_WITH_ERRORS, error=self.state.error)

        await self._notify(
            f"Task Completed & Deployed: {self.task.title}",
            f"PR: {self.state.pr_url}\nCommit: {self.state.merge_commit_sha or self.state.commit_sha}",
        )
        return self._result(WorkflowStatus.COMPLETED, error=None)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _cleanup(self) -> CleanupReport:
        report = CleanupReport()

        if self.state.worktree_path and not self.state.worktree_removed:
            self.state.worktree_removed = True
            try:
                await self.deps.worktrees.remove(self.state.worktree_path)
                report.worktree_removed = True
            except Exception as exc:
                report.errors.append(f"Worktree removal failed: {exc}")

        if self.state.pr_url and not self.state.merged:
            try:
                provider = self.deps.scm.for_project(self.project_id)
                if provider is not None:
                    report.pr_closed = await provider.close_pull_request(self.state.pr_url)
            except Exception as exc:
                report.errors.append(f"PR close failed: {exc}")

        return report

    async def _finish(self, result: WorkflowResult, start: float) -> WorkflowResult:
        """Single exit: clean up, persist, summarise. Never raises."""
        report = await self._cleanup()
        console.print(Panel(report.summary(), title="Cleanup", border_style="dim"))

        self.state.result = result
        self.state.phase = _TERMINAL_PHASES[result.status]
        if result.error:
            self.state.error = result.error
        try:
            await self._save()
        except OSError as exc:
            print_warning(f"Could not persist final state: {exc}")

        self._print_final_summary(result, time.monotonic() - start)
        return result

    def _print_final_summary(self, result: WorkflowResult, elapsed: float) -> None:
        ok = result.status is WorkflowStatus.COMPLETED
        border_style = "bold green" if ok else "bold red"
        lines = [
            f"[{border_style}]{result.status.value.upper()}[/{border_style}]",
            "",
            f"Task      : {result.task_id}",
            f"Duration  : {format_duration(elapsed)}",
            f"Steps     : {', '.join(self.state.completed_steps) or 'none'}",
            f"PR        : {result.pr_url or 'n/a'}",
            f"Commit    : {result.commit_sha or 'n/a'}",
        ]
        if result.fix_task_id:
            lines.append(f"Fix task  : {result.fix_task_id} (depth {result.chain_depth})")
        if result.error:
            lines.extend(["", f"Error     : {truncate(result.error, 500)}"])

        console.print()
        console.print(Panel("\n".join(lines), title="[bold]Workflow Complete[/bold]", border_style=border_style))


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _load_config(path: str | None) -> Config:
    config = Config.load(Path(path)) if path else Config.from_env()
    config.ensure_directories()
    return config


async def _run_input(config: Config, workflow_input: WorkflowInput, workflow_id: str | None = None) -> WorkflowResult:
    deps = WorkflowDeps.from_config(config)
    workflow = DevelopFeatureWorkflow(config, deps, workflow_id or f"wf-{workflow_input.task.id}", workflow_input)
    return await workflow.run()


async def _run_queued(config: Config) -> list[WorkflowResult]:
    launcher = FixTaskLauncher(config.queue_dir)
    inputs = [launcher.claim(path) for path in launcher.pending()]
    if not inputs:
        console.print("[dim]No queued workflows[/dim]")
        return []
    return list(await asyncio.gather(*(_run_input(config, item) for item in inputs)))


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``autoship`` / ``python -m autoship.workflow``."""
    parser = argparse.ArgumentParser(
        prog="autoship",
        description="Autoship -- autonomous plan-to-production delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  autoship run task.json\n"
            "  autoship run task.json --require-approval\n"
            "  autoship approve wf-TASK-1 --comment 'ship it'\n"
            "  autoship cancel wf-TASK-1\n"
            "  autoship run-queued\n"
        ),
    )
    parser.add_argument("--config", "-c", default=None, help="Path to a saved config.json (default: environment)")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Start a workflow for a task JSON file")
    run_p.add_argument("task", help="Path to the task JSON file")
    run_p.add_argument("--workflow-id", default=None, help="Workflow id (default: wf-<task id>)")
    run_p.add_argument("--require-approval", action="store_true", help="Wait for plan approval")
    run_p.add_argument("--no-notify", action="store_true", help="Only send high-priority notifications")

    for name in ("approve", "reject"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a plan awaiting approval")
        p.add_argument("workflow_id")
        p.add_argument("--comment", default=None)

    cancel_p = sub.add_parser("cancel", help="Cancel a running workflow")
    cancel_p.add_argument("workflow_id")

    resume_p = sub.add_parser("resume", help="Resume a workflow from its saved state")
    resume_p.add_argument("workflow_id")

    status_p = sub.add_parser("status", help="Show a workflow's saved state")
    status_p.add_argument("workflow_id")

    sub.add_parser("run-queued", help="Run every queued fix-task workflow concurrently")

    prune_p = sub.add_parser("prune", help="Remove stale task worktrees")
    prune_p.add_argument("--project-id", default=None)
    prune_p.add_argument("--max-age-hours", type=float, default=24.0)

    analyze_p = sub.add_parser("analyze-deploy", help="Infer and write a deploy config for a project")
    analyze_p.add_argument("project_dir")
    analyze_p.add_argument("--project-id", default=None)

    args = parser.parse_args(argv)
    config = _load_config(args.config)
    signals = SignalQueue(config.signals_dir)

    if args.command == "run":
        task_path = Path(args.task)
        if not task_path.exists():
            print_error(f"Task file not found: {task_path}")
            sys.exit(1)
        workflow_input = WorkflowInput(
            task=Task.model_validate(load_json(task_path)),
            options=WorkflowOptions(
                skip_approval=not args.require_approval,
                notify_on_complete=not args.no_notify,
            ),
        )
        result = asyncio.run(_run_input(config, workflow_input, args.workflow_id))
        sys.exit(0 if result.status is WorkflowStatus.COMPLETED else 1)

    if args.command in ("approve", "reject"):
        asyncio.run(signals.approve(args.workflow_id, args.command == "approve", args.comment))
        print_success(f"Sent {args.command} to {args.workflow_id}")
        return

    if args.command == "cancel":
        asyncio.run(signals.cancel(args.workflow_id))
        print_success(f"Sent cancel to {args.workflow_id}")
        return

    if args.command == "resume":
        deps = WorkflowDeps.from_config(config)
        try:
            workflow = DevelopFeatureWorkflow(config, deps, args.workflow_id)
        except ValueError as exc:
            print_error(str(exc))
            sys.exit(1)
        result = asyncio.run(workflow.run())
        sys.exit(0 if result.status is WorkflowStatus.COMPLETED else 1)

    if args.command == "status":
        state = WorkflowStateStore(config.workflows_dir).load(args.workflow_id)
        if state is None:
            print_error(f"No state for workflow {args.workflow_id}")
            sys.exit(1)
        print_summary_table(
            {
                "Task": f"{state.task.id} - {state.task.title}",
                "Phase": state.phase.value,
                "Steps": ", ".join(state.completed_steps) or "none",
                "Coding attempts": state.retry_count,
                "Deploy attempts": state.deploy_attempts,
                "PR": state.pr_url or "n/a",
                "Result": state.result.status.value if state.result else "running",
                "Error": truncate(state.error or "", 200),
            },
            title=f"Workflow {args.workflow_id}",
        )
        return

    if args.command == "run-queued":
        results = asyncio.run(_run_queued(config))
        for result in results:
            console.print(f"{result.task_id}: {result.status.value}")
        return

    if args.command == "prune":
        deps = WorkflowDeps.from_config(config)
        pruned = asyncio.run(deps.worktrees.prune(args.max_age_hours * 3600, args.project_id))
        print_success(f"Pruned {pruned} stale worktree(s)")
        return

    if args.command == "analyze-deploy":
        oracle = OracleCascade(config.oracle)
        analysis = asyncio.run(DeployConfigResolver(config, oracle).analyze(Path(args.project_dir), args.project_id))
        console.print(Panel(analysis.summary(), title="Deploy Config", border_style="cyan"))
        if analysis.error:
            sys.exit(1)
        return


if __name__ == "__main__":
    main()
