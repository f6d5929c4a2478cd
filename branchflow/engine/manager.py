"""
Git workflow manager: the top-level orchestrator.

The manager composes routing, naming, merge policy, auditing, events and the
fallback coordinator around the external git primitive and code-hosting
service. Every workflow run executes as its own asyncio task:

    pending -> branch_created -> awaiting_execution -> ready_for_review
    -> pr_created -> merged

A run rests at ``ready_for_review`` or ``pr_created`` when options and policy
do not allow it to go further; a human takes over from there.

Failure Handling:
    Transient git and hosting failures are retried with exponential backoff
    (see :mod:`branchflow.utils.retry`). Once retries are exhausted, or on a
    non-transient failure, the run moves to ``failed`` and the fallback
    coordinator is consulted exactly once. Configuration errors and merge
    conflicts skip the fallback: both need a human.

Concurrency Model:
    Repository mutations (branch creation, push, merge) hold a per-project
    FIFO lock for the duration of the operation only. Runs on different
    projects never wait for each other.

Cancellation:
    A run can be cancelled until a pull request exists or a merge has
    started. Later cancellation requests only flag the run for follow-up.

Example:
    >>> manager = GitWorkflowManager(EngineSettings(), git=LocalGitPrimitive(), hosting=gitea)
    >>> handle = await manager.start_workflow(task, WorkflowOptions())
    >>> branch = await handle.wait_for_branch()
    >>> # ... the execution collaborator commits to `branch` ...
    >>> handle.complete_execution(confidence_score=0.92)
    >>> record = await handle.wait()
    >>> record.status
    <WorkflowStatus.MERGED: 'merged'>
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from branchflow.config.settings import EngineSettings
from branchflow.engine.audit import AuditMetricsRecorder
from branchflow.engine.events import (
    EventPublisher,
    WorkflowCancelled,
    WorkflowCompleted,
    WorkflowExecuted,
    WorkflowFailed,
)
from branchflow.engine.fallback import FallbackCoordinator, FallbackKind
from branchflow.engine.locks import ProjectLockRegistry
from branchflow.engine.naming import BranchNameGenerator, validate_task_id
from branchflow.engine.policy import MergePolicyEngine
from branchflow.engine.routing import TaskTypeRoutingTable
from branchflow.engine.workflows import FallbackWorkflow, PrimaryWorkflow, WorkflowRun, WorkflowSteps
from branchflow.enums import AuditOutcome, OperationType, WorkflowStatus
from branchflow.exceptions import (
    BranchflowError,
    ConfigurationError,
    FallbackExhaustedError,
    InvalidTransitionError,
    MergeConflictError,
    ValidationError,
    WorkflowNotFoundError,
)
from branchflow.models.domain import (
    AuditFilter,
    AuditLogEntry,
    BranchStrategy,
    ExecutionSignals,
    MetricsSnapshot,
    StatusTransition,
    Task,
    WorkflowExecutionRecord,
    WorkflowOptions,
    can_transition,
)
from branchflow.monitoring.metrics import MetricsCollector
from branchflow.providers.base import CodeHostingProvider, GitPrimitive, ReviewerPool
from branchflow.utils.logging_config import bind_workflow

log = structlog.get_logger(__name__)

Executor = Callable[[Task, str], Awaitable[ExecutionSignals | None]]

_SUCCESS_STATUSES = frozenset(
    {
        WorkflowStatus.MERGED,
        WorkflowStatus.PR_CREATED,
        WorkflowStatus.READY_FOR_REVIEW,
        WorkflowStatus.FALLBACK_SUCCEEDED,
    }
)


class WorkflowHandle:
    """Caller-side view of one workflow run."""

    def __init__(self, manager: GitWorkflowManager, run: WorkflowRun) -> None:
        self._manager = manager
        self._run = run

    @property
    def workflow_id(self) -> str:
        return self._run.record.id

    @property
    def status(self) -> WorkflowStatus:
        return self._run.record.status

    @property
    def awaiting_execution(self) -> bool:
        return self._run.awaiting_execution

    async def wait_for_branch(self) -> str | None:
        """Wait until the branch exists (or the run ended without one)."""
        await self._run.branch_ready.wait()
        return self._run.record.branch_name

    def complete_execution(self, confidence_score: float | None = None) -> None:
        """Signal that the changes were committed to the branch."""
        self._manager.complete_execution(self.workflow_id, confidence_score)

    async def wait(self, timeout: float | None = None) -> WorkflowExecutionRecord:
        """Wait for the current cycle of the run to come to rest."""
        return await asyncio.wait_for(asyncio.shield(self._run.done), timeout=timeout)

    async def cancel(self) -> WorkflowExecutionRecord:
        return await self._manager.cancel(self.workflow_id)


class GitWorkflowManager:
    """Orchestrate branch, pull request and merge lifecycles for tasks.

    Attributes:
        settings: Engine configuration
        routing: Task type to branch strategy table
        policy: Merge policy engine
        recorder: Audit trail and metrics
        publisher: Lifecycle event bus
        fallback: Degraded-path coordinator
    """

    def __init__(
        self,
        settings: EngineSettings,
        git: GitPrimitive,
        hosting: CodeHostingProvider | None = None,
        reviewer_pool: ReviewerPool | None = None,
        recorder: AuditMetricsRecorder | None = None,
        publisher: EventPublisher | None = None,
        routing: TaskTypeRoutingTable | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Wire the engine components together.

        Args:
            settings: Engine configuration
            git: Version-control primitive
            hosting: Code-hosting service; required for pull requests and merges
            reviewer_pool: Source of reviewers when the caller names too few
            recorder: Audit recorder (in-memory sink from settings when None)
            publisher: Event bus (a fresh one when None)
            routing: Routing table (built from settings when None)
            clock: Time source, injectable for deterministic tests
        """
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(UTC))
        self.routing = routing if routing is not None else TaskTypeRoutingTable.from_settings(settings)
        self.policy = MergePolicyEngine(settings.policy, settings.branches.targets, reviewer_pool)
        self.recorder = recorder or AuditMetricsRecorder.from_config(settings.audit, clock=self.clock)
        self.publisher = publisher or EventPublisher()
        self.hosting = hosting
        self.locks = ProjectLockRegistry()
        self.steps = WorkflowSteps(
            settings=settings,
            git=git,
            hosting=hosting,
            locks=self.locks,
            recorder=self.recorder,
            publisher=self.publisher,
            policy=self.policy,
            naming=BranchNameGenerator(),
            clock=self.clock,
        )
        self.primary = PrimaryWorkflow(self.steps)
        self.fallback = FallbackCoordinator(
            FallbackWorkflow(self.steps),
            settings.branches.candidates,
            self.recorder,
            self.publisher,
        )
        self._runs: dict[str, WorkflowRun] = {}

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        git: GitPrimitive | None = None,
        hosting: CodeHostingProvider | None = None,
        reviewer_pool: ReviewerPool | None = None,
    ) -> GitWorkflowManager:
        """Build a manager with the collaborators described by ``settings``."""
        from branchflow.providers.gitea_rest import GiteaHostingProvider
        from branchflow.providers.local_git import LocalGitPrimitive

        if hosting is None and settings.hosting is not None:
            hosting = GiteaHostingProvider(
                base_url=str(settings.hosting.base_url),
                token=settings.hosting.api_token.get_secret_value(),
                owner=settings.hosting.owner,
                repo=settings.hosting.repo,
                timeout=settings.timeouts.create_pull_request,
            )
        return cls(settings, git=git or LocalGitPrimitive(), hosting=hosting, reviewer_pool=reviewer_pool)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def classify(
        self,
        task: Task,
        options: WorkflowOptions | Mapping[str, Any] | None = None,
    ) -> tuple[BranchStrategy, WorkflowOptions]:
        """Validate a submission and resolve its branch strategy.

        Raises:
            ValidationError: If the task or options are invalid
        """
        if not isinstance(options, WorkflowOptions):
            options = WorkflowOptions.from_mapping(options)
        for name in ("id", "title", "type"):
            if not str(getattr(task, name) or "").strip():
                raise ValidationError(f"Task {name} must not be empty", field=name)
        validate_task_id(task.id)
        if task.project_path is None:
            raise ValidationError("Task metadata must include projectPath", field="projectPath")
        if options.create_pull_request and self.hosting is None:
            raise ValidationError(
                "create_pull_request requires a code-hosting provider", field="create_pull_request"
            )
        strategy = self.policy.resolve_strategy(self.routing.resolve(task.type), options)
        return strategy, options

    async def start_workflow(
        self,
        task: Task,
        options: WorkflowOptions | Mapping[str, Any] | None = None,
    ) -> WorkflowHandle:
        """Validate, classify and launch a workflow run.

        Control returns as soon as the run is scheduled. The run creates its
        branch, then waits for :meth:`WorkflowHandle.complete_execution`.

        Raises:
            ValidationError: If the submission is rejected
        """
        try:
            strategy, options = self.classify(task, options)
        except ValidationError as e:
            log.warning("workflow_rejected", task_id=task.id, error=e.message, field=e.field)
            await self.recorder.log(
                OperationType.VALIDATION,
                AuditOutcome.REJECTED,
                project_path=task.project_path or "",
                task_id=task.id,
                error=e.message,
                field=e.field,
            )
            raise

        now = self.clock()
        record = WorkflowExecutionRecord(
            id=f"wf-{uuid.uuid4().hex[:12]}",
            task_id=task.id,
            task_type=task.type,
            project_path=task.project_path or "",
            branch_name=None,
            base_branch=strategy.base_branch,
            merge_target=strategy.merge_target,
            status=WorkflowStatus.PENDING,
            created_at=now,
            updated_at=now,
            history=[StatusTransition(status=WorkflowStatus.PENDING, at=now, detail="submitted")],
        )
        loop = asyncio.get_running_loop()
        run = WorkflowRun(
            record=record,
            task=task,
            options=options,
            strategy=strategy,
            execution=loop.create_future(),
            done=loop.create_future(),
            variant=self.primary,
        )
        self._runs[record.id] = run

        await self.recorder.log(
            OperationType.WORKFLOW_START,
            AuditOutcome.SUCCESS,
            project_path=record.project_path,
            task_id=record.task_id,
            workflow_id=record.id,
            task_type=task.type,
            base=strategy.base_branch,
            target=strategy.merge_target,
            protection=strategy.protection_level.value,
        )
        log.info(
            "workflow_submitted",
            workflow_id=record.id,
            task_id=task.id,
            task_type=task.type,
            target=strategy.merge_target,
            protection=strategy.protection_level.value,
        )
        self._launch(run)
        return WorkflowHandle(self, run)

    async def run_workflow(
        self,
        task: Task,
        options: WorkflowOptions | Mapping[str, Any] | None,
        executor: Executor,
    ) -> WorkflowExecutionRecord:
        """Start a run, execute it with ``executor`` and wait for the result.

        ``executor(task, branch_name)`` performs the code change on the branch
        and may return :class:`ExecutionSignals`. If it raises, the run is
        cancelled and the exception propagates.
        """
        handle = await self.start_workflow(task, options)
        branch = await handle.wait_for_branch()
        if branch is None or not handle.awaiting_execution:
            return await handle.wait()

        try:
            signals = await executor(task, branch)
        except Exception:
            await self.cancel(handle.workflow_id)
            raise
        handle.complete_execution(signals.confidence_score if signals else None)
        return await handle.wait()

    def complete_execution(self, workflow_id: str, confidence_score: float | None = None) -> None:
        """Deliver the execution-complete signal to a run.

        Raises:
            WorkflowNotFoundError: If the run is unknown
            InvalidTransitionError: If the run is not waiting for execution
            ValidationError: If the confidence score is out of range
        """
        run = self._get_run(workflow_id)
        signals = ExecutionSignals(confidence_score=confidence_score)
        if run.execution.done() or run.completed:
            raise InvalidTransitionError(run.record.status.value, WorkflowStatus.READY_FOR_REVIEW.value)
        run.execution.set_result(signals)

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    def _launch(self, run: WorkflowRun) -> None:
        MetricsCollector.workflow_started()
        run.worker = asyncio.create_task(self._drive(run), name=f"branchflow-{run.record.id}")

    async def _drive(self, run: WorkflowRun) -> None:
        record = run.record
        with bind_workflow(record.id, record.project_path):
            try:
                await self._dispatch(run)
            except asyncio.CancelledError:
                await self._finish_cancelled(run)
            except Exception as e:
                log.error("workflow_crashed", error=str(e), exc_info=True)
                record.error = str(e)
                if can_transition(record.status, WorkflowStatus.FAILED):
                    run.advance(WorkflowStatus.FAILED, self.clock(), "internal error")
            finally:
                if not run.completed:
                    await self._complete(run)

    async def _dispatch(self, run: WorkflowRun) -> None:
        variant = run.variant
        if isinstance(variant, PrimaryWorkflow):
            await self._run_primary(run, variant)
        elif isinstance(variant, FallbackWorkflow):
            await self._run_fallback(run, variant)
        else:
            raise TypeError(f"Unknown workflow variant: {variant!r}")

    async def _run_primary(self, run: WorkflowRun, workflow: PrimaryWorkflow) -> None:
        record = run.record
        if record.branch_name is None:
            try:
                await workflow.open(run)
            except BranchflowError as e:
                await self._handle_failure(run, e)
                return
        else:
            run.advance(WorkflowStatus.BRANCH_CREATED, self.clock(), f"reusing {record.branch_name}")

        run.advance(WorkflowStatus.AWAITING_EXECUTION, self.clock())
        run.branch_ready.set()
        signals = await self._await_execution(run)

        try:
            await workflow.deliver(run, signals)
        except BranchflowError as e:
            await self._handle_failure(run, e)
            return
        await self._complete(run)

    async def _run_fallback(self, run: WorkflowRun, workflow: FallbackWorkflow) -> None:
        record = run.record
        run.branch_ready.set()
        signals = await self._await_execution(run)
        try:
            await workflow.deliver(run, signals)
        except BranchflowError as e:
            self._record_error(run, e)
            run.advance(WorkflowStatus.FALLBACK_FAILED, self.clock(), str(e))
            await self._notify_error(run, FallbackExhaustedError(record.id, e))
        await self._complete(run)

    async def _await_execution(self, run: WorkflowRun) -> ExecutionSignals:
        signals = await run.execution
        log.info("execution_completed", confidence_score=signals.confidence_score)
        await self.publisher.publish(
            WorkflowExecuted(
                workflow_id=run.record.id,
                workflow_type=run.task.type,
                branch_name=run.record.branch_name or "",
                confidence_score=signals.confidence_score,
            )
        )
        return signals

    def _record_error(self, run: WorkflowRun, error: BaseException) -> None:
        run.record.error = str(error)
        run.record.failure_point = run.current_step.value if run.current_step else None

    async def _notify_error(self, run: WorkflowRun, error: BranchflowError) -> None:
        if run.options.notify_on_error:
            await self.publisher.publish(
                WorkflowFailed(
                    workflow_id=run.record.id,
                    error=error.message,
                    failure_point=run.record.failure_point,
                    timestamp=self.clock(),
                )
            )

    async def _handle_failure(self, run: WorkflowRun, error: BranchflowError) -> None:
        record = run.record
        self._record_error(run, error)
        run.advance(WorkflowStatus.FAILED, self.clock(), str(error))
        log.error(
            "workflow_failed",
            failure_point=record.failure_point,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._notify_error(run, error)

        if isinstance(error, (ConfigurationError, MergeConflictError)):
            log.info("fallback_skipped", reason=type(error).__name__)
            await self._complete(run)
            return
        if self.fallback.has_attempted(record.id):
            await self._complete(run)
            return

        run.advance(WorkflowStatus.FALLBACK_USED, self.clock(), record.failure_point)
        outcome = await self.fallback.attempt(record, run)

        if outcome.kind == FallbackKind.BRANCH_RECREATED:
            run.variant = self.fallback.workflow
            await self._dispatch(run)
            return
        if outcome.kind == FallbackKind.EXHAUSTED:
            exhausted = FallbackExhaustedError(record.id, outcome.error)
            record.error = str(exhausted)
            run.advance(WorkflowStatus.FALLBACK_FAILED, self.clock(), outcome.detail)
            await self._notify_error(run, exhausted)
        await self._complete(run)

    async def _complete(self, run: WorkflowRun) -> None:
        if run.completed:
            return
        run.completed = True
        record = run.record
        status = record.status
        if status in _SUCCESS_STATUSES:
            outcome = AuditOutcome.SUCCESS
        elif status == WorkflowStatus.CANCELLED:
            outcome = AuditOutcome.SKIPPED
        else:
            outcome = AuditOutcome.FAILURE

        await self.recorder.log(
            OperationType.WORKFLOW_COMPLETE,
            outcome,
            project_path=record.project_path,
            task_id=record.task_id,
            workflow_id=record.id,
            duration_ms=(time.monotonic() - run.started) * 1000,
            status=status.value,
            auto_merged=record.auto_merged,
            branch=record.branch_name,
            error=record.error,
        )
        if run.options.notify_on_complete:
            await self.publisher.publish(
                WorkflowCompleted(
                    workflow_id=record.id,
                    status=status.value,
                    auto_merged=record.auto_merged,
                    timestamp=self.clock(),
                )
            )
        log.info("workflow_completed", status=status.value, auto_merged=record.auto_merged)

        self.policy.forget(record.id)
        MetricsCollector.workflow_finished()
        run.branch_ready.set()
        if not run.done.done():
            run.done.set_result(record.snapshot())

    # ------------------------------------------------------------------
    # Cancellation and retry
    # ------------------------------------------------------------------

    async def _finish_cancelled(self, run: WorkflowRun) -> None:
        record = run.record
        if can_transition(record.status, WorkflowStatus.CANCELLED):
            run.advance(WorkflowStatus.CANCELLED, self.clock(), "cancelled by caller")
        await self.recorder.log(
            OperationType.CANCEL,
            AuditOutcome.SUCCESS,
            project_path=record.project_path,
            task_id=record.task_id,
            workflow_id=record.id,
            status=record.status.value,
        )
        await self.publisher.publish(
            WorkflowCancelled(workflow_id=record.id, status=record.status.value, follow_up=False)
        )

    async def cancel(self, workflow_id: str) -> WorkflowExecutionRecord:
        """Cancel a run, or flag it for follow-up once it is past the point of no return.

        Raises:
            WorkflowNotFoundError: If the run is unknown
            InvalidTransitionError: If the run already finished
        """
        run = self._get_run(workflow_id)
        record = run.record

        if run.merging or record.status == WorkflowStatus.PR_CREATED:
            record.follow_up_requested = True
            log.warning("cancel_deferred", workflow_id=workflow_id, status=record.status.value, merging=run.merging)
            await self.recorder.log(
                OperationType.CANCEL,
                AuditOutcome.FOLLOW_UP,
                project_path=record.project_path,
                task_id=record.task_id,
                workflow_id=record.id,
                status=record.status.value,
                merging=run.merging,
            )
            await self.publisher.publish(
                WorkflowCancelled(workflow_id=record.id, status=record.status.value, follow_up=True)
            )
            return record.snapshot()

        if not can_transition(record.status, WorkflowStatus.CANCELLED):
            raise InvalidTransitionError(record.status.value, WorkflowStatus.CANCELLED.value)

        if run.worker is not None and not run.worker.done():
            run.worker.cancel()
            await asyncio.wait([run.worker])
        else:
            with bind_workflow(record.id, record.project_path):
                await self._finish_cancelled(run)
        return record.snapshot()

    async def retry(self, workflow_id: str) -> WorkflowHandle:
        """Send a run handed over at ``fallback_used`` through the primary path again.

        The existing branch (and pull request) are reused. The fallback path
        is not available a second time.

        Raises:
            WorkflowNotFoundError: If the run is unknown
            InvalidTransitionError: If the run is not resting at ``fallback_used``
        """
        run = self._get_run(workflow_id)
        record = run.record
        busy = run.worker is not None and not run.worker.done()
        if record.status != WorkflowStatus.FALLBACK_USED or busy:
            raise InvalidTransitionError(record.status.value, WorkflowStatus.PENDING.value)

        run.advance(WorkflowStatus.PENDING, self.clock(), "retry requested")
        record.error = None
        record.failure_point = None
        loop = asyncio.get_running_loop()
        run.done = loop.create_future()
        if run.execution.cancelled():
            run.execution = loop.create_future()
        run.completed = False
        run.started = time.monotonic()
        run.variant = self.primary

        await self.recorder.log(
            OperationType.WORKFLOW_START,
            AuditOutcome.SUCCESS,
            project_path=record.project_path,
            task_id=record.task_id,
            workflow_id=record.id,
            retry=True,
        )
        self._launch(run)
        return WorkflowHandle(self, run)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_run(self, workflow_id: str) -> WorkflowRun:
        try:
            return self._runs[workflow_id]
        except KeyError as e:
            raise WorkflowNotFoundError(workflow_id) from e

    def get_status(self, workflow_id: str) -> WorkflowExecutionRecord:
        """Snapshot of a run's execution record."""
        return self._get_run(workflow_id).record.snapshot()

    def list_workflows(self, status: WorkflowStatus | None = None) -> list[WorkflowExecutionRecord]:
        """Snapshots of all known runs, oldest first."""
        records = [run.record.snapshot() for run in self._runs.values()]
        if status is not None:
            records = [record for record in records if record.status == status]
        return sorted(records, key=lambda record: record.created_at)

    async def get_logs(self, audit_filter: AuditFilter | None = None) -> list[AuditLogEntry]:
        """Audit entries matching ``audit_filter``."""
        return await self.recorder.query(audit_filter)

    async def get_metrics(self, audit_filter: AuditFilter | None = None) -> MetricsSnapshot:
        """Metrics computed from the audit trail."""
        return await self.recorder.metrics(audit_filter)

    async def aclose(self) -> None:
        """Cancel runs still waiting, let merges finish, flush events."""
        for run in list(self._runs.values()):
            if run.worker is not None and not run.worker.done() and not run.merging:
                run.worker.cancel()
        workers = [run.worker for run in self._runs.values() if run.worker is not None]
        if workers:
            await asyncio.wait(workers)
        await self.publisher.aclose()
        if self.hosting is not None and hasattr(self.hosting, "aclose"):
            await self.hosting.aclose()
