"""
Workflow variants and the guarded operations they are built from.

A workflow run is driven by one of two explicit variants:

- :class:`PrimaryWorkflow`: full ceremony. Create the branch from the
  strategy's base, push, open a pull request when asked, merge when the
  resolved policy allows it.
- :class:`FallbackWorkflow`: degraded path used after the primary path
  failed. A single branch creation against an alternate base, then a push.
  It never opens pull requests and never merges, whatever the policy says.

Both variants perform their external calls through :class:`WorkflowSteps`,
which serializes repository mutations per project, bounds every call with
its timeout, retries transient failures and audits every attempt.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, TypeVar

import structlog

from branchflow.config.settings import EngineSettings
from branchflow.engine import content
from branchflow.engine.audit import AuditMetricsRecorder
from branchflow.engine.events import BranchCreated, EventPublisher, PullRequestCreated
from branchflow.engine.locks import ProjectLockRegistry, project_key
from branchflow.engine.naming import BranchNameGenerator
from branchflow.engine.policy import MergePolicyEngine
from branchflow.enums import AuditOutcome, OperationType, WorkflowStatus
from branchflow.exceptions import BranchflowError, ConfigurationError, GitOperationError
from branchflow.models.domain import (
    BranchStrategy,
    ExecutionSignals,
    PullRequest,
    ResolvedPolicy,
    Task,
    WorkflowExecutionRecord,
    WorkflowOptions,
)
from branchflow.providers.base import CodeHostingProvider, GitPrimitive
from branchflow.utils.retry import retry_call

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(eq=False)
class WorkflowRun:
    """Mutable per-run context owned by the workflow manager."""

    record: WorkflowExecutionRecord
    task: Task
    options: WorkflowOptions
    strategy: BranchStrategy
    execution: asyncio.Future[ExecutionSignals]
    done: asyncio.Future[WorkflowExecutionRecord]
    started: float = field(default_factory=time.monotonic)
    branch_ready: asyncio.Event = field(default_factory=asyncio.Event)
    variant: PrimaryWorkflow | FallbackWorkflow | None = None
    worker: asyncio.Task[None] | None = None
    policy: ResolvedPolicy | None = None
    pull_request: PullRequest | None = None
    current_step: OperationType | None = None
    merging: bool = False
    completed: bool = False

    def advance(self, status: WorkflowStatus, at: datetime, detail: str | None = None) -> None:
        """Transition the record and log the change."""
        previous = self.record.status
        self.record.transition(status, at, detail)
        log.info("workflow_status_changed", previous=previous.value, status=status.value, detail=detail)

    @property
    def awaiting_execution(self) -> bool:
        """True while the run waits for the execution-complete signal."""
        return not self.completed and not self.execution.done() and self.record.status in (
            WorkflowStatus.AWAITING_EXECUTION,
            WorkflowStatus.FALLBACK_USED,
        )


class WorkflowSteps:
    """Guarded external operations shared by both workflow variants."""

    def __init__(
        self,
        settings: EngineSettings,
        git: GitPrimitive,
        hosting: CodeHostingProvider | None,
        locks: ProjectLockRegistry,
        recorder: AuditMetricsRecorder,
        publisher: EventPublisher,
        policy: MergePolicyEngine,
        naming: BranchNameGenerator,
        clock: Callable[[], datetime],
    ) -> None:
        self.settings = settings
        self.git = git
        self.hosting = hosting
        self.locks = locks
        self.recorder = recorder
        self.publisher = publisher
        self.policy = policy
        self.naming = naming
        self.clock = clock
        # Names handed out per project during this process lifetime.
        self._issued: dict[str, set[str]] = {}

    async def _guarded(
        self,
        run: WorkflowRun,
        operation: OperationType,
        timeout: float,
        call: Callable[[], Awaitable[T]],
        *,
        retries: bool = True,
        lock: bool = True,
        **detail: Any,
    ) -> T:
        record = run.record
        run.current_step = operation
        retry_config = self.settings.retry
        started = time.monotonic()

        async def on_retry(retry_number: int, error: GitOperationError, delay: float) -> None:
            await self.recorder.log(
                operation,
                AuditOutcome.RETRY,
                project_path=record.project_path,
                task_id=record.task_id,
                workflow_id=record.id,
                attempt=retry_number,
                delay=delay,
                error=str(error),
                **detail,
            )

        def on_attempt(_attempt: int) -> None:
            record.attempts += 1

        # Held per attempt, never across a backoff sleep.
        def guard() -> AbstractAsyncContextManager[object]:
            return self.locks.hold(record.project_path, operation.value)

        try:
            result = await retry_call(
                call,
                name=operation.value,
                max_retries=retry_config.max_retries if retries else 0,
                base_delay=retry_config.base_delay,
                backoff_factor=retry_config.backoff_factor,
                timeout=timeout,
                on_retry=on_retry,
                on_attempt=on_attempt,
                guard=guard if lock else None,
            )
        except Exception as e:
            error = (
                e
                if isinstance(e, BranchflowError)
                else GitOperationError(f"{operation.value} failed: {e}", operation=operation.value, transient=False)
            )
            await self.recorder.log(
                operation,
                AuditOutcome.FAILURE,
                project_path=record.project_path,
                task_id=record.task_id,
                workflow_id=record.id,
                duration_ms=(time.monotonic() - started) * 1000,
                error=str(error),
                error_type=type(error).__name__,
                **detail,
            )
            if error is e:
                raise
            raise error from e

        await self.recorder.log(
            operation,
            AuditOutcome.SUCCESS,
            project_path=record.project_path,
            task_id=record.task_id,
            workflow_id=record.id,
            duration_ms=(time.monotonic() - started) * 1000,
            **detail,
        )
        return result

    async def create_branch(self, run: WorkflowRun, base: str, *, retries: bool = True) -> str:
        """Generate a free branch name and create it from ``base``."""
        record = run.record
        now = self.clock()
        issued = self._issued.setdefault(project_key(record.project_path), set())

        async def attempt() -> str:
            existing = await self.git.list_branches(record.project_path)
            name = self.naming.generate(
                run.strategy, run.task, now, exists_check=lambda candidate: candidate in existing or candidate in issued
            )
            await self.git.create_branch(record.project_path, name, base)
            issued.add(name)
            return name

        name = await self._guarded(
            run,
            OperationType.BRANCH_CREATE,
            self.settings.timeouts.create_branch,
            attempt,
            retries=retries,
            base=base,
        )
        record.branch_name = name
        record.base_branch = base
        await self.publisher.publish(
            BranchCreated(
                workflow_id=record.id,
                project_path=record.project_path,
                task_id=record.task_id,
                branch_name=name,
                timestamp=self.clock(),
            )
        )
        return name

    async def push(self, run: WorkflowRun) -> None:
        record = run.record
        branch = self._branch(record)
        await self._guarded(
            run,
            OperationType.PUSH,
            self.settings.timeouts.push,
            lambda: self.git.push_branch(record.project_path, branch),
            branch=branch,
        )

    async def create_pull_request(self, run: WorkflowRun, policy: ResolvedPolicy) -> PullRequest:
        record = run.record
        hosting = self._hosting()
        branch = self._branch(record)
        pull_request = await self._guarded(
            run,
            OperationType.PULL_REQUEST_CREATE,
            self.settings.timeouts.create_pull_request,
            lambda: hosting.create_pull_request(
                record.project_path,
                head=branch,
                base=record.merge_target,
                title=content.pull_request_title(run.task),
                body=content.pull_request_body(run.task, branch, run.strategy, policy),
                labels=content.pull_request_labels(run.task, run.strategy, run.options),
                reviewers=list(policy.reviewers),
            ),
            lock=False,
            branch=branch,
            target=record.merge_target,
        )
        run.pull_request = pull_request
        record.pull_request_url = pull_request.url
        await self.publisher.publish(
            PullRequestCreated(workflow_id=record.id, pr_url=pull_request.url, branch_name=branch)
        )
        return pull_request

    async def merge(self, run: WorkflowRun) -> None:
        record = run.record
        hosting = self._hosting()
        branch = self._branch(record)
        method = run.strategy.merge_method
        message = content.merge_commit_message(run.task, branch, method)
        pull_request = run.pull_request
        delete = run.options.delete_source_branch

        async def attempt() -> Any:
            if pull_request is not None:
                return await hosting.merge_pull_request(record.project_path, pull_request, method, message, delete)
            return await hosting.merge_branch(
                record.project_path, branch, record.merge_target, method, message, delete
            )

        run.merging = True
        try:
            await self._guarded(
                run,
                OperationType.MERGE,
                self.settings.timeouts.merge,
                attempt,
                branch=branch,
                target=record.merge_target,
                method=method.value,
            )
        finally:
            run.merging = False

    async def delete_source_branch(self, run: WorkflowRun) -> bool:
        """Remove the merged branch from the working copy.

        The merge has already happened, so a failure here is audited and
        logged but does not fail the run.
        """
        record = run.record
        branch = self._branch(record)
        try:
            await self._guarded(
                run,
                OperationType.BRANCH_DELETE,
                self.settings.timeouts.create_branch,
                lambda: self.git.delete_branch(record.project_path, branch),
                retries=False,
                branch=branch,
            )
        except BranchflowError as e:
            log.warning("source_branch_not_deleted", branch=branch, error=str(e))
            return False
        return True

    async def evaluate_policy(self, run: WorkflowRun, signals: ExecutionSignals | None) -> ResolvedPolicy:
        run.policy = await self.policy.evaluate(
            run.strategy, run.options, signals, task=run.task, run_id=run.record.id
        )
        return run.policy

    def _hosting(self) -> CodeHostingProvider:
        if self.hosting is None:
            raise ConfigurationError("No code-hosting provider configured")
        return self.hosting

    @staticmethod
    def _branch(record: WorkflowExecutionRecord) -> str:
        if record.branch_name is None:
            raise ConfigurationError(f"Workflow {record.id} has no branch")
        return record.branch_name


class PrimaryWorkflow:
    """Full branch, pull request and merge ceremony."""

    kind: ClassVar[str] = "primary"

    def __init__(self, steps: WorkflowSteps) -> None:
        self.steps = steps

    async def open(self, run: WorkflowRun) -> str:
        """Create the run's branch from the strategy's base branch."""
        name = await self.steps.create_branch(run, run.strategy.base_branch)
        run.advance(WorkflowStatus.BRANCH_CREATED, self.steps.clock(), name)
        return name

    async def deliver(self, run: WorkflowRun, signals: ExecutionSignals | None) -> None:
        """Push, then open a pull request and merge as options and policy allow."""
        clock = self.steps.clock
        await self.steps.push(run)
        run.advance(WorkflowStatus.READY_FOR_REVIEW, clock())

        policy = await self.steps.evaluate_policy(run, signals)
        if run.options.create_pull_request:
            if run.pull_request is None:
                await self.steps.create_pull_request(run, policy)
            run.advance(WorkflowStatus.PR_CREATED, clock(), run.record.pull_request_url)

        if policy.auto_merge_allowed:
            if self.steps.hosting is None:
                log.warning("auto_merge_skipped", reason="no code-hosting provider configured")
                await self.steps.recorder.log(
                    OperationType.MERGE,
                    AuditOutcome.SKIPPED,
                    project_path=run.record.project_path,
                    task_id=run.record.task_id,
                    workflow_id=run.record.id,
                    reason="no code-hosting provider configured",
                )
                return
            await self.steps.merge(run)
            run.record.auto_merged = True
            run.advance(WorkflowStatus.MERGED, clock(), run.strategy.merge_method.value)
            if run.options.delete_source_branch:
                await self.steps.delete_source_branch(run)
        elif policy.auto_merge_requested:
            log.info("auto_merge_refused", reason=policy.reason)


class FallbackWorkflow:
    """Degraded path: alternate-base branch and push, never a merge."""

    kind: ClassVar[str] = "fallback"

    def __init__(self, steps: WorkflowSteps) -> None:
        self.steps = steps

    async def open(self, run: WorkflowRun, base: str) -> str:
        """Single branch-creation attempt against ``base``."""
        return await self.steps.create_branch(run, base, retries=False)

    async def deliver(self, run: WorkflowRun, signals: ExecutionSignals | None) -> None:
        """Publish the branch so a human can take it from there."""
        await self.steps.push(run)
        run.advance(WorkflowStatus.FALLBACK_SUCCEEDED, self.steps.clock(), "branch pushed for manual merge")
