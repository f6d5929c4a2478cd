"""
Fallback coordination for failed workflow runs.

The coordinator is consulted once per run (keyed by the record id) after
the primary path failed. It chooses a degraded action from the point of
failure:

- branch creation failed: one branch-creation attempt against the
  alternate base-branch candidate (:class:`FallbackKind.BRANCH_RECREATED`,
  or :class:`FallbackKind.EXHAUSTED` when that fails too)
- push, pull request or merge failed: the branch is left intact for a human
  to finish (:class:`FallbackKind.MANUAL_HANDOFF`)

The fallback path never merges. Every outcome is audited and published as a
``workflow.fallback`` event.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

import structlog

from branchflow.engine.audit import AuditMetricsRecorder
from branchflow.engine.events import EventPublisher, FallbackAttempted
from branchflow.engine.workflows import FallbackWorkflow, WorkflowRun
from branchflow.enums import AuditOutcome, OperationType
from branchflow.exceptions import BranchflowError
from branchflow.models.domain import WorkflowExecutionRecord

log = structlog.get_logger(__name__)


class FallbackKind(str, Enum):
    """What the fallback path did for a run."""

    BRANCH_RECREATED = "branch_recreated"
    MANUAL_HANDOFF = "manual_handoff"
    EXHAUSTED = "exhausted"
    ALREADY_ATTEMPTED = "already_attempted"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FallbackOutcome:
    """Result of one fallback attempt."""

    kind: FallbackKind
    failure_point: str | None
    base_branch: str | None = None
    branch_name: str | None = None
    error: BranchflowError | None = None

    @property
    def detail(self) -> str:
        if self.kind == FallbackKind.BRANCH_RECREATED:
            return f"branch {self.branch_name} created from {self.base_branch}"
        if self.kind == FallbackKind.MANUAL_HANDOFF:
            return "branch left intact for manual completion"
        if self.error is not None:
            return str(self.error)
        return self.kind.value


class FallbackCoordinator:
    """Run the degraded path at most once per workflow run."""

    def __init__(
        self,
        workflow: FallbackWorkflow,
        base_candidates: list[str],
        recorder: AuditMetricsRecorder,
        publisher: EventPublisher,
    ) -> None:
        self.workflow = workflow
        self.base_candidates = list(base_candidates)
        self.recorder = recorder
        self.publisher = publisher
        self._attempted: set[str] = set()

    def has_attempted(self, workflow_id: str) -> bool:
        return workflow_id in self._attempted

    def alternate_base(self, failed_base: str) -> str | None:
        """First configured candidate that differs from the failed base."""
        return next((candidate for candidate in self.base_candidates if candidate != failed_base), None)

    async def attempt(self, record: WorkflowExecutionRecord, run: WorkflowRun) -> FallbackOutcome:
        """Apply the degraded strategy for ``record``.

        Args:
            record: Failed run record; ``record.id`` is the idempotency key
            run: Context of the same run, needed to create a branch

        Returns:
            FallbackOutcome describing what was done
        """
        if record.id in self._attempted:
            log.warning("fallback_already_attempted", workflow_id=record.id)
            return FallbackOutcome(kind=FallbackKind.ALREADY_ATTEMPTED, failure_point=record.failure_point)
        self._attempted.add(record.id)

        started = time.monotonic()
        if record.failure_point == OperationType.BRANCH_CREATE.value:
            outcome = await self._recreate_branch(record, run)
        else:
            outcome = FallbackOutcome(
                kind=FallbackKind.MANUAL_HANDOFF,
                failure_point=record.failure_point,
                base_branch=record.base_branch,
                branch_name=record.branch_name,
            )

        await self.recorder.log(
            OperationType.FALLBACK,
            AuditOutcome.FAILURE if outcome.kind == FallbackKind.EXHAUSTED else AuditOutcome.FALLBACK_USED,
            project_path=record.project_path,
            task_id=record.task_id,
            workflow_id=record.id,
            duration_ms=(time.monotonic() - started) * 1000,
            kind=outcome.kind.value,
            failure_point=outcome.failure_point,
            branch=outcome.branch_name,
            base=outcome.base_branch,
        )
        await self.publisher.publish(
            FallbackAttempted(
                workflow_id=record.id,
                outcome=outcome.kind.value,
                failure_point=outcome.failure_point,
                detail=outcome.detail,
            )
        )
        log.info("fallback_attempted", kind=outcome.kind.value, failure_point=outcome.failure_point)
        return outcome

    async def _recreate_branch(self, record: WorkflowExecutionRecord, run: WorkflowRun) -> FallbackOutcome:
        alternate = self.alternate_base(record.base_branch)
        if alternate is None:
            return FallbackOutcome(
                kind=FallbackKind.EXHAUSTED,
                failure_point=record.failure_point,
                error=BranchflowError(f"No alternate base branch besides '{record.base_branch}'"),
            )
        try:
            name = await self.workflow.open(run, alternate)
        except BranchflowError as e:
            log.error("fallback_branch_failed", base=alternate, error=str(e))
            return FallbackOutcome(
                kind=FallbackKind.EXHAUSTED,
                failure_point=record.failure_point,
                base_branch=alternate,
                error=e,
            )
        return FallbackOutcome(
            kind=FallbackKind.BRANCH_RECREATED,
            failure_point=record.failure_point,
            base_branch=alternate,
            branch_name=name,
        )
