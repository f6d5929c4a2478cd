"""
Domain models for the branch/merge orchestration engine.

This module contains the data classes exchanged between the engine's
components: the submitted task, the resolved branch strategy, the caller's
workflow options, the resolved merge policy, the per-run execution record and
the audit trail entries.

Example:
    Describing a task and resolving options::

        task = Task(
            id="101",
            title="Fix login authentication bug",
            description="Users cannot log in with SSO",
            type="bug",
            metadata={"projectPath": "/srv/repos/webapp"},
        )
        options = (
            WorkflowOptions.builder()
            .create_pull_request(True)
            .reviewers(["alice", "bob"])
            .build()
        )
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any

from branchflow.enums import (
    AuditOutcome,
    MergeMethod,
    OperationType,
    ProtectionLevel,
    WorkflowStatus,
)
from branchflow.exceptions import InvalidTransitionError, ValidationError


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def epoch_millis(moment: datetime) -> int:
    """Milliseconds since the Unix epoch, without float rounding."""
    return int(moment.timestamp()) * 1000 + moment.microsecond // 1000


@dataclass(frozen=True)
class Task:
    """A unit of automated development work submitted to the engine.

    Tasks are produced by the task-generation subsystem and are immutable once
    submitted to a workflow. ``metadata`` must carry the repository location
    under ``projectPath`` (``project_path`` is accepted as well).
    """

    id: str
    """Stable task identifier, embedded in the generated branch name."""

    title: str
    """Human-readable title, slugified into the branch name."""

    type: str
    """Task type used to look up the branch strategy (e.g. ``bug``)."""

    description: str = ""
    """Free-form description copied into the pull request body."""

    metadata: Mapping[str, Any] = field(default_factory=dict)
    """Additional attributes; ``projectPath`` is required by the manager."""

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", str(self.id))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def project_path(self) -> str | None:
        """Repository path from metadata, or None if missing."""
        value = self.metadata.get("projectPath", self.metadata.get("project_path"))
        return str(value) if value else None


@dataclass(frozen=True)
class BranchStrategy:
    """Resolved naming, routing and protection rules for a task type.

    Produced by the routing table and never mutated for a given workflow run.
    A ``critical`` strategy can never default to auto-merge and always
    requires review.
    """

    name_prefix: str
    base_branch: str
    merge_target: str
    protection_level: ProtectionLevel = ProtectionLevel.MEDIUM
    auto_merge_default: bool = False
    review_required: bool = True
    description: str = ""
    merge_method: MergeMethod = MergeMethod.SQUASH

    def __post_init__(self) -> None:
        object.__setattr__(self, "protection_level", ProtectionLevel(self.protection_level))
        object.__setattr__(self, "merge_method", MergeMethod(self.merge_method))
        if self.protection_level == ProtectionLevel.CRITICAL and (
            self.auto_merge_default or not self.review_required
        ):
            raise ValueError("critical strategies cannot auto-merge and must require review")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "name_prefix": self.name_prefix,
            "base_branch": self.base_branch,
            "merge_target": self.merge_target,
            "protection_level": self.protection_level.value,
            "auto_merge_default": self.auto_merge_default,
            "review_required": self.review_required,
            "description": self.description,
            "merge_method": self.merge_method.value,
        }


# Accepted keys for WorkflowOptions.from_mapping, camelCase as produced by
# the task queue and snake_case as written in YAML.
_OPTION_KEYS = {
    "autoMerge": "auto_merge",
    "mergeTarget": "merge_target",
    "mergeStrategy": "merge_strategy",
    "createPullRequest": "create_pull_request",
    "requireReview": "require_review",
    "reviewers": "reviewers",
    "labels": "labels",
    "branchProtection": "branch_protection",
    "notifyOnComplete": "notify_on_complete",
    "notifyOnError": "notify_on_error",
    "deleteSourceBranch": "delete_source_branch",
}


@dataclass(frozen=True)
class WorkflowOptions:
    """Caller-supplied overrides for a single workflow run.

    Instances are immutable and constructed once per run, normally through
    :meth:`builder` or :meth:`from_mapping`, both of which validate every
    field. ``None`` means "use the strategy default". Override precedence is
    applied centrally by the merge policy engine.
    """

    auto_merge: bool | None = None
    merge_target: str | None = None
    merge_strategy: MergeMethod | None = None
    create_pull_request: bool = False
    require_review: bool | None = None
    reviewers: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    branch_protection: ProtectionLevel | None = None
    notify_on_complete: bool = True
    notify_on_error: bool = True
    delete_source_branch: bool = True

    @classmethod
    def builder(cls) -> WorkflowOptionsBuilder:
        """Start a validating builder."""
        return WorkflowOptionsBuilder()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> WorkflowOptions:
        """Build options from a camelCase or snake_case mapping.

        Raises:
            ValidationError: On unknown keys or invalid values
        """
        builder = cls.builder()
        snake_keys = set(_OPTION_KEYS.values())
        for key, value in (data or {}).items():
            name = _OPTION_KEYS.get(key, key)
            if name not in snake_keys:
                raise ValidationError(f"Unknown workflow option: {key}", field=key)
            if value is None:
                continue
            getattr(builder, name)(value)
        return builder.build()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "auto_merge": self.auto_merge,
            "merge_target": self.merge_target,
            "merge_strategy": self.merge_strategy.value if self.merge_strategy else None,
            "create_pull_request": self.create_pull_request,
            "require_review": self.require_review,
            "reviewers": list(self.reviewers),
            "labels": list(self.labels),
            "branch_protection": self.branch_protection.value if self.branch_protection else None,
            "notify_on_complete": self.notify_on_complete,
            "notify_on_error": self.notify_on_error,
            "delete_source_branch": self.delete_source_branch,
        }


class WorkflowOptionsBuilder:
    """Validating builder for :class:`WorkflowOptions`.

    Every setter validates its argument immediately and returns the builder,
    so invalid input fails at the call that introduced it.

    Example:
        >>> options = (
        ...     WorkflowOptions.builder()
        ...     .auto_merge(True)
        ...     .merge_strategy("rebase")
        ...     .labels(["backend"])
        ...     .build()
        ... )
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def _bool(self, name: str, value: Any) -> WorkflowOptionsBuilder:
        if not isinstance(value, bool):
            raise ValidationError(f"{name} must be a boolean, got {value!r}", field=name)
        self._values[name] = value
        return self

    @staticmethod
    def _names(name: str, values: Any) -> tuple[str, ...]:
        if isinstance(values, str) or not isinstance(values, Iterable):
            raise ValidationError(f"{name} must be a list of strings", field=name)
        result: list[str] = []
        for item in values:
            if not isinstance(item, str) or not item.strip():
                raise ValidationError(f"{name} must contain non-empty strings", field=name)
            if item.strip() not in result:
                result.append(item.strip())
        return tuple(result)

    def auto_merge(self, value: bool) -> WorkflowOptionsBuilder:
        return self._bool("auto_merge", value)

    def create_pull_request(self, value: bool) -> WorkflowOptionsBuilder:
        return self._bool("create_pull_request", value)

    def require_review(self, value: bool) -> WorkflowOptionsBuilder:
        return self._bool("require_review", value)

    def notify_on_complete(self, value: bool) -> WorkflowOptionsBuilder:
        return self._bool("notify_on_complete", value)

    def notify_on_error(self, value: bool) -> WorkflowOptionsBuilder:
        return self._bool("notify_on_error", value)

    def delete_source_branch(self, value: bool) -> WorkflowOptionsBuilder:
        return self._bool("delete_source_branch", value)

    def merge_target(self, value: str) -> WorkflowOptionsBuilder:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("merge_target must be a non-empty branch name", field="merge_target")
        self._values["merge_target"] = value.strip()
        return self

    def merge_strategy(self, value: MergeMethod | str) -> WorkflowOptionsBuilder:
        try:
            self._values["merge_strategy"] = MergeMethod(value)
        except ValueError as e:
            allowed = ", ".join(m.value for m in MergeMethod)
            raise ValidationError(
                f"merge_strategy must be one of {allowed}, got {value!r}", field="merge_strategy"
            ) from e
        return self

    def branch_protection(self, value: ProtectionLevel | str) -> WorkflowOptionsBuilder:
        try:
            self._values["branch_protection"] = ProtectionLevel(value)
        except ValueError as e:
            allowed = ", ".join(p.value for p in ProtectionLevel)
            raise ValidationError(
                f"branch_protection must be one of {allowed}, got {value!r}", field="branch_protection"
            ) from e
        return self

    def reviewers(self, values: Iterable[str]) -> WorkflowOptionsBuilder:
        self._values["reviewers"] = self._names("reviewers", values)
        return self

    def labels(self, values: Iterable[str]) -> WorkflowOptionsBuilder:
        self._values["labels"] = self._names("labels", values)
        return self

    def build(self) -> WorkflowOptions:
        return WorkflowOptions(**self._values)


@dataclass(frozen=True)
class ExecutionSignals:
    """Signals reported by the task-execution collaborator."""

    confidence_score: float | None = None
    """Confidence in the produced change (0.0 - 1.0), e.g. test success ratio."""

    def __post_init__(self) -> None:
        if self.confidence_score is not None and not 0.0 <= self.confidence_score <= 1.0:
            raise ValidationError(
                f"confidence_score must be between 0.0 and 1.0, got {self.confidence_score}",
                field="confidence_score",
            )


@dataclass(frozen=True)
class ResolvedPolicy:
    """Outcome of evaluating a strategy against options and live signals."""

    auto_merge_allowed: bool
    reviewers_required: int
    reviewers: tuple[str, ...]
    protection_level: ProtectionLevel
    auto_merge_requested: bool = False
    """True when auto-merge was asked for, even if a gate refused it."""

    reason: str | None = None
    """Why auto-merge was refused, when it was requested."""


@dataclass(frozen=True)
class PullRequest:
    """A pull request opened on the code-hosting service."""

    id: int
    number: int
    title: str
    head: str
    base: str
    url: str
    body: str = ""
    state: str = "open"
    created_at: datetime | None = None


@dataclass(frozen=True)
class MergeResult:
    """Result of a merge performed by the code-hosting service or git."""

    merged: bool
    method: MergeMethod
    sha: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class StatusTransition:
    """One entry of a workflow run's status history."""

    status: WorkflowStatus
    at: datetime
    detail: str | None = None


_ALLOWED_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset(
        {WorkflowStatus.BRANCH_CREATED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.BRANCH_CREATED: frozenset(
        {WorkflowStatus.AWAITING_EXECUTION, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.AWAITING_EXECUTION: frozenset(
        {WorkflowStatus.READY_FOR_REVIEW, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.READY_FOR_REVIEW: frozenset(
        {
            WorkflowStatus.PR_CREATED,
            WorkflowStatus.MERGED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        }
    ),
    WorkflowStatus.PR_CREATED: frozenset({WorkflowStatus.MERGED, WorkflowStatus.FAILED}),
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.FALLBACK_USED}),
    WorkflowStatus.FALLBACK_USED: frozenset(
        {
            WorkflowStatus.FALLBACK_SUCCEEDED,
            WorkflowStatus.FALLBACK_FAILED,
            WorkflowStatus.PENDING,
            WorkflowStatus.CANCELLED,
        }
    ),
    WorkflowStatus.MERGED: frozenset(),
    WorkflowStatus.FALLBACK_SUCCEEDED: frozenset(),
    WorkflowStatus.FALLBACK_FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    """Check whether ``current -> target`` is a legal status transition."""
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass
class WorkflowExecutionRecord:
    """Durable, append-only state of one task's branch/merge lifecycle.

    Owned exclusively by the workflow manager. Status changes go through
    :meth:`transition`, which appends to ``history`` instead of overwriting,
    and rejects transitions that would break the state machine.
    """

    id: str
    task_id: str
    task_type: str
    project_path: str
    branch_name: str | None
    base_branch: str
    merge_target: str
    status: WorkflowStatus
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    error: str | None = None
    failure_point: str | None = None
    pull_request_url: str | None = None
    auto_merged: bool = False
    follow_up_requested: bool = False
    history: list[StatusTransition] = field(default_factory=list)

    def transition(self, status: WorkflowStatus, at: datetime, detail: str | None = None) -> None:
        """Move to ``status`` and append the change to the history.

        Raises:
            InvalidTransitionError: If the state machine forbids the change
        """
        if not can_transition(self.status, status):
            raise InvalidTransitionError(self.status.value, status.value)
        self.status = status
        self.updated_at = at
        self.history.append(StatusTransition(status=status, at=at, detail=detail))

    @property
    def is_terminal(self) -> bool:
        """True when no further transition is possible without a retry."""
        return not _ALLOWED_TRANSITIONS[self.status] or self.status == WorkflowStatus.FALLBACK_USED

    def snapshot(self) -> WorkflowExecutionRecord:
        """Detached copy safe to hand to callers."""
        return replace(self, history=list(self.history))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "project_path": self.project_path,
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
            "merge_target": self.merge_target,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error": self.error,
            "failure_point": self.failure_point,
            "pull_request_url": self.pull_request_url,
            "auto_merged": self.auto_merged,
            "follow_up_requested": self.follow_up_requested,
            "history": [
                {"status": t.status.value, "at": t.at.isoformat(), "detail": t.detail} for t in self.history
            ],
        }


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable record of one operation attempt and its outcome."""

    timestamp: datetime
    operation_type: OperationType
    project_path: str
    task_id: str
    outcome: AuditOutcome
    duration_ms: float = 0.0
    detail: Mapping[str, Any] = field(default_factory=dict)
    workflow_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "operation_type", OperationType(self.operation_type))
        object.__setattr__(self, "outcome", AuditOutcome(self.outcome))
        object.__setattr__(self, "detail", _freeze(self.detail))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "operation_type": self.operation_type.value,
            "project_path": self.project_path,
            "task_id": self.task_id,
            "outcome": self.outcome.value,
            "duration_ms": self.duration_ms,
            "detail": dict(self.detail),
            "workflow_id": self.workflow_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditLogEntry:
        """Inverse of :meth:`to_dict`."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            operation_type=OperationType(data["operation_type"]),
            project_path=data["project_path"],
            task_id=data["task_id"],
            outcome=AuditOutcome(data["outcome"]),
            duration_ms=float(data.get("duration_ms", 0.0)),
            detail=data.get("detail") or {},
            workflow_id=data.get("workflow_id"),
        )


@dataclass(frozen=True)
class AuditFilter:
    """Selection criteria for audit queries and metrics.

    All bounds are inclusive; ``None`` disables a criterion.
    """

    start_date: datetime | None = None
    end_date: datetime | None = None
    operation_type: OperationType | None = None
    project_path: str | None = None
    workflow_id: str | None = None

    def matches(self, entry: AuditLogEntry) -> bool:
        """Check whether ``entry`` satisfies every criterion."""
        if self.start_date is not None and entry.timestamp < self.start_date:
            return False
        if self.end_date is not None and entry.timestamp > self.end_date:
            return False
        if self.operation_type is not None and entry.operation_type != self.operation_type:
            return False
        if self.project_path is not None and entry.project_path != self.project_path:
            return False
        if self.workflow_id is not None and entry.workflow_id != self.workflow_id:
            return False
        return True

    def time_range_only(self) -> AuditFilter:
        """Same time window and scope, without the operation filter."""
        return replace(self, operation_type=None)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Aggregate metrics derived from the audit stream on demand."""

    total_executions: int
    success_rate: float
    average_duration_ms: float
    branch_creation_count: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "total_executions": self.total_executions,
            "success_rate": self.success_rate,
            "average_duration_ms": self.average_duration_ms,
            "branch_creation_count": self.branch_creation_count,
        }
