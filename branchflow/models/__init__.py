"""Core domain models for the orchestration engine.

Key Models:
    - Task: Unit of automated work submitted to the engine
    - BranchStrategy: Naming, routing and protection rules for a task type
    - WorkflowOptions: Immutable per-run caller overrides (built via a builder)
    - ResolvedPolicy: Auto-merge and reviewer decision for a run
    - WorkflowExecutionRecord: Append-only state of one run
    - AuditLogEntry / AuditFilter / MetricsSnapshot: Audit trail and metrics

Example:
    >>> from branchflow.models import Task, WorkflowOptions
    >>> task = Task(id="101", title="Fix login bug", type="bug", metadata={"projectPath": "/repo"})
    >>> options = WorkflowOptions.builder().create_pull_request(True).build()
"""

from branchflow.models.domain import (
    AuditFilter,
    AuditLogEntry,
    BranchStrategy,
    ExecutionSignals,
    MergeResult,
    MetricsSnapshot,
    PullRequest,
    ResolvedPolicy,
    StatusTransition,
    Task,
    WorkflowExecutionRecord,
    WorkflowOptions,
    WorkflowOptionsBuilder,
    epoch_millis,
)

__all__ = [
    "AuditFilter",
    "AuditLogEntry",
    "BranchStrategy",
    "ExecutionSignals",
    "MergeResult",
    "MetricsSnapshot",
    "PullRequest",
    "ResolvedPolicy",
    "StatusTransition",
    "Task",
    "WorkflowExecutionRecord",
    "WorkflowOptions",
    "WorkflowOptionsBuilder",
    "epoch_millis",
]
