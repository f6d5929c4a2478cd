"""Branch and merge orchestration engine.

This package turns a submitted task into a git branch, waits for the code
change, then pushes, opens a pull request and merges as the merge policy
allows.

Key Components:
    - GitWorkflowManager: Top-level orchestrator and run state machine
    - TaskTypeRoutingTable: Task type to branch strategy lookup
    - BranchNameGenerator: Deterministic, collision-free branch names
    - MergePolicyEngine: Auto-merge and reviewer decisions
    - AuditMetricsRecorder: Audit trail, statistics and metrics
    - EventPublisher: Lifecycle events with per-subscriber isolation
    - FallbackCoordinator: Degraded path after a failed run
    - ProjectLockRegistry: FIFO serialization of repository mutations

Example:
    >>> from branchflow.engine import GitWorkflowManager
    >>> manager = GitWorkflowManager.from_settings(settings)
    >>> record = await manager.run_workflow(task, options, executor)
"""

from branchflow.engine.audit import AuditMetricsRecorder, InMemoryAuditSink, JsonlAuditSink
from branchflow.engine.events import EventPublisher
from branchflow.engine.fallback import FallbackCoordinator
from branchflow.engine.locks import ProjectLockRegistry
from branchflow.engine.manager import GitWorkflowManager, WorkflowHandle
from branchflow.engine.naming import BranchNameGenerator
from branchflow.engine.policy import MergePolicyEngine
from branchflow.engine.routing import TaskTypeRoutingTable

__all__ = [
    "AuditMetricsRecorder",
    "BranchNameGenerator",
    "EventPublisher",
    "FallbackCoordinator",
    "GitWorkflowManager",
    "InMemoryAuditSink",
    "JsonlAuditSink",
    "MergePolicyEngine",
    "ProjectLockRegistry",
    "TaskTypeRoutingTable",
    "WorkflowHandle",
]
