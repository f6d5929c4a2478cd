"""Enumerations for branch protection, merge methods and workflow status."""

from enum import Enum


class ProtectionLevel(str, Enum):
    """Protection tier controlling review and auto-merge eligibility."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        """Ordinal used to compare tiers (low=0 ... critical=3)."""
        return _PROTECTION_ORDER.index(self)


_PROTECTION_ORDER = [
    ProtectionLevel.LOW,
    ProtectionLevel.MEDIUM,
    ProtectionLevel.HIGH,
    ProtectionLevel.CRITICAL,
]


class MergeMethod(str, Enum):
    """How a branch is merged into its target."""

    SQUASH = "squash"
    MERGE = "merge"
    REBASE = "rebase"

    def __str__(self) -> str:
        return self.value


class BranchRole(str, Enum):
    """Configured branch roles that make up the closed set of merge targets."""

    PRODUCTION = "production"
    INTEGRATION = "integration"
    DEVELOPMENT = "development"

    def __str__(self) -> str:
        return self.value


class WorkflowStatus(str, Enum):
    """Status of a workflow run.

    Primary path:
        pending -> branch_created -> awaiting_execution -> ready_for_review
        -> pr_created -> merged

    Failure path:
        any -> failed -> fallback_used -> fallback_succeeded | fallback_failed

    ``fallback_used -> pending`` is the single backwards edge (explicit retry).
    """

    PENDING = "pending"
    BRANCH_CREATED = "branch_created"
    AWAITING_EXECUTION = "awaiting_execution"
    READY_FOR_REVIEW = "ready_for_review"
    PR_CREATED = "pr_created"
    MERGED = "merged"
    FAILED = "failed"
    FALLBACK_USED = "fallback_used"
    FALLBACK_SUCCEEDED = "fallback_succeeded"
    FALLBACK_FAILED = "fallback_failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class OperationType(str, Enum):
    """Categories of audited operations."""

    WORKFLOW_START = "workflow_start"
    VALIDATION = "validation"
    BRANCH_CREATE = "branch_create"
    BRANCH_DELETE = "branch_delete"
    PUSH = "push"
    PULL_REQUEST_CREATE = "pull_request_create"
    MERGE = "merge"
    FALLBACK = "fallback"
    CANCEL = "cancel"
    WORKFLOW_COMPLETE = "workflow_complete"

    def __str__(self) -> str:
        return self.value


class AuditOutcome(str, Enum):
    """Outcome recorded for an audited operation."""

    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"
    REJECTED = "rejected"
    FALLBACK_USED = "fallback_used"
    SKIPPED = "skipped"
    FOLLOW_UP = "follow_up"

    def __str__(self) -> str:
        return self.value
