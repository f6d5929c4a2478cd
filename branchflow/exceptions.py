"""Custom exception hierarchy for the branchflow orchestration engine.

The hierarchy mirrors how a workflow run reacts to a failure: validation
problems reject a submission before any git operation, transient git
failures are retried, and terminal failures end the run (optionally
handing over to the fallback path).

Exception Hierarchy:
    BranchflowError (base)
    ├── ValidationError
    ├── ConfigurationError
    ├── GitOperationError
    │   ├── MergeConflictError
    │   └── PullRequestError
    ├── FallbackExhaustedError
    ├── WorkflowNotFoundError
    └── InvalidTransitionError

Example Usage:
    >>> from branchflow.exceptions import GitOperationError
    >>> try:
    ...     await git.create_branch(project_path, name, base)
    ... except GitOperationError as e:
    ...     if e.transient:
    ...         schedule_retry()
"""

from typing import Any


class BranchflowError(Exception):
    """Base exception for all branchflow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ValidationError(BranchflowError):
    """Invalid task or workflow options.

    Raised before any git operation takes place. Fatal to the submission
    that caused it, never to the engine.

    Examples:
        - Task without a project path
        - Unknown merge target override
        - Reviewer list containing blank names
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize validation error.

        Args:
            message: Error message
            field: Name of the offending field, if known
        """
        super().__init__(message)
        self.field = field


class ConfigurationError(BranchflowError):
    """Configuration or environment errors.

    Fatal for the workflow run. The fallback path is never attempted because
    it assumes the repository itself is reachable.

    Examples:
        - Configuration file not found or invalid
        - Missing base branch
        - Path is not a git repository
    """

    pass


class GitOperationError(BranchflowError):
    """A version-control or code-hosting operation failed.

    Attributes:
        message: Human-readable error description
        operation: Name of the operation that failed (create_branch, push, ...)
        transient: Whether retrying may succeed. Network failures, lock
            contention and timeouts are transient; permission problems are not.
        details: Additional context (stderr, HTTP status, ...)
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        transient: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.transient = transient
        self.details = details or {}


class MergeConflictError(GitOperationError):
    """The merge could not be completed because of conflicting changes.

    Never retried automatically. The branch is preserved for a human to
    resolve the conflict.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = "merge",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, operation=operation, transient=False, details=details)


class PullRequestError(GitOperationError):
    """The code-hosting API rejected or failed a pull request operation."""

    pass


class FallbackExhaustedError(BranchflowError):
    """Both the primary and the fallback path failed for a workflow run.

    Attributes:
        workflow_id: Identifier of the affected run
        cause: Error raised by the fallback path
    """

    def __init__(self, workflow_id: str, cause: BaseException | None = None) -> None:
        message = f"Primary and fallback paths exhausted for workflow {workflow_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.workflow_id = workflow_id
        self.cause = cause


class WorkflowNotFoundError(BranchflowError):
    """No workflow run is known under the given identifier."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Unknown workflow: {workflow_id}")
        self.workflow_id = workflow_id


class InvalidTransitionError(BranchflowError):
    """A status transition would break the run's state machine."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target
