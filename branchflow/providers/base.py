"""
Abstract base classes for external collaborators.

The engine never implements version control itself. It drives three
pluggable collaborators:

- GitPrimitive: branch creation, listing and pushing against a repository
- CodeHostingProvider: pull requests and merges on the hosting service
- ReviewerPool: selects reviewers when the caller did not name enough
"""

from abc import ABC, abstractmethod

from branchflow.enums import MergeMethod
from branchflow.models.domain import MergeResult, PullRequest, Task


class GitPrimitive(ABC):
    """Version-control operations on one repository identified by its path.

    Implementations translate failures into the engine's error taxonomy:

    - :class:`~branchflow.exceptions.ConfigurationError` when the repository
      or the base branch does not exist
    - :class:`~branchflow.exceptions.GitOperationError` with
      ``transient=True`` for network problems and lock contention, and
      ``transient=False`` for permission problems
    """

    @abstractmethod
    async def list_branches(self, project_path: str) -> set[str]:
        """Return the names of all local and remote branches.

        Remote branch names are returned without the remote prefix.
        """
        pass

    @abstractmethod
    async def branch_exists(self, project_path: str, name: str) -> bool:
        """Check whether a local or remote branch named ``name`` exists."""
        pass

    @abstractmethod
    async def create_branch(self, project_path: str, name: str, base: str) -> None:
        """Create branch ``name`` starting at ``base``.

        Raises:
            ConfigurationError: If ``base`` does not exist
            GitOperationError: On any other failure
        """
        pass

    @abstractmethod
    async def push_branch(self, project_path: str, name: str) -> None:
        """Publish branch ``name`` to the remote."""
        pass

    @abstractmethod
    async def delete_branch(self, project_path: str, name: str) -> None:
        """Delete the local branch ``name``."""
        pass


class CodeHostingProvider(ABC):
    """Pull request and merge operations on the code-hosting service."""

    @abstractmethod
    async def create_pull_request(
        self,
        project_path: str,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        reviewers: list[str] | None = None,
    ) -> PullRequest:
        """Open a pull request from ``head`` into ``base``.

        Raises:
            PullRequestError: If the service rejects or fails the request
        """
        pass

    @abstractmethod
    async def merge_pull_request(
        self,
        project_path: str,
        pull_request: PullRequest,
        method: MergeMethod,
        commit_message: str | None = None,
        delete_branch: bool = False,
    ) -> MergeResult:
        """Merge an open pull request.

        ``delete_branch`` asks the service to remove the head branch once merged.

        Raises:
            MergeConflictError: If the change does not merge cleanly
            PullRequestError: On any other failure
        """
        pass

    @abstractmethod
    async def merge_branch(
        self,
        project_path: str,
        head: str,
        base: str,
        method: MergeMethod,
        commit_message: str | None = None,
        delete_branch: bool = False,
    ) -> MergeResult:
        """Merge ``head`` into ``base`` without a pull request.

        ``delete_branch`` asks the service to remove ``head`` once merged.

        Raises:
            MergeConflictError: If the change does not merge cleanly
            GitOperationError: On any other failure
        """
        pass


class ReviewerPool(ABC):
    """Source of reviewer names for a task."""

    @abstractmethod
    async def select_reviewers(self, task: Task, count: int) -> list[str]:
        """Return up to ``count`` reviewer names suited to ``task``."""
        pass
