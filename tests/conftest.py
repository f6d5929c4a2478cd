"""Pytest configuration and shared fixtures."""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from branchflow.config.settings import EngineSettings, RetryConfig
from branchflow.engine.manager import GitWorkflowManager
from branchflow.enums import MergeMethod
from branchflow.exceptions import ConfigurationError, GitOperationError
from branchflow.models.domain import MergeResult, PullRequest, Task
from branchflow.providers.base import CodeHostingProvider, GitPrimitive

# 2024-01-01T00:00:00Z == 1704067200000 ms
FIXED_NOW = datetime(2024, 1, 1, tzinfo=UTC)


class FakeGit(GitPrimitive):
    """In-memory git primitive with scripted failures and concurrency tracking."""

    def __init__(self, branches: tuple[str, ...] = ("main", "ai-main", "develop"), delay: float = 0.0):
        self.initial = set(branches)
        self.branches: dict[str, set[str]] = defaultdict(lambda: set(self.initial))
        self.delay = delay
        self.calls: list[tuple[str, str, str]] = []
        self.queued_failures: dict[str, list[Exception]] = defaultdict(list)
        self.permanent_failures: dict[str, Exception] = {}
        self.active: dict[str, int] = defaultdict(int)
        self.max_active_per_project: dict[str, int] = defaultdict(int)
        self.active_total = 0
        self.max_active_total = 0

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        self.queued_failures[operation].extend([error] * times)

    def fail_always(self, operation: str, error: Exception) -> None:
        self.permanent_failures[operation] = error

    async def _call(self, operation: str, project_path: str, name: str) -> None:
        self.active[project_path] += 1
        self.active_total += 1
        self.max_active_per_project[project_path] = max(
            self.max_active_per_project[project_path], self.active[project_path]
        )
        self.max_active_total = max(self.max_active_total, self.active_total)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if operation in self.permanent_failures:
                raise self.permanent_failures[operation]
            if self.queued_failures[operation]:
                raise self.queued_failures[operation].pop(0)
            self.calls.append((operation, project_path, name))
        finally:
            self.active[project_path] -= 1
            self.active_total -= 1

    def created(self, project_path: str | None = None) -> list[str]:
        return [
            name
            for operation, path, name in self.calls
            if operation == "create_branch" and (project_path is None or path == project_path)
        ]

    def pushed(self) -> list[str]:
        return [name for operation, _, name in self.calls if operation == "push"]

    async def list_branches(self, project_path: str) -> set[str]:
        return set(self.branches[project_path])

    async def branch_exists(self, project_path: str, name: str) -> bool:
        return name in self.branches[project_path]

    async def create_branch(self, project_path: str, name: str, base: str) -> None:
        if base not in self.branches[project_path]:
            raise ConfigurationError(f"Base branch '{base}' does not exist in {project_path}")
        if name in self.branches[project_path]:
            raise GitOperationError(f"branch {name} already exists", operation="create_branch", transient=False)
        await self._call("create_branch", project_path, name)
        self.branches[project_path].add(name)

    async def push_branch(self, project_path: str, name: str) -> None:
        await self._call("push", project_path, name)

    async def delete_branch(self, project_path: str, name: str) -> None:
        await self._call("delete_branch", project_path, name)
        self.branches[project_path].discard(name)


class FakeHosting(CodeHostingProvider):
    """In-memory code-hosting service."""

    def __init__(self) -> None:
        self.pull_requests: list[PullRequest] = []
        self.pull_request_calls: list[dict] = []
        self.merges: list[tuple[str, str, MergeMethod, str | None]] = []
        self.deleted_after_merge: list[str] = []
        self.queued_failures: dict[str, list[Exception]] = defaultdict(list)
        self.merge_started = asyncio.Event()
        self.merge_gate: asyncio.Event | None = None

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        self.queued_failures[operation].extend([error] * times)

    def _maybe_fail(self, operation: str) -> None:
        if self.queued_failures[operation]:
            raise self.queued_failures[operation].pop(0)

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
        self._maybe_fail("create_pull_request")
        number = len(self.pull_requests) + 1
        self.pull_request_calls.append(
            {"head": head, "base": base, "title": title, "body": body, "labels": labels, "reviewers": reviewers}
        )
        pull_request = PullRequest(
            id=1000 + number,
            number=number,
            title=title,
            head=head,
            base=base,
            url=f"https://git.example.com/acme/webapp/pulls/{number}",
            body=body,
        )
        self.pull_requests.append(pull_request)
        return pull_request

    async def _merge(
        self, head: str, base: str, method: MergeMethod, message: str | None, delete_branch: bool
    ) -> MergeResult:
        self.merge_started.set()
        if self.merge_gate is not None:
            await self.merge_gate.wait()
        self._maybe_fail("merge")
        self.merges.append((head, base, method, message))
        if delete_branch:
            self.deleted_after_merge.append(head)
        return MergeResult(merged=True, method=method, sha="abc123", message=message)

    async def merge_pull_request(
        self,
        project_path: str,
        pull_request: PullRequest,
        method: MergeMethod,
        commit_message: str | None = None,
        delete_branch: bool = False,
    ) -> MergeResult:
        return await self._merge(pull_request.head, pull_request.base, method, commit_message, delete_branch)

    async def merge_branch(
        self,
        project_path: str,
        head: str,
        base: str,
        method: MergeMethod,
        commit_message: str | None = None,
        delete_branch: bool = False,
    ) -> MergeResult:
        return await self._merge(head, base, method, commit_message, delete_branch)


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock pinned to 2024-01-01T00:00:00Z."""
    return lambda: FIXED_NOW


@pytest.fixture
def settings() -> EngineSettings:
    """Default settings without backoff delays."""
    return EngineSettings(retry=RetryConfig(max_retries=3, base_delay=0.0))


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_hosting() -> FakeHosting:
    return FakeHosting()


@pytest.fixture
def manager(settings: EngineSettings, fake_git: FakeGit, fake_hosting: FakeHosting, fixed_clock) -> GitWorkflowManager:
    """Manager wired to in-memory collaborators and a fixed clock."""
    return GitWorkflowManager(settings, git=fake_git, hosting=fake_hosting, clock=fixed_clock)


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Factory for tasks located in a fake repository."""

    def factory(
        task_type: str = "feature",
        task_id: str = "101",
        title: str = "Add login page",
        project_path: str = "/repos/webapp",
        description: str = "",
    ) -> Task:
        return Task(
            id=task_id,
            title=title,
            type=task_type,
            description=description,
            metadata={"projectPath": project_path},
        )

    return factory


@pytest.fixture
def bug_task(make_task) -> Task:
    """The login bug used in the end-to-end scenarios."""
    return make_task("bug", "101", "Fix login authentication bug")
