"""Gitea code-hosting provider using direct REST API calls."""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx
import structlog

from branchflow.enums import MergeMethod
from branchflow.exceptions import MergeConflictError, PullRequestError
from branchflow.models.domain import MergeResult, PullRequest
from branchflow.providers.base import CodeHostingProvider

log = structlog.get_logger(__name__)


class GiteaHostingProvider(CodeHostingProvider):
    """Gitea implementation of pull request and merge operations.

    Retries are owned by the workflow manager, so every method performs a
    single request sequence and reports failures as
    :class:`PullRequestError` (transient for 5xx, 429 and transport errors)
    or :class:`MergeConflictError` (409/405 on merge).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        owner: str,
        repo: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        """Initialize Gitea provider.

        Args:
            base_url: Gitea base URL (e.g., http://gitea.example.com)
            token: API token
            owner: Repository owner
            repo: Repository name
            client: Preconfigured client (tests inject one with a mock transport)
            timeout: HTTP timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_base = f"{self.base_url}/api/v1"
        self.owner = owner
        self.repo = repo
        self._client = client or httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"token {token.strip()}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "GiteaHostingProvider":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def _send(
        self,
        operation: str,
        call: Callable[[], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        try:
            response = await call()
        except httpx.TransportError as e:
            raise PullRequestError(
                f"Gitea {operation} request failed: {e}", operation=operation, transient=True
            ) from e

        if response.is_success:
            return response

        details = {"status_code": response.status_code, "body": response.text[:500]}
        if operation == "merge" and response.status_code in (405, 409):
            raise MergeConflictError(
                f"Gitea refused to merge: {response.status_code} {response.text[:200]}",
                details=details,
            )
        transient = response.status_code >= 500 or response.status_code == 429
        raise PullRequestError(
            f"Gitea {operation} returned {response.status_code}",
            operation=operation,
            transient=transient,
            details=details,
        )

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
        """Open a pull request, then attach labels and request reviewers.

        An open pull request for the same head and base is reused, so calling
        this again after a failed label or reviewer request never opens a
        second pull request. Labels and reviewer requests are reapplied, which
        Gitea treats as no-ops when already present.
        """
        log.info("create_pull_request", project_path=project_path, head=head, base=base)

        pulls_path = f"{self._repo_path}/pulls"
        pull_request = await self._find_open_pull_request(head, base)
        if pull_request is None:
            response = await self._send(
                "create_pull_request",
                lambda: self._client.post(
                    pulls_path,
                    json={"title": title, "body": body, "head": head, "base": base},
                ),
            )
            pull_request = self._parse_pull_request(response.json())
        else:
            log.info("pull_request_exists", number=pull_request.number, head=head, base=base)

        if labels:
            await self._send(
                "create_pull_request",
                lambda: self._client.post(
                    f"{self._repo_path}/issues/{pull_request.number}/labels",
                    json={"labels": labels},
                ),
            )
        if reviewers:
            await self._send(
                "create_pull_request",
                lambda: self._client.post(
                    f"{pulls_path}/{pull_request.number}/requested_reviewers",
                    json={"reviewers": reviewers},
                ),
            )

        log.info("pull_request_created", number=pull_request.number, url=pull_request.url)
        return pull_request

    async def _find_open_pull_request(self, head: str, base: str) -> PullRequest | None:
        """Return the open pull request from ``head`` into ``base``, if any."""
        response = await self._send(
            "create_pull_request",
            lambda: self._client.get(f"{self._repo_path}/pulls", params={"state": "open", "limit": 50}),
        )
        for data in response.json():
            if data["head"]["ref"] == head and data["base"]["ref"] == base:
                return self._parse_pull_request(data)
        return None

    async def merge_pull_request(
        self,
        project_path: str,
        pull_request: PullRequest,
        method: MergeMethod,
        commit_message: str | None = None,
        delete_branch: bool = False,
    ) -> MergeResult:
        """Merge a pull request using Gitea's ``Do`` merge style."""
        log.info("merge_pull_request", number=pull_request.number, method=method.value)

        data: dict[str, Any] = {"Do": method.value}
        if delete_branch:
            data["delete_branch_after_merge"] = True
        if commit_message and method != MergeMethod.REBASE:
            title, _, message = commit_message.partition("\n")
            data["MergeTitleField"] = title
            data["MergeMessageField"] = message.strip()

        await self._send(
            "merge",
            lambda: self._client.post(f"{self._repo_path}/pulls/{pull_request.number}/merge", json=data),
        )
        return MergeResult(merged=True, method=method, message=commit_message)

    async def merge_branch(
        self,
        project_path: str,
        head: str,
        base: str,
        method: MergeMethod,
        commit_message: str | None = None,
        delete_branch: bool = False,
    ) -> MergeResult:
        """Merge ``head`` into ``base`` through a short-lived pull request.

        Gitea has no branch-to-branch merge endpoint, so the merge is performed
        by opening a pull request and merging it immediately. A pull request
        left open by an earlier attempt is merged instead of a new one.
        """
        title = (commit_message or f"Merge {head} into {base}").partition("\n")[0]
        pull_request = await self.create_pull_request(project_path, head, base, title, commit_message or "")
        return await self.merge_pull_request(project_path, pull_request, method, commit_message, delete_branch)

    def _parse_pull_request(self, data: dict[str, Any]) -> PullRequest:
        """Parse pull request data from a Gitea REST API response.

        Field mappings:
            - data["head"]["ref"] -> head (source branch name)
            - data["base"]["ref"] -> base (target branch name)
            - data["html_url"] -> url (web UI link)
            - data["created_at"] -> created_at (ISO 8601 string -> datetime)
        """
        created_at = data.get("created_at")
        return PullRequest(
            id=data["id"],
            number=data["number"],
            title=data["title"],
            body=data.get("body") or "",
            state=data.get("state", "open"),
            head=data["head"]["ref"],
            base=data["base"]["ref"],
            url=data["html_url"],
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00")) if created_at else None,
        )
