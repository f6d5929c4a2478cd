"""Git primitive backed by the local git CLI."""

import re

import structlog

from branchflow.exceptions import ConfigurationError, GitOperationError, MergeConflictError
from branchflow.providers.base import GitPrimitive
from branchflow.utils.async_subprocess import CommandResult, run_command

log = structlog.get_logger(__name__)

_CONFIG_PATTERNS = re.compile(
    r"not a git repository|does not appear to be a git repository|not a valid object name"
    r"|invalid reference|no such ref|cannot change to",
    re.IGNORECASE,
)
_CONFLICT_PATTERNS = re.compile(r"^CONFLICT|automatic merge failed", re.IGNORECASE | re.MULTILINE)
_PERMISSION_PATTERNS = re.compile(
    r"permission denied|authentication failed|403|access denied|protected branch",
    re.IGNORECASE,
)


def classify_failure(result: CommandResult, operation: str) -> Exception:
    """Map a failed git command onto the engine's error taxonomy."""
    output = result.output
    details = {"returncode": result.returncode, "stderr": result.stderr.strip()}
    if _CONFIG_PATTERNS.search(output):
        return ConfigurationError(f"git {operation} failed: {output}")
    if _CONFLICT_PATTERNS.search(output):
        return MergeConflictError(f"git {operation} hit a conflict: {output}", operation=operation, details=details)
    if _PERMISSION_PATTERNS.search(output):
        return GitOperationError(
            f"git {operation} was refused: {output}",
            operation=operation,
            transient=False,
            details=details,
        )
    return GitOperationError(f"git {operation} failed: {output}", operation=operation, details=details)


class LocalGitPrimitive(GitPrimitive):
    """Run git commands in the working copy at ``project_path``.

    Branches are created with ``git branch`` (no checkout), so creating a
    branch never touches the working tree of the repository.
    """

    def __init__(self, remote: str = "origin", git_executable: str = "git") -> None:
        self.remote = remote
        self.git_executable = git_executable

    async def _git(self, project_path: str, *args: str) -> CommandResult:
        try:
            return await run_command(self.git_executable, *args, cwd=project_path)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Cannot run git in {project_path}: {e}") from e
        except NotADirectoryError as e:
            raise ConfigurationError(f"Repository path is not a directory: {project_path}") from e

    async def _check(self, project_path: str, operation: str, *args: str) -> CommandResult:
        result = await self._git(project_path, *args)
        if not result.ok:
            raise classify_failure(result, operation)
        return result

    async def list_branches(self, project_path: str) -> set[str]:
        result = await self._check(
            project_path,
            "list_branches",
            "for-each-ref",
            "--format=%(refname)",
            "refs/heads",
            f"refs/remotes/{self.remote}",
        )
        names: set[str] = set()
        remote_prefix = f"refs/remotes/{self.remote}/"
        for ref in result.stdout.splitlines():
            ref = ref.strip()
            if ref.startswith("refs/heads/"):
                names.add(ref[len("refs/heads/") :])
            elif ref.startswith(remote_prefix) and not ref.endswith("/HEAD"):
                names.add(ref[len(remote_prefix) :])
        return names

    async def branch_exists(self, project_path: str, name: str) -> bool:
        return name in await self.list_branches(project_path)

    async def _resolve_base(self, project_path: str, base: str) -> str:
        for candidate in (base, f"{self.remote}/{base}"):
            result = await self._git(project_path, "rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}")
            if result.ok:
                return candidate
        raise ConfigurationError(f"Base branch '{base}' does not exist in {project_path}")

    async def create_branch(self, project_path: str, name: str, base: str) -> None:
        base_ref = await self._resolve_base(project_path, base)
        await self._check(project_path, "create_branch", "branch", name, base_ref)
        log.info("git_branch_created", project_path=project_path, branch=name, base=base_ref)

    async def push_branch(self, project_path: str, name: str) -> None:
        await self._check(project_path, "push", "push", "--set-upstream", self.remote, name)
        log.info("git_branch_pushed", project_path=project_path, branch=name, remote=self.remote)

    async def delete_branch(self, project_path: str, name: str) -> None:
        await self._check(project_path, "delete_branch", "branch", "-D", name)
        log.info("git_branch_deleted", project_path=project_path, branch=name)
