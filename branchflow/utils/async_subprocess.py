"""Async subprocess utilities.

Non-blocking subprocess execution for the local git primitive. Commands are
executed without a shell; the caller receives the exit status and decoded
output and decides how to classify a failure.

Example:
    >>> result = await run_command("git", "branch", "--list", cwd="/repo")
    >>> if result.ok:
    ...     print(result.stdout)
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished subprocess."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stderr and stdout, for error messages."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments, e.g. ``"git", "push", "origin", name``
        cwd: Working directory for the command
        timeout: Maximum seconds to wait; the process is killed on expiry
        env: Environment for the child process (inherits when None)

    Returns:
        CommandResult with UTF-8 decoded output (invalid bytes replaced)

    Raises:
        TimeoutError: If ``timeout`` is exceeded. The process is killed first.
        FileNotFoundError: If the executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        args=tuple(args),
        returncode=process.returncode or 0,
        stdout=(stdout_bytes or b"").decode("utf-8", errors="replace"),
        stderr=(stderr_bytes or b"").decode("utf-8", errors="replace"),
    )
