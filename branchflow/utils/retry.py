"""Retry utilities for handling transient failures.

Retries async operations with exponential backoff. Every attempt is bounded
by a timeout and a timeout counts as a transient failure, which is how the
workflow manager drives branch creation, pushes, pull requests and merges.

Providers do not retry on their own: the engine owns every retry so that
each attempt is counted and audited exactly once.

Key Exports:
    retry_call: Retry one zero-argument coroutine factory with per-attempt
        timeout, an optional per-attempt guard and a retry hook.

Example:
    >>> from branchflow.utils.retry import retry_call
    >>>
    >>> await retry_call(lambda: git.push_branch(path, "fix/login"), name="push", timeout=30.0)

Backoff Formula:
    delay before retry N = base_delay * backoff_factor ** (N - 1)
    For base_delay=0.5 and backoff_factor=2.0: 0.5s, 1s, 2s, ...
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from typing import TypeVar

import structlog

from branchflow.exceptions import GitOperationError

log = structlog.get_logger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, GitOperationError, float], Awaitable[None]]
AttemptGuard = Callable[[], AbstractAsyncContextManager[object]]


def backoff_delay(retry_number: int, base_delay: float, backoff_factor: float) -> float:
    """Delay in seconds before the given retry (1-based)."""
    return base_delay * backoff_factor ** (retry_number - 1)


async def _attempt(operation: Callable[[], Awaitable[T]], name: str, timeout: float | None) -> T:
    if timeout is None:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except TimeoutError as e:
        raise GitOperationError(
            f"{name} timed out after {timeout}s",
            operation=name,
            transient=True,
            details={"timeout": timeout},
        ) from e


async def retry_call(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    max_retries: int = 3,
    base_delay: float = 0.5,
    backoff_factor: float = 2.0,
    timeout: float | None = None,
    on_retry: RetryHook | None = None,
    on_attempt: Callable[[int], None] | None = None,
    guard: AttemptGuard | None = None,
) -> T:
    """Run ``operation`` with a per-attempt timeout and bounded retries.

    Only transient :class:`GitOperationError` failures are retried; timeouts
    are converted into transient ``GitOperationError``. Non-transient errors
    (including ``MergeConflictError``) and any other exception propagate
    immediately.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per attempt.
        name: Operation name used in logs and errors.
        max_retries: Retries after the first attempt (3 means 4 attempts).
        base_delay: Delay before the first retry, in seconds.
        backoff_factor: Multiplier applied per retry.
        timeout: Per-attempt timeout in seconds, or None for no bound.
        on_retry: Awaited before each backoff sleep with
            ``(retry_number, error, delay)``.
        on_attempt: Called with the 1-based attempt number before each attempt.
        guard: Factory for a context manager entered around each attempt,
            e.g. a lock. It is released before the backoff sleep and the
            attempt timeout starts once it is held.

    Returns:
        The operation's result.

    Raises:
        GitOperationError: The last transient error once retries are exhausted,
            or the first non-transient one.
    """
    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            if guard is None:
                return await _attempt(operation, name, timeout)
            async with guard():
                return await _attempt(operation, name, timeout)
        except GitOperationError as e:
            if not e.transient:
                raise
            if attempt > max_retries:
                log.error("retry_exhausted", operation=name, attempts=attempt, error=str(e))
                raise

            delay = backoff_delay(attempt, base_delay, backoff_factor)
            log.warning(
                "retry_attempt",
                operation=name,
                attempt=attempt,
                max_retries=max_retries,
                delay=delay,
                error=str(e),
            )
            if on_retry is not None:
                await on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
