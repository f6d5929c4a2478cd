"""Deterministic, collision-resistant branch-name synthesis."""

import re
from collections.abc import Callable
from datetime import datetime

from branchflow.exceptions import ValidationError
from branchflow.models.domain import BranchStrategy, Task, epoch_millis

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# Sequences git rejects inside a ref name, plus "/" so an id stays one path component.
_INVALID_ID = re.compile(r"[\x00-\x20\x7f~^:?*\[\\/]|\.\.|@\{|^[.-]")


def slugify(text: str) -> str:
    """Lower-case, collapse runs of non-alphanumerics into ``-``, trim dashes."""
    return _NON_ALNUM.sub("-", text.lower()).strip("-")


def validate_task_id(task_id: str) -> str:
    """Return ``task_id`` unchanged if it can be embedded in a branch name.

    Ids appear verbatim in branch names and are never rewritten.

    Raises:
        ValidationError: If the id is empty or not valid inside a git ref name
    """
    if not task_id:
        raise ValidationError("Task id must not be empty", field="id")
    match = _INVALID_ID.search(task_id)
    if match is not None:
        raise ValidationError(
            f"Task id {task_id!r} cannot be used in a branch name (offending {match.group()!r})",
            field="id",
        )
    return task_id


class BranchNameGenerator:
    """Build branch names as ``{prefix}{slug}-{task id}-{epoch millis}``.

    The title is slugified; the task id is used as given. The generator is
    pure apart from the injected ``exists_check``. When the base name is
    taken, ``-2``, ``-3``, ... are appended until a free name is found; an
    existing branch is never reused.

    Example:
        >>> generator = BranchNameGenerator()
        >>> generator.generate(strategy, task, now, exists_check=lambda name: False)
        'fix/fix-login-authentication-bug-101-1704067200000'
    """

    def __init__(self, max_suffix: int = 10_000) -> None:
        self.max_suffix = max_suffix

    def base_name(self, strategy: BranchStrategy, task: Task, now: datetime) -> str:
        """Name without collision suffix.

        Raises:
            ValidationError: If the task id cannot appear in a branch name
        """
        parts = [part for part in (slugify(task.title), validate_task_id(task.id), str(epoch_millis(now))) if part]
        return f"{strategy.name_prefix}{'-'.join(parts)}"

    def generate(
        self,
        strategy: BranchStrategy,
        task: Task,
        now: datetime,
        exists_check: Callable[[str], bool],
    ) -> str:
        """Return the first candidate name for which ``exists_check`` is false.

        Raises:
            ValidationError: If the task id cannot appear in a branch name
            RuntimeError: If ``max_suffix`` candidates are all taken
        """
        name = self.base_name(strategy, task, now)
        if not exists_check(name):
            return name
        for suffix in range(2, self.max_suffix + 1):
            candidate = f"{name}-{suffix}"
            if not exists_check(candidate):
                return candidate
        raise RuntimeError(f"No free branch name for '{name}' after {self.max_suffix} candidates")
