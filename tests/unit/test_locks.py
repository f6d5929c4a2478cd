"""Tests for branchflow/engine/locks.py."""

import asyncio
import os

import pytest

from branchflow.engine.locks import ProjectLockRegistry, project_key


def test_project_key_normalizes_aliases():
    assert project_key("/repos/webapp/") == project_key("/repos/./webapp")
    assert project_key("/repos/other/../webapp") == "/repos/webapp"
    assert project_key("~/webapp") == os.path.join(os.path.expanduser("~"), "webapp")


@pytest.mark.asyncio
async def test_waiters_are_served_in_submission_order():
    locks = ProjectLockRegistry()
    order: list[int] = []

    async def operation(index: int) -> None:
        async with locks.hold("/repos/webapp", "push"):
            await asyncio.sleep(0.005)
            order.append(index)

    await asyncio.gather(*(operation(i) for i in range(8)))

    assert order == list(range(8))


@pytest.mark.asyncio
async def test_projects_do_not_contend():
    locks = ProjectLockRegistry()
    async with locks.hold("/repos/webapp"):
        assert locks.is_locked("/repos/webapp/")
        assert not locks.is_locked("/repos/api")
        async with locks.hold("/repos/api"):
            assert locks.is_locked("/repos/api")
    assert not locks.is_locked("/repos/webapp")


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks = ProjectLockRegistry()
    with pytest.raises(RuntimeError):
        async with locks.hold("/repos/webapp"):
            raise RuntimeError("push failed")
    assert not locks.is_locked("/repos/webapp")
