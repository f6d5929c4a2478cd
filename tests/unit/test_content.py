"""Tests for branchflow/engine/content.py."""

from branchflow.engine.content import (
    merge_commit_message,
    pull_request_body,
    pull_request_labels,
    pull_request_title,
)
from branchflow.enums import MergeMethod, ProtectionLevel
from branchflow.models.domain import BranchStrategy, ResolvedPolicy, Task, WorkflowOptions

TASK = Task(id="101", title="Fix login authentication bug", type="bug", description="Users are logged out.")
STRATEGY = BranchStrategy("fix/", "develop", "main", ProtectionLevel.HIGH)


def test_title():
    assert pull_request_title(TASK) == "[BUG] Fix login authentication bug"


def test_labels_deduplicate_caller_labels():
    options = WorkflowOptions.builder().labels(["backend", "automated"]).build()
    assert pull_request_labels(TASK, STRATEGY, options) == ["type-bug", "automated", "protection-high", "backend"]


def test_body_explains_refused_auto_merge():
    policy = ResolvedPolicy(
        auto_merge_allowed=False,
        reviewers_required=2,
        reviewers=("alice",),
        protection_level=ProtectionLevel.HIGH,
        auto_merge_requested=True,
        reason="high protection never allows auto-merge",
    )
    body = pull_request_body(TASK, "fix/fix-login-101", STRATEGY, policy)

    assert body.startswith("## Fix login authentication bug\n\nUsers are logged out.\n\n")
    assert "- **Branch:** `fix/fix-login-101`" in body
    assert "- **Reviewers required:** 2" in body
    assert "- **Auto-merge:** not allowed" in body
    assert "- **Auto-merge note:** high protection never allows auto-merge" in body


def test_body_without_description_or_note():
    policy = ResolvedPolicy(False, 1, (), ProtectionLevel.MEDIUM)
    body = pull_request_body(Task(id="7", title="Add page", type="feature"), "feature/add-page-7", STRATEGY, policy)

    assert body.startswith("## Add page\n\n## Workflow")
    assert "Auto-merge note" not in body


def test_merge_commit_message():
    assert merge_commit_message(TASK, "fix/a", MergeMethod.REBASE) is None
    assert merge_commit_message(TASK, "fix/a", MergeMethod.SQUASH) == (
        "bug: Fix login authentication bug\n\nTask ID: 101\nBranch: fix/a"
    )
