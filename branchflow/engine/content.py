"""Pull request and merge commit content for workflow runs."""

from branchflow.enums import MergeMethod
from branchflow.models.domain import BranchStrategy, ResolvedPolicy, Task, WorkflowOptions


def pull_request_title(task: Task) -> str:
    """``[TYPE] title``, e.g. ``[BUG] Fix login authentication bug``."""
    return f"[{task.type.upper()}] {task.title}"


def pull_request_labels(task: Task, strategy: BranchStrategy, options: WorkflowOptions) -> list[str]:
    """Type, automation and protection labels followed by the caller's labels."""
    labels = [
        f"type-{task.type}",
        "automated",
        f"protection-{strategy.protection_level.value}",
        *options.labels,
    ]
    return list(dict.fromkeys(labels))


def pull_request_body(
    task: Task,
    branch_name: str,
    strategy: BranchStrategy,
    policy: ResolvedPolicy,
) -> str:
    """Generate the pull request description.

    The body gives reviewers the task context and the policy the engine
    applied, so they can tell why the change was not merged automatically.
    """
    body = f"## {task.title}\n\n"
    if task.description:
        body += f"{task.description}\n\n"

    body += "## Workflow\n\n"
    body += f"- **Task ID:** {task.id}\n"
    body += f"- **Type:** {task.type}\n"
    body += f"- **Branch:** `{branch_name}`\n"
    body += f"- **Base:** `{strategy.base_branch}`\n"
    body += f"- **Merge target:** `{strategy.merge_target}`\n"
    body += f"- **Protection:** {strategy.protection_level.value}\n"
    body += f"- **Reviewers required:** {policy.reviewers_required}\n"
    body += f"- **Auto-merge:** {'allowed' if policy.auto_merge_allowed else 'not allowed'}\n"
    if policy.reason:
        body += f"- **Auto-merge note:** {policy.reason}\n"

    body += "\n---\n\n"
    body += "This pull request was created automatically. Review the changes before merging.\n"
    return body


def merge_commit_message(task: Task, branch_name: str, method: MergeMethod) -> str | None:
    """Commit message for squash and merge commits; rebase keeps the original commits."""
    if method == MergeMethod.REBASE:
        return None
    return f"{task.type}: {task.title}\n\nTask ID: {task.id}\nBranch: {branch_name}"
