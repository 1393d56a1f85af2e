"""Workflow failures reported back to the issue.

A workflow step that cannot proceed raises :class:`WorkflowFailure`. The
executor catches it and replaces the acknowledgement comment with
:func:`format_failure_ack`, so every failure a user sees has the same
shape: what went wrong, what to do next, and the raw details.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum


class WorkflowBot(StrEnum):
    """Display names used as comment headings, one per workflow family."""

    CODE = "Code Bot"
    CONTEXT = "Context Bot"
    PLAN = "Plan Bot"
    REVIEW = "Review Bot"
    GITHUB = "GitHub Bot"
    REPLY = "Mention Reply"


class FailureCode(StrEnum):
    NO_TASK_DESCRIPTION = "NO_TASK_DESCRIPTION"
    NO_WORKTREE = "NO_WORKTREE"
    NO_DIFF = "NO_DIFF"
    WORKSPACE_NOT_CONFIGURED = "WORKSPACE_NOT_CONFIGURED"
    ORIGIN_HEAD_UNRESOLVED = "ORIGIN_HEAD_UNRESOLVED"
    GITHUB_DISABLED = "GITHUB_DISABLED"
    GITHUB_REPO_NOT_CONFIGURED = "GITHUB_REPO_NOT_CONFIGURED"
    WORKTREE_DIRTY = "WORKTREE_DIRTY"
    UNKNOWN = "UNKNOWN"


class WorkflowFailure(Exception):
    """Raised when a workflow stops for a reason the user can act on.

    Attributes:
        code: Machine-readable failure code.
        message: One-line explanation shown in the comment.
        next_steps: Suggested actions, rendered as a bullet list.
        details: Raw error output, rendered in a code block.
    """

    def __init__(
        self,
        code: FailureCode,
        message: str,
        next_steps: Sequence[str] = (),
        details: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.next_steps = tuple(next_steps)
        self.details = details
        super().__init__(f"{code}: {message}")


def format_failure_ack(
    bot: WorkflowBot,
    failure: WorkflowFailure,
    issue_ref: str | None = None,
    automation_warning: str | None = None,
) -> str:
    """Render a failure as a Markdown comment body."""
    parts = [f"## {bot}", ""]
    if issue_ref:
        parts.extend([f"**Issue:** {issue_ref}", ""])
    parts.append(failure.message.strip())

    if failure.next_steps:
        parts.extend(["", "### Next steps", ""])
        parts.extend(f"- {step}" for step in failure.next_steps)

    if failure.details:
        parts.extend(["", "### Details", "", "```", failure.details.strip(), "```"])

    if automation_warning:
        parts.extend(["", f"_Automation warning:_ {automation_warning.strip()}"])

    return "\n".join(parts)
