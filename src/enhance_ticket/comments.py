"""Markdown bodies for the comments posted on issues.

Every workflow posts an acknowledgement comment as soon as a trigger
matches, edits it while the agent runs, and posts the final result as a
new comment so the issue keeps its chronological order.
"""

from __future__ import annotations

from collections.abc import Sequence

from enhance_ticket.runner import AgentRunResult
from enhance_ticket.types import TriggerAction

ACK_MESSAGES: dict[TriggerAction, str] = {
    TriggerAction.QUICK: "🚀 **Sandbox provisioning...**",
    TriggerAction.CONTEXT: "🔍 **Starting context discovery...**",
    TriggerAction.PLAN: "Creating plan..",
    TriggerAction.REVIEW: "Reviewing changes..",
    TriggerAction.GITHUB: "Publishing PR..",
}

DEFAULT_ACK_MESSAGE = "**On it...** Starting automation workflow..."


def ack_message(action: TriggerAction, match_value: str = "") -> str:
    """First comment posted when a trigger matches."""
    if action == TriggerAction.REPLY:
        return f"Starting reply with {match_value}..."
    return ACK_MESSAGES.get(action, DEFAULT_ACK_MESSAGE)


def quote_markdown(text: str) -> str:
    """Render text as a Markdown block quote."""
    trimmed = text.strip()
    if not trimmed:
        return "> (empty)"
    return "\n".join(f"> {line}" for line in trimmed.split("\n"))


def _code_list(paths: Sequence[str]) -> str:
    return ", ".join(f"`{p}`" for p in paths)


def format_progress_comment(
    heading: str,
    issue_ref: str,
    message: str,
    details: Sequence[tuple[str, str]] = (),
) -> str:
    """Body of the acknowledgement comment while an agent is running.

    Args:
        heading: First line, e.g. ``"🤖 **Agent working...**"``.
        issue_ref: Issue identifier.
        message: Latest progress message.
        details: Extra ``(label, value)`` rows rendered as inline code.
    """
    lines = [heading, "", f"**Issue:** {issue_ref}"]
    lines.extend(f"**{label}:** `{value}`" for label, value in details)
    lines.extend(["", f"**Current:** {message}"])
    return "\n".join(lines)


def format_completion_ack(issue_ref: str, what: str, success: bool = True) -> str:
    """Final state of the acknowledgement comment."""
    status = f"✅ **{what}**" if success else f"❌ **{what} failed**"
    return f"{status} for **{issue_ref}**.\n\nSee the latest comment for details."


def _error_block(result: AgentRunResult) -> str:
    if result.success:
        return ""
    return f"\n\n### Error\n\n```\n{result.error or 'Agent run failed'}\n```"


def format_code_result_comment(
    issue_ref: str,
    result: AgentRunResult,
    worktree_path: str,
    branch: str,
    include_file_changes: bool = True,
) -> str:
    """Result comment for the quick and full code workflows."""
    if not result.success:
        return (
            "## Code Bot - Failed\n\n"
            f"**Issue:** {issue_ref}\n"
            f"**Status:** {result.termination_reason}\n"
            f"**Worktree:** `{worktree_path}`\n"
            f"**Branch:** `{branch}`\n\n"
            f"### Error\n```\n{result.error or 'Unknown error'}\n```\n\n"
            "_The worktree remains for manual investigation._"
        )

    if not include_file_changes:
        file_list = "_File list hidden by configuration_"
    elif result.files_modified:
        file_list = "\n".join(f"- `{f}`" for f in result.files_modified)
    else:
        file_list = "_No files modified_"

    return (
        "## Code Bot - Ready for Review\n\n"
        f"**Issue:** {issue_ref}\n"
        "**Status:** Completed\n\n"
        f"### Worktree Location\n```\n{worktree_path}\n```\n\n"
        f"### Branch\n```\n{branch}\n```\n\n"
        f"### Files Modified\n{file_list}\n\n"
        f"### Summary\n{result.summary}\n\n"
        "---\n\n"
        "_This change was generated automatically. "
        "Human verification required before merging._"
    )


def format_answer_comment(
    heading: str,
    issue_ref: str,
    answer: str,
    result: AgentRunResult,
    question: str | None = None,
    extra: Sequence[tuple[str, str]] = (),
) -> str:
    """Result comment for read-only workflows (context, plan, reply, review).

    File modifications are not expected in these workflows; any the agent
    reported are called out as a warning.
    """
    lines = [f"## {heading}", "", f"**Issue:** {issue_ref}"]
    lines.extend(f"**{label}:** `{value}`" for label, value in extra)
    if question is not None:
        lines.extend(["", "**Question:**", quote_markdown(question), "", "**Answer:**"])
    lines.extend(["", answer or "_No response was produced._", ""])
    lines.append(f"_Session:_ `{result.session_id}`")
    body = "\n".join(lines)
    if result.files_modified:
        body += (
            "\n\nWarning: Agent reported file modifications in a read-only workflow: "
            f"{_code_list(result.files_modified)}"
        )
    return body + _error_block(result)


def format_pr_comment(issue_ref: str, pr_url: str, repo: str, branch: str, base: str) -> str:
    return (
        "## GitHub PR\n\n"
        f"PR: {pr_url}\n\n"
        f"**Issue:** {issue_ref}\n"
        f"**Repo:** `{repo}`\n"
        f"**Branch:** `{branch}`\n"
        f"**Base:** `{base}`\n"
    )
