"""Agent prompt construction.

Prompts are Jinja2 templates shipped in ``enhance_ticket/templates``. Each
workflow renders its template with issue data, then applies the
workspace's prompt customisations (prefix, suffix and reasoning level).
"""

from __future__ import annotations

import re
from collections.abc import Collection, Sequence

from jinja2 import Environment, PackageLoader, StrictUndefined

from enhance_ticket.config import SandboxSettings
from enhance_ticket.linear import IssueComment, IssueDetails

# Single-line excerpt length for recent comments.
COMMENT_EXCERPT_CHARS = 500

TRUNCATION_MARKER = "... (truncated)"

# Prompts are Markdown, not HTML, so autoescape stays off.
_environment = Environment(
    loader=PackageLoader("enhance_ticket", "templates"),
    autoescape=False,
    undefined=StrictUndefined,
    trim_blocks=True,
    keep_trailing_newline=False,
)


def render_prompt(template_name: str, **variables: object) -> str:
    """Render a prompt template by name (e.g. ``"plan.md.j2"``)."""
    return _environment.get_template(template_name).render(**variables).strip()


def apply_prompt_customizations(prompt: str, settings: SandboxSettings | None) -> str:
    """Wrap a prompt with the configured prefix, reasoning level and suffix."""
    if settings is None:
        return prompt
    prefix = f"{settings.prompt_prefix}\n\n" if settings.prompt_prefix else ""
    reasoning = f"\n\nReasoning level: {settings.reasoning}" if settings.reasoning else ""
    suffix = f"\n\n{settings.prompt_suffix}" if settings.prompt_suffix else ""
    return f"{prefix}{prompt}{reasoning}{suffix}"


def format_issue_comments(comments: Sequence[IssueComment]) -> str:
    """Format every comment in full, oldest first."""
    if not comments:
        return "No comments."
    return "\n\n".join(f"- {c.created_at}\n{c.body}" for c in comments)


def format_recent_comments(
    comments: Sequence[IssueComment],
    exclude_ids: Collection[str],
    limit: int,
) -> str:
    """Format the last ``limit`` non-empty comments as one-line excerpts.

    Args:
        comments: Issue comments, oldest first.
        exclude_ids: Comment ids to leave out (the bot's own comments).
        limit: Maximum number of comments kept, counted from the end.

    Returns:
        One ``- <created_at>: <excerpt>`` line per comment, or
        ``"No comments."``.
    """
    kept = [c for c in comments if c.body.strip() and c.id not in exclude_ids]
    if not kept or limit <= 0:
        return "No comments."

    lines = []
    for comment in kept[-limit:]:
        one_line = re.sub(r"\r?\n", " ", comment.body.strip())
        if len(one_line) > COMMENT_EXCERPT_CHARS:
            one_line = f"{one_line[:COMMENT_EXCERPT_CHARS]}{TRUNCATION_MARKER}"
        lines.append(f"- {comment.created_at}: {one_line}")
    return "\n".join(lines)


def extract_mention_question(body: str, mention: str, strip_mention: bool = True) -> str:
    """Extract the question from a comment that starts with a mention.

    The leading mention (case-insensitive) and any separator punctuation
    after it are removed: ``"@claude: why?"`` becomes ``"why?"``.
    """
    text = body.lstrip()
    wanted = mention.strip()
    if not strip_mention or not wanted:
        return text.strip()
    without = re.sub(rf"^{re.escape(wanted)}\b", "", text, count=1, flags=re.IGNORECASE)
    return re.sub(r"^[\s:,-]+", "", without).strip()


def build_implementation_prompt(
    issue: IssueDetails,
    settings: SandboxSettings | None = None,
    include_comments: bool = False,
) -> str:
    """Prompt for the quick and full code workflows."""
    prompt = render_prompt(
        "implement.md.j2",
        issue_identifier=issue.identifier,
        issue_title=issue.title,
        issue_description=issue.description,
        include_comments=include_comments,
        comments=format_issue_comments(issue.comments) if include_comments else "",
    )
    return apply_prompt_customizations(prompt, settings)


def build_context_prompt(issue: IssueDetails, settings: SandboxSettings | None = None) -> str:
    prompt = render_prompt(
        "context.md.j2",
        issue_identifier=issue.identifier,
        issue_title=issue.title,
        issue_description=issue.description,
    )
    return apply_prompt_customizations(prompt, settings)


def build_plan_prompt(issue: IssueDetails, settings: SandboxSettings | None = None) -> str:
    prompt = render_prompt(
        "plan.md.j2",
        issue_identifier=issue.identifier,
        issue_title=issue.title,
        issue_description=issue.description,
    )
    return apply_prompt_customizations(prompt, settings)


def build_reply_prompt(
    mention: str,
    issue: IssueDetails,
    user_comment: str,
    question: str,
    repo_path: str,
    recent_comments: str,
    settings: SandboxSettings | None = None,
) -> str:
    """Prompt for answering a mention in a comment.

    Args:
        mention: The mention that triggered the reply (e.g. ``@claude``).
        issue: The issue the comment belongs to.
        user_comment: The full comment body.
        question: The comment with the mention stripped.
        repo_path: Checkout the agent answers from.
        recent_comments: Output of :func:`format_recent_comments`.
        settings: Prompt customisations.
    """
    prompt = render_prompt(
        "reply.md.j2",
        mention=mention,
        issue_identifier=issue.identifier,
        issue_title=issue.title,
        issue_description=issue.description,
        issue_url=issue.url or "",
        user_comment=user_comment,
        question=question,
        repo_path=repo_path,
        recent_comments=recent_comments,
    )
    return apply_prompt_customizations(prompt, settings)


def build_review_prompt(
    issue: IssueDetails,
    diff_stat: str,
    diff: str,
    recent_comments: str,
    settings: SandboxSettings | None = None,
) -> str:
    """Prompt for reviewing a worktree's diff against upstream.

    The diff is embedded as given; callers truncate it first.
    """
    prompt = render_prompt(
        "review.md.j2",
        task_title=issue.title,
        task_description=issue.description,
        diff_stat=diff_stat,
        diff=diff,
    )
    prompt = f"{prompt}\n\n## Recent Comments\n\n{recent_comments}"
    return apply_prompt_customizations(prompt, settings)


def truncate_text(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` characters, marking the cut."""
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}\n\n{TRUNCATION_MARKER}"
