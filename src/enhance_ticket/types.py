"""Type definitions and enums for the enhance-ticket service.

This module centralizes the string constants that flow through webhook
payloads, configuration files and the agent runtime protocol, replacing
magic strings with type-safe enums.

Usage:
    from enhance_ticket.types import EventKind, TriggerAction

    # StrEnum members compare equal to their wire values
    if event.kind == EventKind.COMMENT_POSTED:
        ...

    # Validation
    TriggerAction.is_valid("review")  # True
    AgentName.values()  # frozenset({"claude", "codex", "opencode", "amp"})
"""

from __future__ import annotations

from enum import StrEnum


class _ValidatedStrEnum(StrEnum):
    """StrEnum base with validation helpers shared by all enums below."""

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string value is a member value of this enum.

        Args:
            value: The string value to validate.

        Returns:
            True if the value matches a member.
        """
        return value in cls._value2member_map_

    @classmethod
    def values(cls) -> frozenset[str]:
        """Return all valid member values as a frozenset.

        Returns:
            Frozenset of valid string values.
        """
        return frozenset(member.value for member in cls)


class EventKind(_ValidatedStrEnum):
    """Kind of change event delivered by the issue tracker.

    Values match the tracker's webhook ``type`` field.

    Values:
        ITEM_CHANGED: An issue was created, updated or removed ("Issue")
        COMMENT_POSTED: A comment was posted on an issue ("Comment")
    """

    ITEM_CHANGED = "Issue"
    COMMENT_POSTED = "Comment"


class Operation(_ValidatedStrEnum):
    """Operation carried by a change event."""

    CREATED = "create"
    UPDATED = "update"
    REMOVED = "remove"


class MatchKind(_ValidatedStrEnum):
    """How a trigger rule matches an event.

    Values:
        LABEL: A label was added to an issue ("label")
        HASHTAG: A ``#tag`` appears anywhere in a new comment ("hashtag")
        MENTION: A new comment starts with ``@name`` ("mention")
    """

    LABEL = "label"
    HASHTAG = "hashtag"
    MENTION = "mention"


class TriggerAction(_ValidatedStrEnum):
    """Workflow launched when a trigger rule matches.

    Values:
        FULL: Implement the issue with full discussion context ("full")
        QUICK: Implement the issue from its description ("quick")
        CONTEXT: Research the codebase and post findings ("context")
        PLAN: Produce an implementation plan ("plan")
        REPLY: Answer a question asked in a comment ("reply")
        REVIEW: Review the changes in the issue's worktree ("review")
        GITHUB: Publish the issue's worktree branch as a pull request ("github")
    """

    FULL = "full"
    QUICK = "quick"
    CONTEXT = "context"
    PLAN = "plan"
    REPLY = "reply"
    REVIEW = "review"
    GITHUB = "github"


class AgentName(_ValidatedStrEnum):
    """Coding agents the sandbox runtime can host."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"
    AMP = "amp"


class PermissionMode(_ValidatedStrEnum):
    """Permission mode requested when the agent session is created."""

    DEFAULT = "default"
    PLAN = "plan"
    BYPASS = "bypass"


class PermissionPolicy(_ValidatedStrEnum):
    """Policy applied to permission requests raised during a run.

    Values:
        DEFAULT: Grant everything ("default")
        RESTRICTED_REPLY: Deny tracker write tools ("restricted-reply")
        READ_ONLY_REVIEW: Deny tracker writes and mutating shell
            commands ("read-only-review")
    """

    DEFAULT = "default"
    RESTRICTED_REPLY = "restricted-reply"
    READ_ONLY_REVIEW = "read-only-review"


class PermissionReply(_ValidatedStrEnum):
    """Reply sent back to the runtime for a permission request."""

    ONCE = "once"
    REJECT = "reject"


class TerminationReason(_ValidatedStrEnum):
    """Why an agent run ended."""

    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    TERMINATED = "terminated"


class ProgressKind(_ValidatedStrEnum):
    """Category of a progress update sent to a progress sink."""

    STATUS = "status"
    TOOL = "tool"
    RESULT = "result"
