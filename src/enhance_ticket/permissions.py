"""Permission policy engine.

When an agent wants to use a tool that needs approval, the runtime emits a
``permission.requested`` event. :func:`decide_permission` turns that request
into a reply under one of three policies:

- ``default``: grant everything.
- ``restricted-reply``: deny anything that would write to the issue tracker
  (tracker MCP tools, or the ``mcp-cli`` bridge pointed at the tracker).
  Replies are posted by the service itself, never by the agent.
- ``read-only-review``: the above, plus deny shell commands that mutate the
  repository or the filesystem.

The command deny-list is a heuristic over command text. It over-blocks
(``echo "a > b"``) and under-blocks (``python -c "..."``); it narrows what a
cooperative agent will do, it is not a sandbox.

The decision function is pure and total: metadata is free-form JSON from the
runtime and any shape, including ``None``, yields a reply.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from enhance_ticket.types import PermissionPolicy, PermissionReply

TRACKER_TOOL_PATTERN = re.compile(r"^mcp__.*linear", re.IGNORECASE)
MCP_CLI_PATTERN = re.compile(r"\bmcp-cli\b", re.IGNORECASE)
TRACKER_WORD_PATTERN = re.compile(r"\blinear\b", re.IGNORECASE)

MUTATING_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\bgit\s+(commit|push|merge|rebase|reset|checkout|cherry-pick|apply|am)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(rm|mv|cp|chmod|chown|ln)\b", re.IGNORECASE),
    re.compile(r"\btee\b", re.IGNORECASE),
    re.compile(r">"),
    re.compile(r"\b(brew|bun|npm|pnpm|yarn|pip|uv)\s+install\b", re.IGNORECASE),
)


@dataclass(frozen=True)
class PermissionRequest:
    """A permission request raised by the agent runtime.

    Attributes:
        action_id: Id to reply to.
        action: Short name of the requested action, if provided.
        metadata: Free-form metadata. Known keys: ``toolName``,
            ``permissionSuggestions[].rules[].toolName`` and ``input.command``.
    """

    action_id: str
    action: str | None = None
    metadata: Any = field(default=None)

    @classmethod
    def from_event_data(cls, data: Mapping[str, Any]) -> PermissionRequest:
        """Build a request from a ``permission.requested`` event payload."""
        action_id = data.get("permission_id") or data.get("permissionId") or ""
        action = data.get("action")
        return cls(
            action_id=str(action_id),
            action=action if isinstance(action, str) else None,
            metadata=data.get("metadata"),
        )


def extract_tool_names(metadata: Any) -> list[str]:
    """Collect every tool name mentioned in permission metadata.

    Args:
        metadata: Free-form metadata of any shape.

    Returns:
        Tool names in the order found. Empty when none are present.
    """
    if not isinstance(metadata, Mapping):
        return []

    names: list[str] = []
    top_level = metadata.get("toolName")
    if isinstance(top_level, str) and top_level:
        names.append(top_level)

    suggestions = metadata.get("permissionSuggestions")
    if isinstance(suggestions, list):
        for suggestion in suggestions:
            if not isinstance(suggestion, Mapping):
                continue
            rules = suggestion.get("rules")
            if not isinstance(rules, list):
                continue
            for rule in rules:
                if isinstance(rule, Mapping):
                    name = rule.get("toolName")
                    if isinstance(name, str) and name.strip():
                        names.append(name.strip())
    return names


def extract_command(metadata: Any) -> str | None:
    """Return the raw shell command from permission metadata, if any."""
    if not isinstance(metadata, Mapping):
        return None
    tool_input = metadata.get("input")
    if not isinstance(tool_input, Mapping):
        return None
    command = tool_input.get("command")
    if isinstance(command, str):
        return command
    if isinstance(command, list) and all(isinstance(part, str) for part in command):
        return " ".join(command)
    return None


def is_tracker_write(metadata: Any) -> bool:
    """True if the request would let the agent act on the issue tracker."""
    if any(TRACKER_TOOL_PATTERN.search(name) for name in extract_tool_names(metadata)):
        return True
    command = extract_command(metadata)
    return bool(
        command and MCP_CLI_PATTERN.search(command) and TRACKER_WORD_PATTERN.search(command)
    )


def is_mutating_command(command: str | None) -> bool:
    """True if a shell command matches the mutating-command deny-list."""
    if not command:
        return False
    return any(pattern.search(command) for pattern in MUTATING_COMMAND_PATTERNS)


def decide_permission(request: PermissionRequest, policy: PermissionPolicy) -> PermissionReply:
    """Decide how to answer a permission request.

    Args:
        request: The permission request.
        policy: The run's permission policy.

    Returns:
        ``PermissionReply.ONCE`` to grant, ``PermissionReply.REJECT`` to deny.
    """
    if policy == PermissionPolicy.DEFAULT:
        return PermissionReply.ONCE

    if is_tracker_write(request.metadata):
        return PermissionReply.REJECT

    if policy == PermissionPolicy.READ_ONLY_REVIEW and is_mutating_command(
        extract_command(request.metadata)
    ):
        return PermissionReply.REJECT

    return PermissionReply.ONCE
