"""Trigger rules: parsing, validation and the built-in default rule set.

A trigger rule says "when an event matches X, launch workflow Y". Rules are
loaded once from configuration and are immutable afterwards; the order of
the tuple is significant because the first matching rule wins.

Example configuration::

    triggers:
      - type: label
        value: quick
        action: quick
        on: [create, update]
      - type: mention
        value: "@claude"
        action: reply
        agent: claude
        on: [create]
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from enhance_ticket.types import AgentName, MatchKind, Operation, TriggerAction

ALL_OPERATIONS: frozenset[Operation] = frozenset(Operation)


class TriggerConfigError(Exception):
    """Raised when trigger rules in the configuration are invalid.

    Attributes:
        errors: Every problem found, in rule order.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid trigger configuration:\n" + "\n".join(f"- {e}" for e in errors))


@dataclass(frozen=True)
class TriggerRule:
    """A single trigger rule.

    Attributes:
        match_kind: label, hashtag or mention.
        match_value: Label name, hashtag (with or without ``#``) or mention
            handle (e.g. ``@claude``).
        action: Workflow to launch on a match.
        allowed_operations: Operations this rule fires on. Defaults to all.
        forced_agent: Agent that must run this workflow, overriding the
            workspace's configured agent.
    """

    match_kind: MatchKind
    match_value: str
    action: TriggerAction
    allowed_operations: frozenset[Operation] = field(default=ALL_OPERATIONS)
    forced_agent: AgentName | None = None

    def describe(self) -> str:
        """Short human-readable description used in logs and CLI output."""
        return f"{self.match_kind}:{self.match_value} -> {self.action}"


def _rule_label(index: int, data: Any) -> str:
    if isinstance(data, dict) and data.get("value"):
        return f"triggers[{index}] ({data.get('type')}:{data.get('value')})"
    return f"triggers[{index}]"


def _validate_rule_invariants(
    match_kind: MatchKind,
    action: TriggerAction,
    operations: frozenset[Operation],
    forced_agent: AgentName | None,
) -> list[str]:
    """Check the cross-field invariants of a rule.

    Returns:
        Error messages, empty when the combination is valid.
    """
    errors: list[str] = []
    if match_kind == MatchKind.MENTION:
        if action != TriggerAction.REPLY:
            errors.append("mention triggers must use action 'reply'")
        if forced_agent is None:
            errors.append("mention triggers must set 'agent'")
    elif action == TriggerAction.REPLY:
        errors.append("action 'reply' is only valid for mention triggers")

    if action in (TriggerAction.REVIEW, TriggerAction.GITHUB) and match_kind != MatchKind.LABEL:
        errors.append(f"action '{action}' is only valid for label triggers")

    if match_kind in (MatchKind.MENTION, MatchKind.HASHTAG) and operations != {Operation.CREATED}:
        errors.append(f"{match_kind} triggers only support on: [create]")
    return errors


def _parse_operations(
    raw: Any, errors: list[str], default: frozenset[Operation] = ALL_OPERATIONS
) -> frozenset[Operation]:
    if raw is None:
        return default
    if not isinstance(raw, list) or not raw:
        errors.append("'on' must be a non-empty list")
        return ALL_OPERATIONS
    operations: set[Operation] = set()
    for op in raw:
        if not isinstance(op, str) or not Operation.is_valid(op):
            valid = ", ".join(sorted(Operation.values()))
            errors.append(f"invalid operation '{op}' in 'on' (expected one of: {valid})")
            continue
        operations.add(Operation(op))
    return frozenset(operations) or ALL_OPERATIONS


def _parse_rule(data: Any) -> tuple[TriggerRule | None, list[str]]:
    """Parse one rule mapping.

    Returns:
        ``(rule, [])`` on success, ``(None, errors)`` otherwise.
    """
    if not isinstance(data, dict):
        return None, ["must be a mapping"]

    errors: list[str] = []

    raw_kind = data.get("type")
    if not isinstance(raw_kind, str) or not MatchKind.is_valid(raw_kind):
        valid = ", ".join(sorted(MatchKind.values()))
        errors.append(f"invalid type '{raw_kind}' (expected one of: {valid})")

    value = data.get("value")
    if not isinstance(value, str) or not value.strip():
        errors.append("'value' must be a non-empty string")

    raw_action = data.get("action")
    if not isinstance(raw_action, str) or not TriggerAction.is_valid(raw_action):
        valid = ", ".join(sorted(TriggerAction.values()))
        errors.append(f"invalid action '{raw_action}' (expected one of: {valid})")

    forced_agent: AgentName | None = None
    raw_agent = data.get("agent")
    if raw_agent is not None:
        if isinstance(raw_agent, str) and AgentName.is_valid(raw_agent):
            forced_agent = AgentName(raw_agent)
        else:
            valid = ", ".join(sorted(AgentName.values()))
            errors.append(f"invalid agent '{raw_agent}' (expected one of: {valid})")

    # YAML 1.1 reads a bare `on` key as the boolean True.
    raw_on = data["on"] if "on" in data else data.get(True)
    # Comment triggers only fire on new comments.
    default_operations = (
        frozenset({Operation.CREATED})
        if raw_kind in (MatchKind.MENTION, MatchKind.HASHTAG)
        else ALL_OPERATIONS
    )
    operations = _parse_operations(raw_on, errors, default_operations)

    if errors:
        return None, errors

    match_kind = MatchKind(raw_kind)
    action = TriggerAction(raw_action)
    errors = _validate_rule_invariants(match_kind, action, operations, forced_agent)
    if errors:
        return None, errors

    return (
        TriggerRule(
            match_kind=match_kind,
            match_value=str(value).strip(),
            action=action,
            allowed_operations=operations,
            forced_agent=forced_agent,
        ),
        [],
    )


def parse_trigger_rules(data: Iterable[Any] | None) -> tuple[TriggerRule, ...]:
    """Parse and validate an ordered list of rule mappings.

    All rules are checked before failing so that one load reports every
    problem in the file.

    Args:
        data: The ``triggers`` list from configuration. ``None`` or an empty
            list yields :func:`default_trigger_rules`.

    Returns:
        The rules in configured order.

    Raises:
        TriggerConfigError: If any rule is invalid.
    """
    if data is None:
        return default_trigger_rules()
    if isinstance(data, (str, bytes, dict)):
        raise TriggerConfigError(["triggers must be a list"])

    items = list(data)
    if not items:
        return default_trigger_rules()

    rules: list[TriggerRule] = []
    errors: list[str] = []
    for index, item in enumerate(items):
        rule, rule_errors = _parse_rule(item)
        label = _rule_label(index, item)
        errors.extend(f"{label}: {e}" for e in rule_errors)
        if rule is not None:
            rules.append(rule)

    if errors:
        raise TriggerConfigError(errors)
    return tuple(rules)


def validate_trigger_rules(rules: Iterable[TriggerRule]) -> list[str]:
    """Re-check invariants on already constructed rules.

    Useful for rules built in code rather than parsed from configuration.

    Returns:
        Error messages, empty when every rule is valid.
    """
    errors: list[str] = []
    for index, rule in enumerate(rules):
        for e in _validate_rule_invariants(
            rule.match_kind, rule.action, rule.allowed_operations, rule.forced_agent
        ):
            errors.append(f"triggers[{index}] ({rule.describe()}): {e}")
    return errors


def default_trigger_rules() -> tuple[TriggerRule, ...]:
    """Rule set used when the configuration declares no triggers."""
    label_ops = frozenset({Operation.CREATED, Operation.UPDATED})
    create_only = frozenset({Operation.CREATED})
    return (
        TriggerRule(MatchKind.LABEL, "discovery", TriggerAction.CONTEXT, label_ops),
        TriggerRule(MatchKind.LABEL, "plan", TriggerAction.PLAN, label_ops),
        TriggerRule(MatchKind.LABEL, "code", TriggerAction.QUICK, label_ops),
        TriggerRule(MatchKind.LABEL, "implement", TriggerAction.FULL, label_ops),
        TriggerRule(MatchKind.LABEL, "claude", TriggerAction.QUICK, label_ops, AgentName.CLAUDE),
        TriggerRule(MatchKind.LABEL, "codex", TriggerAction.QUICK, label_ops, AgentName.CODEX),
        TriggerRule(MatchKind.LABEL, "review", TriggerAction.REVIEW, label_ops),
        TriggerRule(MatchKind.LABEL, "github", TriggerAction.GITHUB, label_ops),
        TriggerRule(
            MatchKind.MENTION, "@claude", TriggerAction.REPLY, create_only, AgentName.CLAUDE
        ),
        TriggerRule(MatchKind.MENTION, "@codex", TriggerAction.REPLY, create_only, AgentName.CODEX),
    )
