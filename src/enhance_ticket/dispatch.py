"""Trigger dispatch engine.

Decides, for each incoming change event, whether a workflow run should
start. Two layers:

- :func:`match_trigger` is a pure function over ``(rules, event)``: rules
  are evaluated in configured order and the first match wins.
- :class:`TriggerDispatcher` wraps it with the delivery deduplication guard
  and is the object the webhook handler talks to.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from enhance_ticket.deduplication import DeliveryDeduplicator, build_dedup_key
from enhance_ticket.events import ChangeEvent
from enhance_ticket.label_diff import normalize_label, was_label_added
from enhance_ticket.logging import get_logger
from enhance_ticket.triggers import TriggerRule
from enhance_ticket.types import EventKind, MatchKind, TriggerAction

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchDecision:
    """The rule that matched an event and the action it launches."""

    rule: TriggerRule
    action: TriggerAction


Matcher = Callable[[TriggerRule, ChangeEvent], bool]


def _match_label(rule: TriggerRule, event: ChangeEvent) -> bool:
    if event.kind != EventKind.ITEM_CHANGED:
        return False
    wanted = normalize_label(rule.match_value)
    if wanted not in {normalize_label(name) for name in event.current_labels}:
        return False
    return was_label_added(
        wanted,
        event.current_labels,
        event.previous_label_ids,
        event.labels_detailed,
        event.operation,
        event.current_label_ids,
    )


def hashtag_pattern(value: str) -> re.Pattern[str]:
    """Compile the search pattern for a hashtag rule value.

    The value is prefixed with ``#`` when missing and must be followed by a
    word boundary, so ``#plan`` matches "please #plan this" but not
    "#planning".
    """
    tag = value.strip()
    if not tag.startswith("#"):
        tag = f"#{tag}"
    return re.compile(rf"{re.escape(tag)}\b", re.IGNORECASE)


def mention_pattern(value: str) -> re.Pattern[str]:
    """Compile the anchored pattern for a mention rule value.

    The mention must open the comment (leading whitespace allowed) and be
    followed by a word boundary, so ``@claude`` does not match ``@claudette``.
    """
    return re.compile(rf"^\s*{re.escape(value.strip())}\b", re.IGNORECASE)


def _match_hashtag(rule: TriggerRule, event: ChangeEvent) -> bool:
    if event.kind != EventKind.COMMENT_POSTED or not event.comment_body:
        return False
    return hashtag_pattern(rule.match_value).search(event.comment_body) is not None


def _match_mention(rule: TriggerRule, event: ChangeEvent) -> bool:
    if event.kind != EventKind.COMMENT_POSTED or not event.comment_body:
        return False
    return mention_pattern(rule.match_value).match(event.comment_body) is not None


MATCHERS: dict[MatchKind, Matcher] = {
    MatchKind.LABEL: _match_label,
    MatchKind.HASHTAG: _match_hashtag,
    MatchKind.MENTION: _match_mention,
}


def match_trigger(rules: Sequence[TriggerRule], event: ChangeEvent) -> DispatchDecision | None:
    """Find the first rule that matches an event.

    Args:
        rules: Rules in configured order.
        event: The change event.

    Returns:
        The decision for the first matching rule, or None when nothing matches.
    """
    for rule in rules:
        if event.operation not in rule.allowed_operations:
            continue
        if MATCHERS[rule.match_kind](rule, event):
            return DispatchDecision(rule=rule, action=rule.action)
    return None


class DispatchStatus(StrEnum):
    """Outcome category of :meth:`TriggerDispatcher.accept`."""

    DUPLICATE = "duplicate"
    NO_MATCH = "no_match"
    MATCHED = "matched"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of offering an event to the dispatcher.

    Attributes:
        status: duplicate, no_match or matched.
        dedup_key: The key the event was deduplicated under.
        decision: The matching rule when ``status`` is ``matched``.
    """

    status: DispatchStatus
    dedup_key: str
    decision: DispatchDecision | None = None

    @property
    def should_run(self) -> bool:
        return self.status == DispatchStatus.MATCHED


class TriggerDispatcher:
    """Deduplicating front door to :func:`match_trigger`.

    Every event is recorded in the dedup guard before matching, so a
    redelivered event is dropped even if it would not have matched. Each
    dispatcher owns its guard; tests construct their own instance.
    """

    def __init__(
        self,
        rules: Sequence[TriggerRule],
        deduplicator: DeliveryDeduplicator | None = None,
    ) -> None:
        self._rules = tuple(rules)
        self._deduplicator = deduplicator or DeliveryDeduplicator()

    @property
    def rules(self) -> tuple[TriggerRule, ...]:
        return self._rules

    def accept(self, event: ChangeEvent) -> DispatchOutcome:
        """Deduplicate and match an event.

        Args:
            event: The change event.

        Returns:
            The dispatch outcome.
        """
        key = build_dedup_key(event)
        if self._deduplicator.seen(key):
            logger.info("Ignoring duplicate delivery %s for %s", key, event.issue_key)
            return DispatchOutcome(status=DispatchStatus.DUPLICATE, dedup_key=key)

        decision = match_trigger(self._rules, event)
        if decision is None:
            logger.debug(
                "No trigger matched %s %s on %s",
                event.kind,
                event.operation,
                event.issue_key,
                extra={"diagnostic_tag": "dispatch"},
            )
            return DispatchOutcome(status=DispatchStatus.NO_MATCH, dedup_key=key)

        logger.info(
            "Trigger %s matched %s %s on %s",
            decision.rule.describe(),
            event.kind,
            event.operation,
            event.issue_key,
        )
        return DispatchOutcome(status=DispatchStatus.MATCHED, dedup_key=key, decision=decision)
