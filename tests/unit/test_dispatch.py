"""Tests for the trigger dispatch engine."""

from __future__ import annotations

from enhance_ticket.deduplication import DeliveryDeduplicator
from enhance_ticket.dispatch import (
    DispatchStatus,
    TriggerDispatcher,
    hashtag_pattern,
    match_trigger,
    mention_pattern,
)
from enhance_ticket.triggers import TriggerRule, default_trigger_rules
from enhance_ticket.types import AgentName, MatchKind, Operation, TriggerAction
from tests.helpers import make_comment_event, make_label_event

CREATE_ONLY = frozenset({Operation.CREATED})


def hashtag_rule(value: str = "plan", action: TriggerAction = TriggerAction.PLAN) -> TriggerRule:
    return TriggerRule(MatchKind.HASHTAG, value, action, CREATE_ONLY)


class TestMatchTrigger:
    """Tests for match_trigger."""

    def test_label_on_create(self) -> None:
        decision = match_trigger(default_trigger_rules(), make_label_event(["code"]))
        assert decision is not None
        assert decision.action == TriggerAction.QUICK
        assert decision.rule.match_value == "code"

    def test_label_added_on_update(self) -> None:
        event = make_label_event(["bug", "plan"], previous=["bug"], operation=Operation.UPDATED)
        decision = match_trigger(default_trigger_rules(), event)
        assert decision is not None
        assert decision.action == TriggerAction.PLAN

    def test_label_already_present_on_update(self) -> None:
        event = make_label_event(["plan"], previous=["plan"], operation=Operation.UPDATED)
        assert match_trigger(default_trigger_rules(), event) is None

    def test_label_update_without_snapshot(self) -> None:
        event = make_label_event(["plan"], operation=Operation.UPDATED)
        assert match_trigger(default_trigger_rules(), event) is None

    def test_label_on_remove_never_fires(self) -> None:
        rules = (TriggerRule(MatchKind.LABEL, "code", TriggerAction.QUICK),)
        event = make_label_event(["code"], previous=[], operation=Operation.REMOVED)
        assert match_trigger(rules, event) is None

    def test_first_match_wins(self) -> None:
        """Rule order decides between two matching rules."""
        rules = (
            TriggerRule(MatchKind.LABEL, "code", TriggerAction.FULL),
            TriggerRule(MatchKind.LABEL, "code", TriggerAction.QUICK),
        )
        decision = match_trigger(rules, make_label_event(["code"]))
        assert decision is not None
        assert decision.action == TriggerAction.FULL

    def test_operation_filter_skips_rule(self) -> None:
        """A rule not listening for the operation is skipped, not matched."""
        rules = (
            TriggerRule(
                MatchKind.LABEL, "code", TriggerAction.FULL, frozenset({Operation.UPDATED})
            ),
            TriggerRule(MatchKind.LABEL, "code", TriggerAction.QUICK, CREATE_ONLY),
        )
        decision = match_trigger(rules, make_label_event(["code"]))
        assert decision is not None
        assert decision.action == TriggerAction.QUICK

    def test_label_rule_ignores_comments(self) -> None:
        rules = (TriggerRule(MatchKind.LABEL, "code", TriggerAction.QUICK),)
        assert match_trigger(rules, make_comment_event("code")) is None

    def test_mention_at_start(self) -> None:
        decision = match_trigger(
            default_trigger_rules(), make_comment_event("  @Claude why does login fail?")
        )
        assert decision is not None
        assert decision.action == TriggerAction.REPLY
        assert decision.rule.forced_agent == AgentName.CLAUDE

    def test_mention_not_at_start(self) -> None:
        event = make_comment_event("thanks @claude for the fix")
        assert match_trigger(default_trigger_rules(), event) is None

    def test_mention_requires_word_boundary(self) -> None:
        event = make_comment_event("@claudette please help")
        assert match_trigger(default_trigger_rules(), event) is None

    def test_mention_on_update_does_not_fire(self) -> None:
        event = make_comment_event("@claude edited", operation=Operation.UPDATED)
        assert match_trigger(default_trigger_rules(), event) is None

    def test_hashtag_anywhere(self) -> None:
        decision = match_trigger((hashtag_rule(),), make_comment_event("could you #plan this?"))
        assert decision is not None
        assert decision.action == TriggerAction.PLAN

    def test_hashtag_requires_word_boundary(self) -> None:
        assert match_trigger((hashtag_rule(),), make_comment_event("#planning soon")) is None

    def test_hashtag_value_with_hash(self) -> None:
        decision = match_trigger((hashtag_rule("#plan"),), make_comment_event("#PLAN"))
        assert decision is not None

    def test_empty_comment(self) -> None:
        assert match_trigger((hashtag_rule(),), make_comment_event("")) is None

    def test_no_rules(self) -> None:
        assert match_trigger((), make_label_event(["code"])) is None


class TestPatterns:
    def test_hashtag_pattern_adds_hash(self) -> None:
        assert hashtag_pattern("plan").search("do #plan") is not None

    def test_mention_pattern_escapes_value(self) -> None:
        pattern = mention_pattern("@a.b")
        assert pattern.match("@a.b hi") is not None
        assert pattern.match("@axb hi") is None


class TestTriggerDispatcher:
    """Tests for TriggerDispatcher."""

    def test_matched(self) -> None:
        dispatcher = TriggerDispatcher(default_trigger_rules())
        outcome = dispatcher.accept(make_label_event(["code"], delivery_id="d-1"))
        assert outcome.status == DispatchStatus.MATCHED
        assert outcome.should_run is True
        assert outcome.dedup_key == "delivery:d-1"
        assert outcome.decision is not None

    def test_redelivery_is_duplicate(self) -> None:
        dispatcher = TriggerDispatcher(default_trigger_rules())
        dispatcher.accept(make_label_event(["code"], delivery_id="d-1"))
        outcome = dispatcher.accept(make_label_event(["code"], delivery_id="d-1"))
        assert outcome.status == DispatchStatus.DUPLICATE
        assert outcome.decision is None
        assert outcome.should_run is False

    def test_non_matching_event_is_still_recorded(self) -> None:
        """A redelivered event is dropped even when it did not match."""
        dispatcher = TriggerDispatcher(default_trigger_rules())
        first = dispatcher.accept(make_label_event(["bug"], delivery_id="d-2"))
        second = dispatcher.accept(make_label_event(["bug"], delivery_id="d-2"))
        assert first.status == DispatchStatus.NO_MATCH
        assert second.status == DispatchStatus.DUPLICATE

    def test_distinct_deliveries_both_run(self) -> None:
        dispatcher = TriggerDispatcher(default_trigger_rules())
        first = dispatcher.accept(make_label_event(["code"], delivery_id="d-1"))
        second = dispatcher.accept(make_label_event(["code"], delivery_id="d-3"))
        assert first.should_run and second.should_run

    def test_dispatchers_do_not_share_state(self) -> None:
        event = make_label_event(["code"], delivery_id="d-1")
        TriggerDispatcher(default_trigger_rules()).accept(event)
        outcome = TriggerDispatcher(default_trigger_rules()).accept(event)
        assert outcome.status == DispatchStatus.MATCHED

    def test_uses_injected_deduplicator(self) -> None:
        dedup = DeliveryDeduplicator()
        dedup.seen("delivery:d-9")
        dispatcher = TriggerDispatcher(default_trigger_rules(), dedup)
        outcome = dispatcher.accept(make_label_event(["code"], delivery_id="d-9"))
        assert outcome.status == DispatchStatus.DUPLICATE
