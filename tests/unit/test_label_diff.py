"""Tests for label-add detection."""

from __future__ import annotations

from enhance_ticket.events import LabelRef
from enhance_ticket.label_diff import normalize_label, resolve_label_id, was_label_added
from enhance_ticket.types import Operation

LABELS = (LabelRef(id="l-bug", name="Bug"), LabelRef(id="l-code", name="code"))
NAMES = ["Bug", "code"]


class TestNormalizeLabel:
    def test_trims_and_lowercases(self) -> None:
        assert normalize_label("  Code ") == "code"


class TestResolveLabelId:
    def test_finds_id_case_insensitively(self) -> None:
        assert resolve_label_id("bug", LABELS) == "l-bug"

    def test_unknown_label(self) -> None:
        assert resolve_label_id("plan", LABELS) is None


class TestWasLabelAdded:
    """Tests for was_label_added."""

    def test_create_fires_when_present(self) -> None:
        assert was_label_added("code", NAMES, None, LABELS, Operation.CREATED) is True

    def test_absent_label_never_fires(self) -> None:
        assert was_label_added("plan", NAMES, None, LABELS, Operation.CREATED) is False

    def test_update_fires_when_newly_added(self) -> None:
        """The label id is current and missing from the previous ids."""
        assert was_label_added("code", NAMES, ["l-bug"], LABELS, Operation.UPDATED) is True

    def test_update_does_not_fire_when_already_present(self) -> None:
        """An unrelated edit to an issue that already had the label is ignored."""
        previous = ["l-bug", "l-code"]
        assert was_label_added("code", NAMES, previous, LABELS, Operation.UPDATED) is False

    def test_update_without_snapshot_does_not_fire(self) -> None:
        """No prior-state snapshot prefers a missed trigger over a spurious one."""
        assert was_label_added("code", NAMES, None, LABELS, Operation.UPDATED) is False

    def test_update_with_empty_snapshot_fires(self) -> None:
        """An empty previous list is a real snapshot, unlike None."""
        assert was_label_added("code", NAMES, [], LABELS, Operation.UPDATED) is True

    def test_remove_never_fires(self) -> None:
        assert was_label_added("code", NAMES, [], LABELS, Operation.REMOVED) is False

    def test_explicit_current_ids_must_contain_label(self) -> None:
        """When current ids are given, the label id must be among them."""
        result = was_label_added(
            "code", NAMES, [], LABELS, Operation.UPDATED, current_label_ids=["l-bug"]
        )
        assert result is False

    def test_name_present_but_id_unknown(self) -> None:
        """A name without a detailed entry cannot be diffed on update."""
        result = was_label_added(
            "code", ["code"], [], [LabelRef(id="l-bug", name="Bug")], Operation.UPDATED
        )
        assert result is False

    def test_case_insensitive_match(self) -> None:
        assert was_label_added("CODE", NAMES, ["l-bug"], LABELS, Operation.UPDATED) is True
