"""State-diff detection for label triggers.

An update event lists the labels an issue has *now*. Firing whenever the
wanted label is present would re-launch a run on every unrelated edit, so a
label trigger only fires on the update that introduced the label.
"""

from __future__ import annotations

from collections.abc import Iterable

from enhance_ticket.events import LabelRef
from enhance_ticket.types import Operation


def normalize_label(name: str) -> str:
    """Normalize a label name for comparison (trimmed, case-folded)."""
    return name.strip().lower()


def resolve_label_id(wanted_label_name: str, labels_detailed: Iterable[LabelRef]) -> str | None:
    """Look up the id of a label by name.

    Args:
        wanted_label_name: Label name, compared case-insensitively.
        labels_detailed: Id/name pairs for the issue's current labels.

    Returns:
        The label id, or None if no label with that name is present.
    """
    wanted = normalize_label(wanted_label_name)
    for label in labels_detailed:
        if normalize_label(label.name) == wanted:
            return label.id
    return None


def was_label_added(
    wanted_label_name: str,
    current_labels: Iterable[str],
    previous_label_ids: Iterable[str] | None,
    labels_detailed: Iterable[LabelRef],
    operation: Operation,
    current_label_ids: Iterable[str] | None = None,
) -> bool:
    """Decide whether the wanted label was newly introduced by this event.

    Rules:
        - ``create``: True whenever the label is present.
        - ``update``: True only when the label's id is among the current ids
          and absent from ``previous_label_ids``. A missing prior-state
          snapshot (``None``) yields False: a missed trigger is preferred
          over a spurious one.
        - ``remove``: always False.

    Args:
        wanted_label_name: Label name the trigger rule looks for.
        current_labels: Label names currently on the issue.
        previous_label_ids: Label ids before the update, or None if unknown.
        labels_detailed: Id/name pairs for the current labels.
        operation: The event's operation.
        current_label_ids: Current label ids; defaults to the ids found in
            ``labels_detailed``.

    Returns:
        True if the label should be considered newly added.
    """
    wanted = normalize_label(wanted_label_name)
    if wanted not in {normalize_label(name) for name in current_labels}:
        return False

    if operation == Operation.CREATED:
        return True
    if operation != Operation.UPDATED:
        return False
    if previous_label_ids is None:
        return False

    detailed = tuple(labels_detailed)
    label_id = resolve_label_id(wanted, detailed)
    if label_id is None:
        return False

    current_ids = (
        set(current_label_ids)
        if current_label_ids is not None
        else {label.id for label in detailed}
    )
    return label_id in current_ids and label_id not in set(previous_label_ids)
