"""Normalized change events consumed by the trigger dispatch engine.

Webhook payloads are validated at the HTTP boundary (see
:mod:`enhance_ticket.models`) and converted into :class:`ChangeEvent`
instances. Everything downstream works with this type only.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from enhance_ticket.types import EventKind, Operation


@dataclass(frozen=True)
class LabelRef:
    """A label attached to an issue, with both its id and display name."""

    id: str
    name: str


@dataclass(frozen=True)
class ChangeEvent:
    """A single change notification from the issue tracker.

    Attributes:
        kind: Whether an issue changed or a comment was posted.
        operation: create, update or remove.
        subject_id: Id of the changed entity (issue id or comment id).
        delivery_id: Transport-level delivery id, if the source provides one.
        current_labels: Label names currently on the issue.
        labels_detailed: Id/name pairs for the current labels.
        current_label_ids: Label ids currently on the issue, if provided.
        previous_label_ids: Label ids before this update. ``None`` means the
            event carried no prior-state snapshot, which is not the same as
            an empty tuple.
        comment_body: Comment text for ``COMMENT_POSTED`` events.
        issue_id: Id of the issue the event concerns.
        identifier: Human-readable issue key (e.g. ``ENG-42``).
        title: Issue title, when included in the payload.
        description: Issue description, when included in the payload.
        team_id: Owning team id, when included in the payload.
        project_id: Owning project id, when included in the payload.
        url: Issue URL, when included in the payload.
        comment_id: Id of the posted comment for ``COMMENT_POSTED`` events.
    """

    kind: EventKind
    operation: Operation
    subject_id: str
    delivery_id: str | None = None
    current_labels: frozenset[str] = field(default_factory=frozenset)
    labels_detailed: tuple[LabelRef, ...] = ()
    current_label_ids: tuple[str, ...] | None = None
    previous_label_ids: tuple[str, ...] | None = None
    comment_body: str | None = None
    issue_id: str = ""
    identifier: str = ""
    title: str = ""
    description: str = ""
    team_id: str | None = None
    project_id: str | None = None
    url: str | None = None
    comment_id: str | None = None

    @property
    def issue_key(self) -> str:
        """Identifier used in logs and comments, falling back to the issue id."""
        return self.identifier or self.issue_id or self.subject_id
