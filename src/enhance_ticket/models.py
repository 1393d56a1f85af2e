"""Pydantic models for Linear webhook payloads.

Payloads are validated here, at the HTTP boundary, and converted into
:class:`~enhance_ticket.events.ChangeEvent` values for the dispatch engine.
Unknown fields are ignored so new payload fields do not break delivery.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from enhance_ticket.events import ChangeEvent, LabelRef
from enhance_ticket.types import EventKind, Operation

__all__: list[str] = [
    "WebhookLabel",
    "WebhookIssueData",
    "WebhookCommentData",
    "WebhookUpdatedFrom",
    "WebhookPayload",
    "WebhookResponse",
    "to_change_event",
]


class _PayloadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WebhookLabel(_PayloadModel):
    id: str
    name: str


class WebhookIssueData(_PayloadModel):
    """The ``data`` member of an ``Issue`` event."""

    id: str
    title: str = ""
    description: str | None = None
    identifier: str | None = None
    url: str | None = None
    labels: list[WebhookLabel] | None = None
    label_ids: list[str] | None = Field(default=None, alias="labelIds")
    team_id: str | None = Field(default=None, alias="teamId")
    project_id: str | None = Field(default=None, alias="projectId")


class WebhookCommentData(_PayloadModel):
    """The ``data`` member of a ``Comment`` event."""

    id: str
    body: str
    issue_id: str = Field(alias="issueId")
    user_id: str | None = Field(default=None, alias="userId")


class WebhookUpdatedFrom(_PayloadModel):
    """Previous values of the fields an update changed."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    label_ids: list[str] | None = Field(default=None, alias="labelIds")


class WebhookPayload(_PayloadModel):
    """Envelope of every Linear webhook delivery."""

    action: Literal["create", "update", "remove"]
    type: Literal["Issue", "Comment"]
    data: dict[str, Any]
    updated_from: WebhookUpdatedFrom | None = Field(default=None, alias="updatedFrom")
    url: str | None = None
    created_at: str = Field(alias="createdAt")
    webhook_timestamp: int | None = Field(default=None, alias="webhookTimestamp")
    webhook_id: str | None = Field(default=None, alias="webhookId")
    organization_id: str | None = Field(default=None, alias="organizationId")


class WebhookResponse(BaseModel):
    """JSON body returned by ``POST /webhook``."""

    status: Literal["ignored", "processing"]
    reason: str | None = None
    action: str | None = None
    trigger: str | None = None


def to_change_event(payload: WebhookPayload, delivery_id: str | None = None) -> ChangeEvent:
    """Convert a validated payload into a :class:`ChangeEvent`.

    Args:
        payload: The validated envelope.
        delivery_id: Value of the ``linear-delivery`` header, if sent.

    Raises:
        pydantic.ValidationError: If ``data`` does not match the event type.
    """
    operation = Operation(payload.action)

    if payload.type == "Comment":
        comment = WebhookCommentData.model_validate(payload.data)
        return ChangeEvent(
            kind=EventKind.COMMENT_POSTED,
            operation=operation,
            subject_id=comment.id,
            delivery_id=delivery_id,
            comment_body=comment.body,
            comment_id=comment.id,
            issue_id=comment.issue_id,
        )

    issue = WebhookIssueData.model_validate(payload.data)
    labels = tuple(LabelRef(id=label.id, name=label.name) for label in issue.labels or [])
    if issue.label_ids is not None:
        current_ids: tuple[str, ...] | None = tuple(issue.label_ids)
    elif issue.labels is not None:
        current_ids = tuple(label.id for label in labels)
    else:
        current_ids = None

    previous_ids: tuple[str, ...] | None = None
    if payload.updated_from is not None and payload.updated_from.label_ids is not None:
        previous_ids = tuple(payload.updated_from.label_ids)

    return ChangeEvent(
        kind=EventKind.ITEM_CHANGED,
        operation=operation,
        subject_id=issue.id,
        delivery_id=delivery_id,
        current_labels=frozenset(label.name for label in labels),
        labels_detailed=labels,
        current_label_ids=current_ids,
        previous_label_ids=previous_ids,
        issue_id=issue.id,
        identifier=issue.identifier or "",
        title=issue.title,
        description=issue.description or "",
        team_id=issue.team_id,
        project_id=issue.project_id,
        url=issue.url,
    )
