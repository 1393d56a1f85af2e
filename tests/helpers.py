"""Test helper functions for enhance-ticket tests.

Builders with sensible defaults for configuration, events, issues and run
results. Every builder takes keyword overrides so a test only spells out
what it cares about.

Usage
=====

Import and use helpers directly in tests::

    from tests.helpers import make_config, make_label_event

    def test_example(tmp_path):
        config = make_config(workspace_path=tmp_path)
        event = make_label_event(["code"])
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

from enhance_ticket.config import (
    AdvancedConfig,
    Config,
    GitHubCleanupConfig,
    GitHubConfig,
    GitHubRepoConfig,
    LinearConfig,
    WorkspaceConfig,
)
from enhance_ticket.events import ChangeEvent, LabelRef
from enhance_ticket.linear import IssueComment, IssueDetails
from enhance_ticket.runner import AgentRunResult
from enhance_ticket.triggers import TriggerRule, default_trigger_rules
from enhance_ticket.types import EventKind, Operation, TerminationReason

WEBHOOK_SECRET = "test-webhook-secret"
GITHUB_SECRET = "test-github-secret"
TEAM_ID = "team-1"
ISSUE_ID = "issue-1"


def make_workspace(
    path: Path | str = "/tmp/repo",
    name: str = "main",
    team_id: str = TEAM_ID,
    project_ids: tuple[str, ...] = (),
) -> WorkspaceConfig:
    return WorkspaceConfig(
        name=name, team_id=team_id, local_path=Path(path), project_ids=project_ids
    )


def make_config(
    workspace_path: Path | str = "/tmp/repo",
    triggers: tuple[TriggerRule, ...] | None = None,
    dead_letter_path: Path | None = None,
    github_enabled: bool = False,
    github_repo: str | None = None,
    **overrides: Any,
) -> Config:
    """Create a Config with a single workspace for team ``team-1``.

    Args:
        workspace_path: Local path of the ``main`` workspace.
        triggers: Trigger rules; defaults to the built-in rule set.
        dead_letter_path: Dead-letter file location.
        github_enabled: Value of ``github.enabled``.
        github_repo: ``owner/name`` configured for the ``main`` workspace.
        **overrides: Other top-level Config fields to replace.
    """
    linear = LinearConfig(
        api_key="lin_api_test",
        webhook_secret=WEBHOOK_SECRET,
        workspaces=(make_workspace(workspace_path),),
        triggers=triggers if triggers is not None else default_trigger_rules(),
    )
    repos = (GitHubRepoConfig(workspace="main", repo=github_repo),) if github_repo else ()
    config = Config(
        linear=linear,
        github=GitHubConfig(enabled=github_enabled, repos=repos),
        advanced=AdvancedConfig(
            dead_letter_path=dead_letter_path or Path("logs/dead-letter.jsonl")
        ),
    )
    return replace(config, **overrides) if overrides else config


def make_label_event(
    labels: list[str],
    previous: list[str] | None = None,
    operation: Operation = Operation.CREATED,
    issue_id: str = ISSUE_ID,
    identifier: str = "ENG-1",
    delivery_id: str | None = None,
    team_id: str | None = TEAM_ID,
) -> ChangeEvent:
    """Create an issue event; label ids are ``id-<name>``."""
    detailed = tuple(LabelRef(id=f"id-{name}", name=name) for name in labels)
    return ChangeEvent(
        kind=EventKind.ITEM_CHANGED,
        operation=operation,
        subject_id=issue_id,
        delivery_id=delivery_id,
        current_labels=frozenset(labels),
        labels_detailed=detailed,
        current_label_ids=tuple(label.id for label in detailed),
        previous_label_ids=None if previous is None else tuple(f"id-{n}" for n in previous),
        issue_id=issue_id,
        identifier=identifier,
        team_id=team_id,
    )


def make_comment_event(
    body: str,
    comment_id: str = "user-comment-1",
    operation: Operation = Operation.CREATED,
    issue_id: str = ISSUE_ID,
    delivery_id: str | None = None,
) -> ChangeEvent:
    return ChangeEvent(
        kind=EventKind.COMMENT_POSTED,
        operation=operation,
        subject_id=comment_id,
        delivery_id=delivery_id,
        comment_body=body,
        comment_id=comment_id,
        issue_id=issue_id,
    )


def make_issue(
    issue_id: str = ISSUE_ID,
    identifier: str = "ENG-1",
    title: str = "Fix the login redirect",
    description: str = "Users land on a blank page after login.",
    team_id: str | None = TEAM_ID,
    project_id: str | None = None,
    comments: tuple[IssueComment, ...] = (),
) -> IssueDetails:
    return IssueDetails(
        id=issue_id,
        identifier=identifier,
        title=title,
        description=description,
        url=f"https://linear.app/acme/issue/{identifier}",
        team_id=team_id,
        project_id=project_id,
        comments=comments,
    )


def make_result(
    success: bool = True,
    session_id: str = "session-1",
    files: tuple[str, ...] = (),
    answer: str | None = "All done.",
    error: str | None = None,
    reason: TerminationReason | None = None,
) -> AgentRunResult:
    return AgentRunResult(
        success=success,
        session_id=session_id,
        termination_reason=reason
        or (TerminationReason.COMPLETED if success else TerminationReason.ERROR),
        files_modified=files,
        summary="No files were modified." if not files else f"Modified {len(files)} file(s)",
        answer=answer,
        error=error,
    )


def issue_payload(
    action: str = "create",
    labels: list[tuple[str, str]] | None = None,
    previous_label_ids: list[str] | None = None,
    **data: Any,
) -> dict[str, Any]:
    """Linear ``Issue`` webhook payload; ``labels`` are ``(id, name)`` pairs."""
    label_pairs = labels if labels is not None else [("l-code", "code")]
    payload: dict[str, Any] = {
        "action": action,
        "type": "Issue",
        "createdAt": "2026-10-01T12:00:00.000Z",
        "url": "https://linear.app/acme/issue/ENG-1",
        "data": {
            "id": ISSUE_ID,
            "identifier": "ENG-1",
            "title": "Fix the login redirect",
            "teamId": TEAM_ID,
            "labels": [{"id": i, "name": n} for i, n in label_pairs],
            "labelIds": [i for i, _ in label_pairs],
            **data,
        },
    }
    if previous_label_ids is not None:
        payload["updatedFrom"] = {"labelIds": previous_label_ids}
    return payload


def comment_payload(body: str, comment_id: str = "comment-9") -> dict[str, Any]:
    return {
        "action": "create",
        "type": "Comment",
        "createdAt": "2026-10-01T12:00:00.000Z",
        "data": {"id": comment_id, "body": body, "issueId": ISSUE_ID, "userId": "user-1"},
    }


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


def sign_github(body: bytes, secret: str = GITHUB_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_cleanup_config(workspace_path: Path | str = "/tmp/repo", **cleanup: bool) -> Config:
    """Config with GitHub merge cleanup enabled for ``acme/app``."""
    config = make_config(workspace_path, github_enabled=True, github_repo="acme/app")
    github = replace(
        config.github,
        webhook_secret=GITHUB_SECRET,
        cleanup=GitHubCleanupConfig(enabled=True, **cleanup),
    )
    return replace(config, github=github)


def pull_request_payload(
    action: str = "closed",
    merged: bool = True,
    branch: str = "fix/eng-42",
    repo: str = "acme/app",
) -> dict[str, Any]:
    """GitHub ``pull_request`` webhook payload."""
    return {
        "action": action,
        "number": 7,
        "pull_request": {"merged": merged, "head": {"ref": branch}, "base": {"ref": "main"}},
        "repository": {"full_name": repo},
    }
