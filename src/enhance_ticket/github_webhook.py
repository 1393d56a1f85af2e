"""Clean up issue worktrees when their pull request is merged.

GitHub sends a ``pull_request`` event when a pull request closes. When it
was merged from a branch named by ``worktree.branch_template``, the issue's
worktree is removed and the remote branch deleted, each step gated by
``github.cleanup``.

Deliveries are signed with ``X-Hub-Signature-256`` (``sha256=<hex>``) and
identified by ``X-GitHub-Delivery``, which is deduplicated over a
five-minute window because GitHub redelivers over minutes.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from enhance_ticket.config import Config
from enhance_ticket.deduplication import (
    SLOW_SOURCE_DEDUP_WINDOW_SECONDS,
    SLOW_SOURCE_SWEEP_THRESHOLD,
    DeliveryDeduplicator,
)
from enhance_ticket.logging import get_logger
from enhance_ticket.metrics import Metrics, WebhookResult
from enhance_ticket.worktree import GitWorktreeManager, WorktreeError, issue_id_from_branch

logger = get_logger(__name__)

GITHUB_SIGNATURE_HEADER = "x-hub-signature-256"
GITHUB_EVENT_HEADER = "x-github-event"
GITHUB_DELIVERY_HEADER = "x-github-delivery"

SIGNATURE_PREFIX = "sha256="

GITHUB_USAGE_TEXT = (
    "enhance-ticket GitHub webhook endpoint.\n"
    "POST pull_request events here, signed with github.webhook_secret.\n"
    "Merged pull requests from issue branches clean up their worktree.\n"
)


def verify_github_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw body."""
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    provided = signature.removeprefix(SIGNATURE_PREFIX).strip().lower()
    if not provided:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


class _GitHubModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GitHubRef(_GitHubModel):
    ref: str | None = None


class GitHubPullRequest(_GitHubModel):
    merged: bool | None = None
    head: GitHubRef | None = None


class GitHubRepository(_GitHubModel):
    full_name: str | None = None


class GitHubEventPayload(_GitHubModel):
    """The fields of a ``pull_request`` delivery that cleanup reads."""

    action: str | None = None
    pull_request: GitHubPullRequest | None = None
    repository: GitHubRepository | None = None

    @property
    def merged(self) -> bool:
        return bool(self.pull_request and self.pull_request.merged)

    @property
    def branch(self) -> str:
        head = self.pull_request.head if self.pull_request else None
        return (head.ref or "") if head else ""

    @property
    def repo_full_name(self) -> str:
        return (self.repository.full_name or "") if self.repository else ""


@dataclass(frozen=True)
class CleanupResponse:
    """HTTP status and JSON body for one delivery."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _ignored(reason: str, **details: Any) -> CleanupResponse:
    return CleanupResponse(200, {"status": "ignored", "reason": reason, **details})


class MergeCleanupHandler:
    """Handles GitHub deliveries for ``POST /github-webhook``.

    Usage:
        handler = MergeCleanupHandler(config, GitWorktreeManager(config.worktree))
        response = await handler.handle(event_name, delivery_id, body, signature)
    """

    def __init__(
        self,
        config: Config,
        worktrees: GitWorktreeManager,
        deduplicator: DeliveryDeduplicator | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._config = config
        self._worktrees = worktrees
        self._dedup = deduplicator or DeliveryDeduplicator(
            SLOW_SOURCE_DEDUP_WINDOW_SECONDS, SLOW_SOURCE_SWEEP_THRESHOLD
        )
        self._metrics = metrics

    def _record(self, event_name: str | None, action: str | None, result: str) -> None:
        if self._metrics is not None:
            self._metrics.record_webhook(event_name or "unknown", action or "", result)

    async def handle(
        self,
        event_name: str | None,
        delivery_id: str | None,
        body: bytes,
        signature: str | None,
    ) -> CleanupResponse:
        """Verify, decode and act on one delivery.

        Args:
            event_name: The ``X-GitHub-Event`` header.
            delivery_id: The ``X-GitHub-Delivery`` header.
            body: Raw request body, as signed.
            signature: The ``X-Hub-Signature-256`` header.

        Returns:
            The response to send. Git failures during cleanup are logged
            and do not change it.
        """
        github = self._config.github
        if not github.enabled or not github.cleanup.enabled:
            return CleanupResponse(404, {"status": "disabled"})
        if not github.webhook_secret:
            logger.warning("GitHub webhook secret is not configured")
            return CleanupResponse(500, {"error": "GitHub webhook not configured"})

        if delivery_id and self._dedup.seen(f"github:{delivery_id}"):
            self._record(event_name, None, WebhookResult.DEDUPLICATED)
            return _ignored("duplicate_delivery")

        if not verify_github_signature(body, signature, github.webhook_secret):
            logger.warning("Rejected GitHub webhook with invalid signature")
            self._record(event_name, None, WebhookResult.INVALID_SIGNATURE)
            return CleanupResponse(401, {"error": "Invalid signature"})

        try:
            payload = GitHubEventPayload.model_validate_json(body)
        except ValidationError as e:
            logger.error("Invalid GitHub webhook payload: %s", e.errors(include_url=False))
            self._record(event_name, None, WebhookResult.INVALID_PAYLOAD)
            return CleanupResponse(400, {"error": "Invalid payload"})

        self._record(event_name, payload.action, WebhookResult.RECEIVED)
        if event_name != "pull_request":
            return _ignored("unsupported_event", event=event_name)
        return await self._on_pull_request(payload)

    async def _on_pull_request(self, payload: GitHubEventPayload) -> CleanupResponse:
        if payload.action != "closed" or not payload.merged:
            return _ignored("not_merged", action=payload.action, merged=payload.merged)

        repo_name, branch = payload.repo_full_name, payload.branch
        if not repo_name or not branch:
            return _ignored("missing_fields", repoFullName=repo_name, branch=branch)

        repo = self._config.github.repo_by_name(repo_name)
        if repo is None:
            return _ignored("repo_not_configured", repoFullName=repo_name)

        workspace = self._config.workspace(repo.workspace)
        if workspace is None:
            logger.error("Workspace not found for %s: %s", repo_name, repo.workspace)
            return CleanupResponse(500, {"error": "Workspace not found"})

        issue_id = issue_id_from_branch(branch, self._config.worktree.branch_template)
        if issue_id is None:
            logger.warning("Branch %s does not match the worktree branch template", branch)
            return _ignored("branch_not_mapped", branch=branch)

        log = logger.with_context(issue_key=issue_id)
        log.info("Pull request from %s merged in %s, cleaning up", branch, repo_name)
        cleanup = self._config.github.cleanup
        spec = self._worktrees.spec_for(workspace, issue_id)

        if cleanup.remove_worktree_on_merge:
            try:
                registered = await asyncio.to_thread(
                    self._worktrees.is_registered, workspace.local_path, spec.path
                )
            except WorktreeError as e:
                log.warning("Could not list worktrees: %s", e)
                registered = False
            if registered:
                await asyncio.to_thread(self._worktrees.remove, workspace.local_path, spec.path)
            else:
                log.warning("Worktree %s is not registered, not removing it", spec.path)

        if cleanup.delete_branch_on_merge:
            await asyncio.to_thread(
                self._worktrees.delete_remote_branch, workspace.local_path, repo.remote, branch
            )

        return CleanupResponse(
            200,
            {
                "status": "ok",
                "action": "merged",
                "repoFullName": repo_name,
                "branch": branch,
                "issueId": issue_id,
            },
        )
