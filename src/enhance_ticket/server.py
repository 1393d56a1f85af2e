"""HTTP server receiving Linear webhooks.

Routes:

- ``POST /webhook``: verify the ``linear-signature`` HMAC, validate the
  payload, dispatch it, and run the matched workflow in the background.
- ``GET /webhook``: short usage text, for humans probing the endpoint.
- ``POST /github-webhook``: clean up issue worktrees when their pull
  request is merged (see :mod:`enhance_ticket.github_webhook`).
- ``GET /github-webhook``: usage text for the GitHub endpoint.
- ``GET /health``: service and agent runtime status (404 when disabled).
- ``GET /metrics``: Prometheus metrics (404 when disabled).

Both POST routes are rate limited per client.

The application lifespan owns the agent runtime and tracker clients unless
they are injected by the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from cachetools import TTLCache
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from enhance_ticket import __version__
from enhance_ticket.agent_runtime import AgentRuntime, SandboxAgentClient
from enhance_ticket.config import Config
from enhance_ticket.deduplication import DeliveryDeduplicator
from enhance_ticket.dispatch import DispatchStatus, TriggerDispatcher
from enhance_ticket.github_webhook import (
    GITHUB_DELIVERY_HEADER,
    GITHUB_EVENT_HEADER,
    GITHUB_SIGNATURE_HEADER,
    GITHUB_USAGE_TEXT,
    MergeCleanupHandler,
)
from enhance_ticket.linear import LinearClient
from enhance_ticket.logging import get_logger
from enhance_ticket.metrics import METRICS_CONTENT_TYPE, Metrics, WebhookResult
from enhance_ticket.models import WebhookPayload, WebhookResponse, to_change_event
from enhance_ticket.ratelimit import WebhookRateLimiter, client_key
from enhance_ticket.runner import AgentSessionRunner
from enhance_ticket.workflows import Tracker, WorkflowExecutor
from enhance_ticket.workspace import GitWorkspaceInspector
from enhance_ticket.worktree import GitWorktreeManager

logger = get_logger(__name__)

SIGNATURE_HEADER = "linear-signature"
DELIVERY_HEADER = "linear-delivery"

HEALTH_CACHE_TTL_SECONDS = 10.0

USAGE_TEXT = (
    "enhance-ticket webhook endpoint.\n"
    "POST Linear webhook deliveries here, signed with the configured webhook secret.\n"
)


def _reply(**fields: Any) -> dict[str, Any]:
    return WebhookResponse(**fields).model_dump(exclude_none=True)


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a hex HMAC-SHA256 signature of the raw request body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


@dataclass
class AppServices:
    """Long-lived collaborators shared by request handlers."""

    runtime: AgentRuntime
    tracker: Tracker
    dispatcher: TriggerDispatcher
    executor: WorkflowExecutor


def _build_runtime(config: Config) -> SandboxAgentClient:
    connection = config.sandbox.connection
    return SandboxAgentClient(
        connection.base_url,
        token=connection.token,
        timeout=httpx.Timeout(10.0, read=connection.request_timeout_seconds),
    )


def create_app(
    config: Config,
    runtime: AgentRuntime | None = None,
    tracker: Tracker | None = None,
    executor: WorkflowExecutor | None = None,
    metrics: Metrics | None = None,
    worktrees: GitWorktreeManager | None = None,
) -> FastAPI:
    """Create the webhook application.

    Args:
        config: Application configuration.
        runtime: Agent runtime client. Built from ``config.sandbox.connection``
            and closed on shutdown when omitted.
        tracker: Tracker client. A :class:`LinearClient` is built and closed
            on shutdown when omitted.
        executor: Workflow executor. Built from the runtime and tracker
            when omitted.
        metrics: Metrics registry served on ``/metrics``. A fresh one is
            created when omitted.
        worktrees: Worktree manager used by merge cleanup. Defaults to one
            built from ``config.worktree``.

    Returns:
        The FastAPI application.
    """
    dispatcher = TriggerDispatcher(
        config.linear.triggers,
        DeliveryDeduplicator(config.dedup.window_seconds, config.dedup.sweep_threshold),
    )
    app_metrics = metrics or Metrics()
    app_worktrees = worktrees or GitWorktreeManager(config.worktree)
    limiter = WebhookRateLimiter(config.server.rate_limit)
    cleanup = MergeCleanupHandler(config, app_worktrees, metrics=app_metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned: list[Any] = []
        app_runtime = runtime
        if app_runtime is None:
            app_runtime = _build_runtime(config)
            owned.append(app_runtime)
        app_tracker = tracker
        if app_tracker is None:
            linear = LinearClient(config.linear.api_key, config.linear.api_url)
            owned.append(linear)
            app_tracker = linear
        app_executor = executor or WorkflowExecutor(
            config,
            app_tracker,
            AgentSessionRunner(app_runtime, GitWorkspaceInspector()),
            worktrees=app_worktrees,
            metrics=app_metrics,
        )
        app.state.services = AppServices(
            runtime=app_runtime,
            tracker=app_tracker,
            dispatcher=dispatcher,
            executor=app_executor,
        )
        logger.info(
            "Webhook server ready with %d trigger rule(s) and %d workspace(s)",
            len(dispatcher.rules),
            len(config.linear.workspaces),
        )
        try:
            yield
        finally:
            for client in owned:
                await client.aclose()
            logger.info("Webhook server stopped")

    app = FastAPI(title="enhance-ticket", version=__version__, lifespan=lifespan)
    health_cache: TTLCache[str, bool] = TTLCache(maxsize=1, ttl=HEALTH_CACHE_TTL_SECONDS)

    def rate_limited(request: Request) -> JSONResponse | None:
        retry_after = limiter.check(client_key(request))
        if retry_after is None:
            return None
        return JSONResponse(
            {"error": "Rate limit exceeded"},
            status_code=429,
            headers={"retry-after": str(retry_after)},
        )

    @app.post("/webhook", response_model=None)
    async def webhook(
        request: Request, background_tasks: BackgroundTasks
    ) -> dict[str, Any] | JSONResponse:
        """Receive one webhook delivery."""
        limited = rate_limited(request)
        if limited is not None:
            return limited
        services: AppServices = request.app.state.services
        body = await request.body()

        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_signature(body, signature, config.linear.webhook_secret):
            logger.warning("Rejected webhook with invalid signature")
            app_metrics.record_webhook("unknown", "unknown", WebhookResult.INVALID_SIGNATURE)
            return JSONResponse({"error": "Invalid signature"}, status_code=401)

        try:
            payload = WebhookPayload.model_validate_json(body)
            event = to_change_event(payload, request.headers.get(DELIVERY_HEADER))
        except ValidationError as e:
            logger.error("Invalid webhook payload: %s", e.errors(include_url=False))
            app_metrics.record_webhook("unknown", "unknown", WebhookResult.INVALID_PAYLOAD)
            return JSONResponse({"error": "Invalid payload"}, status_code=400)

        logger.info("Received %s %s for %s", payload.type, payload.action, event.issue_key)
        outcome = services.dispatcher.accept(event)
        if outcome.status == DispatchStatus.DUPLICATE:
            app_metrics.record_webhook(payload.type, payload.action, WebhookResult.DEDUPLICATED)
            return _reply(status="ignored", reason="Duplicate event")
        app_metrics.record_webhook(payload.type, payload.action, WebhookResult.RECEIVED)
        if outcome.decision is None:
            return _reply(status="ignored", reason="No trigger match")

        decision = outcome.decision
        app_metrics.record_trigger(str(decision.rule.match_kind), str(decision.action))
        background_tasks.add_task(services.executor.execute, event, decision)
        return _reply(
            status="processing",
            action=str(decision.action),
            trigger=str(decision.rule.match_kind),
        )

    @app.get("/webhook", response_class=PlainTextResponse)
    async def webhook_usage() -> str:
        return USAGE_TEXT

    @app.post("/github-webhook", response_model=None)
    async def github_webhook(request: Request) -> JSONResponse:
        """Receive one GitHub delivery and clean up after merged pull requests."""
        limited = rate_limited(request)
        if limited is not None:
            return limited
        response = await cleanup.handle(
            request.headers.get(GITHUB_EVENT_HEADER),
            request.headers.get(GITHUB_DELIVERY_HEADER),
            await request.body(),
            request.headers.get(GITHUB_SIGNATURE_HEADER),
        )
        return JSONResponse(response.body, status_code=response.status_code)

    @app.get("/github-webhook", response_class=PlainTextResponse)
    async def github_webhook_usage() -> str:
        return GITHUB_USAGE_TEXT

    @app.get("/health", response_model=None)
    async def health(request: Request) -> dict[str, Any] | JSONResponse:
        """Service status, including whether the agent runtime answers.

        The runtime check is cached for a few seconds so frequent health checks
        do not load the runtime.
        """
        if not config.advanced.enable_health_check:
            return JSONResponse({"error": "Not found"}, status_code=404)

        services: AppServices = request.app.state.services
        runtime_up = health_cache.get("runtime")
        if runtime_up is None:
            try:
                runtime_up = await services.runtime.health()
            except Exception as e:
                logger.warning("Agent runtime health check failed: %s", e)
                runtime_up = False
            health_cache["runtime"] = runtime_up
            if not runtime_up:
                app_metrics.record_health_failure("runtime")

        result: dict[str, Any] = {
            "status": "healthy" if runtime_up else "degraded",
            "version": __version__,
            "timestamp": time.time(),
            "checks": {"runtime": "up" if runtime_up else "down"},
        }
        if not runtime_up:
            return JSONResponse(result, status_code=503)
        return result

    @app.get("/metrics", response_model=None)
    async def metrics_endpoint() -> Response:
        if not config.advanced.enable_metrics:
            return JSONResponse({"status": "disabled"}, status_code=404)
        return Response(app_metrics.payload(), media_type=METRICS_CONTENT_TYPE)

    return app
