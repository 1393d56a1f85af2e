"""Prometheus metrics for webhooks, triggers and agent runs.

Each :class:`Metrics` owns its own registry, so several applications (or
tests) in one process never share counters. ``GET /metrics`` serves
:meth:`Metrics.payload` in the Prometheus text format.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST

RUN_DURATION_BUCKETS = (30, 60, 300, 600, 1200, 1800, 3600)


class WebhookResult:
    """Values of the ``result`` label on webhook counters."""

    RECEIVED = "received"
    DEDUPLICATED = "deduplicated"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_PAYLOAD = "invalid_payload"


class Metrics:
    """Counters and histograms exported by the server.

    Usage:
        metrics = Metrics()
        metrics.record_webhook("Issue", "update", WebhookResult.RECEIVED)
        body = metrics.payload()
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.webhook_events = Counter(
            "enhance_ticket_webhook_events_total",
            "Total webhook events received",
            ["type", "action", "result"],
            registry=self.registry,
        )
        self.trigger_matches = Counter(
            "enhance_ticket_trigger_matches_total",
            "Total triggers matched",
            ["trigger_type", "action"],
            registry=self.registry,
        )
        self.agent_runs = Counter(
            "enhance_ticket_agent_runs_total",
            "Total agent runs by outcome",
            ["action", "outcome"],
            registry=self.registry,
        )
        self.agent_run_duration = Histogram(
            "enhance_ticket_agent_run_duration_seconds",
            "Agent run duration in seconds",
            ["action", "outcome"],
            buckets=RUN_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.health_check_failures = Counter(
            "enhance_ticket_health_check_failures_total",
            "Total health check failures",
            ["check"],
            registry=self.registry,
        )

    def record_webhook(self, event_type: str, action: str, result: str) -> None:
        self.webhook_events.labels(type=event_type, action=action, result=result).inc()

    def record_trigger(self, trigger_type: str, action: str) -> None:
        self.trigger_matches.labels(trigger_type=trigger_type, action=action).inc()

    def record_agent_run(self, action: str, success: bool, duration_seconds: float) -> None:
        """Count a finished run and observe how long it took."""
        outcome = "success" if success else "failure"
        self.agent_runs.labels(action=action, outcome=outcome).inc()
        self.agent_run_duration.labels(action=action, outcome=outcome).observe(duration_seconds)

    def record_health_failure(self, check: str) -> None:
        self.health_check_failures.labels(check=check).inc()

    def payload(self) -> bytes:
        """Current values in the Prometheus text exposition format."""
        return generate_latest(self.registry)
