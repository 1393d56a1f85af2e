"""Structured logging configuration for enhance-ticket."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any

# Context fields rendered by the formatters when present on a record.
CONTEXT_KEYS = ("issue_key", "session_id", "action")

DIAGNOSTIC_TAGS_ENV_VAR = "ENHANCE_TICKET_DIAGNOSTIC_TAGS"


class DiagnosticFilter(logging.Filter):
    """Filter that gates debug log messages based on diagnostic tags.

    DEBUG records carrying a ``diagnostic_tag`` attribute (set via the
    ``extra`` dict) are only emitted when their tag is enabled. Records at
    other levels, or without a tag, always pass through.

    Usage in application code::

        logger.debug(
            "Polled %d events", len(page.events),
            extra={"diagnostic_tag": "polling"},
        )

    Configuration::

        ENHANCE_TICKET_DIAGNOSTIC_TAGS=polling,permissions
        ENHANCE_TICKET_DIAGNOSTIC_TAGS=*

    Attributes:
        enabled_tags: Frozenset of tag strings that are allowed through.
        allow_all: If ``True``, all tagged diagnostics are emitted.
    """

    def __init__(self, enabled_tags: frozenset[str] | None = None) -> None:
        super().__init__()
        self.enabled_tags: frozenset[str] = enabled_tags or frozenset()
        self.allow_all: bool = "*" in self.enabled_tags

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno != logging.DEBUG:
            return True

        tag: str | None = getattr(record, "diagnostic_tag", None)
        if tag is None:
            return True
        if self.allow_all:
            return True
        return tag in self.enabled_tags

    @classmethod
    def from_config_string(cls, tags_csv: str) -> DiagnosticFilter:
        """Create a filter from a comma-separated configuration string.

        Args:
            tags_csv: Comma-separated list of tags (e.g. ``"polling,permissions"``).
                ``"*"`` enables all tags. An empty string enables none.

        Returns:
            A configured ``DiagnosticFilter`` instance.
        """
        if not tags_csv.strip():
            return cls(frozenset())
        tags = frozenset(t.strip() for t in tags_csv.split(",") if t.strip())
        return cls(tags)


def _component(record: logging.LogRecord) -> str:
    # "enhance_ticket.runner" -> "runner"
    return record.name.split(".")[-1] if "." in record.name else record.name


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs structured log messages.

    Includes timestamp, level, component, message, and the run context
    (issue key, session id, action) when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%d %H:%M:%S.%f")[
            :-3
        ]

        parts = [
            f"{timestamp}",
            f"[{record.levelname:8}]",
            f"[{_component(record):12}]",
        ]

        context_parts = []
        for key in CONTEXT_KEYS:
            if hasattr(record, key):
                context_parts.append(f"{key}={getattr(record, key)}")
        if context_parts:
            parts.append(f"[{' '.join(context_parts)}]")

        parts.append(record.getMessage())

        if record.exc_info:
            parts.append(self.formatException(record.exc_info))

        return " ".join(parts)


class JSONFormatter(logging.Formatter):
    """Formatter that outputs JSON log messages for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "component": _component(record),
            "message": record.getMessage(),
        }

        for key in (*CONTEXT_KEYS, "termination_reason", "files_modified"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class ContextAdapter(logging.LoggerAdapter[logging.Logger]):
    """Logger adapter that adds context to all log messages.

    Usage:
        logger = get_logger(__name__)
        run_logger = logger.with_context(issue_key="ENG-42", session_id="et-eng-42-1")
        run_logger.info("Session started")
    """

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.get("extra", {})
        if self.extra is not None:
            extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


class EnhanceTicketLogger(logging.Logger):
    """Custom logger with context support."""

    def with_context(self, **context: Any) -> ContextAdapter:
        """Create a logger adapter with additional context.

        Args:
            **context: Context fields to add to all log messages.

        Returns:
            ContextAdapter with the specified context.
        """
        return ContextAdapter(self, context)


logging.setLoggerClass(EnhanceTicketLogger)


def get_logger(name: str) -> EnhanceTicketLogger:
    """Get a logger with the custom EnhanceTicketLogger class.

    Args:
        name: Logger name (typically __name__).

    Returns:
        EnhanceTicketLogger instance.
    """
    return logging.getLogger(name)  # type: ignore[return-value]


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    replace_handlers: bool = True,
    diagnostic_tags: str = "",
) -> None:
    """Configure logging for the application.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        json_format: If True, output JSON-formatted logs.
        replace_handlers: If True, remove existing handlers before adding new ones.
        diagnostic_tags: Comma-separated list of diagnostic tags to enable.
            ``"*"`` enables all tagged diagnostics.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if replace_handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(StructuredFormatter())

    handler.addFilter(DiagnosticFilter.from_config_string(diagnostic_tags))

    root_logger.addHandler(handler)

    logging.getLogger("enhance_ticket").setLevel(numeric_level)
    # httpx logs every request at INFO, which drowns out run logs.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))


def log_run_summary(
    logger: logging.Logger,
    issue_key: str,
    action: str,
    session_id: str,
    termination_reason: str,
    files_modified: int,
    summary: str,
) -> None:
    """Log a summary of a finished agent run.

    Args:
        logger: Logger to use.
        issue_key: The tracker issue identifier.
        action: The workflow action that launched the run.
        session_id: The agent session id.
        termination_reason: Why the run ended (completed, error, timeout, terminated).
        files_modified: Number of files the run modified.
        summary: Short human-readable summary of the run.
    """
    short = summary[:200] + "..." if len(summary) > 200 else summary
    short = short.replace("\n", " ")

    if termination_reason == "completed":
        log_method = logger.info
    elif termination_reason == "error":
        log_method = logger.error
    else:
        log_method = logger.warning

    log_method(
        f"Agent run {termination_reason} for {issue_key}: {short}",
        extra={
            "issue_key": issue_key,
            "action": action,
            "session_id": session_id,
            "termination_reason": termination_reason,
            "files_modified": files_modified,
        },
    )
