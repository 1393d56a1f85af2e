"""Tests for logging configuration."""

from __future__ import annotations

import json
import logging

import pytest

from enhance_ticket.logging import (
    ContextAdapter,
    DiagnosticFilter,
    JSONFormatter,
    StructuredFormatter,
    get_logger,
    log_run_summary,
    setup_logging,
)


def make_record(
    level: int = logging.INFO, msg: str = "hello", **extra: object
) -> logging.LogRecord:
    record = logging.LogRecord("enhance_ticket.runner", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestDiagnosticFilter:
    """Tests for DiagnosticFilter."""

    def test_untagged_debug_passes(self) -> None:
        assert DiagnosticFilter().filter(make_record(logging.DEBUG)) is True

    def test_tagged_debug_requires_enabled_tag(self) -> None:
        tagged = make_record(logging.DEBUG, diagnostic_tag="polling")
        assert DiagnosticFilter().filter(tagged) is False
        assert DiagnosticFilter(frozenset({"polling"})).filter(tagged) is True
        assert DiagnosticFilter(frozenset({"permissions"})).filter(tagged) is False

    def test_other_levels_pass(self) -> None:
        record = make_record(logging.INFO, diagnostic_tag="polling")
        assert DiagnosticFilter().filter(record) is True

    def test_from_config_string(self) -> None:
        assert DiagnosticFilter.from_config_string("").enabled_tags == frozenset()
        parsed = DiagnosticFilter.from_config_string(" polling, permissions ,")
        assert parsed.enabled_tags == frozenset({"polling", "permissions"})
        assert DiagnosticFilter.from_config_string("*").allow_all is True


class TestFormatters:
    def test_structured_includes_context(self) -> None:
        record = make_record(issue_key="ENG-1", session_id="quick-eng-1-abc")
        line = StructuredFormatter().format(record)
        assert "[INFO    ]" in line
        assert "[runner      ]" in line
        assert "[issue_key=ENG-1 session_id=quick-eng-1-abc]" in line
        assert line.endswith("hello")

    def test_json(self) -> None:
        record = make_record(logging.WARNING, "slow %s", action="quick", files_modified=2)
        record.args = ("run",)
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "WARNING"
        assert data["component"] == "runner"
        assert data["message"] == "slow run"
        assert data["action"] == "quick"
        assert data["files_modified"] == 2
        assert "issue_key" not in data


class TestContextAdapter:
    def test_with_context_adds_extra(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = get_logger("enhance_ticket.tests.context")
        adapter = logger.with_context(issue_key="ENG-7")
        assert isinstance(adapter, ContextAdapter)

        with caplog.at_level(logging.INFO, logger="enhance_ticket.tests.context"):
            adapter.info("started", extra={"action": "plan"})

        (record,) = caplog.records
        assert record.issue_key == "ENG-7"  # type: ignore[attr-defined]
        assert record.action == "plan"  # type: ignore[attr-defined]


class TestLogRunSummary:
    @pytest.mark.parametrize(
        ("reason", "level"),
        [
            ("completed", logging.INFO),
            ("error", logging.ERROR),
            ("timeout", logging.WARNING),
            ("terminated", logging.WARNING),
        ],
    )
    def test_level_follows_reason(
        self, caplog: pytest.LogCaptureFixture, reason: str, level: int
    ) -> None:
        logger = logging.getLogger("enhance_ticket.tests.summary")
        with caplog.at_level(logging.DEBUG, logger="enhance_ticket.tests.summary"):
            log_run_summary(logger, "ENG-1", "quick", "s-1", reason, 3, "line one\nline two")

        (record,) = caplog.records
        assert record.levelno == level
        assert record.getMessage() == f"Agent run {reason} for ENG-1: line one line two"
        assert record.files_modified == 3  # type: ignore[attr-defined]

    def test_long_summary_is_truncated(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("enhance_ticket.tests.summary")
        with caplog.at_level(logging.INFO, logger="enhance_ticket.tests.summary"):
            log_run_summary(logger, "ENG-1", "quick", "s-1", "completed", 0, "x" * 300)
        assert caplog.records[0].getMessage().endswith("x" * 200 + "...")


class TestSetupLogging:
    def test_installs_single_handler(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("DEBUG", json_format=True, diagnostic_tags="polling")
            setup_logging("DEBUG", json_format=True, diagnostic_tags="polling")
            assert len(root.handlers) == 1
            handler = root.handlers[0]
            assert isinstance(handler.formatter, JSONFormatter)
            (log_filter,) = handler.filters
            assert isinstance(log_filter, DiagnosticFilter)
            assert log_filter.enabled_tags == frozenset({"polling"})
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
