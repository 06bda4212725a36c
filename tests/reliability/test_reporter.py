"""Tests for the bounded error reporter."""

from __future__ import annotations

import logging
from datetime import UTC

import pytest

from encore.reliability.reporter import MAX_EVENTS, ErrorEvent, ErrorLevel, ErrorReporter

pytestmark = pytest.mark.unit


class TestErrorLevel:
    def test_values(self):
        assert [level.value for level in ErrorLevel] == ["info", "warning", "error", "critical"]

    def test_log_levels(self):
        assert ErrorLevel.INFO.log_level == logging.INFO
        assert ErrorLevel.CRITICAL.log_level == logging.CRITICAL


class TestErrorReporter:
    """Test event storage, subscription and logging."""

    def test_log_returns_event(self):
        reporter = ErrorReporter()
        cause = RuntimeError("connection reset")

        event = reporter.log("error", "Operation llm-chat failed", cause, {"service": "llm-chat"})

        assert isinstance(event, ErrorEvent)
        assert event.level is ErrorLevel.ERROR
        assert event.cause is cause
        assert event.context == {"service": "llm-chat"}
        assert event.timestamp.tzinfo is UTC

    def test_event_context_is_read_only_copy(self):
        reporter = ErrorReporter()
        context = {"service": "music-api"}

        event = reporter.log(ErrorLevel.WARNING, "slow response", context=context)
        context["service"] = "mutated"

        assert event.context["service"] == "music-api"
        with pytest.raises(TypeError):
            event.context["service"] = "x"  # type: ignore[index]

    def test_invalid_level_rejected(self):
        reporter = ErrorReporter()

        with pytest.raises(ValueError):
            reporter.log("debug", "not a reportable level")

        assert len(reporter) == 0

    def test_buffer_capped_at_max_events(self):
        """Test 1001 events keep only the newest 1000, in order."""
        reporter = ErrorReporter()

        for i in range(MAX_EVENTS + 1):
            reporter.log("info", f"event {i}")

        events = reporter.get_notifications()
        assert len(events) == MAX_EVENTS
        assert events[0].message == "event 1"
        assert events[-1].message == f"event {MAX_EVENTS}"
        assert [e.message for e in events] == [f"event {i}" for i in range(1, MAX_EVENTS + 1)]

    def test_custom_capacity(self):
        reporter = ErrorReporter(max_events=2)

        for message in ("a", "b", "c"):
            reporter.log("info", message)

        assert [e.message for e in reporter.get_notifications()] == ["b", "c"]

    def test_filter_by_level(self):
        reporter = ErrorReporter()
        reporter.log("info", "using fallback")
        reporter.log("error", "failed")
        reporter.log(ErrorLevel.ERROR, "failed again")

        errors = reporter.get_notifications("error")

        assert [e.message for e in errors] == ["failed", "failed again"]
        assert reporter.get_notifications(ErrorLevel.CRITICAL) == []

    def test_get_notifications_returns_snapshot(self):
        reporter = ErrorReporter()
        reporter.log("info", "one")

        snapshot = reporter.get_notifications()
        reporter.log("info", "two")

        assert len(snapshot) == 1

    def test_subscribers_receive_new_events_only(self):
        reporter = ErrorReporter()
        reporter.log("info", "before subscribe")
        received: list[str] = []

        reporter.subscribe(lambda event: received.append(event.message))
        reporter.log("warning", "after subscribe")

        assert received == ["after subscribe"]

    def test_unsubscribe_is_idempotent(self):
        reporter = ErrorReporter()
        received: list[str] = []

        unsubscribe = reporter.subscribe(lambda event: received.append(event.message))
        reporter.log("info", "first")
        unsubscribe()
        unsubscribe()
        reporter.log("info", "second")

        assert received == ["first"]

    def test_failing_listener_does_not_break_reporting(self, caplog):
        """Test a raising listener is logged and the others still run."""
        reporter = ErrorReporter()
        received: list[str] = []

        def broken(event: ErrorEvent) -> None:
            raise RuntimeError("listener bug")

        reporter.subscribe(broken)
        reporter.subscribe(lambda event: received.append(event.message))

        with caplog.at_level(logging.ERROR, logger="encore.reliability.reporter"):
            event = reporter.log("warning", "circuit open")

        assert received == ["circuit open"]
        assert reporter.get_notifications() == [event]
        assert any("Error listener raised" in r.getMessage() for r in caplog.records)

    def test_events_mirrored_to_logger(self, caplog):
        reporter = ErrorReporter()
        cause = ValueError("bad payload")

        with caplog.at_level(logging.INFO, logger="encore.reliability.reporter"):
            reporter.log("info", "Using fallback for music-api")
            reporter.log("critical", "Operation music-api failed", cause)

        info, critical = caplog.records[-2:]
        assert info.levelno == logging.INFO
        assert info.exc_info is None
        assert critical.levelno == logging.CRITICAL
        assert critical.exc_info[1] is cause

    def test_clear(self):
        reporter = ErrorReporter()
        received: list[str] = []
        reporter.subscribe(lambda event: received.append(event.message))
        reporter.log("info", "one")

        reporter.clear()
        reporter.log("info", "two")

        assert [e.message for e in reporter.get_notifications()] == ["two"]
        assert received == ["one", "two"]

    def test_to_dict(self):
        event = ErrorReporter().log("error", "failed", KeyError("id"), {"service": "db"})

        data = event.to_dict()

        assert data["level"] == "error"
        assert data["error_type"] == "KeyError"
        assert data["context"] == {"service": "db"}
        assert data["timestamp"].endswith("+00:00")
