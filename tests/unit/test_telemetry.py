"""
Unit tests for telemetry module.

Tests verify:
- Structured event creation with required fields
- JSON and key=value formatting
- Statistics collection and aggregation
- Thread-safe recorder operations
- Event history for testing
"""
import json
import logging
import threading

import pytest

from mls_sync.core.telemetry import (
    TelemetryDecision,
    TelemetryEvent,
    TelemetryLevel,
    TelemetryRecorder,
    TelemetryStats,
    create_event,
    get_recorder,
    set_recorder,
)


def make_event(**overrides) -> TelemetryEvent:
    values = dict(
        timestamp="2025-10-15T09:05:00.123+00:00",
        provider="mls_grid",
        endpoint="https://api.mlsgrid.com/v2/Property",
        status=200,
        elapsed_ms=234.5,
        decision="allow",
        sleep_s=0.0,
        byte_size=2048,
        attempt=0,
        window="",
    )
    values.update(overrides)
    return TelemetryEvent(**values)


class TestTelemetryEvent:
    """Test TelemetryEvent data structure and serialization."""

    def test_event_to_dict(self):
        """Test event serialization to dictionary."""
        result = make_event().to_dict()

        assert result["provider"] == "mls_grid"
        assert result["endpoint"] == "https://api.mlsgrid.com/v2/Property"
        assert result["status"] == 200
        assert result["elapsed_ms"] == 234.5
        assert result["decision"] == "allow"
        assert result["byte_size"] == 2048
        assert result["attempt"] == 0

    def test_event_to_json(self):
        """Test event serialization to JSON."""
        parsed = json.loads(make_event(decision="throttle", window="bytes").to_json())

        assert parsed["decision"] == "throttle"
        assert parsed["window"] == "bytes"

    def test_event_to_keyvalue(self):
        """Test event serialization to key=value format."""
        result = make_event().to_keyvalue()

        assert "provider=mls_grid" in result
        assert "status=200" in result
        assert "decision=allow" in result

    def test_event_with_none_status(self):
        """Status stays present even before a request completes."""
        result = make_event(status=None, decision="wait").to_dict()

        assert "status" in result
        assert result["status"] is None


class TestTelemetryStats:
    """Test TelemetryStats aggregation."""

    def test_stats_initialization(self):
        stats = TelemetryStats()

        assert stats.total_events == 0
        assert stats.total_bytes == 0
        assert stats.decisions_by_type == {}

    def test_stats_avg_latency_no_requests(self):
        assert TelemetryStats().to_dict()["avg_latency_ms"] == 0.0


class TestTelemetryRecorder:
    """Test TelemetryRecorder functionality."""

    def test_recorder_collects_stats(self):
        recorder = TelemetryRecorder(collect_stats=True)

        recorder.record(make_event(elapsed_ms=100.0, byte_size=10))
        recorder.record(make_event(elapsed_ms=300.0, byte_size=30))
        recorder.record(make_event(decision="wait", status=None, elapsed_ms=0.0, sleep_s=3660.0, byte_size=0))
        recorder.record(make_event(decision="throttle", status=429, elapsed_ms=0.0, sleep_s=3900.0, byte_size=0))

        stats = recorder.get_stats()
        assert stats.total_events == 4
        assert stats.total_sleeps == 2
        assert stats.total_sleep_time == 7560.0
        assert stats.total_bytes == 40
        assert stats.decisions_by_type == {"allow": 2, "wait": 1, "throttle": 1}
        assert stats.status_codes == {200: 2, 429: 1}
        assert stats.to_dict()["avg_latency_ms"] == 100.0

    def test_stats_not_collected_by_default(self):
        recorder = TelemetryRecorder()
        recorder.record(make_event())

        assert recorder.get_stats().total_events == 0

    def test_recorder_event_history(self):
        recorder = TelemetryRecorder(keep_events=True)
        recorder.record(make_event())
        recorder.record(make_event(decision="wait"))

        assert len(recorder.get_events()) == 2
        assert len(recorder.get_events(TelemetryDecision.WAIT)) == 1
        assert recorder.get_events(TelemetryDecision.EXHAUSTED) == []

    def test_history_off_by_default(self):
        recorder = TelemetryRecorder()
        recorder.record(make_event())

        assert recorder.get_events() == []

    def test_recorder_reset_and_clear(self):
        recorder = TelemetryRecorder(collect_stats=True, keep_events=True)
        recorder.record(make_event())

        recorder.reset_stats()
        recorder.clear_events()

        assert recorder.get_stats().total_events == 0
        assert recorder.get_events() == []

    def test_notable_decisions_logged_at_info(self, caplog):
        recorder = TelemetryRecorder(format_json=False)

        with caplog.at_level(logging.INFO, logger="mls_sync.core.telemetry"):
            recorder.record(make_event())
            recorder.record(make_event(decision="throttle", status=429))

        messages = [r.getMessage() for r in caplog.records if r.levelno == logging.INFO]
        assert len(messages) == 1
        assert "decision=throttle" in messages[0]

    def test_debug_level_logs_everything_at_debug(self, caplog):
        recorder = TelemetryRecorder(level=TelemetryLevel.DEBUG)

        with caplog.at_level(logging.DEBUG, logger="mls_sync.core.telemetry"):
            recorder.record(make_event(decision="failed", status=500))

        assert [r.levelno for r in caplog.records] == [logging.DEBUG]

    def test_recorder_thread_safety(self):
        """Concurrent records are all counted."""
        recorder = TelemetryRecorder(collect_stats=True, keep_events=True)

        def record_events(count):
            for _ in range(count):
                recorder.record(make_event())

        threads = [threading.Thread(target=record_events, args=(50,)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert recorder.get_stats().total_events == 400
        assert len(recorder.get_events()) == 400


class TestHelperFunctions:
    """Test module-level helpers."""

    def test_create_event(self):
        event = create_event(
            provider="census",
            endpoint="https://api.census.gov/data.json",
            decision=TelemetryDecision.PAUSE,
            sleep_s=60.0,
            attempt=2,
            window="unclassified",
        )

        assert event.decision == "pause"
        assert event.status is None
        assert event.sleep_s == 60.0
        assert event.attempt == 2
        assert event.timestamp.endswith("+00:00")

    def test_get_recorder_singleton(self):
        assert get_recorder() is get_recorder()

    def test_default_recorder_keeps_no_history(self):
        set_recorder(None)
        try:
            recorder = get_recorder()
            assert recorder.keep_events is False
        finally:
            set_recorder(TelemetryRecorder())

    def test_set_recorder_custom(self):
        custom = TelemetryRecorder(collect_stats=True)
        set_recorder(custom)
        try:
            assert get_recorder() is custom
        finally:
            set_recorder(TelemetryRecorder())


@pytest.mark.parametrize(
    "decision,value",
    [
        (TelemetryDecision.ALLOW, "allow"),
        (TelemetryDecision.WAIT, "wait"),
        (TelemetryDecision.PAUSE, "pause"),
        (TelemetryDecision.THROTTLE, "throttle"),
        (TelemetryDecision.EXHAUSTED, "exhausted"),
        (TelemetryDecision.FAILED, "failed"),
    ],
)
def test_decision_values(decision, value):
    assert decision.value == value
