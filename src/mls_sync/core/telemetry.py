"""
Structured telemetry for the rate governor and API client.

This module provides structured logging capabilities for understanding:
- Quota utilization per provider
- Governor waits and which window caused them
- Throttle responses, their classification and the pause that followed
- Request failures
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class TelemetryLevel(Enum):
    """Telemetry verbosity levels."""
    INFO = "info"
    DEBUG = "debug"


class TelemetryDecision(Enum):
    """What happened to a request on its way out."""
    ALLOW = "allow"          # Request sent without waiting
    WAIT = "wait"            # Governor held the request for a quota window
    PAUSE = "pause"          # Request waited on the shared pause state
    THROTTLE = "throttle"    # Provider answered with a throttle response
    EXHAUSTED = "exhausted"  # Throttle retries used up
    FAILED = "failed"        # Transport error, timeout or bad status


# Decisions logged at INFO even when the recorder is not in DEBUG mode
_NOTABLE_DECISIONS = {
    TelemetryDecision.WAIT.value,
    TelemetryDecision.PAUSE.value,
    TelemetryDecision.THROTTLE.value,
    TelemetryDecision.EXHAUSTED.value,
    TelemetryDecision.FAILED.value,
}


@dataclass
class TelemetryEvent:
    """
    A single telemetry event capturing governor or client activity.

    Attributes:
        timestamp: ISO 8601 timestamp of event
        provider: Provider name (e.g., "mls_grid")
        endpoint: URL being accessed
        status: HTTP status code (None if not yet executed)
        elapsed_ms: Request duration in milliseconds
        decision: Decision taken (allow, wait, throttle, ...)
        sleep_s: Time slept before or after the request
        byte_size: Response size recorded with the governor
        attempt: Retry attempt number (0 for first attempt)
        window: Quota window or throttle kind behind a wait
    """
    timestamp: str
    provider: str
    endpoint: str
    status: Optional[int]
    elapsed_ms: float
    decision: str
    sleep_s: float = 0.0
    byte_size: int = 0
    attempt: int = 0
    window: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging."""
        return {k: v for k, v in asdict(self).items() if v is not None or k == "status"}

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_keyvalue(self) -> str:
        """Convert event to key=value format."""
        return " ".join(f"{key}={value}" for key, value in self.to_dict().items())


@dataclass
class TelemetryStats:
    """
    Aggregated statistics for telemetry analysis.

    Useful for tests and runtime monitoring.
    """
    total_events: int = 0
    total_sleeps: int = 0
    total_sleep_time: float = 0.0
    total_elapsed_time: float = 0.0
    total_bytes: int = 0
    decisions_by_type: Dict[str, int] = field(default_factory=dict)
    status_codes: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        avg_latency = (
            self.total_elapsed_time / self.total_events
            if self.total_events > 0
            else 0.0
        )

        return {
            "total_events": self.total_events,
            "total_sleeps": self.total_sleeps,
            "total_sleep_time": self.total_sleep_time,
            "total_bytes": self.total_bytes,
            "avg_latency_ms": round(avg_latency, 2),
            "decisions_by_type": self.decisions_by_type,
            "status_codes": self.status_codes,
        }


class TelemetryRecorder:
    """
    Records and emits structured telemetry for outbound traffic.

    Features:
    - Structured logging in JSON or key=value format
    - Configurable verbosity (info/debug)
    - Optional in-memory statistics collection
    - Thread-safe operation
    """

    def __init__(
        self,
        level: TelemetryLevel = TelemetryLevel.INFO,
        format_json: bool = True,
        collect_stats: bool = False,
        keep_events: bool = False,
    ):
        """
        Initialize telemetry recorder.

        Args:
            level: Logging verbosity level
            format_json: If True, log as JSON; otherwise use key=value
            collect_stats: If True, collect in-memory statistics
            keep_events: If True, keep every event for later retrieval (tests)
        """
        self.level = level
        self.format_json = format_json
        self.collect_stats = collect_stats
        self.keep_events = keep_events

        self._stats = TelemetryStats()
        self._stats_lock = threading.Lock()

        self._events: List[TelemetryEvent] = []
        self._events_lock = threading.Lock()

    def record(self, event: TelemetryEvent) -> None:
        """Log the event and fold it into stats and history."""
        if self.format_json:
            log_message = f"telemetry {event.to_json()}"
        else:
            log_message = f"telemetry {event.to_keyvalue()}"

        if self.level == TelemetryLevel.DEBUG:
            logger.debug(log_message)
        elif event.decision in _NOTABLE_DECISIONS or (event.status and event.status >= 400):
            logger.info(log_message)
        else:
            logger.debug(log_message)

        if self.collect_stats:
            with self._stats_lock:
                self._stats.total_events += 1
                self._stats.total_elapsed_time += event.elapsed_ms
                self._stats.total_bytes += event.byte_size

                if event.sleep_s > 0:
                    self._stats.total_sleeps += 1
                    self._stats.total_sleep_time += event.sleep_s

                self._stats.decisions_by_type[event.decision] = (
                    self._stats.decisions_by_type.get(event.decision, 0) + 1
                )

                if event.status:
                    self._stats.status_codes[event.status] = (
                        self._stats.status_codes.get(event.status, 0) + 1
                    )

        if self.keep_events:
            with self._events_lock:
                self._events.append(event)

    def get_stats(self) -> TelemetryStats:
        """Get current statistics snapshot."""
        with self._stats_lock:
            return TelemetryStats(
                total_events=self._stats.total_events,
                total_sleeps=self._stats.total_sleeps,
                total_sleep_time=self._stats.total_sleep_time,
                total_elapsed_time=self._stats.total_elapsed_time,
                total_bytes=self._stats.total_bytes,
                decisions_by_type=self._stats.decisions_by_type.copy(),
                status_codes=self._stats.status_codes.copy(),
            )

    def reset_stats(self) -> None:
        """Reset statistics."""
        with self._stats_lock:
            self._stats = TelemetryStats()

    def get_events(self, decision: Optional[TelemetryDecision] = None) -> List[TelemetryEvent]:
        """Get recorded events, optionally only those with one decision."""
        with self._events_lock:
            events = self._events.copy()
        if decision is None:
            return events
        return [e for e in events if e.decision == decision.value]

    def clear_events(self) -> None:
        """Clear event history."""
        with self._events_lock:
            self._events.clear()


_global_recorder: Optional[TelemetryRecorder] = None
_recorder_lock = threading.Lock()


def get_recorder() -> TelemetryRecorder:
    """
    Get the process-default telemetry recorder.

    Creates a default recorder if none exists. The default does not keep
    event history so long-running syncs do not grow memory.
    """
    global _global_recorder

    if _global_recorder is None:
        with _recorder_lock:
            if _global_recorder is None:
                _global_recorder = TelemetryRecorder()

    return _global_recorder


def set_recorder(recorder: TelemetryRecorder) -> None:
    """Replace the process-default telemetry recorder."""
    global _global_recorder

    with _recorder_lock:
        _global_recorder = recorder


def create_event(
    provider: str,
    endpoint: str,
    decision: TelemetryDecision,
    status: Optional[int] = None,
    elapsed_ms: float = 0.0,
    sleep_s: float = 0.0,
    byte_size: int = 0,
    attempt: int = 0,
    window: str = "",
) -> TelemetryEvent:
    """Helper to create a telemetry event stamped with the current UTC time."""
    return TelemetryEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        provider=provider,
        endpoint=endpoint,
        status=status,
        elapsed_ms=elapsed_ms,
        decision=decision.value,
        sleep_s=sleep_s,
        byte_size=byte_size,
        attempt=attempt,
        window=window,
    )
