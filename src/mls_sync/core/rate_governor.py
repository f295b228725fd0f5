"""
Sliding-window rate governor for quota-limited providers.

This module implements a request governor that:
- Keeps a rolling 24h history of admitted requests and their byte sizes,
  reserving a slot at admission so concurrent callers are counted in flight
- Enforces five independent windows (24h requests, 24h bytes, 1h requests,
  1h bytes, 1s requests) plus a minimum delay between requests
- Computes exactly how long to wait when a window is full and sleeps that long
- Exposes a snapshot of current usage with 80% early warnings
- Holds the shared pause state set when the provider throttles us
"""
import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .config import LimitConfig
from .telemetry import TelemetryDecision, TelemetryRecorder, create_event, get_recorder

logger = logging.getLogger(__name__)

SECOND = 1.0
MINUTE = 60.0
HOUR = 3600.0
DAY = 24 * HOUR

HOURLY_REQUEST_BUFFER_S = 60.0
HOURLY_BYTES_BUFFER_S = 300.0

MB = 1024 * 1024
GB = 1024 * 1024 * 1024

WARNING_RATIO = 0.8
CRITICAL_RATIO = 0.9


class TimeProvider(ABC):
    """Source of monotonic time and sleeping, injectable for tests."""

    @abstractmethod
    def now(self) -> float:
        """Return monotonic time in seconds."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for the given number of seconds."""
        pass


class SystemTimeProvider(TimeProvider):
    """Real time provider using the monotonic clock."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


class FakeTimeProvider(TimeProvider):
    """Fake time provider for deterministic tests; sleeping advances the clock."""

    def __init__(self, initial_time: float = 1000.0):
        self._current_time = initial_time
        self._lock = threading.Lock()
        self.sleep_history: List[float] = []

    def now(self) -> float:
        with self._lock:
            return self._current_time

    async def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleep_history.append(seconds)
            if seconds > 0:
                self._current_time += seconds

    def advance(self, seconds: float) -> None:
        """Advance time by given seconds."""
        with self._lock:
            self._current_time += seconds

    def set(self, time: float) -> None:
        """Set absolute time."""
        with self._lock:
            self._current_time = time

    @property
    def total_slept(self) -> float:
        return sum(self.sleep_history)


@dataclass(eq=False)
class RateWindowSample:
    """
    One request in the window: when it was admitted and how many bytes it returned.

    A pending sample holds its slot while the request is in flight and gets
    its byte size once the response arrives.
    """

    occurred_at: float
    byte_size: int = 0
    pending: bool = False


@dataclass(eq=False)
class Reservation:
    """A slot handed out by RateGovernor.acquire(); settle it exactly once."""

    sample: RateWindowSample
    waited_s: float = 0.0
    settled: bool = False


class PauseState:
    """
    Process-wide "do not send until" marker for one provider.

    Set when the provider throttles us so that every client sharing the
    governor waits, not just the one that saw the throttle response.
    """

    def __init__(self):
        self._paused_until: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def paused_until(self) -> Optional[float]:
        with self._lock:
            return self._paused_until

    def pause_until(self, until: float) -> None:
        """Pause until the given monotonic time; never shortens an active pause."""
        with self._lock:
            if self._paused_until is None or until > self._paused_until:
                self._paused_until = until

    def remaining(self, now: float) -> float:
        """Seconds left on the pause (0 when not paused or already expired)."""
        with self._lock:
            if self._paused_until is None:
                return 0.0
            return max(0.0, self._paused_until - now)

    def clear(self) -> None:
        with self._lock:
            self._paused_until = None


@dataclass(frozen=True)
class LimitViolation:
    """A full window and the wait needed before another request fits."""

    dimension: str
    current: float
    limit: float
    wait_s: float


@dataclass
class GovernorStats:
    """Counters describing how often the governor held requests back."""

    requests_recorded: int = 0
    waits: int = 0
    total_wait_time: float = 0.0
    waits_by_dimension: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests_recorded": self.requests_recorded,
            "waits": self.waits,
            "total_wait_time": round(self.total_wait_time, 3),
            "waits_by_dimension": dict(self.waits_by_dimension),
        }


@dataclass(frozen=True)
class GovernorSnapshot:
    """Read-only view of window usage, for dashboards and run reports."""

    requests: Dict[str, int]
    bandwidth: Dict[str, float]
    limits: Dict[str, float]
    percentages: Dict[str, float]
    warnings: Dict[str, bool]
    warning_messages: List[str]
    health_status: str
    paused_for_s: float = 0.0
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_warning(self) -> bool:
        return bool(self.warning_messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": dict(self.requests),
            "bandwidth": dict(self.bandwidth),
            "limits": dict(self.limits),
            "percentages": dict(self.percentages),
            "warnings": dict(self.warnings),
            "warning_messages": list(self.warning_messages),
            "has_warning": self.has_warning,
            "health_status": self.health_status,
            "paused_for_s": round(self.paused_for_s, 3),
            "stats": dict(self.stats),
        }


def _percent(value: float, limit: float) -> float:
    return round((value / limit) * 100, 2) if limit > 0 else 0.0


class RateGovernor:
    """
    Blocks callers until every configured quota window has room.

    One governor per provider; every ApiClient talking to that provider
    shares it. The sample list is guarded by a lock and admission is
    serialized so concurrent callers cannot both squeeze into the last slot.
    """

    def __init__(
        self,
        limits: Optional[LimitConfig] = None,
        time_provider: Optional[TimeProvider] = None,
        name: str = "default",
        recorder: Optional[TelemetryRecorder] = None,
    ):
        """
        Initialize governor.

        Args:
            limits: Quota limits (defaults to the conservative MLS values)
            time_provider: Optional time provider (defaults to monotonic time)
            name: Provider name used in logs and telemetry
            recorder: Telemetry recorder (defaults to the process recorder)
        """
        self.limits = limits or LimitConfig()
        self.time_provider = time_provider or SystemTimeProvider()
        self.name = name
        self.recorder = recorder or get_recorder()
        self.pause_state = PauseState()

        self._samples: Deque[RateWindowSample] = deque()
        self._last_request_at: Optional[float] = None
        self._total_bytes = 0
        self._lock = threading.Lock()
        self._admission_lock = asyncio.Lock()

        self._stats = GovernorStats()

    # ------------------------------------------------------------------
    # window bookkeeping
    # ------------------------------------------------------------------

    def _prune(self, now: float) -> None:
        """Drop samples older than 24h. Caller holds self._lock."""
        cutoff = now - DAY
        while self._samples and self._samples[0].occurred_at <= cutoff:
            self._samples.popleft()

    def _samples_in_window(self, now: float, window: float) -> List[RateWindowSample]:
        cutoff = now - window
        with self._lock:
            self._prune(now)
            return [s for s in self._samples if s.occurred_at > cutoff]

    def requests_in_window(self, window: float, now: Optional[float] = None) -> int:
        now = self.time_provider.now() if now is None else now
        return len(self._samples_in_window(now, window))

    def bytes_in_window(self, window: float, now: Optional[float] = None) -> int:
        now = self.time_provider.now() if now is None else now
        return sum(s.byte_size for s in self._samples_in_window(now, window))

    def _count_violation(
        self, now: float, dimension: str, window: float, limit: float, buffer_s: float
    ) -> Optional[LimitViolation]:
        samples = self._samples_in_window(now, window)
        if len(samples) < limit:
            return None
        oldest = samples[0]
        wait = window - (now - oldest.occurred_at) + buffer_s
        return LimitViolation(dimension, len(samples), limit, max(wait, 0.0))

    def _bytes_violation(
        self, now: float, dimension: str, window: float, limit_bytes: float, buffer_s: float
    ) -> Optional[LimitViolation]:
        samples = self._samples_in_window(now, window)
        used = sum(s.byte_size for s in samples)
        if used < limit_bytes:
            return None
        oldest = next(s for s in samples if s.byte_size > 0)
        wait = window - (now - oldest.occurred_at) + buffer_s
        return LimitViolation(dimension, used, limit_bytes, max(wait, 0.0))

    def check_budget(self) -> Optional[LimitViolation]:
        """
        Return the first full window, or None if a request may go now.

        Order: 24h requests, 24h bytes, 1h requests, 1h bytes, 1s requests.
        """
        now = self.time_provider.now()
        limits = self.limits

        return (
            self._count_violation(now, "requests_24h", DAY, limits.max_req_per_24h, 0.0)
            or self._bytes_violation(now, "bytes_24h", DAY, limits.max_gb_per_24h * GB, 0.0)
            or self._count_violation(
                now, "requests_hour", HOUR, limits.max_req_per_hour, HOURLY_REQUEST_BUFFER_S
            )
            or self._bytes_violation(
                now, "bytes_hour", HOUR, limits.max_mb_per_hour * MB, HOURLY_BYTES_BUFFER_S
            )
            or self._count_violation(now, "requests_second", SECOND, limits.max_req_per_second, 0.0)
        )

    def _min_delay_remaining(self) -> float:
        with self._lock:
            last = self._last_request_at
        if last is None:
            return 0.0
        since = self.time_provider.now() - last
        return max(0.0, self.limits.min_delay_between_requests - since)

    def _note_wait(self, dimension: str, wait_s: float) -> None:
        with self._lock:
            self._stats.waits += 1
            self._stats.total_wait_time += wait_s
            self._stats.waits_by_dimension[dimension] = (
                self._stats.waits_by_dimension.get(dimension, 0) + 1
            )

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    async def await_budget(self) -> float:
        """
        Wait until every window has room, then enforce the minimum delay.

        Nothing is reserved: the slot is only taken by record_request(). Use
        acquire() when other callers may be admitted while this request is
        in flight.

        Returns:
            Total seconds spent waiting
        """
        async with self._admission_lock:
            return await self._wait_for_room()

    async def acquire(self) -> Reservation:
        """
        Wait for room and reserve a slot in every window before returning.

        The reserved sample counts against the windows and the minimum delay
        immediately, so concurrent callers sharing the governor are spaced
        even while this request is in flight. Settle the reservation with
        record_request() on success or release() otherwise.

        Returns:
            Reservation carrying the seconds spent waiting
        """
        async with self._admission_lock:
            waited = await self._wait_for_room()
            now = self.time_provider.now()
            sample = RateWindowSample(occurred_at=now, pending=True)
            with self._lock:
                self._samples.append(sample)
                self._last_request_at = now
        return Reservation(sample=sample, waited_s=waited)

    def release(self, reservation: Reservation) -> None:
        """Give back an unused slot (throttled or failed request). No-op once settled."""
        with self._lock:
            if reservation.settled:
                return
            reservation.settled = True
            try:
                self._samples.remove(reservation.sample)
            except ValueError:
                pass  # already pruned
            self._last_request_at = self._samples[-1].occurred_at if self._samples else None

    async def _wait_for_room(self) -> float:
        """Sleep until a request fits. Caller holds the admission lock."""
        total_wait = 0.0
        while True:
            violation = self.check_budget()
            if violation is None:
                break

            if violation.dimension.startswith("requests_second"):
                logger.debug(
                    f"{self.name}: per-second limit reached "
                    f"({violation.current:.0f}/{violation.limit:.0f}), "
                    f"waiting {violation.wait_s:.3f}s"
                )
            else:
                logger.warning(
                    f"{self.name}: {violation.dimension} limit reached "
                    f"({violation.current:.0f}/{violation.limit:.0f}), "
                    f"waiting {violation.wait_s:.0f}s"
                )

            self._note_wait(violation.dimension, violation.wait_s)
            self.recorder.record(
                create_event(
                    provider=self.name,
                    endpoint="",
                    decision=TelemetryDecision.WAIT,
                    sleep_s=violation.wait_s,
                    window=violation.dimension,
                )
            )

            await self.time_provider.sleep(violation.wait_s)
            total_wait += violation.wait_s

        delay = self._min_delay_remaining()
        if delay > 0:
            await self.time_provider.sleep(delay)
            total_wait += delay

        return total_wait

    def record_request(self, byte_size: int = 0, reservation: Optional[Reservation] = None) -> None:
        """
        Record one completed request. Never call for failed requests.

        Args:
            byte_size: Bytes the response carried
            reservation: Slot taken by acquire(); without one a new sample
                is appended at the current time

        Raises:
            ValueError: If byte_size is negative or the reservation was already settled
        """
        if byte_size < 0:
            raise ValueError("byte_size must not be negative")

        with self._lock:
            if reservation is None:
                now = self.time_provider.now()
                self._samples.append(RateWindowSample(occurred_at=now, byte_size=byte_size))
                self._last_request_at = now
            else:
                if reservation.settled:
                    raise ValueError("reservation already settled")
                reservation.settled = True
                reservation.sample.byte_size = byte_size
                reservation.sample.pending = False
            self._total_bytes += byte_size
            self._stats.requests_recorded += 1

    def get_stats(self) -> GovernorStats:
        with self._lock:
            return GovernorStats(
                requests_recorded=self._stats.requests_recorded,
                waits=self._stats.waits,
                total_wait_time=self._stats.total_wait_time,
                waits_by_dimension=dict(self._stats.waits_by_dimension),
            )

    def snapshot(self) -> GovernorSnapshot:
        """Current usage per dimension, percentages of limits and warnings."""
        now = self.time_provider.now()
        limits = self.limits

        last_day = self.requests_in_window(DAY, now)
        last_hour = self.requests_in_window(HOUR, now)
        last_minute = self.requests_in_window(MINUTE, now)
        last_second = self.requests_in_window(SECOND, now)

        mb_last_hour = self.bytes_in_window(HOUR, now) / MB
        gb_last_day = self.bytes_in_window(DAY, now) / GB
        with self._lock:
            total_gb = self._total_bytes / GB

        percentages = {
            "requests_hourly": _percent(last_hour, limits.max_req_per_hour),
            "requests_daily": _percent(last_day, limits.max_req_per_24h),
            "bandwidth_hourly": _percent(mb_last_hour, limits.max_mb_per_hour),
            "bandwidth_daily": _percent(gb_last_day, limits.max_gb_per_24h),
        }

        warnings = {
            "requests_hourly": last_hour > limits.max_req_per_hour * WARNING_RATIO,
            "requests_daily": last_day > limits.max_req_per_24h * WARNING_RATIO,
            "bandwidth_hourly": mb_last_hour > limits.max_mb_per_hour * WARNING_RATIO,
            "bandwidth_daily": gb_last_day > limits.max_gb_per_24h * WARNING_RATIO,
        }

        messages = []
        if warnings["requests_hourly"]:
            messages.append(
                f"Hourly requests at {percentages['requests_hourly']}% "
                f"({last_hour}/{limits.max_req_per_hour})"
            )
        if warnings["requests_daily"]:
            messages.append(
                f"Daily requests at {percentages['requests_daily']}% "
                f"({last_day}/{limits.max_req_per_24h})"
            )
        if warnings["bandwidth_hourly"]:
            messages.append(
                f"Hourly bandwidth at {percentages['bandwidth_hourly']}% "
                f"({mb_last_hour:.2f}MB/{limits.max_mb_per_hour}MB)"
            )
        if warnings["bandwidth_daily"]:
            messages.append(
                f"Daily bandwidth at {percentages['bandwidth_daily']}% "
                f"({gb_last_day:.2f}GB/{limits.max_gb_per_24h}GB)"
            )

        hourly_peak = max(percentages["requests_hourly"], percentages["bandwidth_hourly"])
        if hourly_peak > CRITICAL_RATIO * 100:
            health = "critical"
        elif hourly_peak > WARNING_RATIO * 100:
            health = "warning"
        else:
            health = "healthy"

        return GovernorSnapshot(
            requests={
                "last_24_hours": last_day,
                "last_hour": last_hour,
                "last_minute": last_minute,
                "last_second": last_second,
            },
            bandwidth={
                "mb_last_hour": round(mb_last_hour, 2),
                "gb_last_24_hours": round(gb_last_day, 2),
                "total_gb": round(total_gb, 2),
            },
            limits=limits.to_dict(),
            percentages=percentages,
            warnings=warnings,
            warning_messages=messages,
            health_status=health,
            paused_for_s=self.pause_state.remaining(now),
            stats=self.get_stats().to_dict(),
        )

    def reset(self) -> None:
        """Forget all history (new session or tests)."""
        with self._lock:
            self._samples.clear()
            self._last_request_at = None
            self._total_bytes = 0
            self._stats = GovernorStats()
        self.pause_state.clear()
