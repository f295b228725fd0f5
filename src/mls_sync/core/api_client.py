"""
Quota-aware API client with throttle recovery and pagination.

Every request waits on the provider's shared pause state and on the rate
governor before it is sent. Throttle responses are classified from the
provider's error message and answered with a pause sized to the violated
quota, then the same request is retried a bounded number of times.
"""
import inspect
import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .cancellation import EmergencyStop
from .config import ProviderConfig
from .datasource import DataSource, Page, PageHandler, PageParser, RecordFilter, RequestSpec
from .errors import ApiClientError, ApiResponseError, RateLimitExhaustedError
from .rate_governor import RateGovernor
from .telemetry import TelemetryDecision, TelemetryRecorder, create_event
from .transport import AiohttpTransport, HttpResponse, Transport

logger = logging.getLogger(__name__)

STATS_LOG_INTERVAL = 100
WARNING_LOG_INTERVAL = 50


class ThrottleKind(Enum):
    """Which provider quota a throttle response complained about."""
    BYTES = "bytes"
    REQUESTS = "requests"
    UNCLASSIFIED = "unclassified"


class StopReason(Enum):
    """Why a pagination loop ended."""
    EXHAUSTED = "exhausted"  # no next link
    MAX_PAGES = "max_pages"
    CANCELLED = "cancelled"  # emergency stop tripped


def extract_throttle_message(body_text: str) -> str:
    """
    Pull the human-readable message out of a throttle response body.

    Looks at error.details[0].message, then error.message, and falls back
    to the raw body text.
    """
    try:
        payload = json.loads(body_text)
    except ValueError:
        return body_text

    if not isinstance(payload, dict):
        return body_text

    error = payload.get("error")
    if not isinstance(error, dict):
        return body_text

    details = error.get("details")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        message = details[0].get("message")
        if message:
            return str(message)

    if error.get("message"):
        return str(error["message"])

    return body_text


def classify_throttle(message: str) -> ThrottleKind:
    """Best-effort classification of a throttle message."""
    lowered = message.lower()
    if "MB" in message or "GB" in message or "downloaded" in lowered:
        return ThrottleKind.BYTES
    if "requests" in lowered:
        return ThrottleKind.REQUESTS
    return ThrottleKind.UNCLASSIFIED


def throttle_wait(kind: ThrottleKind, attempt: int, config: ProviderConfig) -> float:
    """
    Seconds to pause after a throttle response.

    Classified violations wait out the provider's quota window plus buffer.
    Unclassified ones back off exponentially from backoff_base_s, capped at
    backoff_max_s.
    """
    if kind is not ThrottleKind.UNCLASSIFIED:
        return config.cooldown_s
    return min(config.backoff_base_s * (2 ** attempt), config.backoff_max_s)


@dataclass
class ApiClientStats:
    """Session counters for one client."""
    requests: int = 0
    throttles: int = 0
    retries: int = 0
    failures: int = 0
    time_paused: float = 0.0
    bytes_downloaded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "throttles": self.throttles,
            "retries": self.retries,
            "failures": self.failures,
            "time_paused": round(self.time_paused, 3),
            "bytes_downloaded": self.bytes_downloaded,
            "mb_downloaded": round(self.bytes_downloaded / (1024 * 1024), 2),
        }


@dataclass
class PaginationResult:
    """Outcome of a for_each_page loop."""
    pages_fetched: int = 0
    records_fetched: int = 0
    records_delivered: int = 0
    stop_reason: StopReason = StopReason.EXHAUSTED
    next_link: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.stop_reason is StopReason.CANCELLED


class ApiClient:
    """
    Fetches pages from one data source under a shared rate governor.

    Several clients may share a governor; they then share its quota windows
    and its pause state.
    """

    def __init__(
        self,
        source: DataSource,
        governor: RateGovernor,
        transport: Optional[Transport] = None,
        provider_config: Optional[ProviderConfig] = None,
        recorder: Optional[TelemetryRecorder] = None,
    ):
        """
        Initialize client.

        Args:
            source: Data source that builds requests and parses pages
            governor: Rate governor for the source's provider
            transport: HTTP transport (defaults to aiohttp)
            provider_config: Timeouts, throttle status and retry policy
            recorder: Telemetry recorder (defaults to the governor's)
        """
        self.source = source
        self.governor = governor
        self.transport = transport or AiohttpTransport()
        self.config = provider_config or ProviderConfig(base_url="")
        self.recorder = recorder or governor.recorder

        self._stats = ApiClientStats()
        self._lock = threading.Lock()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.transport.close()

    # ------------------------------------------------------------------
    # single request
    # ------------------------------------------------------------------

    async def _wait_for_pause(self, spec: RequestSpec) -> None:
        time_provider = self.governor.time_provider
        remaining = self.governor.pause_state.remaining(time_provider.now())
        if remaining <= 0:
            return

        logger.info(f"{self.source.name}: paused after throttle, waiting {remaining:.0f}s")
        self.recorder.record(
            create_event(
                provider=self.source.name,
                endpoint=spec.url,
                decision=TelemetryDecision.PAUSE,
                sleep_s=remaining,
            )
        )
        await time_provider.sleep(remaining)
        with self._lock:
            self._stats.time_paused += remaining

    def _fail(self, error: ApiClientError, spec: RequestSpec, attempt: int, status=None):
        with self._lock:
            self._stats.failures += 1
        self.recorder.record(
            create_event(
                provider=self.source.name,
                endpoint=spec.url,
                decision=TelemetryDecision.FAILED,
                status=status,
                attempt=attempt,
            )
        )
        logger.error(f"{self.source.name}: {error}")
        return error

    async def _send(self, spec: RequestSpec, attempt: int) -> HttpResponse:
        try:
            return await self.transport.send(spec, self.config.timeout_s)
        except ApiClientError as e:
            raise self._fail(e, spec, attempt)

    def _handle_throttle(self, spec: RequestSpec, response: HttpResponse, attempt: int) -> None:
        message = extract_throttle_message(response.text())
        kind = classify_throttle(message)

        with self._lock:
            self._stats.throttles += 1

        if attempt >= self.config.max_throttle_retries:
            self.recorder.record(
                create_event(
                    provider=self.source.name,
                    endpoint=spec.url,
                    decision=TelemetryDecision.EXHAUSTED,
                    status=response.status,
                    attempt=attempt,
                    window=kind.value,
                )
            )
            logger.error(
                f"{self.source.name}: rate limit exceeded after {attempt} retries: {message}"
            )
            raise RateLimitExhaustedError(attempt, message, kind.value)

        wait = throttle_wait(kind, attempt, self.config)
        now = self.governor.time_provider.now()
        self.governor.pause_state.pause_until(now + wait)

        self.recorder.record(
            create_event(
                provider=self.source.name,
                endpoint=spec.url,
                decision=TelemetryDecision.THROTTLE,
                status=response.status,
                sleep_s=wait,
                attempt=attempt,
                window=kind.value,
            )
        )
        logger.warning(
            f"{self.source.name}: throttled ({kind.value}) on attempt {attempt + 1}, "
            f"pausing {wait:.0f}s: {message}"
        )

    def _decode(
        self, spec: RequestSpec, response: HttpResponse, attempt: int, parse: Optional[PageParser]
    ) -> Page:
        try:
            payload = json.loads(response.body)
        except ValueError as e:
            raise self._fail(
                ApiResponseError(
                    f"Invalid JSON in response: {e}",
                    url=spec.url,
                    status=response.status,
                    body=response.text()[:500],
                ),
                spec,
                attempt,
                response.status,
            ) from e

        try:
            return (parse or self.source.parse_page)(payload, response.byte_size)
        except ValueError as e:
            raise self._fail(
                ApiResponseError(
                    f"Unexpected response shape: {e}",
                    url=spec.url,
                    status=response.status,
                ),
                spec,
                attempt,
                response.status,
            ) from e

    def _log_progress(self, requests: int) -> None:
        if requests % STATS_LOG_INTERVAL == 0:
            stats = self.get_stats()
            snapshot = self.governor.snapshot()
            logger.info(
                f"{self.source.name}: {requests} requests this session, "
                f"{stats.to_dict()['mb_downloaded']}MB downloaded, "
                f"hourly usage {snapshot.percentages['requests_hourly']}% requests / "
                f"{snapshot.percentages['bandwidth_hourly']}% bandwidth"
            )
        if requests % WARNING_LOG_INTERVAL == 0:
            for message in self.governor.snapshot().warning_messages:
                logger.warning(f"{self.source.name}: approaching provider limits: {message}")

    async def fetch_page(self, spec: RequestSpec, parse: Optional[PageParser] = None) -> Page:
        """
        Fetch one page, waiting on quota and recovering from throttles.

        Args:
            spec: Request to send
            parse: Body parser used instead of the source's parse_page

        Returns:
            Parsed page

        Raises:
            RateLimitExhaustedError: If throttled more than max_throttle_retries times
            ApiTransportError: On connection failures
            ApiTimeoutError: If the request times out
            ApiResponseError: On other non-2xx statuses or an undecodable body
        """
        attempt = 0
        while True:
            await self._wait_for_pause(spec)
            reservation = await self.governor.acquire()

            try:
                start = time.perf_counter()
                response = await self._send(spec, attempt)
                elapsed_ms = (time.perf_counter() - start) * 1000

                if response.status == self.config.throttle_status:
                    self._handle_throttle(spec, response, attempt)
                    attempt += 1
                    with self._lock:
                        self._stats.retries += 1
                    continue

                if not 200 <= response.status < 300:
                    raise self._fail(
                        ApiResponseError(
                            f"HTTP {response.status} from {self.source.name}",
                            url=spec.url,
                            status=response.status,
                            body=response.text()[:500],
                        ),
                        spec,
                        attempt,
                        response.status,
                    )

                byte_size = response.byte_size
                self.governor.record_request(byte_size, reservation)
            finally:
                # throttled and failed requests give their slot back
                self.governor.release(reservation)

            with self._lock:
                self._stats.requests += 1
                self._stats.bytes_downloaded += byte_size
                requests = self._stats.requests

            self.recorder.record(
                create_event(
                    provider=self.source.name,
                    endpoint=spec.url,
                    decision=TelemetryDecision.ALLOW,
                    status=response.status,
                    elapsed_ms=elapsed_ms,
                    byte_size=byte_size,
                    attempt=attempt,
                )
            )
            self._log_progress(requests)

            return self._decode(spec, response, attempt, parse)

    # ------------------------------------------------------------------
    # pagination
    # ------------------------------------------------------------------

    async def for_each_page(
        self,
        initial_request: RequestSpec,
        on_page: PageHandler,
        batch_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        record_filter: Optional[RecordFilter] = None,
        stop_token: Optional[EmergencyStop] = None,
    ) -> PaginationResult:
        """
        Follow next-page links, handing each page to on_page.

        on_page may be a plain function or a coroutine function; it finishes
        before the next page is requested. Records rejected by record_filter
        are counted as fetched but never delivered, and a page left empty by
        the filter does not invoke on_page.

        Args:
            initial_request: Request for the first page
            on_page: Per-page callback
            batch_size: Page size applied to the first request
            max_pages: Stop after this many pages
            record_filter: Client-side record predicate
            stop_token: Checked before every fetch; tripped means stop

        Returns:
            PaginationResult with counts and the reason the loop ended
        """
        spec = initial_request
        if batch_size:
            spec = self.source.with_page_size(spec, batch_size)

        result = PaginationResult()

        while True:
            if stop_token is not None and stop_token.is_set:
                logger.warning(
                    f"{self.source.name}: pagination stopped after "
                    f"{result.pages_fetched} pages: {stop_token.reason}"
                )
                result.stop_reason = StopReason.CANCELLED
                break

            page = await self.fetch_page(spec)
            result.pages_fetched += 1
            result.records_fetched += len(page.data)
            result.next_link = page.next_link

            if record_filter is None:
                records = page.data
            else:
                records = [r for r in page.data if record_filter(r)]

            if records:
                if len(records) != len(page.data):
                    page = Page(
                        data=records,
                        next_link=page.next_link,
                        byte_size=page.byte_size,
                        metadata=page.metadata,
                    )
                outcome = on_page(page)
                if inspect.isawaitable(outcome):
                    await outcome
                result.records_delivered += len(records)

            if not result.next_link:
                result.stop_reason = StopReason.EXHAUSTED
                break

            if max_pages is not None and result.pages_fetched >= max_pages:
                result.stop_reason = StopReason.MAX_PAGES
                break

            spec = self.source.next_request(result.next_link)

        logger.debug(
            f"{self.source.name}: {result.pages_fetched} pages, "
            f"{result.records_fetched} fetched, {result.records_delivered} delivered "
            f"({result.stop_reason.value})"
        )
        return result

    # ------------------------------------------------------------------
    # observability
    # ------------------------------------------------------------------

    def get_stats(self) -> ApiClientStats:
        with self._lock:
            return ApiClientStats(**vars(self._stats))

    def rate_limit_stats(self) -> Dict[str, Any]:
        """Session counters plus the governor snapshot."""
        return {
            "provider": self.source.name,
            "session": self.get_stats().to_dict(),
            "governor": self.governor.snapshot().to_dict(),
        }
