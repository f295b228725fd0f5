"""
Unit tests for the API client.

Tests verify:
- Throttle message extraction and classification
- Throttle waits: quota window for classified, exponential for unclassified
- Bounded retries ending in RateLimitExhaustedError
- Shared pause state and quota windows across clients
- Failure mapping for bad statuses, transport errors and bad JSON
- Pagination: completeness, max_pages, record filters, cancellation
"""
import asyncio

import pytest

from mls_sync.core import (
    ApiClient,
    ApiResponseError,
    ApiTransportError,
    ConfigurationError,
    EmergencyStop,
    FakeTimeProvider,
    HttpResponse,
    LimitConfig,
    ProviderConfig,
    RateGovernor,
    RateLimitExhaustedError,
    StopReason,
    ThrottleKind,
    classify_throttle,
    extract_throttle_message,
)
from mls_sync.core.api_client import throttle_wait
from mls_sync.core.telemetry import TelemetryDecision, TelemetryRecorder
from mls_sync.datasources.mls_grid import MlsGridDataSource
from tests.fakes import FakeMlsTransport, FakeTransport, json_response, listing, throttle

BASE_URL = "https://mls.test/v2"


@pytest.fixture
def fake_time():
    """Fixture providing fake time provider."""
    return FakeTimeProvider(initial_time=1000.0)


@pytest.fixture
def recorder():
    return TelemetryRecorder(collect_stats=True, keep_events=True)


@pytest.fixture
def governor(fake_time, recorder):
    limits = LimitConfig(
        max_req_per_second=100,
        max_req_per_hour=10000,
        max_req_per_24h=100000,
        max_mb_per_hour=10000,
        max_gb_per_24h=100,
        min_delay_between_requests=0,
    )
    return RateGovernor(limits=limits, time_provider=fake_time, name="mls_grid", recorder=recorder)


@pytest.fixture
def provider_config():
    return ProviderConfig(base_url=BASE_URL, token="secret")


@pytest.fixture
def source():
    return MlsGridDataSource(base_url=BASE_URL, token="secret")


def make_client(source, governor, provider_config, transport):
    return ApiClient(source, governor, transport=transport, provider_config=provider_config)


class TestThrottleClassification:
    """Test message extraction and classification."""

    def test_extract_from_details(self):
        body = '{"error": {"message": "outer", "details": [{"message": "inner"}]}}'
        assert extract_throttle_message(body) == "inner"

    def test_extract_from_error_message(self):
        body = '{"error": {"message": "outer"}}'
        assert extract_throttle_message(body) == "outer"

    def test_extract_falls_back_to_raw_text(self):
        assert extract_throttle_message("Too many") == "Too many"
        assert extract_throttle_message('{"detail": "x"}') == '{"detail": "x"}'

    @pytest.mark.parametrize(
        "message,kind",
        [
            ("Exceeded 4096 MB per hour", ThrottleKind.BYTES),
            ("Exceeded 60 GB in 24 hours", ThrottleKind.BYTES),
            ("Maximum data downloaded for this period", ThrottleKind.BYTES),
            ("Exceeded 7200 requests per hour", ThrottleKind.REQUESTS),
            ("Slow down", ThrottleKind.UNCLASSIFIED),
        ],
    )
    def test_classify(self, message, kind):
        assert classify_throttle(message) is kind

    def test_classified_wait_is_window_plus_buffer(self, provider_config):
        assert throttle_wait(ThrottleKind.BYTES, 0, provider_config) == 3900
        assert throttle_wait(ThrottleKind.REQUESTS, 4, provider_config) == 3900

    def test_unclassified_wait_backs_off_exponentially(self, provider_config):
        waits = [throttle_wait(ThrottleKind.UNCLASSIFIED, a, provider_config) for a in range(8)]
        assert waits == [60, 120, 240, 480, 960, 1920, 3600, 3600]


class TestFetchPage:
    """Test the single-request state machine."""

    @pytest.mark.asyncio
    async def test_success_records_bytes_with_governor(self, source, governor, provider_config):
        """Content-Length is used as the byte size when present."""
        response = json_response({"value": [{"ListingKey": "1"}]}, headers={"Content-Length": "2048"})
        client = make_client(source, governor, provider_config, FakeTransport([response]))

        page = await client.fetch_page(source.prepare_request("Property"))

        assert page.data == [{"ListingKey": "1"}]
        assert page.byte_size == 2048
        assert governor.bytes_in_window(3600) == 2048
        assert client.get_stats().requests == 1

    @pytest.mark.asyncio
    async def test_byte_size_falls_back_to_body_length(self, source, governor, provider_config):
        response = json_response({"value": []})
        client = make_client(source, governor, provider_config, FakeTransport([response]))

        page = await client.fetch_page(source.prepare_request("Property"))

        assert page.byte_size == len(response.body)

    @pytest.mark.asyncio
    async def test_downloaded_throttle_waits_at_least_3900s(
        self, source, governor, provider_config, fake_time, recorder
    ):
        """A bandwidth throttle pauses for the hour window plus buffer, then retries."""
        transport = FakeTransport([
            throttle("You have downloaded 4096 MB in the last hour"),
            json_response({"value": [{"ListingKey": "1"}]}),
        ])
        client = make_client(source, governor, provider_config, transport)

        page = await client.fetch_page(source.prepare_request("Property"))

        assert page.data == [{"ListingKey": "1"}]
        assert fake_time.total_slept >= 3900
        assert fake_time.sleep_history == [3900]
        assert len(transport.sent) == 2

        stats = client.get_stats()
        assert stats.throttles == 1
        assert stats.retries == 1
        assert stats.time_paused == 3900

        throttles = recorder.get_events(TelemetryDecision.THROTTLE)
        assert len(throttles) == 1
        assert throttles[0].window == "bytes"

    @pytest.mark.asyncio
    async def test_throttled_requests_are_not_recorded(self, source, governor, provider_config):
        transport = FakeTransport([throttle("Exceeded 7200 requests per hour"), json_response({"value": []})])
        client = make_client(source, governor, provider_config, transport)

        await client.fetch_page(source.prepare_request("Property"))

        assert governor.get_stats().requests_recorded == 1
        assert governor.requests_in_window(3600) == 1

    @pytest.mark.asyncio
    async def test_unclassified_throttles_back_off(self, source, governor, provider_config, fake_time):
        transport = FakeTransport([
            throttle("Slow down"),
            throttle("Slow down"),
            throttle("Slow down"),
            json_response({"value": []}),
        ])
        client = make_client(source, governor, provider_config, transport)

        await client.fetch_page(source.prepare_request("Property"))

        assert fake_time.sleep_history == [60, 120, 240]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, source, governor, provider_config, fake_time, recorder):
        """Five retries, then RateLimitExhaustedError; no recursion, no extra request."""
        transport = FakeTransport(default=throttle("Exceeded 7200 requests per hour"))
        client = make_client(source, governor, provider_config, transport)

        with pytest.raises(RateLimitExhaustedError) as exc_info:
            await client.fetch_page(source.prepare_request("Property"))

        error = exc_info.value
        assert error.attempts == 5
        assert error.kind == "requests"
        assert str(error) == "Rate limit exceeded after 5 retries: Exceeded 7200 requests per hour"
        assert len(transport.sent) == 6
        assert fake_time.sleep_history == [3900] * 5
        assert len(recorder.get_events(TelemetryDecision.EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_custom_throttle_status(self, source, governor, fake_time):
        config = ProviderConfig(base_url=BASE_URL, token="secret", throttle_status=503, max_throttle_retries=1)
        transport = FakeTransport([throttle("Slow down", status=503), json_response({"value": []})])
        client = make_client(source, governor, config, transport)

        await client.fetch_page(source.prepare_request("Property"))

        assert fake_time.sleep_history == [60]

    @pytest.mark.asyncio
    async def test_pause_is_shared_between_clients(self, source, governor, provider_config, fake_time):
        """A throttle seen by one client holds back another client on the same governor."""
        first = make_client(source, governor, provider_config, FakeTransport([
            throttle("Exceeded 7200 requests per hour"),
            json_response({"value": []}),
        ]))
        second_transport = FakeTransport([json_response({"value": []})])
        second = make_client(source, governor, provider_config, second_transport)

        # the first client records the pause; only check state, do not retry yet
        first._handle_throttle(
            source.prepare_request("Property"),
            throttle("Exceeded 7200 requests per hour"),
            attempt=0,
        )
        assert governor.pause_state.remaining(fake_time.now()) == 3900

        await second.fetch_page(source.prepare_request("Office"))

        assert fake_time.sleep_history == [3900]
        assert second.get_stats().time_paused == 3900

    @pytest.mark.asyncio
    async def test_server_error_raises_without_retry(self, source, governor, provider_config):
        transport = FakeTransport([HttpResponse(status=500, body=b"boom")])
        client = make_client(source, governor, provider_config, transport)

        with pytest.raises(ApiResponseError) as exc_info:
            await client.fetch_page(source.prepare_request("Property"))

        assert exc_info.value.status == 500
        assert exc_info.value.body == "boom"
        assert len(transport.sent) == 1
        assert governor.get_stats().requests_recorded == 0
        assert client.get_stats().failures == 1

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, source, governor, provider_config):
        transport = FakeTransport([ApiTransportError("connection reset", url=BASE_URL)])
        client = make_client(source, governor, provider_config, transport)

        with pytest.raises(ApiTransportError):
            await client.fetch_page(source.prepare_request("Property"))

        assert client.get_stats().failures == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, source, governor, provider_config):
        transport = FakeTransport([HttpResponse(status=200, body=b"<html>")])
        client = make_client(source, governor, provider_config, transport)

        with pytest.raises(ApiResponseError, match="Invalid JSON"):
            await client.fetch_page(source.prepare_request("Property"))

    @pytest.mark.asyncio
    async def test_missing_token_fails_before_any_request(self, governor, provider_config):
        source = MlsGridDataSource(base_url=BASE_URL, token="")
        transport = FakeTransport()
        client = make_client(source, governor, provider_config, transport)

        with pytest.raises(ConfigurationError):
            await client.for_each_page(
                source.collection_request("Property"), lambda page: None
            )

        assert transport.sent == []

    def test_rate_limit_stats(self, source, governor, provider_config):
        client = make_client(source, governor, provider_config, FakeTransport())

        stats = client.rate_limit_stats()

        assert stats["provider"] == "mls_grid"
        assert stats["session"]["requests"] == 0
        assert stats["governor"]["health_status"] == "healthy"


class TestSharedGovernor:
    """Clients sharing one governor are admitted against the same windows."""

    @pytest.mark.asyncio
    async def test_concurrent_clients_are_spaced_per_second(self, source, provider_config, fake_time):
        """In-flight requests count, so three concurrent clients at 1 rps go one second apart."""
        governor = RateGovernor(
            limits=LimitConfig(max_req_per_second=1, min_delay_between_requests=0),
            time_provider=fake_time,
            recorder=TelemetryRecorder(),
        )
        transports = [FakeTransport(clock=fake_time) for _ in range(3)]
        clients = [make_client(source, governor, provider_config, t) for t in transports]
        spec = source.prepare_request("Property")

        await asyncio.gather(*(client.fetch_page(spec) for client in clients))

        sent_at = sorted(t for transport in transports for t in transport.sent_at)
        assert sent_at == [1000.0, 1001.0, 1002.0]
        assert fake_time.sleep_history == [1.0, 1.0]
        assert governor.get_stats().requests_recorded == 3

    @pytest.mark.asyncio
    async def test_concurrent_clients_respect_min_delay(self, source, provider_config, fake_time):
        governor = RateGovernor(
            limits=LimitConfig(max_req_per_second=100, min_delay_between_requests=0.5),
            time_provider=fake_time,
            recorder=TelemetryRecorder(),
        )
        transports = [FakeTransport(clock=fake_time) for _ in range(2)]
        clients = [make_client(source, governor, provider_config, t) for t in transports]
        spec = source.prepare_request("Property")

        await asyncio.gather(*(client.fetch_page(spec) for client in clients))

        sent_at = sorted(t for transport in transports for t in transport.sent_at)
        assert sent_at == [1000.0, 1000.5]

    @pytest.mark.asyncio
    async def test_failed_request_gives_its_slot_back(self, source, provider_config, fake_time):
        governor = RateGovernor(
            limits=LimitConfig(max_req_per_hour=1, min_delay_between_requests=0),
            time_provider=fake_time,
            recorder=TelemetryRecorder(),
        )
        failing = make_client(source, governor, provider_config, FakeTransport([HttpResponse(status=500, body=b"")]))

        with pytest.raises(ApiResponseError):
            await failing.fetch_page(source.prepare_request("Property"))

        assert governor.requests_in_window(3600) == 0

        # the hourly slot is still free for the next request
        ok = make_client(source, governor, provider_config, FakeTransport())
        await ok.fetch_page(source.prepare_request("Property"))
        assert fake_time.sleep_history == []


class TestPagination:

    """Test for_each_page."""

    @pytest.fixture
    def listings(self):
        return [listing(str(i), f"2024-01-0{i}T00:00:00.000Z") for i in range(1, 6)]

    @pytest.fixture
    def transport(self, listings):
        return FakeMlsTransport({"Property": listings}, base_url=BASE_URL)

    @pytest.mark.asyncio
    async def test_follows_next_links_until_exhausted(self, source, governor, provider_config, transport):
        """Every record is delivered exactly once, in order."""
        client = make_client(source, governor, provider_config, transport)
        seen = []

        result = await client.for_each_page(
            source.collection_request("Property"),
            lambda page: seen.extend(r["ListingKey"] for r in page.data),
            batch_size=2,
        )

        assert seen == ["1", "2", "3", "4", "5"]
        assert result.pages_fetched == 3
        assert result.records_fetched == 5
        assert result.records_delivered == 5
        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.next_link is None

    @pytest.mark.asyncio
    async def test_max_pages(self, source, governor, provider_config, transport):
        client = make_client(source, governor, provider_config, transport)

        result = await client.for_each_page(
            source.collection_request("Property"), lambda page: None, batch_size=2, max_pages=2
        )

        assert result.pages_fetched == 2
        assert result.records_fetched == 4
        assert result.stop_reason is StopReason.MAX_PAGES
        assert result.next_link is not None
        assert len(transport.sent) == 2

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, source, governor, provider_config, transport):
        client = make_client(source, governor, provider_config, transport)
        pages = []

        async def on_page(page):
            pages.append(len(page.data))

        await client.for_each_page(source.collection_request("Property"), on_page, batch_size=2)

        assert pages == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_record_filter(self, source, governor, provider_config, transport):
        """Filtered records count as fetched; pages left empty skip the callback."""
        client = make_client(source, governor, provider_config, transport)
        pages = []

        result = await client.for_each_page(
            source.collection_request("Property"),
            lambda page: pages.append([r["ListingKey"] for r in page.data]),
            batch_size=2,
            record_filter=lambda r: r["ListingKey"] in ("1", "5"),
        )

        assert pages == [["1"], ["5"]]
        assert result.records_fetched == 5
        assert result.records_delivered == 2

    @pytest.mark.asyncio
    async def test_tripped_token_prevents_first_fetch(self, source, governor, provider_config, transport):
        client = make_client(source, governor, provider_config, transport)
        stop = EmergencyStop()
        stop.trip("quota exhausted")

        result = await client.for_each_page(
            source.collection_request("Property"), lambda page: None, stop_token=stop
        )

        assert result.pages_fetched == 0
        assert result.cancelled
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_token_tripped_mid_pagination_stops_before_next_page(
        self, source, governor, provider_config, transport
    ):
        client = make_client(source, governor, provider_config, transport)
        stop = EmergencyStop()

        result = await client.for_each_page(
            source.collection_request("Property"),
            lambda page: stop.trip("another resource exhausted the quota"),
            batch_size=2,
            stop_token=stop,
        )

        assert result.pages_fetched == 1
        assert result.stop_reason is StopReason.CANCELLED
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_page_size_applied_to_first_request(self, source, governor, provider_config, transport):
        client = make_client(source, governor, provider_config, transport)

        await client.for_each_page(source.collection_request("Property"), lambda page: None, batch_size=2)

        assert transport.sent[0].query_params["$top"] == 2
