"""Core interfaces and types: governor, client, data sources, config."""

from mls_sync.core.api_client import (
    ApiClient,
    ApiClientStats,
    PaginationResult,
    StopReason,
    ThrottleKind,
    classify_throttle,
    extract_throttle_message,
)
from mls_sync.core.cancellation import EmergencyStop
from mls_sync.core.config import (
    AppConfig,
    LimitConfig,
    ProviderConfig,
    SyncSettings,
    load_config,
    validate_config,
)
from mls_sync.core.datasource import (
    DataSource,
    Page,
    PageHandler,
    PageParser,
    RecordFilter,
    RequestSpec,
)
from mls_sync.core.errors import (
    ApiClientError,
    ApiResponseError,
    ApiTimeoutError,
    ApiTransportError,
    ConfigurationError,
    ConfigValidationError,
    MlsSyncError,
    RateLimitExhaustedError,
)
from mls_sync.core.rate_governor import (
    FakeTimeProvider,
    GovernorSnapshot,
    PauseState,
    RateGovernor,
    SystemTimeProvider,
    TimeProvider,
)
from mls_sync.core.transport import AiohttpTransport, HttpResponse, Transport

__all__ = [
    # api_client
    "ApiClient",
    "ApiClientStats",
    "PaginationResult",
    "StopReason",
    "ThrottleKind",
    "classify_throttle",
    "extract_throttle_message",
    # cancellation
    "EmergencyStop",
    # config
    "AppConfig",
    "LimitConfig",
    "ProviderConfig",
    "SyncSettings",
    "load_config",
    "validate_config",
    # datasource
    "DataSource",
    "Page",
    "PageHandler",
    "PageParser",
    "RecordFilter",
    "RequestSpec",
    # errors
    "ApiClientError",
    "ApiResponseError",
    "ApiTimeoutError",
    "ApiTransportError",
    "ConfigurationError",
    "ConfigValidationError",
    "MlsSyncError",
    "RateLimitExhaustedError",
    # rate_governor
    "FakeTimeProvider",
    "GovernorSnapshot",
    "PauseState",
    "RateGovernor",
    "SystemTimeProvider",
    "TimeProvider",
    # transport
    "AiohttpTransport",
    "HttpResponse",
    "Transport",
]
