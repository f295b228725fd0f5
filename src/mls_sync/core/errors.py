"""
Exception hierarchy for API access and sync orchestration.

Request failures are split so callers can tell an isolated transport problem
(which should not halt unrelated resources) from quota exhaustion (which must
halt the whole run).
"""
from typing import Optional


class MlsSyncError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(MlsSyncError):
    """Missing credentials or invalid settings, detected before any request."""


class ConfigValidationError(ConfigurationError, ValueError):
    """Raised by validate_config when a loaded configuration is inconsistent."""


class ApiClientError(MlsSyncError):
    """A request could not be completed."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class ApiTransportError(ApiClientError):
    """Connection reset, DNS failure or any other transport-level problem."""


class ApiTimeoutError(ApiClientError):
    """The request did not complete within the configured timeout."""


class ApiResponseError(ApiClientError):
    """Non-2xx, non-throttle response, or a body that is not valid JSON."""

    def __init__(self, message: str, url: str = "", status: Optional[int] = None, body: str = ""):
        super().__init__(message, url)
        self.status = status
        self.body = body


class RateLimitExhaustedError(MlsSyncError):
    """
    The provider kept throttling after the maximum number of retries.

    This is the only failure that trips the emergency stop for a sync run.
    """

    def __init__(self, attempts: int, provider_message: str, kind: str = "unclassified"):
        super().__init__(
            f"Rate limit exceeded after {attempts} retries: {provider_message}"
        )
        self.attempts = attempts
        self.provider_message = provider_message
        self.kind = kind
