"""
Configuration module for quota limits, provider endpoints and sync settings.

This module provides configuration loading and validation for the providers
the sync talks to. Limits default to conservative values well under the
listing provider's documented warning thresholds.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigValidationError

MLS_TOKEN_ENV = "MLS_API_TOKEN"
MLS_URL_ENV = "MLS_API_URL"


@dataclass(frozen=True)
class LimitConfig:
    """Quota limits enforced locally by the rate governor."""

    max_req_per_second: float = 2
    max_req_per_hour: int = 5000
    max_req_per_24h: int = 30000
    max_mb_per_hour: float = 2000
    max_gb_per_24h: float = 30
    min_delay_between_requests: float = 0.5  # seconds

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LimitConfig":
        """Create LimitConfig from dictionary, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProviderConfig:
    """Configuration for a single upstream provider."""

    base_url: str
    token_env: str | None = None
    token: str = ""
    timeout_s: float = 60.0
    throttle_status: int = 429
    max_throttle_retries: int = 5
    window_reset_s: float = 3600.0  # provider's hourly quota window
    window_buffer_s: float = 300.0
    backoff_base_s: float = 60.0
    backoff_max_s: float = 3600.0
    limits: LimitConfig = field(default_factory=LimitConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderConfig":
        """Create ProviderConfig from dictionary."""
        limits_data = data.get("limits", {})
        limits = LimitConfig.from_dict(limits_data) if limits_data else LimitConfig()

        token_env = data.get("token_env")
        token = data.get("token", "")
        if not token and token_env:
            token = os.environ.get(token_env, "")

        return cls(
            base_url=data.get("base_url", ""),
            token_env=token_env,
            token=token,
            timeout_s=data.get("timeout_s", 60.0),
            throttle_status=data.get("throttle_status", 429),
            max_throttle_retries=data.get("max_throttle_retries", 5),
            window_reset_s=data.get("window_reset_s", 3600.0),
            window_buffer_s=data.get("window_buffer_s", 300.0),
            backoff_base_s=data.get("backoff_base_s", 60.0),
            backoff_max_s=data.get("backoff_max_s", 3600.0),
            limits=limits,
        )

    @property
    def cooldown_s(self) -> float:
        """How long an operator should wait before retrying after exhaustion."""
        return self.window_reset_s + self.window_buffer_s

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        # never echo the credential back
        result["token"] = "****" if self.token else ""
        return result


@dataclass
class SyncSettings:
    """Knobs for the sync orchestrator."""

    batch_size: int | None = None  # applies to every resource when set
    batch_sizes: dict[str, int] = field(default_factory=dict)  # per resource, wins over batch_size
    max_pages: int | None = None
    state_or_province: str | None = "IL"
    county_or_parish: str | None = "Cook"
    census_vintages: list[int] = field(default_factory=list)
    census_metadata: bool = True
    census_metadata_max_datasets: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        return cls(
            batch_size=data.get("batch_size"),
            batch_sizes=dict(data.get("batch_sizes") or {}),
            max_pages=data.get("max_pages"),
            state_or_province=data.get("state_or_province", "IL"),
            county_or_parish=data.get("county_or_parish", "Cook"),
            census_vintages=list(data.get("census_vintages") or []),
            census_metadata=data.get("census_metadata", True),
            census_metadata_max_datasets=data.get("census_metadata_max_datasets"),
        )

    def batch_size_for(self, resource: str, default: int | None = None) -> int | None:
        """Page size for one resource: its own entry, then batch_size, then default."""
        if resource in self.batch_sizes:
            return self.batch_sizes[resource]
        if self.batch_size is not None:
            return self.batch_size
        return default


def default_providers() -> dict[str, ProviderConfig]:
    """Built-in provider settings used when no config file is present."""
    return {
        "mls_grid": ProviderConfig(
            base_url=os.environ.get(MLS_URL_ENV, "https://api.mlsgrid.com/v2"),
            token_env=MLS_TOKEN_ENV,
            token=os.environ.get(MLS_TOKEN_ENV, ""),
        ),
        "census": ProviderConfig(
            base_url="https://api.census.gov/data",
            timeout_s=60.0,
            limits=LimitConfig(
                max_req_per_second=5,
                max_req_per_hour=20000,
                max_req_per_24h=100000,
                max_mb_per_hour=10000,
                max_gb_per_24h=100,
                min_delay_between_requests=0.2,
            ),
        ),
    }


@dataclass
class AppConfig:
    """Top-level configuration: providers plus sync settings."""

    providers: dict[str, ProviderConfig] = field(default_factory=default_providers)
    sync: SyncSettings = field(default_factory=SyncSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """Create AppConfig from dictionary, layering over the built-in providers."""
        providers = default_providers()
        for name, provider_data in (data.get("providers") or {}).items():
            providers[name] = ProviderConfig.from_dict(provider_data)

        # the env var wins over the file so deployments can repoint the API
        mls = providers.get("mls_grid")
        if mls is not None and os.environ.get(MLS_URL_ENV):
            mls.base_url = os.environ[MLS_URL_ENV]

        sync = SyncSettings.from_dict(data.get("sync") or {})
        return cls(providers=providers, sync=sync)

    def get_provider(self, name: str) -> ProviderConfig | None:
        """Get configuration for a specific provider."""
        return self.providers.get(name)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default location.

    Returns:
        AppConfig with provider and sync settings

    Raises:
        yaml.YAMLError: If config file is invalid YAML
        ConfigValidationError: If config validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parents[3] / "config" / "limits.yml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        return AppConfig()

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    if not data:
        return AppConfig()

    config = AppConfig.from_dict(data)
    validate_config(config)
    return config


def validate_limits(name: str, limits: LimitConfig) -> None:
    """Reject non-positive quota limits and negative delays."""
    for key in (
        "max_req_per_second",
        "max_req_per_hour",
        "max_req_per_24h",
        "max_mb_per_hour",
        "max_gb_per_24h",
    ):
        if getattr(limits, key) <= 0:
            raise ConfigValidationError(f"Provider {name} {key} must be positive")

    if limits.min_delay_between_requests < 0:
        raise ConfigValidationError(
            f"Provider {name} min_delay_between_requests must not be negative"
        )


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    for name, provider in config.providers.items():
        if not provider.base_url:
            raise ConfigValidationError(f"Provider {name} must have a base_url")

        if provider.timeout_s <= 0:
            raise ConfigValidationError(f"Provider {name} timeout_s must be positive")

        if provider.max_throttle_retries < 0:
            raise ConfigValidationError(
                f"Provider {name} max_throttle_retries must not be negative"
            )

        if provider.window_reset_s <= 0:
            raise ConfigValidationError(f"Provider {name} window_reset_s must be positive")

        if provider.window_buffer_s < 0 or provider.backoff_base_s < 0:
            raise ConfigValidationError(
                f"Provider {name} buffers and backoff must not be negative"
            )

        if provider.backoff_max_s < provider.backoff_base_s:
            raise ConfigValidationError(
                f"Provider {name} backoff_max_s must be >= backoff_base_s"
            )

        validate_limits(name, provider.limits)

    if config.sync.batch_size is not None and config.sync.batch_size <= 0:
        raise ConfigValidationError("sync batch_size must be positive")

    for resource, size in config.sync.batch_sizes.items():
        if size <= 0:
            raise ConfigValidationError(f"sync batch_sizes.{resource} must be positive")

    if config.sync.max_pages is not None and config.sync.max_pages <= 0:
        raise ConfigValidationError("sync max_pages must be positive when set")

    max_datasets = config.sync.census_metadata_max_datasets
    if max_datasets is not None and max_datasets <= 0:
        raise ConfigValidationError("sync census_metadata_max_datasets must be positive when set")
