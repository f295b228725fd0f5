"""Wiring helpers: build a ready-to-run orchestrator from configuration."""
import logging
from datetime import datetime
from typing import Callable, Optional

from mls_sync.core import (
    ApiClient,
    AppConfig,
    ConfigurationError,
    RateGovernor,
    TimeProvider,
    Transport,
    load_config,
)
from mls_sync.core.telemetry import TelemetryRecorder
from mls_sync.datasources.census import CensusCatalogSource
from mls_sync.datasources.mls_grid import MlsGridDataSource

from .census_metadata import CensusMetadataStep
from .orchestrator import SyncOrchestrator
from .persistence import InMemoryPersistence, Persistence
from .resources import census_resources, default_mls_resources

logger = logging.getLogger(__name__)


def build_governor(
    config: AppConfig,
    provider: str,
    time_provider: Optional[TimeProvider] = None,
    recorder: Optional[TelemetryRecorder] = None,
) -> RateGovernor:
    """One governor per provider; share it between every client of that provider."""
    provider_config = config.get_provider(provider)
    if provider_config is None:
        raise ConfigurationError(f"No configuration for provider {provider}")
    return RateGovernor(
        limits=provider_config.limits,
        time_provider=time_provider,
        name=provider,
        recorder=recorder,
    )


def build_mls_orchestrator(
    config: Optional[AppConfig] = None,
    persistence: Optional[Persistence] = None,
    transport: Optional[Transport] = None,
    governor: Optional[RateGovernor] = None,
    time_provider: Optional[TimeProvider] = None,
    recorder: Optional[TelemetryRecorder] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SyncOrchestrator:
    """Orchestrator for Office, Member, Property and OpenHouse."""
    config = config or load_config()
    provider_config = config.get_provider("mls_grid")
    if provider_config is None:
        raise ConfigurationError("No configuration for provider mls_grid")

    governor = governor or build_governor(config, "mls_grid", time_provider, recorder)
    client = ApiClient(
        source=MlsGridDataSource.from_config(provider_config),
        governor=governor,
        transport=transport,
        provider_config=provider_config,
        recorder=recorder,
    )
    resources = default_mls_resources(config.sync)
    logger.debug(f"MLS orchestrator targeting {provider_config.base_url}")

    return SyncOrchestrator(
        client=client,
        persistence=persistence or InMemoryPersistence.for_resources(resources),
        resources=resources,
        provider_config=provider_config,
        clock=clock,
        max_pages=config.sync.max_pages,
    )


def build_census_orchestrator(
    config: Optional[AppConfig] = None,
    persistence: Optional[Persistence] = None,
    transport: Optional[Transport] = None,
    governor: Optional[RateGovernor] = None,
    time_provider: Optional[TimeProvider] = None,
    recorder: Optional[TelemetryRecorder] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SyncOrchestrator:
    """Orchestrator for the Census dataset catalog and its linked metadata."""
    config = config or load_config()
    provider_config = config.get_provider("census")
    if provider_config is None:
        raise ConfigurationError("No configuration for provider census")

    source = CensusCatalogSource.from_config(provider_config)
    governor = governor or build_governor(config, "census", time_provider, recorder)
    client = ApiClient(
        source=source,
        governor=governor,
        transport=transport,
        provider_config=provider_config,
        recorder=recorder,
    )
    resources = census_resources(config.sync)
    steps = []
    if config.sync.census_metadata:
        steps.append(
            CensusMetadataStep(source, max_datasets=config.sync.census_metadata_max_datasets)
        )

    return SyncOrchestrator(
        client=client,
        persistence=persistence or InMemoryPersistence.for_resources(resources + steps),
        resources=resources,
        provider_config=provider_config,
        clock=clock,
        metadata_steps=steps,
    )
