"""Sync orchestration: resources, reconciliation, reports and persistence."""

from mls_sync.sync.census_metadata import CensusMetadataStep
from mls_sync.sync.factory import build_census_orchestrator, build_governor, build_mls_orchestrator
from mls_sync.sync.orchestrator import SyncOrchestrator
from mls_sync.sync.persistence import InMemoryPersistence, Persistence
from mls_sync.sync.report import (
    RecordOutcome,
    RecordResult,
    RunResult,
    SyncKind,
    SyncRunReport,
    SyncStatus,
)
from mls_sync.sync.resources import ResourceDefinition, census_resources, default_mls_resources

__all__ = [
    "CensusMetadataStep",
    "SyncOrchestrator",
    "build_census_orchestrator",
    "build_governor",
    "build_mls_orchestrator",
    "InMemoryPersistence",
    "Persistence",
    "RecordOutcome",
    "RecordResult",
    "RunResult",
    "SyncKind",
    "SyncRunReport",
    "SyncStatus",
    "ResourceDefinition",
    "census_resources",
    "default_mls_resources",
]
