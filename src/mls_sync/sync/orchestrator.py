"""
Sync orchestrator.

Runs each resource in order through one ApiClient, reconciling every
delivered record into persistence. Metadata steps, such as the Census
metadata fetch, then run over what the resources stored. A throttle that survives all retries
trips the run's emergency stop: the resource in flight stops before its
next page and every later resource is skipped.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from mls_sync.core import (
    ApiClient,
    ApiClientError,
    ConfigurationError,
    EmergencyStop,
    ProviderConfig,
    RateLimitExhaustedError,
    RecordFilter,
    RequestSpec,
)

from .census_metadata import CensusMetadataStep
from .persistence import Persistence
from .report import (
    RecordOutcome,
    RecordResult,
    ReportBuilder,
    RunResult,
    SyncKind,
    SyncRunReport,
    SyncStatus,
    aggregate_reports,
)
from .resources import ResourceDefinition

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _combine_filters(*filters: Optional[RecordFilter]) -> Optional[RecordFilter]:
    active = [f for f in filters if f is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def all_of(record: Dict[str, Any]) -> bool:
        return all(f(record) for f in active)

    return all_of


class SyncOrchestrator:
    """
    Sequences resource syncs for one provider.

    Args:
        client: API client for the provider
        persistence: Store records and run logs are written to
        resources: Resource definitions in sync order
        provider_config: Supplies the cooldown reported after rate-limit stops
        clock: Wall clock for report timestamps
        max_pages: Optional page cap per resource
        metadata_steps: Steps run after every resource, each with its own report
    """

    def __init__(
        self,
        client: ApiClient,
        persistence: Persistence,
        resources: List[ResourceDefinition],
        provider_config: Optional[ProviderConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_pages: Optional[int] = None,
        metadata_steps: Optional[List[CensusMetadataStep]] = None,
    ):
        self.client = client
        self.persistence = persistence
        self.resources = list(resources)
        self.provider_config = provider_config or client.config
        self.clock = clock or _utcnow
        self.max_pages = max_pages
        self.metadata_steps = list(metadata_steps or [])

    async def __aenter__(self) -> "SyncOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client and its transport."""
        await self.client.close()

    async def run_full_import(self) -> RunResult:
        """Fetch everything currently visible, ignoring stored watermarks."""
        return await self.run(SyncKind.FULL)

    async def run_incremental_sync(self) -> RunResult:
        """Fetch only what changed since each resource's watermark."""
        return await self.run(SyncKind.INCREMENTAL)

    async def run(self, kind: SyncKind) -> RunResult:
        """
        Sync every resource in order and report.

        Never raises: failures end up in the per-resource reports.
        """
        stop = EmergencyStop()
        started_at = self.clock()
        steps = self.resources + self.metadata_steps
        names = ", ".join(s.name for s in steps)
        logger.info(f"Starting {kind.value} sync of {names}")

        reports: List[SyncRunReport] = []
        for index, step in enumerate(steps, start=1):
            logger.info(f"[{index}/{len(steps)}] Syncing {step.name}")
            if isinstance(step, CensusMetadataStep):
                report = await self.sync_metadata(step, kind, stop)
            else:
                report = await self.sync_resource(step, kind, stop)
            reports.append(report)
            self._append_run_log(report)

        aggregate = aggregate_reports(reports, kind, started_at, self.clock())
        self._append_run_log(aggregate)

        cooldown = None
        if aggregate.status is SyncStatus.RATE_LIMIT_EXCEEDED:
            cooldown = self.provider_config.cooldown_s

        result = RunResult(
            aggregate=aggregate,
            resources=reports,
            snapshot=self.client.rate_limit_stats(),
            status_code=aggregate.status.http_status,
            message=self._message(aggregate, cooldown),
            cooldown_s=cooldown,
        )

        log = logger.info if aggregate.status is SyncStatus.SUCCESS else logger.warning
        log(f"{kind.value} sync finished: {result.message}")
        return result

    def _message(self, aggregate: SyncRunReport, cooldown: Optional[float]) -> str:
        counts = (
            f"{aggregate.records_processed} processed "
            f"({aggregate.records_created} created, {aggregate.records_updated} updated, "
            f"{aggregate.records_deleted} deleted)"
        )
        if aggregate.status is SyncStatus.RATE_LIMIT_EXCEEDED:
            minutes = int((cooldown or 0) // 60)
            return (
                f"Sync stopped: provider rate limit exceeded. {counts} before stopping. "
                f"Wait {minutes} minutes before retrying."
            )
        if aggregate.status is SyncStatus.ERROR:
            return f"Sync completed with errors: {counts}. {aggregate.error_message}"
        return f"Sync completed: {counts}"

    def _append_run_log(self, report: SyncRunReport) -> None:
        try:
            self.persistence.append_run_log(report)
        except Exception as e:
            logger.error(f"Failed to write run log for {report.resource_type}: {e}")

    def _initial_request(
        self, resource: ResourceDefinition, kind: SyncKind
    ) -> Tuple[RequestSpec, Optional[RecordFilter]]:
        source = self.client.source

        watermark = None
        if kind is SyncKind.INCREMENTAL:
            watermark = self.persistence.get_last_watermark(resource.name)

        if watermark is None:
            filter_expr = source.full_filter()
            predicate = None
        else:
            logger.info(f"  {resource.name}: fetching records modified after {watermark.isoformat()}")
            filter_expr = source.incremental_filter(watermark)
            predicate = source.watermark_predicate(watermark)

        spec = source.collection_request(resource.endpoint, filter_expr, resource.expand)
        return spec, _combine_filters(resource.record_filter, predicate)

    async def sync_resource(
        self, resource: ResourceDefinition, kind: SyncKind, stop: EmergencyStop
    ) -> SyncRunReport:
        """Sync one resource; always returns a report."""
        builder = ReportBuilder(resource.name, kind, self.clock())

        if stop.is_set:
            logger.warning(f"  {resource.name}: skipped, emergency stop is active")
            return builder.build(
                SyncStatus.PAUSED, self.clock(), f"Skipped after emergency stop: {stop.reason}"
            )

        def on_page(page) -> None:
            for record in page.data:
                builder.add(self.reconcile_record(resource, record))

        status = SyncStatus.SUCCESS
        error_message = None
        try:
            spec, record_filter = self._initial_request(resource, kind)
            result = await self.client.for_each_page(
                spec,
                on_page,
                batch_size=resource.batch_size,
                max_pages=self.max_pages,
                record_filter=record_filter,
                stop_token=stop,
            )
            builder.records_fetched = result.records_fetched
            if result.cancelled:
                status = SyncStatus.PAUSED
                error_message = f"Stopped early: {stop.reason}"
        except RateLimitExhaustedError as e:
            stop.trip(f"{resource.name}: {e}")
            status = SyncStatus.RATE_LIMIT_EXCEEDED
            error_message = str(e)
        except (ApiClientError, ConfigurationError) as e:
            logger.error(f"  {resource.name}: sync failed: {e}")
            status = SyncStatus.ERROR
            error_message = str(e)
        except Exception as e:
            logger.exception(f"  {resource.name}: unexpected error during sync")
            status = SyncStatus.ERROR
            error_message = str(e)

        if status is not SyncStatus.SUCCESS:
            # pagination did not finish, so only delivered records are known
            builder.records_fetched = max(builder.records_fetched, builder.records_processed)

        return self._finish(builder, status, error_message)

    async def sync_metadata(
        self, step: CensusMetadataStep, kind: SyncKind, stop: EmergencyStop
    ) -> SyncRunReport:
        """Run a metadata step over stored records; always returns a report."""
        builder = ReportBuilder(step.name, kind, self.clock())

        if stop.is_set:
            logger.warning(f"  {step.name}: skipped, emergency stop is active")
            return builder.build(
                SyncStatus.PAUSED, self.clock(), f"Skipped after emergency stop: {stop.reason}"
            )

        status = SyncStatus.SUCCESS
        error_message = None
        try:
            pending = step.pending(self.persistence, kind)
            logger.info(f"  {step.name}: {len(pending)} records need metadata")
            for record in pending:
                if stop.is_set:
                    status = SyncStatus.PAUSED
                    error_message = f"Stopped early: {stop.reason}"
                    break
                builder.records_fetched += 1
                builder.add(await step.sync_record(self.client, self.persistence, record))
        except RateLimitExhaustedError as e:
            stop.trip(f"{step.name}: {e}")
            status = SyncStatus.RATE_LIMIT_EXCEEDED
            error_message = str(e)
        except Exception as e:
            logger.exception(f"  {step.name}: unexpected error during sync")
            status = SyncStatus.ERROR
            error_message = str(e)

        return self._finish(builder, status, error_message)

    def _finish(
        self, builder: ReportBuilder, status: SyncStatus, error_message: Optional[str]
    ) -> SyncRunReport:
        report = builder.build(status, self.clock(), error_message)
        logger.info(
            f"  {report.resource_type}: {report.status.value}, {report.records_processed} processed, "
            f"{report.records_created} created, {report.records_updated} updated, "
            f"{report.records_deleted} deleted, {report.records_skipped} skipped, "
            f"{report.records_failed} failed"
        )
        return report

    def reconcile_record(self, resource: ResourceDefinition, record: Dict[str, Any]) -> RecordResult:
        """
        Apply one fetched record to persistence.

        Visible records are upserted; invisible ones are deleted if stored
        and ignored otherwise. Records whose parent is not stored are
        skipped. Errors are returned as a failed result, never raised.
        """
        key = resource.key_of(record)
        try:
            if key is None:
                raise ValueError(f"record has no {resource.key_field}")

            if resource.parent is not None:
                parent_type, parent_field = resource.parent
                parent_key = record.get(parent_field)
                if parent_key is not None and not self.persistence.exists(
                    parent_type, str(parent_key)
                ):
                    return RecordResult(key, RecordOutcome.SKIPPED)

            existed = self.persistence.exists(resource.name, key)

            if resource.is_visible(record):
                self.persistence.upsert(resource.name, record)
                outcome = RecordOutcome.UPDATED if existed else RecordOutcome.CREATED
                return RecordResult(key, outcome)

            if existed:
                self.persistence.delete(resource.name, key)
                return RecordResult(key, RecordOutcome.DELETED)

            return RecordResult(key, RecordOutcome.IGNORED)
        except Exception as e:
            logger.error(f"  {resource.name} {key}: failed to reconcile: {e}")
            return RecordResult(key, RecordOutcome.FAILED, str(e))
