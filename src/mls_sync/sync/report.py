"""
Run reports and per-record outcomes.

A report is appended to the run log for every resource of every run, plus
one aggregate "All" report summarising the run.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

ALL_RESOURCES = "All"
MAX_RECORDED_FAILURES = 100


class SyncKind(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(Enum):
    """Final state of a resource sync or a whole run."""
    SUCCESS = "success"
    PAUSED = "paused"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    ERROR = "error"

    @property
    def http_status(self) -> int:
        """Status code a trigger endpoint should answer with."""
        if self is SyncStatus.ERROR:
            return 500
        if self in (SyncStatus.RATE_LIMIT_EXCEEDED, SyncStatus.PAUSED):
            return 429
        return 200


class RecordOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"  # parent record missing
    IGNORED = "ignored"  # not visible and never stored
    FAILED = "failed"


@dataclass(frozen=True)
class RecordResult:
    """What reconciling one record did."""
    key: Optional[str]
    outcome: RecordOutcome
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"key": self.key, "outcome": self.outcome.value}
        if self.error:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class SyncRunReport:
    """Counts and status for one resource (or the aggregate of a run)."""
    resource_type: str
    sync_kind: SyncKind
    status: SyncStatus
    records_processed: int
    records_created: int
    records_updated: int
    records_deleted: int
    started_at: datetime
    completed_at: datetime
    duration_seconds: int
    error_message: Optional[str] = None
    records_fetched: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    failures: Tuple[RecordResult, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "sync_kind": self.sync_kind.value,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_deleted": self.records_deleted,
            "records_fetched": self.records_fetched,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "failures": [f.to_dict() for f in self.failures],
        }


class ReportBuilder:
    """Mutable counters for a resource sync in progress."""

    def __init__(self, resource_type: str, sync_kind: SyncKind, started_at: datetime):
        self.resource_type = resource_type
        self.sync_kind = sync_kind
        self.started_at = started_at
        self.records_fetched = 0
        self.counts = {outcome: 0 for outcome in RecordOutcome}
        self.failures: List[RecordResult] = []

    @property
    def records_processed(self) -> int:
        return sum(self.counts.values())

    def add(self, result: RecordResult) -> None:
        self.counts[result.outcome] += 1
        if result.outcome is RecordOutcome.FAILED and len(self.failures) < MAX_RECORDED_FAILURES:
            self.failures.append(result)

    def build(
        self,
        status: SyncStatus,
        completed_at: datetime,
        error_message: Optional[str] = None,
    ) -> SyncRunReport:
        return SyncRunReport(
            resource_type=self.resource_type,
            sync_kind=self.sync_kind,
            status=status,
            records_processed=self.records_processed,
            records_created=self.counts[RecordOutcome.CREATED],
            records_updated=self.counts[RecordOutcome.UPDATED],
            records_deleted=self.counts[RecordOutcome.DELETED],
            started_at=self.started_at,
            completed_at=completed_at,
            duration_seconds=int((completed_at - self.started_at).total_seconds()),
            error_message=error_message,
            records_fetched=self.records_fetched,
            records_skipped=self.counts[RecordOutcome.SKIPPED],
            records_failed=self.counts[RecordOutcome.FAILED],
            failures=tuple(self.failures),
        )


def aggregate_status(reports: List[SyncRunReport]) -> SyncStatus:
    """Rate-limit trouble outranks errors, which outrank success."""
    statuses = {r.status for r in reports}
    if SyncStatus.RATE_LIMIT_EXCEEDED in statuses or SyncStatus.PAUSED in statuses:
        return SyncStatus.RATE_LIMIT_EXCEEDED
    if SyncStatus.ERROR in statuses:
        return SyncStatus.ERROR
    return SyncStatus.SUCCESS


def aggregate_reports(
    reports: List[SyncRunReport],
    sync_kind: SyncKind,
    started_at: datetime,
    completed_at: datetime,
) -> SyncRunReport:
    """Sum per-resource reports into the run's "All" report."""
    errors = [f"{r.resource_type}: {r.error_message}" for r in reports if r.error_message]
    failures: List[RecordResult] = []
    for r in reports:
        failures.extend(r.failures)

    return SyncRunReport(
        resource_type=ALL_RESOURCES,
        sync_kind=sync_kind,
        status=aggregate_status(reports),
        records_processed=sum(r.records_processed for r in reports),
        records_created=sum(r.records_created for r in reports),
        records_updated=sum(r.records_updated for r in reports),
        records_deleted=sum(r.records_deleted for r in reports),
        started_at=started_at,
        completed_at=completed_at,
        duration_seconds=int((completed_at - started_at).total_seconds()),
        error_message="; ".join(errors) or None,
        records_fetched=sum(r.records_fetched for r in reports),
        records_skipped=sum(r.records_skipped for r in reports),
        records_failed=sum(r.records_failed for r in reports),
        failures=tuple(failures[:MAX_RECORDED_FAILURES]),
    )


@dataclass
class RunResult:
    """Everything a trigger surface needs to answer for a run."""
    aggregate: SyncRunReport
    resources: List[SyncRunReport]
    snapshot: Dict[str, Any]
    status_code: int
    message: str
    cooldown_s: Optional[float] = None

    @property
    def status(self) -> SyncStatus:
        return self.aggregate.status

    def report_for(self, resource_type: str) -> Optional[SyncRunReport]:
        for report in self.resources:
            if report.resource_type == resource_type:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.aggregate.status is SyncStatus.SUCCESS,
            "status": self.aggregate.status.value,
            "message": self.message,
            "summary": self.aggregate.to_dict(),
            "results": [r.to_dict() for r in self.resources],
            "rate_limit_stats": self.snapshot,
        }
        if self.cooldown_s is not None:
            result["retry_after_s"] = self.cooldown_s
        return result
