"""
Persistence contract used by the orchestrator, plus an in-memory store.

Implementations own the watermark: it may only move forward and only after
the record carrying it has been stored, so a crash between fetch and commit
leaves it where it was and the next run refetches (at-least-once delivery
with idempotent upserts).
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from mls_sync.core.timestamps import parse_timestamp

from .report import SyncRunReport

logger = logging.getLogger(__name__)


class Persistence(ABC):
    """Storage the orchestrator reconciles into."""

    @abstractmethod
    def get_last_watermark(self, resource_type: str) -> Optional[datetime]:
        """Newest modification timestamp stored for resource_type, or None."""
        pass

    @abstractmethod
    def exists(self, resource_type: str, key: str) -> bool:
        pass

    @abstractmethod
    def get(self, resource_type: str, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_records(self, resource_type: str) -> List[Dict[str, Any]]:
        """Every stored record of resource_type, in insertion order."""
        pass

    @abstractmethod
    def upsert(self, resource_type: str, record: Dict[str, Any]) -> None:
        """Insert or fully replace a record, nested children included."""
        pass

    @abstractmethod
    def delete(self, resource_type: str, key: str) -> None:
        pass

    @abstractmethod
    def append_run_log(self, report: SyncRunReport) -> None:
        pass


class InMemoryPersistence(Persistence):
    """
    Dict-backed store for tests and dry runs.

    Args:
        key_fields: resource_type -> record key field
        watermark_field: record field tracked as the watermark
        watermark_fields: per-resource overrides of watermark_field
    """

    def __init__(
        self,
        key_fields: Optional[Dict[str, str]] = None,
        watermark_field: str = "ModificationTimestamp",
        watermark_fields: Optional[Dict[str, str]] = None,
    ):
        self.key_fields = dict(key_fields or {})
        self.watermark_field = watermark_field
        self.watermark_fields = dict(watermark_fields or {})
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.run_log: List[SyncRunReport] = []
        self._watermarks: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_resources(cls, resources: Iterable[Any]) -> "InMemoryPersistence":
        """Build a store keyed the way the given resources and metadata steps are."""
        resources = list(resources)
        return cls(
            key_fields={r.name: r.key_field for r in resources},
            watermark_fields={r.name: r.watermark_field for r in resources},
        )

    def _key_field(self, resource_type: str) -> str:
        return self.key_fields.get(resource_type, f"{resource_type}Key")

    def get_last_watermark(self, resource_type: str) -> Optional[datetime]:
        with self._lock:
            return self._watermarks.get(resource_type)

    def exists(self, resource_type: str, key: str) -> bool:
        with self._lock:
            return key in self.records.get(resource_type, {})

    def upsert(self, resource_type: str, record: Dict[str, Any]) -> None:
        key = record.get(self._key_field(resource_type))
        if key is None:
            raise ValueError(f"{resource_type} record has no {self._key_field(resource_type)}")

        field_name = self.watermark_fields.get(resource_type, self.watermark_field)
        stamp = parse_timestamp(record.get(field_name))

        with self._lock:
            self.records.setdefault(resource_type, {})[str(key)] = dict(record)
            current = self._watermarks.get(resource_type)
            if stamp is not None and (current is None or stamp > current):
                self._watermarks[resource_type] = stamp

    def delete(self, resource_type: str, key: str) -> None:
        with self._lock:
            self.records.get(resource_type, {}).pop(key, None)

    def append_run_log(self, report: SyncRunReport) -> None:
        with self._lock:
            self.run_log.append(report)
        logger.debug(f"run log: {report.resource_type} {report.status.value}")

    def get(self, resource_type: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.records.get(resource_type, {}).get(key)

    def list_records(self, resource_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self.records.get(resource_type, {}).values()]

    def count(self, resource_type: str) -> int:
        with self._lock:
            return len(self.records.get(resource_type, {}))
