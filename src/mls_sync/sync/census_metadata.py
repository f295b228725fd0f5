"""
Census dataset metadata.

Catalog entries link to separate JSON documents describing each dataset
(geography levels, variables, tags, examples, groups and sort orders).
After the catalog is reconciled, this step fetches the documents of stored
datasets through the orchestrator's client, so every request is governed,
and stores them as one CensusMetadata record per dataset.
"""
import logging
from typing import Any, Dict, List, Optional

from mls_sync.core import ApiClient, ApiClientError, RateLimitExhaustedError
from mls_sync.datasources.census import CensusCatalogSource

from .persistence import Persistence
from .report import RecordOutcome, RecordResult, SyncKind

logger = logging.getLogger(__name__)

METADATA_TYPE = "CensusMetadata"


class CensusMetadataStep:
    """
    Fetches linked metadata documents for stored Census datasets.

    A full run refreshes every stored dataset. An incremental run only
    handles datasets without metadata, or whose "modified" stamp changed
    since their metadata was stored.

    Args:
        source: Catalog source that builds link requests and parses documents
        dataset_type: Resource type the catalog is stored under
        max_datasets: Optional cap on datasets handled per run
    """

    name = METADATA_TYPE
    key_field = "identifier"
    watermark_field = "modified"

    def __init__(
        self,
        source: CensusCatalogSource,
        dataset_type: str = "CensusDataset",
        max_datasets: Optional[int] = None,
    ):
        self.source = source
        self.dataset_type = dataset_type
        self.max_datasets = max_datasets

    def pending(self, persistence: Persistence, kind: SyncKind) -> List[Dict[str, Any]]:
        datasets = persistence.list_records(self.dataset_type)
        if kind is SyncKind.INCREMENTAL:
            datasets = [d for d in datasets if self._is_stale(persistence, d)]
        if self.max_datasets is not None:
            datasets = datasets[: self.max_datasets]
        return datasets

    def _is_stale(self, persistence: Persistence, dataset: Dict[str, Any]) -> bool:
        stored = persistence.get(self.name, str(dataset.get(self.key_field)))
        return stored is None or stored.get("modified") != dataset.get("modified")

    async def sync_record(
        self, client: ApiClient, persistence: Persistence, dataset: Dict[str, Any]
    ) -> RecordResult:
        """
        Fetch and store one dataset's metadata documents.

        A failed link fails the dataset's result and nothing is stored, so
        the next incremental run tries it again. The remaining links are
        still fetched.

        Raises:
            RateLimitExhaustedError: When the provider's quota is spent
        """
        key = dataset.get(self.key_field)
        if key is None:
            return RecordResult(None, RecordOutcome.FAILED, f"dataset has no {self.key_field}")
        key = str(key)

        links = self.source.metadata_links(dataset)
        if not links:
            logger.debug(f"  {self.name} {key}: no metadata links")
            return RecordResult(key, RecordOutcome.SKIPPED)

        documents: Dict[str, Any] = {}
        errors = []
        for document, url in links.items():
            try:
                page = await client.fetch_page(
                    self.source.metadata_request(url), parse=self.source.parse_metadata
                )
            except RateLimitExhaustedError:
                raise
            except ApiClientError as e:
                logger.warning(f"  {self.name} {key}: {document} fetch failed: {e}")
                errors.append(f"{document}: {e}")
                continue
            documents[document] = page.metadata["document"]

        if errors:
            return RecordResult(key, RecordOutcome.FAILED, "; ".join(errors))

        try:
            existed = persistence.exists(self.name, key)
            persistence.upsert(
                self.name,
                {self.key_field: key, "modified": dataset.get("modified"), **documents},
            )
        except Exception as e:
            logger.error(f"  {self.name} {key}: failed to store metadata: {e}")
            return RecordResult(key, RecordOutcome.FAILED, str(e))

        return RecordResult(key, RecordOutcome.UPDATED if existed else RecordOutcome.CREATED)
