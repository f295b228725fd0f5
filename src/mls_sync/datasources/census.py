"""
Census data catalog source.

The catalog is a single unauthenticated JSON document listing every dataset
under "dataset". It has no server-side filtering, so incremental syncs
compare each dataset's "modified" stamp against the watermark locally.
"""

from datetime import datetime
from typing import Any

from mls_sync.core import DataSource, Page, ProviderConfig, RecordFilter, RequestSpec
from mls_sync.core.timestamps import parse_timestamp, to_utc

CATALOG_ENDPOINT = "data.json"

# metadata document name -> catalog field linking to it
METADATA_LINKS = {
    "geography": "c_geographyLink",
    "variables": "c_variablesLink",
    "tags": "c_tagsLink",
    "examples": "c_examplesLink",
    "groups": "c_groupsLink",
    "sorts": "c_sorts_url",
}


class CensusCatalogSource(DataSource):
    """Census API dataset catalog."""

    DEFAULT_BASE_URL = "https://api.census.gov/data"

    def __init__(self, base_url: str | None = None):
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "CensusCatalogSource":
        return cls(base_url=config.base_url)

    @property
    def name(self) -> str:
        return "census"

    @property
    def catalog_url(self) -> str:
        # https://api.census.gov/data -> https://api.census.gov/data.json
        return f"{self.base_url}.json"

    def prepare_request(self, endpoint: str, params: dict[str, Any] | None = None) -> RequestSpec:
        if endpoint in ("", CATALOG_ENDPOINT):
            url = self.catalog_url
        else:
            url = f"{self.base_url}/{endpoint.lstrip('/')}"

        return RequestSpec(
            url=url,
            method="GET",
            headers=self.auth({"Accept": "application/json"}),
            query_params=dict(params or {}),
        )

    def parse_page(self, payload: Any, byte_size: int = 0) -> Page:
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")

        datasets = payload.get("dataset") or []
        if not isinstance(datasets, list):
            raise ValueError("'dataset' is not a list")

        return Page(
            data=datasets,
            next_link=None,
            byte_size=byte_size,
            metadata={"total": len(datasets)},
        )

    def watermark_predicate(self, watermark: datetime) -> RecordFilter | None:
        """Keep datasets modified after watermark; undated datasets are kept."""
        watermark = to_utc(watermark)

        def modified_since(record: dict[str, Any]) -> bool:
            modified = parse_timestamp(record.get("modified"))
            return modified is None or modified > watermark

        return modified_since

    def metadata_links(self, dataset: dict[str, Any]) -> dict[str, str]:
        """
        Metadata documents a catalog entry links to.

        Identifier URLs (".../data/id/...") name the dataset rather than a
        document and are left out, as are empty links.
        """
        links = {}
        for document, field_name in METADATA_LINKS.items():
            url = dataset.get(field_name)
            if isinstance(url, str) and url and "/data/id/" not in url:
                links[document] = url
        return links

    def metadata_request(self, url: str) -> RequestSpec:
        return RequestSpec(
            url=url,
            method="GET",
            headers=self.auth({"Accept": "application/json"}),
        )

    def parse_metadata(self, payload: Any, byte_size: int = 0) -> Page:
        """Wrap a metadata document; it has no records and no next page."""
        if not isinstance(payload, (dict, list)):
            raise ValueError("expected a JSON object or array")
        return Page(data=[], next_link=None, byte_size=byte_size, metadata={"document": payload})
