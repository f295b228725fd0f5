"""
MLS Grid data source.

OData v4 API: collections live under the base URL, filters go in $filter,
related entities in $expand, page size in $top, and each page carries its
records in "value" with the next page at "@odata.nextLink".
"""

from dataclasses import replace
from datetime import datetime
from typing import Any

from mls_sync.core import ConfigurationError, DataSource, Page, ProviderConfig, RequestSpec
from mls_sync.core.config import MLS_TOKEN_ENV
from mls_sync.core.timestamps import format_odata_timestamp

FULL_IMPORT_FILTER = "MlgCanView eq true"
NEXT_LINK_KEY = "@odata.nextLink"


class MlsGridDataSource(DataSource):
    """
    Bearer-authenticated OData source for MLS listings and rosters.

    The token is checked when a request is built, so a missing credential
    fails before anything is sent.
    """

    DEFAULT_BASE_URL = "https://api.mlsgrid.com/v2"

    def __init__(self, base_url: str | None = None, token: str = ""):
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.token = token

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "MlsGridDataSource":
        return cls(base_url=config.base_url, token=config.token)

    @property
    def name(self) -> str:
        """Return the data source name."""
        return "mls_grid"

    def auth(self, initial_headers: dict[str, str] | None = None) -> dict[str, str]:
        """
        Add the bearer token.

        Raises:
            ConfigurationError: If no token is configured
        """
        if not self.token:
            raise ConfigurationError(f"MLS API token is not set ({MLS_TOKEN_ENV})")

        headers = super().auth(initial_headers)
        headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def prepare_request(self, endpoint: str, params: dict[str, Any] | None = None) -> RequestSpec:
        """
        Prepare a request to the MLS Grid API.

        Args:
            endpoint: Collection name (e.g., "Property")
            params: Optional OData query options

        Returns:
            RequestSpec with URL, method, headers, and query params
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self.auth({"Accept": "application/json"})

        return RequestSpec(
            url=url,
            method="GET",
            headers=headers,
            query_params=dict(params or {}),
        )

    def collection_request(
        self,
        endpoint: str,
        filter_expr: str | None = None,
        expand: str | None = None,
        batch_size: int | None = None,
    ) -> RequestSpec:
        params: dict[str, Any] = {}
        if filter_expr:
            params["$filter"] = filter_expr
        if expand:
            params["$expand"] = expand
        if batch_size:
            params["$top"] = batch_size
        return self.prepare_request(endpoint, params)

    def with_page_size(self, spec: RequestSpec, batch_size: int) -> RequestSpec:
        return replace(spec, query_params={**spec.query_params, "$top": batch_size})

    def full_filter(self) -> str | None:
        return FULL_IMPORT_FILTER

    def incremental_filter(self, watermark: datetime) -> str | None:
        return f"ModificationTimestamp gt {format_odata_timestamp(watermark)}"

    def parse_page(self, payload: Any, byte_size: int = 0) -> Page:
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")

        records = payload.get("value")
        if records is None:
            records = []
        if not isinstance(records, list):
            raise ValueError("'value' is not a list")

        metadata = {
            key: value
            for key, value in payload.items()
            if key.startswith("@odata") and key != NEXT_LINK_KEY
        }
        return Page(
            data=records,
            next_link=payload.get(NEXT_LINK_KEY) or None,
            byte_size=byte_size,
            metadata=metadata,
        )
