"""
DataSource interface and supporting types.

This module defines the abstraction for the upstream APIs a sync pulls from.
Each source knows how to build requests for a collection, authenticate them,
express full and incremental filters, and turn a decoded response body into
a Page with an optional link to the next page.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from urllib.parse import quote, urlencode


@dataclass
class RequestSpec:
    """
    Specification for an HTTP request.

    Attributes:
        url: Full URL to request (may already carry a query string)
        method: HTTP method (GET, POST, etc.)
        headers: HTTP headers as key-value pairs
        query_params: Query string parameters
        body: Optional request body for POST/PUT requests
    """
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None

    def full_url(self) -> str:
        """URL with query_params appended, keeping OData punctuation readable."""
        if not self.query_params:
            return self.url
        query = urlencode(self.query_params, quote_via=quote, safe="$,'")
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{query}"


@dataclass
class Page:
    """
    A single page of results from a paginated API.

    Attributes:
        data: The records in this page
        next_link: Absolute URL of the next page, or None on the last page
        byte_size: Size of the response body as recorded with the governor
        metadata: Additional provider metadata (counts, context, ...)
    """
    data: list[dict[str, Any]]
    next_link: str | None = None
    byte_size: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


# Per-page callback handed to ApiClient.for_each_page; may be sync or async
PageHandler = Callable[[Page], Any]

# Turns a decoded JSON body and its byte size into a Page; raises ValueError
PageParser = Callable[[Any, int], Page]

# Client-side record predicate; False drops the record before the callback
RecordFilter = Callable[[dict[str, Any]], bool]


class DataSource(ABC):
    """
    Abstract base class for all data sources.

    Subclasses implement request preparation and page parsing for one API.
    Filters and page sizes are optional capabilities; the defaults describe
    an API that has neither.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this data source.

        Returns:
            The name of the data source (e.g., "mls_grid", "census")
        """
        pass

    @abstractmethod
    def prepare_request(self, endpoint: str, params: dict[str, Any] | None = None) -> RequestSpec:
        """
        Prepare an HTTP request specification for the given endpoint.

        Args:
            endpoint: API endpoint path (relative to base URL)
            params: Optional query parameters

        Returns:
            A RequestSpec with url, method, headers, and query parameters
        """
        pass

    def auth(self, initial_headers: dict[str, str] | None = None) -> dict[str, str]:
        """
        Authentication hook to add auth headers to a request.

        Default implementation returns headers unchanged.
        """
        return initial_headers.copy() if initial_headers else {}

    @abstractmethod
    def parse_page(self, payload: Any, byte_size: int = 0) -> Page:
        """
        Turn a decoded JSON body into a Page.

        Raises:
            ValueError: If the payload does not have the expected shape
        """
        pass

    def collection_request(
        self,
        endpoint: str,
        filter_expr: str | None = None,
        expand: str | None = None,
        batch_size: int | None = None,
    ) -> RequestSpec:
        """Build the first request for a collection."""
        return self.prepare_request(endpoint)

    def next_request(self, next_link: str) -> RequestSpec:
        """Request for a next-page link; the link already carries the query."""
        return RequestSpec(url=next_link, headers=self.auth({"Accept": "application/json"}))

    def with_page_size(self, spec: RequestSpec, batch_size: int) -> RequestSpec:
        """Return spec with the page size applied (no-op for unpaged APIs)."""
        return spec

    def full_filter(self) -> str | None:
        """Server-side filter for a full import."""
        return None

    def incremental_filter(self, watermark: datetime) -> str | None:
        """Server-side filter for records changed after watermark."""
        return None

    def watermark_predicate(self, watermark: datetime) -> RecordFilter | None:
        """Client-side stand-in for incremental_filter on APIs without one."""
        return None
