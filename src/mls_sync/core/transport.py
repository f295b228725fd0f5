"""
HTTP transport used by ApiClient.

The client only needs "send this RequestSpec, give me status, headers and
body bytes". Keeping that behind a small interface lets tests swap in a
scripted transport while production uses aiohttp.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp

from .datasource import RequestSpec
from .errors import ApiTimeoutError, ApiTransportError

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Status, headers and raw body of a completed HTTP exchange."""

    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def byte_size(self) -> int:
        """Content-Length when the server sent one, else the body length."""
        for key, value in self.headers.items():
            if key.lower() == "content-length":
                try:
                    return int(value)
                except ValueError:
                    break
        return len(self.body)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class Transport(ABC):
    """Sends a single request and returns the raw response."""

    @abstractmethod
    async def send(self, spec: RequestSpec, timeout_s: float) -> HttpResponse:
        """
        Send a request.

        Raises:
            ApiTimeoutError: If the request did not finish within timeout_s
            ApiTransportError: On connection-level failures
        """
        pass

    async def close(self) -> None:
        pass


class AiohttpTransport(Transport):
    """Transport backed by a lazily created aiohttp.ClientSession."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def send(self, spec: RequestSpec, timeout_s: float) -> HttpResponse:
        session = await self._get_session()
        url = spec.full_url()

        try:
            async with session.request(
                spec.method,
                url,
                headers=spec.headers,
                json=spec.body,
                timeout=aiohttp.ClientTimeout(total=timeout_s),
            ) as resp:
                body = await resp.read()
                return HttpResponse(
                    status=resp.status,
                    body=body,
                    headers=dict(resp.headers),
                )
        except asyncio.TimeoutError as e:
            raise ApiTimeoutError(
                f"Request timed out after {timeout_s}s", url=url
            ) from e
        except aiohttp.ClientError as e:
            raise ApiTransportError(f"Transport error: {e}", url=url) from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
