"""
Provider contract and the shared HTTP plumbing used by concrete providers.
"""

import logging
from typing import Any, Optional, Protocol, Tuple, runtime_checkable

import aiohttp
from aiohttp import ClientTimeout, TCPConnector

from ..core.types import ProviderResult

logger = logging.getLogger(__name__)


@runtime_checkable
class CepProvider(Protocol):
    """External postal-code lookup service"""

    @property
    def name(self) -> str: ...

    async def fetch(self, key: str) -> ProviderResult:
        """
        Look up one key.

        Must apply its own bounded timeout. Expected upstream conditions
        (not-found, throttling, transport errors) are reported through the
        returned ProviderResult, or by raising ItemNotFound or
        ItemTransientFailure.
        """
        ...

    async def probe(self) -> bool: ...

    async def close(self) -> None: ...


class JsonHTTPClient:
    """
    Lazily created aiohttp session with a bounded per-request timeout.
    """

    def __init__(self, timeout_seconds: float = 5.0, user_agent: str = "CEP-Crawler/1.0"):
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = TCPConnector(limit=10, ttl_dns_cache=300, keepalive_timeout=30)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=ClientTimeout(total=self.timeout_seconds),
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "application/json",
                    "Connection": "keep-alive",
                },
                raise_for_status=False,
            )
            logger.debug("Created new HTTP session")
        return self._session

    async def get_json(self, url: str) -> Tuple[int, Any]:
        """
        GET `url` and decode the body as JSON when possible.

        Returns:
            (status_code, decoded body or None)

        Raises:
            aiohttp.ClientError, asyncio.TimeoutError: on transport failures
        """
        session = await self._ensure_session()
        async with session.get(url) as response:
            try:
                data = await response.json(content_type=None)
            except ValueError:
                data = None
            return response.status, data

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def failure_for_status(status_code: int) -> ProviderResult:
    """Map a non-success HTTP status onto a failed ProviderResult."""
    return ProviderResult(
        success=False,
        error=f"HTTP {status_code}",
        rate_limited=status_code == 429,
        status_code=status_code,
    )
