"""
Module: probe.py
Description: HTTP reachability probe.

Measures latency to a reachability URL with an httpx HEAD request. Any
completed exchange counts as reachable, whatever its status code, since
the goal is to learn whether the network path works.
"""

import time
from typing import Optional

import httpx

from eventrelay.errors import TransportNetworkError, TransportTimeoutError
from eventrelay.utils.logger import get_logger
from eventrelay.network.types import LinkType

logger = get_logger(__name__)


class HttpConnectivityProbe:
    """
    Connectivity probe for hosts without a native network API.

    The link type cannot be observed from plain HTTP, so it is whatever
    the host last reported through set_link_type() (OTHER by default).
    """

    def __init__(
        self,
        link_type: LinkType = LinkType.OTHER,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._link_type = LinkType(link_type)
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._low_power: Optional[bool] = None

    def set_link_type(self, link_type: LinkType) -> None:
        self._link_type = LinkType(link_type)

    def set_low_power(self, enabled: Optional[bool]) -> None:
        self._low_power = enabled

    async def current_link_type(self) -> LinkType:
        return self._link_type

    async def is_low_power(self) -> Optional[bool]:
        return self._low_power

    async def ping(self, target: str) -> float:
        """
        Measure round-trip latency to target.

        Returns:
            Latency in milliseconds

        Raises:
            TransportTimeoutError: If the target did not answer in time
            TransportNetworkError: If the target is unreachable
        """
        if self._client is None:
            self._client = httpx.AsyncClient()

        started = time.perf_counter()
        try:
            await self._client.head(target, timeout=self.timeout_seconds)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"ping timed out after {self.timeout_seconds}s", endpoint=target) from e
        except httpx.TransportError as e:
            raise TransportNetworkError(str(e) or type(e).__name__, endpoint=target) from e

        latency_ms = (time.perf_counter() - started) * 1000
        logger.debug("Ping completed", target=target, latency_ms=round(latency_ms, 2))
        return latency_ms

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
