"""
Module: transport.py
Description: HTTP transport for delivery attempts.

Sends one request per call and reports either the raw response or a
classified transport error. It performs no retries of its own; the
dispatcher owns the retry loop.

Key Components:
- Transport: Protocol consumed by the dispatcher
- HttpTransport: httpx.AsyncClient based implementation
"""

from typing import Dict, Optional, Protocol

import httpx

from eventrelay.errors import InvalidRequestError, TransportError, TransportNetworkError, TransportTimeoutError
from eventrelay.models.outcome import RawResponse
from eventrelay.models.request import Payload
from eventrelay.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_USER_AGENT = "eventrelay/0.3"


class Transport(Protocol):
    """Send bytes to an endpoint and return the response."""

    async def send(
        self,
        endpoint: str,
        payload: Payload,
        headers: Dict[str, str],
        timeout: float
    ) -> RawResponse:
        ...


class HttpTransport:
    """
    HTTP client for delivering payloads.

    Handles a single exchange with proper timeout and maps httpx
    failures onto the transport error taxonomy. The underlying
    AsyncClient is created on first use and reused until aclose().
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        method: str = "POST",
        user_agent: str = DEFAULT_USER_AGENT
    ):
        """
        Initialize HTTP transport.

        Args:
            client: Optional preconfigured AsyncClient (not closed by aclose)
            method: HTTP method used for every delivery
            user_agent: User-Agent header value

        Raises:
            ValueError: If method is empty
        """
        if not method or not isinstance(method, str):
            raise ValueError("method must be a non-empty string")

        self.method = method.upper()
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None

        logger.info(
            "HTTP transport initialized",
            method=self.method,
            shared_client=not self._owns_client
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def send(
        self,
        endpoint: str,
        payload: Payload,
        headers: Dict[str, str],
        timeout: float
    ) -> RawResponse:
        """
        Deliver payload to endpoint.

        Args:
            endpoint: Target URL
            payload: Body and content type
            headers: Extra request headers
            timeout: Timeout in seconds for the whole exchange

        Returns:
            RawResponse for any completed exchange, including 4xx/5xx

        Raises:
            InvalidRequestError: If endpoint is not a usable HTTP/HTTPS URL
            TransportTimeoutError: If the exchange timed out
            TransportNetworkError: If no connection could be made
        """
        if not endpoint or not endpoint.startswith(('http://', 'https://')):
            raise InvalidRequestError("endpoint must be a valid HTTP/HTTPS URL", endpoint=endpoint)

        request_headers = {
            'Content-Type': payload.content_type,
            'User-Agent': self.user_agent,
        }
        if payload.content_encoding:
            request_headers['Content-Encoding'] = payload.content_encoding
        request_headers.update(headers)

        logger.debug(
            "Sending request",
            endpoint=endpoint,
            size=payload.size,
            timeout_seconds=timeout
        )

        try:
            response = await self._get_client().request(
                self.method,
                endpoint,
                content=payload.data,
                headers=request_headers,
                timeout=httpx.Timeout(timeout, connect=timeout)
            )

        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise InvalidRequestError(str(e) or type(e).__name__, endpoint=endpoint) from e

        except httpx.TimeoutException as e:
            logger.warning("Request timeout", endpoint=endpoint, error=str(e))
            raise TransportTimeoutError(f"timed out after {timeout}s", endpoint=endpoint) from e

        except httpx.TransportError as e:
            logger.warning(
                "Request network error",
                endpoint=endpoint,
                error=str(e),
                error_type=type(e).__name__
            )
            raise TransportNetworkError(str(e) or type(e).__name__, endpoint=endpoint) from e

        elapsed_ms = response.elapsed.total_seconds() * 1000

        if response.is_error:
            logger.warning(
                "Request returned HTTP error",
                endpoint=endpoint,
                status_code=response.status_code,
                response=response.text[:500]  # Truncate large responses
            )
        else:
            logger.debug(
                "Request completed",
                endpoint=endpoint,
                status_code=response.status_code,
                response_time_ms=elapsed_ms
            )

        return RawResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            elapsed_ms=elapsed_ms
        )

    async def aclose(self) -> None:
        """Close the owned AsyncClient, if one was created."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


__all__ = ["HttpTransport", "Transport", "TransportError"]
