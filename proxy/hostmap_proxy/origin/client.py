"""HTTP client used to forward requests to origin servers."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Tuple

import httpx

from ..errors import UpstreamTimeout, UpstreamUnreachable


class OriginClient:
    """Thin wrapper over a shared httpx.AsyncClient.

    Connection pooling, outbound TLS verification and per-phase timeouts
    are left to httpx. Transport errors are translated into the proxy's
    own UpstreamUnreachable / UpstreamTimeout.
    """

    def __init__(
        self,
        connect_timeout: float = 10.0,
        read_timeout: float = 20.0,
        verify_tls: bool = True,
        max_connections: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
            limits=httpx.Limits(max_connections=max_connections),
            follow_redirects=False,  # redirects go back to the browser
            verify=verify_tls,
            transport=transport,
        )
        # Forward the client's own headers, not httpx defaults
        for name in ("accept", "user-agent"):
            self._client.headers.pop(name, None)

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        headers: List[Tuple[str, str]],
        content: bytes = b"",
    ) -> AsyncIterator[httpx.Response]:
        """Open a streamed exchange with the origin.

        The response body is not read; callers pick ``aiter_raw`` for
        pass-through. Leaving the block (normally, on error or on
        cancellation) closes the upstream response.
        """
        try:
            async with self._client.stream(
                method, url, headers=headers, content=content or None,
            ) as response:
                yield response
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"{method} {url} timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise UpstreamUnreachable(f"{method} {url} failed: {e!r}") from e
        except httpx.InvalidURL as e:
            raise UpstreamUnreachable(f"invalid upstream URL {url!r}: {e}") from e
