"""httpx client construction for the transport."""

from typing import Any, Protocol

import httpx

__all__ = ["McpHttpClientFactory", "create_mcp_http_client", "stream_timeout"]


class McpHttpClientFactory(Protocol):
    def __call__(self, **kwargs: Any) -> httpx.AsyncClient: ...


def stream_timeout(timeout: float = 30, sse_read_timeout: float = 60 * 5) -> httpx.Timeout:
    """Timeout for a client that holds an event stream open.

    Connecting, writing and pool waits use ``timeout``. Reads use the longer
    ``sse_read_timeout``, since the stream can sit idle between events.
    """
    return httpx.Timeout(timeout, read=sse_read_timeout)


def create_mcp_http_client(timeout: httpx.Timeout | None = None, **kwargs: Any) -> httpx.AsyncClient:
    """Create the AsyncClient a transport uses for its stream and its POSTs.

    Redirects are followed unless ``follow_redirects=False`` is passed. Any
    other httpx.AsyncClient argument is passed through. The caller closes
    the client.
    """
    kwargs.setdefault("follow_redirects", True)
    return httpx.AsyncClient(timeout=timeout or stream_timeout(), **kwargs)
