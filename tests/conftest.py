import json
import math
from collections.abc import AsyncIterator
from typing import Any

import anyio
import httpx
import pytest

from mcp_bearer.shared._httpx_utils import create_mcp_http_client

STREAM_URL = "http://weather.test/weather/sse"

DEFAULT_TOOLS: list[dict[str, Any]] = [
    {
        "name": "get_forecast",
        "description": "Get the weather forecast for a city",
        "inputSchema": {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
    },
    {
        "name": "get_alerts",
        "description": "Get active weather alerts",
        "inputSchema": {"type": "object"},
    },
]


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeMcpServer:
    """In-process MCP server reached through httpx.MockTransport.

    GET opens an event stream that announces ``endpoint`` first and then relays
    whatever is pushed. POSTs are recorded and, unless ``auto_respond`` is off,
    answered by pushing a response frame onto the stream.

    A POST whose method is in ``held_posts`` waits for that event and then fails
    as if the server hung up. A POST whose method is ``drop_stream_on`` ends the
    stream, or breaks it when ``drop_abruptly`` is set, instead of being answered.
    """

    def __init__(
        self,
        *,
        endpoint: str = "/weather/messages/?session_id=abc123",
        session_id: str | None = "session-1",
        tools: list[dict[str, Any]] | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.session_id = session_id
        self.tools = DEFAULT_TOOLS if tools is None else tools
        self.auto_respond = True
        self.expire_session = False
        self.list_tools_error: dict[str, Any] | None = None
        self.failing_tools: dict[str, dict[str, Any]] = {}
        self.page_size: int | None = None
        self.held_posts: dict[str, anyio.Event] = {}
        self.drop_stream_on: str | None = None
        self.drop_abruptly = False
        self.requests: list[httpx.Request] = []
        self.posted: list[dict[str, Any]] = []
        self.streams_opened = 0
        self._events_send, self._events_recv = anyio.create_memory_object_stream[bytes](math.inf)

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        return create_mcp_http_client(transport=httpx.MockTransport(self.handler), **kwargs)

    @property
    def post_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == "POST"]

    def posted_with_method(self, method: str) -> list[dict[str, Any]]:
        return [body for body in self.posted if body.get("method") == method]

    async def wait_for_posts(self, method: str, count: int = 1) -> list[dict[str, Any]]:
        with anyio.fail_after(5):
            while len(self.posted_with_method(method)) < count:
                await anyio.sleep(0.01)
        return self.posted_with_method(method)

    async def wait_for_reply(self, request_id: Any) -> dict[str, Any]:
        """Wait for the client to POST its response to a server-initiated request."""
        with anyio.fail_after(5):
            while True:
                for body in self.posted:
                    if body.get("id") == request_id and "method" not in body:
                        return body
                await anyio.sleep(0.01)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            self.streams_opened += 1
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._stream())

        body = json.loads(request.content)
        self.posted.append(body)
        method = body.get("method")
        if method in self.held_posts:
            await self.held_posts[method].wait()
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)
        if self.expire_session and request.headers.get("mcp-session-id"):
            return httpx.Response(404, text="Session not found")
        if method is not None and method == self.drop_stream_on:
            if self.drop_abruptly:
                self.break_stream()
            else:
                self.end_stream()
            # Give the client's stream reader time to see it before the POST returns.
            await anyio.sleep(0.05)
            return httpx.Response(202, text="Accepted")

        if self.auto_respond and "id" in body and "method" in body:
            self.push(self.respond_to(body))

        headers = {"mcp-session-id": self.session_id} if self.session_id else {}
        return httpx.Response(202, headers=headers, text="Accepted")

    def respond_to(self, body: dict[str, Any]) -> dict[str, Any]:
        method = body["method"]
        params = body.get("params") or {}
        if method == "initialize":
            return result_frame(
                body["id"],
                {
                    "protocolVersion": params["protocolVersion"],
                    "capabilities": {"tools": {"listChanged": True}},
                    "serverInfo": {"name": "weather", "version": "1.2.0"},
                },
            )
        if method == "tools/list":
            if self.list_tools_error is not None:
                return error_frame(body["id"], **self.list_tools_error)
            if self.page_size is None:
                return result_frame(body["id"], {"tools": self.tools})
            start = int(params.get("cursor") or 0)
            page: dict[str, Any] = {"tools": self.tools[start : start + self.page_size]}
            if start + self.page_size < len(self.tools):
                page["nextCursor"] = str(start + self.page_size)
            return result_frame(body["id"], page)
        if method == "tools/call":
            if params["name"] in self.failing_tools:
                return error_frame(body["id"], **self.failing_tools[params["name"]])
            text = json.dumps(params.get("arguments") or {}, sort_keys=True)
            return result_frame(body["id"], {"content": [{"type": "text", "text": text}]})
        return error_frame(body["id"], code=-32601, message=f"Method not found: {method}")

    def push(self, message: dict[str, Any], event: str = "message") -> None:
        self.push_raw(f"event: {event}\ndata: {json.dumps(message)}\n\n".encode())

    def push_raw(self, data: bytes) -> None:
        self._events_send.send_nowait(data)

    def end_stream(self) -> None:
        self._events_send.close()

    def break_stream(self) -> None:
        """Make the open stream fail as if the connection was reset."""
        self._events_send.send_nowait(_RESET)

    async def _stream(self) -> AsyncIterator[bytes]:
        yield f"event: endpoint\ndata: {self.endpoint}\n\n".encode()
        async for chunk in self._events_recv:
            if chunk is _RESET:
                raise httpx.ReadError("Connection reset by peer")
            yield chunk


_RESET = b"<reset>"


def result_frame(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_frame(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


@pytest.fixture
def fake_server() -> FakeMcpServer:
    return FakeMcpServer()


@pytest.fixture
def stream_client():
    return _static_stream_client


def _static_stream_client(
    chunks: list[bytes],
    *,
    status_code: int = 200,
    content_type: str = "text/event-stream",
    requests: list[httpx.Request] | None = None,
):
    """Factory for httpx clients whose GET stream replays ``chunks`` and then ends."""

    async def stream() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk

    async def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        if request.method == "GET":
            return httpx.Response(status_code, headers={"content-type": content_type}, content=stream())
        return httpx.Response(202)

    def factory(**kwargs: Any) -> httpx.AsyncClient:
        return create_mcp_http_client(transport=httpx.MockTransport(handler), **kwargs)

    return factory
