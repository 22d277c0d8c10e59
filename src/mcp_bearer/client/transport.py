"""
Bearer-authenticated SSE client transport.

The transport opens a long-lived GET event stream, learns the command endpoint
from the first frame the server sends, and POSTs every outgoing JSON-RPC
message to that endpoint. Inbound messages are written to a memory object
stream supplied by the owner, followed by a single :class:`TransportClosed`
event when the transport goes away.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlparse

import anyio
import httpx
from anyio.streams.memory import MemoryObjectSendStream
from pydantic import ValidationError

from mcp_bearer.shared._httpx_utils import McpHttpClientFactory, create_mcp_http_client, stream_timeout
from mcp_bearer.shared.exceptions import (
    AlreadyStartedError,
    ConnectFailedError,
    ConnectionClosedError,
    NotStartedError,
    OriginMismatchError,
    ReadFailedError,
    SendFailedError,
    StreamEndedBeforeEndpointError,
    TransportError,
    UnexpectedContentTypeError,
)
from mcp_bearer.shared.sse_parser import SSEFrame, iter_frames
from mcp_bearer.types import LATEST_PROTOCOL_VERSION, JSONRPCMessage, JSONRPCMessageAdapter, dump_message

logger = logging.getLogger(__name__)

MCP_SESSION_ID = "mcp-session-id"
MCP_PROTOCOL_VERSION = "mcp-protocol-version"
AUTHORIZATION = "authorization"
CONTENT_TYPE = "content-type"
CACHE_CONTROL = "cache-control"
ACCEPT = "accept"

JSON = "application/json"
SSE = "text/event-stream"


@dataclass(frozen=True)
class TransportClosed:
    """Last event a transport emits. ``error`` is set when the close was fatal."""

    error: TransportError | None = None


TransportEvent = JSONRPCMessage | TransportError | TransportClosed


class TransportState(Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    STARTED = "started"
    CLOSED = "closed"


def remove_request_params(url: str) -> str:
    return urljoin(url, urlparse(url).path)


_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: str) -> tuple[str, str, int | None]:
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    return scheme, parsed.hostname or "", parsed.port or _DEFAULT_PORTS.get(scheme)


def _is_endpoint_payload(data: str) -> bool:
    return data.startswith("/") or urlparse(data).scheme in ("http", "https")


class BearerSSETransport:
    """SSE client transport that authenticates every request with a bearer token.

    Example:
        ```python
        send, receive = anyio.create_memory_object_stream[TransportEvent](math.inf)
        transport = BearerSSETransport("https://api.example.com/weather/sse", token, send)
        await transport.start()
        await transport.send(JSONRPCRequest(id=0, method="ping"))
        event = await receive.receive()
        await transport.close()
        ```

    The sink should be unbounded: close events are written without waiting.
    """

    def __init__(
        self,
        url: str,
        access_token: str,
        sink: MemoryObjectSendStream[Any],
        *,
        headers: dict[str, str] | None = None,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
        timeout: float = 30,
        sse_read_timeout: float = 60 * 5,
        httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
    ) -> None:
        """
        Args:
            url: Event stream URL.
            access_token: Bearer token sent on every request.
            sink: Receives inbound messages, a fatal error if one occurs, and
                finally one TransportClosed event. Closed by the transport.
            headers: Extra headers for every request.
            protocol_version: Value of the MCP-Protocol-Version header.
            timeout: HTTP timeout for regular operations, in seconds.
            sse_read_timeout: How long to wait for the next stream read, in seconds.
            httpx_client_factory: Builds the underlying httpx.AsyncClient.
        """
        self.url = url
        self.access_token = access_token
        self.headers = headers or {}
        self.protocol_version = protocol_version
        self.timeout = timeout
        self.sse_read_timeout = sse_read_timeout
        self.endpoint_url: str | None = None
        self.session_id: str | None = None
        self.close_error: TransportError | None = None
        self._sink = sink
        self._httpx_client_factory = httpx_client_factory
        self._client: httpx.AsyncClient | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._endpoint_ready: asyncio.Future[str] | None = None
        self._state = TransportState.NOT_STARTED
        self._closed_emitted = False

    @property
    def state(self) -> TransportState:
        return self._state

    def _base_headers(self) -> dict[str, str]:
        return {
            **self.headers,
            AUTHORIZATION: f"Bearer {self.access_token}",
            MCP_PROTOCOL_VERSION: self.protocol_version,
        }

    def _stream_headers(self) -> dict[str, str]:
        return {**self._base_headers(), ACCEPT: SSE, CACHE_CONTROL: "no-cache"}

    def _command_headers(self) -> dict[str, str]:
        headers = {**self._base_headers(), CONTENT_TYPE: JSON}
        if self.session_id:
            headers[MCP_SESSION_ID] = self.session_id
        return headers

    async def start(self) -> None:
        """Open the event stream and wait for the endpoint announcement.

        Raises:
            AlreadyStartedError: start() was already called on this transport.
            TransportError: The stream could not be established or ended or
                failed before announcing the command endpoint.
        """
        if self._state is not TransportState.NOT_STARTED:
            raise AlreadyStartedError()
        self._state = TransportState.STARTING

        self._client = self._httpx_client_factory(timeout=stream_timeout(self.timeout, self.sse_read_timeout))
        endpoint_ready: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._endpoint_ready = endpoint_ready
        self._reader_task = asyncio.create_task(self._stream_reader(endpoint_ready))

        try:
            await endpoint_ready
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.close()
            raise

    async def _stream_reader(self, endpoint_ready: asyncio.Future[str]) -> None:
        error: TransportError | None = None
        try:
            await self._read_events(endpoint_ready)
        except TransportError as exc:
            error = exc
        except Exception as exc:
            error = ReadFailedError(f"Error in event stream reader: {exc}")
            error.__cause__ = exc

        if error is not None:
            logger.error(f"Event stream failed: {error}")
            if not endpoint_ready.done():
                endpoint_ready.set_exception(error)
        else:
            logger.info("Event stream ended")

        self._emit_closed(error)
        await self._release_client()

    async def _read_events(self, endpoint_ready: asyncio.Future[str]) -> None:
        assert self._client is not None
        logger.info(f"Connecting to event stream: {remove_request_params(self.url)}")
        try:
            async with self._client.stream("GET", self.url, headers=self._stream_headers()) as response:
                self._check_stream_response(response)
                logger.debug("Event stream connection established")

                try:
                    async with aclosing(iter_frames(response.aiter_bytes())) as frames:
                        async for frame in frames:
                            await self._handle_frame(frame, endpoint_ready)
                except httpx.HTTPError as exc:
                    raise ReadFailedError(f"Error reading event stream: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ConnectFailedError(f"Event stream connection failed: {exc}") from exc

        if self.endpoint_url is None:
            raise StreamEndedBeforeEndpointError()

    def _check_stream_response(self, response: httpx.Response) -> None:
        if not response.is_success:
            raise ConnectFailedError(
                f"Event stream connection failed: HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        content_type = response.headers.get(CONTENT_TYPE)
        if not content_type or SSE not in content_type.lower():
            raise UnexpectedContentTypeError(content_type)

    async def _handle_frame(self, frame: SSEFrame, endpoint_ready: asyncio.Future[str]) -> None:
        if self.endpoint_url is None and _is_endpoint_payload(frame.data):
            endpoint_url = urljoin(self.url, frame.data)
            if _origin(endpoint_url) != _origin(self.url):
                raise OriginMismatchError(endpoint_url, self.url)

            self.endpoint_url = endpoint_url
            self._state = TransportState.STARTED
            logger.info(f"Received endpoint URL: {remove_request_params(endpoint_url)}")
            if not endpoint_ready.done():
                endpoint_ready.set_result(endpoint_url)
            return

        try:
            message = JSONRPCMessageAdapter.validate_json(frame.data)
        except ValidationError as exc:
            logger.warning(f"Dropping malformed frame {frame.data!r}: {exc.error_count()} validation error(s)")
            return

        logger.debug(f"Received server message: {message}")
        try:
            await self._sink.send(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("No receiver for server message; dropping it")

    async def send(self, message: JSONRPCMessage) -> None:
        """POST one message to the command endpoint.

        Raises:
            NotStartedError: No command endpoint is known yet.
            ConnectionClosedError: The transport was closed.
            SendFailedError: The request failed or returned a non-2xx status.
        """
        if self._state is TransportState.CLOSED:
            raise ConnectionClosedError("Transport closed")
        if self._state is not TransportState.STARTED or self.endpoint_url is None or self._client is None:
            raise NotStartedError()

        logger.debug(f"Sending client message: {message}")
        try:
            response = await self._client.post(
                self.endpoint_url,
                content=dump_message(message),
                headers=self._command_headers(),
            )
        except httpx.HTTPError as exc:
            if self._state is TransportState.CLOSED:
                # close() released the client under this request.
                raise ConnectionClosedError("Transport closed") from exc
            raise SendFailedError(None, f"Error sending message: {exc}") from exc

        if not response.is_success:
            if response.status_code == httpx.codes.NOT_FOUND and self.session_id:
                logger.info(f"Session {self.session_id} expired; clearing session ID")
                self.session_id = None
            raise SendFailedError(response.status_code, response.text)

        session_id = response.headers.get(MCP_SESSION_ID)
        if session_id and not self.session_id:
            self.session_id = session_id
            logger.info(f"Received session ID: {session_id}")
        logger.debug(f"Client message sent successfully: {response.status_code}")

    async def close(self) -> None:
        """Stop reading the stream and release the HTTP client.

        Safe to call more than once and on a transport that never started.
        """
        task = self._reader_task
        if task is not None and not task.done():
            # Once the reader has emitted its close event it only has cleanup left.
            if not self._closed_emitted:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        endpoint_ready = self._endpoint_ready
        if endpoint_ready is not None and not endpoint_ready.done():
            endpoint_ready.set_exception(ConnectionClosedError("Transport closed before the endpoint was announced"))

        self._emit_closed(None)
        await self._release_client()

    def _emit_closed(self, error: TransportError | None) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        self._state = TransportState.CLOSED
        self.close_error = error

        try:
            if error is not None:
                self._sink.send_nowait(error)
            self._sink.send_nowait(TransportClosed(error))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError, anyio.WouldBlock):
            logger.debug("Transport event receiver unavailable; close event not delivered")
        finally:
            self._sink.close()

    async def _release_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
