"""MCP client over a bearer-authenticated SSE transport.

The client owns one :class:`~mcp_bearer.client.transport.BearerSSETransport`
at a time. A single dispatch task reads the transport's event channel and is
the only owner of the pending-call table: callers register a pending call by
writing it into that same channel before POSTing the request, so the
registration is always seen before the response it waits for.
"""

import asyncio
import itertools
import logging
import math
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import ValidationError

import mcp_bearer.types as types
from mcp_bearer.client.transport import BearerSSETransport, TransportClosed, TransportEvent, TransportState
from mcp_bearer.shared._httpx_utils import McpHttpClientFactory, create_mcp_http_client
from mcp_bearer.shared.exceptions import (
    ConnectionClosedError,
    McpBearerError,
    McpError,
    NotConnectedError,
    ToolCallFailedError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_INFO = types.Implementation(name="mcp-bearer-client", version="0.1.0")

NotificationHandlerFnT = Callable[[types.JSONRPCNotification], Awaitable[None]]
CloseHandlerFnT = Callable[[TransportError | None], Awaitable[None]]

ResponseFuture = asyncio.Future[types.JSONRPCResponse]

# MCP log levels mapped onto the standard library's
_SERVER_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of :meth:`Client.connect`.

    A result is only returned when the transport and the initialize handshake
    succeeded. Loading the tool catalog can still have failed, in which case
    ``catalog_error`` holds the reason and the catalog is empty.
    """

    server_info: types.InitializeResult
    catalog_error: Exception | None = None

    @property
    def catalog_loaded(self) -> bool:
        return self.catalog_error is None


@dataclass(frozen=True)
class _PendingCall:
    request_id: types.RequestId
    future: ResponseFuture


@dataclass(frozen=True)
class _ForgetCall:
    request_id: types.RequestId


_InboxItem = TransportEvent | _PendingCall | _ForgetCall


def _discard(future: ResponseFuture) -> None:
    if not future.done():
        future.cancel()
    elif not future.cancelled():
        # Mark the exception as retrieved; the caller is raising something else.
        future.exception()


class Client:
    """A client for one MCP server reached over an authenticated event stream.

    Example:
        ```python
        client = Client("https://api.example.com/weather/sse", access_token)
        result = await client.connect()
        if not result.catalog_loaded:
            print("tools unavailable:", result.catalog_error)
        forecast = await client.call_tool("get_forecast", {"city": "Oslo"})
        await client.disconnect()
        ```
    """

    def __init__(
        self,
        url: str,
        access_token: str,
        *,
        headers: dict[str, str] | None = None,
        client_info: types.Implementation | None = None,
        protocol_version: str = types.LATEST_PROTOCOL_VERSION,
        timeout: float = 30,
        sse_read_timeout: float = 60 * 5,
        httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
        notification_handler: NotificationHandlerFnT | None = None,
        on_close: CloseHandlerFnT | None = None,
    ) -> None:
        """
        Args:
            url: Event stream URL of the server.
            access_token: Bearer token for every request.
            headers: Extra headers for every request.
            client_info: Name and version sent in the initialize request.
            protocol_version: Protocol version to request.
            timeout: HTTP timeout for regular operations, in seconds.
            sse_read_timeout: Event stream read timeout, in seconds.
            httpx_client_factory: Builds the transport's httpx.AsyncClient.
            notification_handler: Awaited for every server notification. It runs
                on the dispatch task, so it must not wait for responses itself.
            on_close: Awaited once when the transport closes without this client
                asking it to, with the fatal error or None for a clean end of stream.
        """
        self.url = url
        self.access_token = access_token
        self.headers = headers
        self.client_info = client_info or DEFAULT_CLIENT_INFO
        self.protocol_version = protocol_version
        self.timeout = timeout
        self.sse_read_timeout = sse_read_timeout
        self.server_info: types.InitializeResult | None = None
        self.last_error: TransportError | None = None
        self._httpx_client_factory = httpx_client_factory
        self._notification_handler = notification_handler
        self._on_close = on_close
        self._transport: BearerSSETransport | None = None
        self._inbox: MemoryObjectSendStream[_InboxItem] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._request_ids = itertools.count()
        self._connected = False
        self._closing = False
        self._connect_result: ConnectResult | None = None
        self._tools: list[types.Tool] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def tools(self) -> list[types.Tool]:
        return list(self._tools)

    @property
    def session_id(self) -> str | None:
        return self._transport.session_id if self._transport else None

    async def connect(self) -> ConnectResult:
        """Start a transport, run the initialize handshake and load the tool catalog.

        Does nothing and returns the previous result when already connected.

        Raises:
            TransportError: The event stream could not be established.
            SendFailedError: The initialize request could not be posted.
            McpError: The server rejected the initialize request.
            ConnectionClosedError: The stream closed during the handshake or the
                catalog load. A fatal stream error is raised in its place when
                one was reported.
        """
        if self._connected and self._connect_result is not None:
            return self._connect_result
        if self._transport is not None:
            await self._teardown()

        inbox_send, inbox_recv = anyio.create_memory_object_stream[_InboxItem](math.inf)
        transport = BearerSSETransport(
            self.url,
            self.access_token,
            inbox_send.clone(),
            headers=self.headers,
            protocol_version=self.protocol_version,
            timeout=self.timeout,
            sse_read_timeout=self.sse_read_timeout,
            httpx_client_factory=self._httpx_client_factory,
        )
        self._transport = transport
        self._inbox = inbox_send
        self._closing = False
        self.last_error = None
        self._connect_result = None
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(inbox_recv))

        try:
            await transport.start()
            self.server_info = await self._initialize()
            if transport.state is TransportState.CLOSED:
                raise transport.close_error or ConnectionClosedError()
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self._teardown()
            raise
        self._connected = True

        catalog_error: Exception | None = None
        try:
            await self.refresh_tools()
        except (McpBearerError, ValidationError) as exc:
            catalog_error = exc
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.disconnect()
            raise

        if transport.state is TransportState.CLOSED:
            # The stream ended while the catalog was loading.
            error = transport.close_error or ConnectionClosedError()
            with anyio.CancelScope(shield=True):
                await self.disconnect()
            raise error from catalog_error
        if catalog_error is not None:
            logger.warning(f"Connected, but loading tools failed: {catalog_error}")
            self._tools = []

        self._connect_result = ConnectResult(self.server_info, catalog_error)
        logger.info(f"Connected to {self.server_info.server_info.name} {self.server_info.server_info.version}")
        return self._connect_result

    async def _initialize(self) -> types.InitializeResult:
        params = types.InitializeRequestParams(
            protocol_version=self.protocol_version,
            capabilities=types.ClientCapabilities(),
            client_info=self.client_info,
        )
        result = types.InitializeResult.model_validate(
            await self._request("initialize", params.model_dump(by_alias=True, mode="json", exclude_none=True))
        )
        if result.protocol_version != self.protocol_version:
            logger.warning(
                f"Server negotiated protocol version {result.protocol_version}, requested {self.protocol_version}"
            )
        await self._notify("notifications/initialized")
        return result

    async def disconnect(self) -> None:
        """Close the transport and clear the catalog. Safe if never connected."""
        if self._transport is None:
            return
        self._connected = False
        self._connect_result = None
        self._tools = []
        await self._teardown()
        logger.info("Client disconnected")

    async def _teardown(self) -> None:
        self._closing = True
        transport, self._transport = self._transport, None
        inbox, self._inbox = self._inbox, None
        dispatch_task, self._dispatch_task = self._dispatch_task, None
        try:
            if transport is not None:
                await transport.close()
        finally:
            if inbox is not None:
                inbox.close()
            current = asyncio.current_task()
            if dispatch_task is not None and dispatch_task is not current:
                await asyncio.gather(dispatch_task, return_exceptions=True)
            background = [task for task in self._background_tasks if task is not current]
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise NotConnectedError()

    async def send_request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a request and wait for its result.

        There is no timeout; wrap the call in ``anyio.fail_after`` to bound it.

        Raises:
            NotConnectedError: The client is not connected.
            SendFailedError: The request could not be posted.
            McpError: The server answered with an error.
            ConnectionClosedError: The connection closed before the response arrived.
        """
        self._ensure_connected()
        return await self._request(method, params)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._ensure_connected()
        await self._notify(method, params)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
        """Invoke a tool on the server.

        Raises:
            NotConnectedError: The client is not connected.
            ToolCallFailedError: The server answered with an error frame.
        """
        self._ensure_connected()
        params = types.CallToolRequestParams(name=name, arguments=arguments)
        try:
            result = await self._request("tools/call", params.model_dump(by_alias=True, mode="json", exclude_none=True))
        except McpError as exc:
            raise ToolCallFailedError(name, exc.error) from exc
        logger.debug(f"Called tool {name}: {result}")
        return types.CallToolResult.model_validate(result)

    async def refresh_tools(self) -> list[types.Tool]:
        """Reload the tool catalog, following pagination cursors.

        The catalog is only replaced once every page has been received.
        """
        self._ensure_connected()
        tools: list[types.Tool] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else None
            page = types.ListToolsResult.model_validate(await self._request("tools/list", params))
            tools.extend(page.tools)
            cursor = page.next_cursor
            if not cursor:
                break
            if cursor in seen_cursors:
                logger.warning(f"Server repeated tools/list cursor {cursor!r}; stopping pagination")
                break
            seen_cursors.add(cursor)

        self._tools = tools
        logger.info(f"Loaded {len(tools)} tools: {[tool.name for tool in tools]}")
        return list(tools)

    async def _request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        transport, inbox = self._transport, self._inbox
        if transport is None or inbox is None:
            raise NotConnectedError()

        request_id = next(self._request_ids)
        future: ResponseFuture = asyncio.get_running_loop().create_future()
        try:
            inbox.send_nowait(_PendingCall(request_id, future))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
            raise ConnectionClosedError() from exc

        try:
            await transport.send(types.JSONRPCRequest(id=request_id, method=method, params=params))
            response = await future
        except BaseException:
            self._forget(request_id)
            _discard(future)
            raise

        if isinstance(response, types.JSONRPCErrorResponse):
            raise McpError(response.error)
        return response.result

    def _forget(self, request_id: types.RequestId) -> None:
        if self._inbox is None:
            return
        try:
            self._inbox.send_nowait(_ForgetCall(request_id))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            pass

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if self._transport is None:
            raise NotConnectedError()
        await self._transport.send(types.JSONRPCNotification(method=method, params=params))

    async def _dispatch_loop(self, inbox: MemoryObjectReceiveStream[_InboxItem]) -> None:
        pending: dict[types.RequestId, ResponseFuture] = {}
        closed: TransportClosed | None = None
        try:
            async for item in inbox:
                if isinstance(item, TransportClosed):
                    closed = item
                    break
                await self._dispatch(item, pending)
        except Exception:
            logger.exception("Unhandled exception in dispatch loop")
        finally:
            # Nothing can be enqueued between draining and closing.
            while True:
                try:
                    item = inbox.receive_nowait()
                except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                    break
                if isinstance(item, _PendingCall):
                    pending[item.request_id] = item.future
            inbox.close()

            for future in pending.values():
                if not future.done():
                    future.set_exception(ConnectionClosedError())
            pending.clear()

        if self._closing or self._connect_result is None:
            # Failures before connect() returns are raised from connect().
            return
        # The transport went away on its own.
        self._connected = False
        self._connect_result = None
        self._tools = []
        error = closed.error if closed else self.last_error
        if self._on_close is not None:
            try:
                await self._on_close(error)
            except Exception:
                logger.exception("Close handler failed")

    async def _dispatch(self, item: _InboxItem, pending: dict[types.RequestId, ResponseFuture]) -> None:
        match item:
            case _PendingCall(request_id=request_id, future=future):
                pending[request_id] = future
            case _ForgetCall(request_id=request_id):
                pending.pop(request_id, None)
            case types.JSONRPCResultResponse() | types.JSONRPCErrorResponse():
                future = pending.pop(item.id, None) if item.id is not None else None
                if future is None:
                    logger.warning(f"Received response with an unknown request ID: {item.id}")
                elif not future.done():
                    future.set_result(item)
            case types.JSONRPCNotification():
                await self._handle_notification(item)
            case types.JSONRPCRequest():
                self._spawn(self._answer_server_request(item))
            case TransportError():
                logger.error(f"Transport failed: {item}")
                self.last_error = item
            case _:
                logger.warning(f"Ignoring unexpected transport event: {item!r}")

    async def _handle_notification(self, notification: types.JSONRPCNotification) -> None:
        if notification.method == "notifications/message" and notification.params:
            try:
                params = types.LoggingMessageNotificationParams.model_validate(notification.params)
            except ValidationError:
                logger.warning(f"Invalid logging notification: {notification.params}")
            else:
                level = _SERVER_LOG_LEVELS.get(params.level, logging.INFO)
                logger.log(level, f"Server log ({params.logger or 'server'}): {params.data}")
        else:
            logger.debug(f"Received notification: {notification.method}")

        if self._notification_handler is not None:
            try:
                await self._notification_handler(notification)
            except Exception:
                logger.exception(f"Notification handler failed for {notification.method}")

    async def _answer_server_request(self, request: types.JSONRPCRequest) -> None:
        response: types.JSONRPCResultResponse | types.JSONRPCErrorResponse
        if request.method == "ping":
            response = types.JSONRPCResultResponse(id=request.id, result={})
        else:
            logger.warning(f"Unsupported server request: {request.method}")
            response = types.JSONRPCErrorResponse(
                id=request.id,
                error=types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )

        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(response)
        except McpBearerError as exc:
            logger.warning(f"Failed to answer server request {request.method}: {exc}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
