"""Connection lifecycle presented to the rest of an application.

:class:`SessionController` owns at most one :class:`~mcp_bearer.client.client.Client`
and turns its failures into observable state. Connect and disconnect are
serialized, so overlapping calls from different tasks never initialize or tear
down twice.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any

import anyio
from pydantic import ValidationError
from typing_extensions import Self

import mcp_bearer.types as types
from mcp_bearer.client.client import Client
from mcp_bearer.settings import ClientSettings
from mcp_bearer.shared.exceptions import McpBearerError, NotConnectedError, TransportError

logger = logging.getLogger(__name__)

TOOLS_LIST_CHANGED = "notifications/tools/list_changed"


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionSnapshot:
    """What the controller publishes to its listener after every change."""

    state: ConnectionState
    tools: tuple[types.Tool, ...] = ()
    error: Exception | None = None
    """The failure that moved the controller to FAILED."""
    catalog_error: Exception | None = None
    """Why the most recent catalog load failed, while connected."""

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


SnapshotListener = Callable[[SessionSnapshot], None]


class SessionController:
    """
    State machine around a single MCP connection.

    States move IDLE -> CONNECTING -> CONNECTED -> DISCONNECTING -> IDLE. Any
    unrecoverable error while connecting or connected moves to FAILED, which
    stays put until the next connect() or disconnect().

    Example:
        ```python
        async with SessionController(url, access_token, listener=render) as session:
            if session.state is ConnectionState.CONNECTED:
                result = await session.call_tool("get_forecast", {"city": "Oslo"})
        ```
    """

    def __init__(
        self,
        url: str,
        access_token: str,
        *,
        listener: SnapshotListener | None = None,
        **client_options: Any,
    ) -> None:
        """
        Args:
            url: Event stream URL of the server.
            access_token: Bearer token supplied by the authentication layer.
            listener: Called with a fresh snapshot after every change.
            **client_options: Passed on to each :class:`Client` this controller creates.
        """
        self.url = url
        self.access_token = access_token
        self._listener = listener
        self._client_options = client_options
        self._client: Client | None = None
        self._state = ConnectionState.IDLE
        self._tools: tuple[types.Tool, ...] = ()
        self._error: Exception | None = None
        self._catalog_error: Exception | None = None
        self._lifecycle_lock = anyio.Lock()
        self._refresh_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        access_token: str,
        settings: ClientSettings | None = None,
        **kwargs: Any,
    ) -> Self:
        """Build a controller from environment-driven settings."""
        settings = settings or ClientSettings()
        if not settings.server_url:
            raise ValueError("No server URL configured; set MCP_BEARER_SERVER_URL")
        kwargs.setdefault("client_info", types.Implementation(name=settings.client_name, version=settings.client_version))
        kwargs.setdefault("protocol_version", settings.protocol_version)
        kwargs.setdefault("timeout", settings.timeout)
        kwargs.setdefault("sse_read_timeout", settings.sse_read_timeout)
        return cls(settings.server_url, access_token, **kwargs)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def tools(self) -> list[types.Tool]:
        return list(self._tools)

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def catalog_error(self) -> Exception | None:
        return self._catalog_error

    @property
    def session_id(self) -> str | None:
        return self._client.session_id if self._client else None

    @property
    def server_info(self) -> types.InitializeResult | None:
        return self._client.server_info if self._client else None

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(self._state, self._tools, self._error, self._catalog_error)

    def _publish(self, state: ConnectionState | None = None) -> None:
        if state is not None and state is not self._state:
            logger.debug(f"Session state {self._state.value} -> {state.value}")
            self._state = state
        if self._listener is None:
            return
        try:
            self._listener(self.snapshot)
        except Exception:
            logger.exception("Session listener failed")

    def _fail(self, error: Exception) -> None:
        self._tools = ()
        self._catalog_error = None
        self._error = error
        self._publish(ConnectionState.FAILED)

    async def connect(self) -> None:
        """Connect to the server.

        Does nothing while connecting or connected. Failures are not raised;
        they move the controller to FAILED and are available as :attr:`error`.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        async with self._lifecycle_lock:
            # Another connect() may have finished while this one waited.
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                return
            self._error = None
            self._catalog_error = None
            self._publish(ConnectionState.CONNECTING)

            client = Client(
                self.url,
                self.access_token,
                notification_handler=self._handle_notification,
                on_close=self._handle_client_closed,
                **self._client_options,
            )
            self._client = client
            try:
                result = await client.connect()
            except Exception as exc:
                logger.error(f"MCP connection failed: {exc}")
                self._client = None
                self._fail(exc)
                return
            except BaseException:
                self._client = None
                self._publish(ConnectionState.IDLE)
                raise

            self._tools = tuple(client.tools)
            self._catalog_error = result.catalog_error
            self._publish(ConnectionState.CONNECTED)

    async def disconnect(self) -> None:
        """Disconnect from the server. Never raises; always ends IDLE."""
        async with self._lifecycle_lock:
            if self._state is ConnectionState.IDLE:
                return
            self._cancel_refresh()
            client, self._client = self._client, None
            if client is not None:
                self._publish(ConnectionState.DISCONNECTING)
                try:
                    await client.disconnect()
                except Exception as exc:
                    logger.error(f"Error disconnecting: {exc}")

            self._tools = ()
            self._error = None
            self._catalog_error = None
            self._publish(ConnectionState.IDLE)

    def _require_client(self) -> Client:
        if self._state is not ConnectionState.CONNECTED or self._client is None:
            raise NotConnectedError()
        return self._client

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
        """Invoke a tool. Errors reach the caller unchanged and leave the state alone."""
        client = self._require_client()
        return await client.call_tool(name, arguments)

    async def refresh_tools(self) -> list[types.Tool]:
        client = self._require_client()
        tools = await client.refresh_tools()
        if client is self._client:
            self._tools = tuple(tools)
            self._catalog_error = None
            self._publish()
        return tools

    async def _handle_notification(self, notification: types.JSONRPCNotification) -> None:
        if notification.method == TOOLS_LIST_CHANGED and self._state is ConnectionState.CONNECTED:
            self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_in_background())

    async def _refresh_in_background(self) -> None:
        try:
            await self.refresh_tools()
        except (McpBearerError, ValidationError) as exc:
            logger.warning(f"Failed to refresh tools after list change: {exc}")
            if self._state is ConnectionState.CONNECTED:
                self._catalog_error = exc
                self._publish()

    def _cancel_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _handle_client_closed(self, error: TransportError | None) -> None:
        client = self._client
        if client is None or self._state is not ConnectionState.CONNECTED:
            return
        self._client = None
        self._cancel_refresh()
        await client.disconnect()

        if error is not None:
            logger.error(f"MCP connection lost: {error}")
            self._fail(error)
        else:
            logger.info("Server closed the event stream")
            self._tools = ()
            self._publish(ConnectionState.IDLE)
