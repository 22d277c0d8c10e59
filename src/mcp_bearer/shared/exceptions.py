from mcp_bearer.types import ErrorData


class McpBearerError(Exception):
    """Base class for every error raised by this package."""


class TransportError(McpBearerError):
    """A failure that is fatal to the current transport.

    These are raised from ``start()`` and also delivered once through the
    transport's event channel.
    """


class ConnectFailedError(TransportError):
    """The stream request could not be established or returned a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnexpectedContentTypeError(TransportError):
    def __init__(self, content_type: str | None):
        super().__init__(f"Expected an event stream, got content type: {content_type!r}")
        self.content_type = content_type


class StreamEndedBeforeEndpointError(TransportError):
    def __init__(self) -> None:
        super().__init__("Event stream ended without announcing a command endpoint")


class ReadFailedError(TransportError):
    """The event stream body could not be read."""


class OriginMismatchError(TransportError):
    def __init__(self, endpoint_url: str, stream_url: str):
        super().__init__(f"Endpoint origin does not match connection origin: {endpoint_url}")
        self.endpoint_url = endpoint_url
        self.stream_url = stream_url


class AlreadyStartedError(McpBearerError):
    def __init__(self) -> None:
        super().__init__("Transport already started")


class NotStartedError(McpBearerError):
    def __init__(self) -> None:
        super().__init__("Transport not started: no command endpoint is known")


class NotConnectedError(McpBearerError):
    def __init__(self) -> None:
        super().__init__("Client not connected")


class ConnectionClosedError(McpBearerError):
    """The connection closed before a response arrived."""

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)


class SendFailedError(McpBearerError):
    """A single POST to the command endpoint failed. The caller may retry."""

    def __init__(self, status_code: int | None, detail: str):
        message = f"HTTP {status_code}: {detail}" if status_code is not None else detail
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class McpError(McpBearerError):
    """Exception raised when an MCP protocol error is received from a peer.

    Attributes:
        error: The ErrorData object received from the MCP peer containing
               error code, message, and optional additional data
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        super().__init__(error.message)
        self.error = error


class ToolCallFailedError(McpError):
    """The server answered a ``tools/call`` request with an error frame."""

    def __init__(self, tool_name: str, error: ErrorData):
        super().__init__(error)
        self.tool_name = tool_name

    def __str__(self) -> str:
        return f"Tool {self.tool_name!r} failed: {self.error.message}"
