"""A client for MCP servers reached over a bearer-authenticated event stream.

The server pushes responses and notifications over a long-lived Server-Sent
Events stream; requests are POSTed to the endpoint the stream announces first.

## Example

```python
from mcp_bearer import ConnectionState, SessionController

async with SessionController("https://api.example.com/weather/sse", access_token) as session:
    if session.state is ConnectionState.CONNECTED:
        print([tool.name for tool in session.tools])
        result = await session.call_tool("get_forecast", {"city": "Oslo"})
```
"""

from .client import (
    BearerSSETransport,
    Client,
    ConnectionState,
    ConnectResult,
    SessionController,
    SessionSnapshot,
)
from .settings import ClientSettings
from .shared.exceptions import (
    AlreadyStartedError,
    ConnectFailedError,
    ConnectionClosedError,
    McpBearerError,
    McpError,
    NotConnectedError,
    NotStartedError,
    OriginMismatchError,
    ReadFailedError,
    SendFailedError,
    StreamEndedBeforeEndpointError,
    ToolCallFailedError,
    TransportError,
    UnexpectedContentTypeError,
)
from .types import CallToolResult, ErrorData, InitializeResult, Tool

__all__ = [
    "AlreadyStartedError",
    "BearerSSETransport",
    "CallToolResult",
    "Client",
    "ClientSettings",
    "ConnectFailedError",
    "ConnectResult",
    "ConnectionClosedError",
    "ConnectionState",
    "ErrorData",
    "InitializeResult",
    "McpBearerError",
    "McpError",
    "NotConnectedError",
    "NotStartedError",
    "OriginMismatchError",
    "ReadFailedError",
    "SendFailedError",
    "SessionController",
    "SessionSnapshot",
    "StreamEndedBeforeEndpointError",
    "Tool",
    "ToolCallFailedError",
    "TransportError",
    "UnexpectedContentTypeError",
]
