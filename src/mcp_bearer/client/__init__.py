from mcp_bearer.client.client import Client, ConnectResult
from mcp_bearer.client.controller import ConnectionState, SessionController, SessionSnapshot
from mcp_bearer.client.transport import BearerSSETransport, TransportClosed, TransportEvent, TransportState

__all__ = [
    "BearerSSETransport",
    "Client",
    "ConnectResult",
    "ConnectionState",
    "SessionController",
    "SessionSnapshot",
    "TransportClosed",
    "TransportEvent",
    "TransportState",
]
