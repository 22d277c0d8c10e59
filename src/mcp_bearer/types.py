"""Protocol types for the bearer-authenticated MCP client.

Covers the JSON-RPC 2.0 envelope plus the handful of MCP payloads this client
speaks: the initialize handshake, ``tools/list`` and ``tools/call``.
"""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

JSONRPC_VERSION: Final[str] = "2.0"
LATEST_PROTOCOL_VERSION: Final[str] = "2025-06-18"

METHOD_NOT_FOUND: Final[int] = -32601

RequestId = Annotated[int, Field(strict=True)] | str


class MCPModel(BaseModel):
    """Base class for MCP domain types. Allows extra fields for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class JSONRPCBase(BaseModel):
    """Base class for all JSON-RPC messages."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION


class JSONRPCRequest(JSONRPCBase):
    """A request that expects a response."""

    id: RequestId
    method: str
    params: dict[str, Any] | None = None


class JSONRPCNotification(JSONRPCBase):
    """A notification which does not expect a response."""

    method: str
    params: dict[str, Any] | None = None


class ErrorData(BaseModel):
    """Error information in a JSON-RPC error response."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResultResponse(JSONRPCBase):
    """A successful (non-error) response to a request."""

    id: RequestId
    result: dict[str, Any]


class JSONRPCErrorResponse(JSONRPCBase):
    """A response to a request that indicates an error occurred."""

    id: RequestId | None = None
    error: ErrorData


def _message_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        if "method" in value:
            return "request" if "id" in value else "notification"
        if "error" in value:
            return "error"
        if "result" in value:
            return "result"
        return None
    kinds = {
        JSONRPCRequest: "request",
        JSONRPCNotification: "notification",
        JSONRPCResultResponse: "result",
        JSONRPCErrorResponse: "error",
    }
    return kinds.get(type(value))


JSONRPCResponse = JSONRPCResultResponse | JSONRPCErrorResponse
JSONRPCMessage = Annotated[
    Annotated[JSONRPCRequest, Tag("request")]
    | Annotated[JSONRPCNotification, Tag("notification")]
    | Annotated[JSONRPCResultResponse, Tag("result")]
    | Annotated[JSONRPCErrorResponse, Tag("error")],
    Discriminator(_message_kind),
]

JSONRPCMessageAdapter: TypeAdapter[JSONRPCMessage] = TypeAdapter(JSONRPCMessage)


def dump_message(message: JSONRPCMessage) -> str:
    """Serialize a message the way it goes on the wire."""
    return JSONRPCMessageAdapter.dump_json(message, by_alias=True, exclude_none=True).decode()


class Implementation(MCPModel):
    """Describes the name and version of an MCP implementation."""

    name: str
    version: str
    title: str | None = None


class ClientCapabilities(MCPModel):
    experimental: dict[str, Any] | None = None
    roots: dict[str, Any] | None = None
    sampling: dict[str, Any] | None = None


class ServerCapabilities(MCPModel):
    experimental: dict[str, Any] | None = None
    logging: dict[str, Any] | None = None
    prompts: dict[str, Any] | None = None
    resources: dict[str, Any] | None = None
    tools: dict[str, Any] | None = None


class InitializeRequestParams(MCPModel):
    """Parameters for the initialize request."""

    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: ClientCapabilities
    client_info: Annotated[Implementation, Field(alias="clientInfo")]


class InitializeResult(MCPModel):
    """Server's response to an initialize request."""

    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    server_info: Annotated[Implementation, Field(alias="serverInfo")]
    instructions: str | None = None


class Tool(MCPModel):
    """Definition of a tool the server provides.

    The input schema is kept as an opaque JSON object.
    """

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    title: str | None = None


class ListToolsResult(MCPModel):
    """Server's response to a tools/list request."""

    tools: list[Tool]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class TextContent(MCPModel):
    """Text provided to or from an LLM."""

    type: Literal["text"] = "text"
    text: str


class ImageContent(MCPModel):
    """An image provided to or from an LLM."""

    type: Literal["image"] = "image"
    data: str
    mime_type: Annotated[str, Field(alias="mimeType")]


def _content_kind(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in ("text", "image") else "other"


ContentBlock = Annotated[
    Annotated[TextContent, Tag("text")] | Annotated[ImageContent, Tag("image")] | Annotated[MCPModel, Tag("other")],
    Discriminator(_content_kind),
]


class CallToolRequestParams(MCPModel):
    """Parameters for tools/call request."""

    name: str
    arguments: dict[str, Any] | None = None


class CallToolResult(MCPModel):
    """Server's response to a tools/call request."""

    content: list[ContentBlock] = Field(default_factory=list)
    structured_content: Annotated[dict[str, Any] | None, Field(alias="structuredContent")] = None
    is_error: Annotated[bool, Field(alias="isError")] = False


class LoggingMessageNotificationParams(MCPModel):
    level: str
    logger: str | None = None
    data: Any = None
