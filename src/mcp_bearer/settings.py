"""Client settings.

All settings can be configured via environment variables with the prefix
MCP_BEARER_. For example, MCP_BEARER_SERVER_URL=https://host/sse sets
server_url.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_bearer.types import LATEST_PROTOCOL_VERSION
from mcp_bearer.utilities.logging import LogLevel


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MCP_BEARER_",
        env_file=".env",
        extra="ignore",
    )

    server_url: str | None = None
    """Event stream URL of the MCP server."""

    protocol_version: str = LATEST_PROTOCOL_VERSION

    # HTTP settings
    timeout: float = 30
    sse_read_timeout: float = 60 * 5
    """How long to wait for the next event stream read, in seconds."""

    # Sent in the initialize request
    client_name: str = "mcp-bearer-client"
    client_version: str = "0.1.0"

    log_level: LogLevel = "WARNING"
    """Level for the command line's log output; --verbose switches to DEBUG."""
