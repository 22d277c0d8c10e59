"""Command-line interface for bearer-authenticated MCP servers.

Usage::

    mcp-bearer tools --url https://api.example.com/weather/sse --token "$TOKEN"
    mcp-bearer call get_forecast city=Oslo days=3 --url https://api.example.com/weather/sse

The token can also come from ``MCP_BEARER_TOKEN`` and the URL from
``MCP_BEARER_SERVER_URL``.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, TypeVar

import anyio
import typer

from mcp_bearer.client.controller import ConnectionState, SessionController
from mcp_bearer.settings import ClientSettings
from mcp_bearer.shared.exceptions import McpBearerError
from mcp_bearer.types import Tool
from mcp_bearer.utilities.logging import configure_logging

T = TypeVar("T")

app = typer.Typer(
    name="mcp-bearer",
    help="Call tools on an MCP server over a bearer-authenticated event stream.",
    add_completion=False,
    no_args_is_help=True,
)

UrlOption = Annotated[str | None, typer.Option("--url", "-u", help="Event stream URL of the server")]
TokenOption = Annotated[str, typer.Option("--token", "-t", envvar="MCP_BEARER_TOKEN", help="Bearer access token")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Log protocol activity to stderr")]


def _parse_arguments(args: list[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are decoded as JSON when they parse.

    Raises:
        typer.BadParameter: If an argument has no ``=``.
    """
    result: dict[str, Any] = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"Expected key=value, got: {arg}")
        key, value = arg.split("=", 1)
        try:
            result[key] = json.loads(value)
        except json.JSONDecodeError:
            result[key] = value
    return result


def _build_controller(url: str | None, token: str, verbose: bool) -> SessionController:
    settings = ClientSettings(server_url=url) if url else ClientSettings()
    configure_logging("DEBUG" if verbose else settings.log_level)
    try:
        return SessionController.from_settings(token, settings)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None


def _run(controller: SessionController, action: Callable[[SessionController], Awaitable[T]]) -> T:
    async def main() -> T:
        async with controller:
            if controller.state is not ConnectionState.CONNECTED:
                raise McpBearerError(f"Could not connect: {controller.error}")
            return await action(controller)

    try:
        return anyio.run(main)
    except McpBearerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def tools(url: UrlOption = None, token: TokenOption = "", verbose: VerboseOption = False) -> None:
    """List the tools the server offers."""
    controller = _build_controller(url, token, verbose)

    async def list_tools(session: SessionController) -> list[Tool]:
        if session.catalog_error is not None:
            raise McpBearerError(f"Could not load tools: {session.catalog_error}")
        return session.tools

    for tool in _run(controller, list_tools):
        typer.echo(f"{tool.name}\t{tool.description or ''}")


@app.command()
def call(
    name: Annotated[str, typer.Argument(help="Tool name")],
    args: Annotated[list[str] | None, typer.Argument(help="key=value arguments")] = None,
    url: UrlOption = None,
    token: TokenOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Call a tool and print its result as JSON."""
    arguments = _parse_arguments(args or [])
    controller = _build_controller(url, token, verbose)

    result = _run(controller, lambda session: session.call_tool(name, arguments))
    typer.echo(json.dumps(result.model_dump(by_alias=True, mode="json", exclude_none=True), indent=2))
    if result.is_error:
        raise typer.Exit(1)
