#!/usr/bin/env python3
"""
Toolhost MCP Server

Exposes the MCP client's command surface as MCP tools, so another MCP host
can manage and call the configured tool servers:
- Listing and calling tools on connected servers
- Testing, adding, enabling and disabling server configurations
- Saving / refreshing / importing / exporting the configuration document
- Health reports, unhealthy-server detection and health reset
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import sentry_sdk
from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from toolhost_mcp import commands
from toolhost_mcp.context import ClientContext
from toolhost_mcp.env_config import ClientSettings
from toolhost_mcp.protocol import CLIENT_NAME, CLIENT_VERSION

logger = logging.getLogger(__name__)

SERVER_ID = {"type": "string", "description": "Server id from the configuration document"}
SERVER_ENTRY = {
    "type": "object",
    "description": "Server entry: transport (stdio|http|sse), command/args/env or baseUrl/headers",
}


def _schema(properties: Optional[Dict[str, Any]] = None, required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


COMMAND_TOOLS = [
    types.Tool(
        name="listTools",
        description="List tools discovered on connected servers (optionally one server, optionally refreshed)",
        inputSchema=_schema({"serverId": SERVER_ID, "refresh": {"type": "boolean", "default": False}}),
    ),
    types.Tool(
        name="callTool",
        description="Call a tool on a connected server",
        inputSchema=_schema(
            {
                "serverId": SERVER_ID,
                "toolName": {"type": "string"},
                "arguments": {"type": "object"},
                "timeoutMs": {"type": "integer", "minimum": 1},
            },
            ["serverId", "toolName"],
        ),
    ),
    types.Tool(
        name="testConnection",
        description="Connect to a server configuration with a throwaway connection and list its tools",
        inputSchema=_schema({"config": SERVER_ENTRY, "serverId": SERVER_ID}, ["config"]),
    ),
    types.Tool(
        name="addServer",
        description="Validate and add a server to the configuration, then reconcile connections",
        inputSchema=_schema(
            {"serverId": SERVER_ID, "config": SERVER_ENTRY, "enabled": {"type": "boolean", "default": True}},
            ["serverId", "config"],
        ),
    ),
    types.Tool(
        name="saveConfiguration",
        description="Replace the whole configuration document (validated) and reconcile connections",
        inputSchema=_schema({"configuration": {"type": "object"}}, ["configuration"]),
    ),
    types.Tool(
        name="refreshConfiguration",
        description="Reload the configuration document from disk and reconcile connections",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="healthReport",
        description="Health of every configured server",
        inputSchema=_schema({"refresh": {"type": "boolean", "default": False}}),
    ),
    types.Tool(
        name="serverHealth",
        description="Health record of one server, including per-tool call statistics",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="resetServerHealth",
        description="Clear failure counters; an unhealthy server becomes disconnected",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="unhealthyServers",
        description="Ids of servers currently marked unhealthy",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="loadConfiguration",
        description="Read the configuration document from disk",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="listServers",
        description="List configured servers (active and disabled) with connection status",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="getServer",
        description="One configured server with connection status",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="removeServer",
        description="Remove a server from the configuration and disconnect it",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="updateServer",
        description="Merge changes into a server entry (null deletes a key) and reconcile",
        inputSchema=_schema({"serverId": SERVER_ID, "updates": {"type": "object"}}, ["serverId", "updates"]),
    ),
    types.Tool(
        name="enableServer",
        description="Move a server from disabled to active and connect it",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="disableServer",
        description="Move a server from active to disabled and disconnect it",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="connectServer",
        description="Connect a server, enabling it (or adding it when config is given) as needed",
        inputSchema=_schema({"serverId": SERVER_ID, "config": SERVER_ENTRY}, ["serverId"]),
    ),
    types.Tool(
        name="disconnectServer",
        description="Disconnect a server and move it to the disabled section",
        inputSchema=_schema({"serverId": SERVER_ID}, ["serverId"]),
    ),
    types.Tool(
        name="connectionStatus",
        description="Connection state of one server or all servers",
        inputSchema=_schema({"serverId": SERVER_ID}),
    ),
    types.Tool(
        name="importConfiguration",
        description="Merge servers from another document (object, or json/yaml text) into the configuration",
        inputSchema=_schema({
            "configuration": {"type": "object"},
            "content": {"type": "string"},
            "format": {"type": "string", "enum": ["json", "yaml"], "default": "json"},
            "overwrite": {"type": "boolean", "default": False},
        }),
    ),
    types.Tool(
        name="exportConfiguration",
        description="Export the configuration as json, yaml or markdown with secrets redacted",
        inputSchema=_schema({
            "format": {"type": "string", "enum": ["json", "yaml", "markdown"], "default": "json"},
            "servers": {"type": "array", "items": {"type": "string"}},
            "includeHealth": {"type": "boolean", "default": False},
            "redact": {"type": "boolean", "default": True},
        }),
    ),
    types.Tool(
        name="getConfigPath",
        description="Path of the configuration document",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="validateConfiguration",
        description="Validate a server entry without saving or connecting",
        inputSchema=_schema({"config": SERVER_ENTRY, "serverId": SERVER_ID}, ["config"]),
    ),
]


def format_response(response: dict) -> list[types.TextContent]:
    """Format response as MCP TextContent."""
    return [types.TextContent(type="text", text=json.dumps(response, indent=2, default=str))]


def create_server(ctx: ClientContext) -> Server:
    """MCP server whose tools are the commands, bound to one ClientContext."""
    app = Server(CLIENT_NAME, version=CLIENT_VERSION)

    @app.list_tools()
    async def list_tools() -> list[types.Tool]:
        return list(COMMAND_TOOLS)

    @app.call_tool()
    async def call_tool(name: str, arguments: Any) -> list[types.TextContent]:
        return format_response(await commands.dispatch(ctx, name, arguments or {}))

    return app


def configure_logging(settings: ClientSettings):
    """File logging only: stdout carries the MCP protocol."""
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(settings.log_dir / "toolhost-mcp.log")
        ]
    )


def init_sentry(settings: ClientSettings):
    """Initialize Sentry when SENTRY_DSN is set."""
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=1.0,
            environment=settings.sentry_environment,
            release=settings.sentry_release or f"{CLIENT_NAME}@{CLIENT_VERSION}",
        )
        logger.info("Sentry monitoring enabled")


async def _run(settings: ClientSettings):
    """Run the MCP server (async)."""
    async with ClientContext(settings) as ctx:
        app = create_server(ctx)
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())


def main():
    """Entry point for the MCP server (sync wrapper for uvx)."""
    settings = ClientSettings.from_env()
    configure_logging(settings)
    init_sentry(settings)
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
