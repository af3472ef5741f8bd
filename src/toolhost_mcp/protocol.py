"""
MCP SDK glue shared by all transports.

The wire protocol itself (framing, id correlation, server-to-client pings,
SSE parsing) is handled by `mcp.ClientSession` and the SDK transport clients.
This module only holds the client identity and turns SDK result models into
the client's own Tool / ToolResult types.
"""

from typing import Any, List

from mcp import types
from pydantic import ValidationError

from toolhost_mcp.models import Tool, ToolResult

CLIENT_NAME = "toolhost-mcp"
CLIENT_VERSION = "0.1.0"

METHOD_NOT_FOUND = types.METHOD_NOT_FOUND


def client_info() -> types.Implementation:
    return types.Implementation(name=CLIENT_NAME, version=CLIENT_VERSION)


def innermost(exc: BaseException) -> BaseException:
    """First leaf of a (possibly nested) exception group raised by an anyio task group."""
    while getattr(exc, "exceptions", None):
        exc = exc.exceptions[0]
    return exc


def is_stray_output(item: Any) -> bool:
    """
    True for a line the transport could not parse as JSON at all.

    Servers launched through npx/uvx sometimes print banners on stdout. Those
    lines are skipped; a line that is JSON but not JSON-RPC breaks the protocol.
    """
    if not isinstance(item, ValidationError):
        return False
    return any(error.get("type") == "json_invalid" for error in item.errors())


def to_tools(result: types.ListToolsResult) -> List[Tool]:
    return [
        Tool(
            name=tool.name,
            description=tool.description or "",
            input_schema=dict(tool.inputSchema or {"type": "object", "properties": {}}),
        )
        for tool in result.tools
    ]


def to_tool_result(result: types.CallToolResult) -> ToolResult:
    content = [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in result.content]
    if result.isError:
        text = " ".join(item.get("text", "") for item in content if item.get("type") == "text").strip()
        return ToolResult(success=False, content=content, error=text or "Tool reported an error")
    return ToolResult.ok(content)
