"""Per-connection tool cache and tool-call dispatch."""

import logging
from typing import Dict, List, Optional

from toolhost_mcp.connection_manager import ConnectionListener, ConnectionManager
from toolhost_mcp.errors import MCPClientError, NotConnectedError
from toolhost_mcp.models import Tool, ToolCall, ToolResult
from toolhost_mcp.response import ErrorCodes
from toolhost_mcp.transports import TransportAdapter

logger = logging.getLogger(__name__)


class ToolRegistry(ConnectionListener):
    """
    Tools discovered on each connected server.

    The tool list for a server is replaced wholesale on every connect or
    refresh and dropped on disconnect. invoke() never reconnects: calls
    against a server without a live connection fail immediately.
    """

    def __init__(self, manager: ConnectionManager, health=None):
        self.manager = manager
        self.health = health
        self._tools: Dict[str, Dict[str, Tool]] = {}

    async def server_connected(self, server_id: str, adapter: TransportAdapter):
        await self.refresh(server_id, adapter)

    async def server_disconnected(self, server_id: str):
        if self._tools.pop(server_id, None) is not None:
            logger.debug(f"Dropped tool cache for '{server_id}'")

    async def refresh(self, server_id: str, adapter: Optional[TransportAdapter] = None) -> List[Tool]:
        """
        Pull the tool list from a connected server.

        Raises:
            NotConnectedError: If the server has no live connection
            MCPClientError: If the tools/list request fails
        """
        adapter = adapter or self.manager.get_adapter(server_id)
        if adapter is None:
            raise NotConnectedError(f"Server '{server_id}' is not connected", server_id)
        tools = await adapter.list_tools()
        self._tools[server_id] = {tool.name: tool for tool in tools}
        logger.info(f"Discovered {len(tools)} tool(s) on '{server_id}'")
        return tools

    def get_tools(self, server_id: str) -> List[Tool]:
        return list(self._tools.get(server_id, {}).values())

    def all_tools(self) -> Dict[str, List[Tool]]:
        return {server_id: list(tools.values()) for server_id, tools in self._tools.items()}

    def find_tool(self, server_id: str, name: str) -> Optional[Tool]:
        return self._tools.get(server_id, {}).get(name)

    async def invoke(self, server_id: str, call: ToolCall, timeout: Optional[float] = None) -> ToolResult:
        """
        Run one tool call. Always returns exactly one ToolResult; never raises
        for transport, protocol or tool failures.
        """
        adapter = self.manager.get_adapter(server_id)
        if adapter is None:
            return ToolResult.failed(f"Server '{server_id}' is not connected", ErrorCodes.NOT_CONNECTED)

        tool = self.find_tool(server_id, call.name)
        if tool is None:
            result = ToolResult.failed(
                f"Unknown tool '{call.name}' on server '{server_id}'", ErrorCodes.TOOL_INVOCATION_ERROR,
            )
            self._record(server_id, call.name, result)
            return result

        if not isinstance(call.arguments, dict):
            return ToolResult.failed("Tool arguments must be an object", ErrorCodes.INVALID_ARGUMENT)
        missing = [name for name in tool.required if name not in call.arguments]
        if missing:
            result = ToolResult.failed(
                f"Missing required argument(s) for '{call.name}': {', '.join(missing)}",
                ErrorCodes.TOOL_INVOCATION_ERROR,
            )
            self._record(server_id, call.name, result)
            return result

        logger.info(f"Calling '{call.name}' on '{server_id}' (call {call.id})")
        try:
            result = await adapter.call_tool(call.name, call.arguments, timeout)
        except MCPClientError as e:
            logger.warning(f"Tool call '{call.name}' on '{server_id}' failed: {e}")
            result = ToolResult.failed(str(e), e.code)
        if not result.success and result.error_code is None:
            result = ToolResult(
                success=False, content=result.content, error=result.error,
                error_code=ErrorCodes.TOOL_INVOCATION_ERROR,
            )
        self._record(server_id, call.name, result)
        return result

    def _record(self, server_id: str, tool_name: str, result: ToolResult):
        if self.health is not None:
            self.health.record_tool_result(server_id, tool_name, result)
