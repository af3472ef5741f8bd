#!/usr/bin/env python3
"""
End-to-end tests: real stdio transport, real child process, full command surface.

The fake server in tests/fixtures always runs. Tests against published
servers launched through npx only run when TOOLHOST_RUN_NETWORK_TESTS=1 and
npx is installed.
"""

import json
import os
import shutil
import sys

import pytest
from mcp import types

from conftest import FAKE_SERVER, wait_until
from toolhost_mcp import commands
from toolhost_mcp.context import ClientContext
from toolhost_mcp.models import ConnectionStatus
from toolhost_mcp.server import COMMAND_TOOLS, create_server, format_response

FAKE_ENTRY = {"transport": "stdio", "command": sys.executable, "args": [str(FAKE_SERVER)], "timeoutMs": 5000}

network = pytest.mark.skipif(
    os.getenv("TOOLHOST_RUN_NETWORK_TESTS") != "1" or shutil.which("npx") is None,
    reason="set TOOLHOST_RUN_NETWORK_TESTS=1 (and install npx) to run against published servers",
)


@pytest.fixture
async def ctx(settings):
    settings.config_path.write_text(json.dumps({"mcpServers": {"fake": FAKE_ENTRY}}))
    context = ClientContext(settings)
    await context.start()
    yield context
    await context.shutdown()


class TestFakeServer:
    @pytest.mark.asyncio
    async def test_start_connects(self, ctx):
        state = ctx.manager.get_status("fake")
        assert state.status == ConnectionStatus.CONNECTED
        assert {t.name for t in ctx.registry.get_tools("fake")} == {"echo", "add", "slow", "fail", "crash"}

    @pytest.mark.asyncio
    async def test_call_tools(self, ctx):
        echo = await commands.dispatch(ctx, "callTool", {"serverId": "fake", "toolName": "echo", "arguments": {"text": "hi"}})
        add = await commands.dispatch(ctx, "callTool", {"serverId": "fake", "toolName": "add", "arguments": {"a": 2, "b": 3}})

        assert echo["data"]["content"][0]["text"] == "hi"
        assert add["data"]["content"][0]["text"] == "5"

    @pytest.mark.asyncio
    async def test_tool_error_result(self, ctx):
        response = await commands.dispatch(ctx, "callTool", {"serverId": "fake", "toolName": "fail"})

        assert response["success"] is False
        assert response["error"]["message"] == "something went wrong"
        assert ctx.manager.get_status("fake").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_crash_reconnects(self, ctx):
        first = ctx.manager.get_adapter("fake")

        response = await commands.dispatch(ctx, "callTool", {"serverId": "fake", "toolName": "crash"})

        assert response["success"] is False
        await wait_until(lambda: ctx.manager.get_adapter("fake") not in (None, first), timeout=10)
        assert ctx.manager.get_status("fake").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_health_polling(self, ctx):
        await wait_until(lambda: ctx.manager.get_status("fake").last_success_at is not None)
        report = await commands.dispatch(ctx, "healthReport", {})
        assert report["data"]["servers"]["fake"]["isHealthy"] is True

    @pytest.mark.asyncio
    async def test_test_connection(self, ctx):
        response = await commands.dispatch(ctx, "testConnection", {"config": FAKE_ENTRY})

        assert response["success"]
        assert response["data"]["serverInfo"]["name"] == "fake-mcp-server"
        assert response["data"]["toolCount"] == 5
        assert ctx.manager.server_ids() == ["fake"]

    @pytest.mark.asyncio
    async def test_disable_stops_process(self, ctx):
        adapter = ctx.manager.get_adapter("fake")

        await commands.dispatch(ctx, "disableServer", {"serverId": "fake"})

        assert not adapter.is_connected
        assert "fake-mcp-server ready" in adapter.stderr_tail
        assert ctx.manager.server_ids() == []


class TestMcpServer:
    def test_every_command_exposed(self):
        assert {tool.name for tool in COMMAND_TOOLS} == set(commands.COMMANDS)
        assert all(tool.inputSchema["type"] == "object" for tool in COMMAND_TOOLS)

    def test_format_response(self):
        content = format_response({"success": True, "data": {"n": 1}})
        assert json.loads(content[0].text) == {"success": True, "data": {"n": 1}}

    @pytest.mark.asyncio
    async def test_handlers(self, ctx):
        app = create_server(ctx)

        listed = await app.request_handlers[types.ListToolsRequest](types.ListToolsRequest(method="tools/list"))
        assert len(listed.root.tools) == len(COMMAND_TOOLS)

        called = await app.request_handlers[types.CallToolRequest](types.CallToolRequest(
            method="tools/call",
            params=types.CallToolRequestParams(name="getConfigPath", arguments={}),
        ))
        payload = json.loads(called.root.content[0].text)
        assert payload["data"]["path"] == str(ctx.store.path)


@network
class TestPublishedServers:
    @pytest.mark.asyncio
    async def test_sequential_thinking(self, settings):
        settings.test_timeout = 120.0
        entry = {
            "type": "stdio",
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-sequential-thinking"],
            "env": {},
            "timeoutMs": 120000,
        }
        async with ClientContext(settings) as ctx:
            response = await commands.dispatch(ctx, "testConnection", {"config": entry})

        assert response["success"], response
        assert response["data"]["toolCount"] >= 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
