"""Shared fixtures: fast settings, in-memory fake transports, polling helpers."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from mcp import types

# Add src and repo root to path for imports
root_path = Path(__file__).parent.parent
for path in (root_path / "src", root_path):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from toolhost_mcp.env_config import ClientSettings
from toolhost_mcp.errors import CancellationError, ConnectError, NotConnectedError, ToolInvocationError
from toolhost_mcp.models import ServerConfig, Tool, ToolResult, TransportKind

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"

ECHO_TOOL = Tool(
    name="echo",
    description="Echo the text back",
    input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
)
PING_TOOL = Tool(name="noop", description="Does nothing")


class FakeBackend:
    """Scripted behaviour for every adapter created for one server id."""

    def __init__(self):
        self.tools: List[Tool] = [ECHO_TOOL, PING_TOOL]
        self.fail_connects = 0          # fail this many connects, then succeed
        self.always_fail = False
        self.connect_delay = 0.0
        self.ping_ok = True
        self.hang_calls = False
        self.call_error: Optional[str] = None
        self.connect_attempts = 0
        self.pings = 0
        self.calls: List[Dict[str, Any]] = []
        self.adapters: List["FakeAdapter"] = []


class FakeAdapter:
    """In-memory stand-in for a TransportAdapter."""

    def __init__(self, config: ServerConfig, backend: FakeBackend):
        self.config = config
        self.server_id = config.id
        self.backend = backend
        self.server_info = None
        self._connected = False
        self._on_close = None
        self._inflight: List[asyncio.Future] = []
        self.disconnect_calls = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_close_callback(self, callback):
        self._on_close = callback

    async def connect(self, timeout=None):
        self.backend.connect_attempts += 1
        if self.backend.connect_delay:
            await asyncio.sleep(self.backend.connect_delay)
        if self.backend.always_fail:
            raise ConnectError(f"Connection refused by '{self.server_id}'", self.server_id)
        if self.backend.fail_connects > 0:
            self.backend.fail_connects -= 1
            raise ConnectError(f"Connection refused by '{self.server_id}'", self.server_id)
        self._connected = True
        self.server_info = types.InitializeResult.model_validate({
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "serverInfo": {"name": f"fake-{self.server_id}", "version": "1.0.0"},
        })

    async def list_tools(self, timeout=None) -> List[Tool]:
        if not self._connected:
            raise NotConnectedError(f"Server '{self.server_id}' is not connected", self.server_id)
        return list(self.backend.tools)

    async def call_tool(self, name, arguments=None, timeout=None) -> ToolResult:
        if not self._connected:
            raise NotConnectedError(f"Server '{self.server_id}' is not connected", self.server_id)
        self.backend.calls.append({"name": name, "arguments": arguments})
        if self.backend.hang_calls:
            future = asyncio.get_running_loop().create_future()
            self._inflight.append(future)
            return await future
        if self.backend.call_error:
            raise ToolInvocationError(self.backend.call_error, self.server_id)
        return ToolResult.ok([{"type": "text", "text": json.dumps(arguments or {})}])

    async def ping(self, timeout=None) -> bool:
        self.backend.pings += 1
        return self._connected and self.backend.ping_ok

    async def disconnect(self):
        self.disconnect_calls += 1
        self._connected = False
        inflight, self._inflight = self._inflight, []
        for future in inflight:
            if not future.done():
                future.set_exception(CancellationError("Connection closed while the call was in flight", self.server_id))

    def drop(self, message: str = "process exited with code 1"):
        """Simulate the peer going away underneath the client."""
        self._connected = False
        if self._on_close is not None:
            self._on_close(ConnectError(message, self.server_id))


class FakeTransportFactory:
    """transport_factory for ConnectionManager that hands out FakeAdapters."""

    def __init__(self):
        self.backends: Dict[str, FakeBackend] = {}

    def backend(self, server_id: str) -> FakeBackend:
        return self.backends.setdefault(server_id, FakeBackend())

    def latest(self, server_id: str) -> FakeAdapter:
        return self.backend(server_id).adapters[-1]

    def __call__(self, config: ServerConfig) -> FakeAdapter:
        backend = self.backend(config.id)
        adapter = FakeAdapter(config, backend)
        backend.adapters.append(adapter)
        return adapter


def stdio_config(server_id: str = "memory", **overrides) -> ServerConfig:
    fields = dict(
        id=server_id,
        transport_kind=TransportKind.STDIO,
        display_name=server_id,
        command="npx",
        args=["-y", "@modelcontextprotocol/server-memory"],
    )
    fields.update(overrides)
    return ServerConfig(**fields)


def http_config(server_id: str = "remote", **overrides) -> ServerConfig:
    fields = dict(
        id=server_id,
        transport_kind=TransportKind.HTTP,
        display_name=server_id,
        base_url="https://mcp.example.com/mcp",
    )
    fields.update(overrides)
    return ServerConfig(**fields)


def fake_server_config(server_id: str = "fake", env: Optional[Dict[str, str]] = None, timeout_ms: int = 5000) -> ServerConfig:
    """Config that launches tests/fixtures/fake_mcp_server.py with this interpreter."""
    return ServerConfig(
        id=server_id,
        transport_kind=TransportKind.STDIO,
        display_name=server_id,
        command=sys.executable,
        args=[str(FAKE_SERVER)],
        env=env or {},
        timeout_ms=timeout_ms,
    )


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll predicate() until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met before timeout")


@pytest.fixture
def settings(tmp_path):
    return ClientSettings(
        config_path=tmp_path / "mcp.json",
        log_dir=tmp_path / "logs",
        health_interval=0.05,
        failure_threshold=3,
        backoff_base=0.01,
        backoff_cap=0.04,
        max_connect_attempts=3,
        test_timeout=2.0,
    )


@pytest.fixture
def factory():
    return FakeTransportFactory()
