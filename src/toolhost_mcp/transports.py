"""
Transport adapters for MCP tool servers, built on the MCP SDK client.

Three variants share one contract (TransportAdapter):
- StdioTransport: child process via mcp.client.stdio.stdio_client
- HttpTransport: streamable HTTP via mcp.client.streamable_http.streamablehttp_client
- SseTransport: legacy HTTP+SSE via mcp.client.sse.sse_client

Each adapter owns exactly one live `mcp.ClientSession`. The SDK contexts are
entered and exited inside a single runner task per connection, so anyio cancel
scopes never cross tasks. Every request is bounded by a timeout; disconnect()
fails outstanding calls with CancellationError.

Usage:
    from toolhost_mcp.transports import create_transport

    adapter = create_transport(config)
    await adapter.connect()
    tools = await adapter.list_tools()
    result = await adapter.call_tool("echo", {"text": "hi"})
    await adapter.disconnect()
"""

import asyncio
import collections
import contextlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import anyio
import httpx
from mcp import ClientSession, types
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from toolhost_mcp.errors import (
    CancellationError,
    ConnectError,
    MCPClientError,
    NotConnectedError,
    OperationTimeoutError,
    ProtocolError,
    ToolInvocationError,
)
from toolhost_mcp.models import ServerConfig, Tool, ToolResult, TransportKind
from toolhost_mcp.protocol import (
    METHOD_NOT_FOUND,
    client_info,
    innermost,
    is_stray_output,
    to_tool_result,
    to_tools,
)

logger = logging.getLogger(__name__)

# Variables copied from the parent environment into every child process.
BASE_ENV_KEYS = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TERM",
    "TMPDIR",
    "TEMP",
    "TMP",
    "SYSTEMROOT",
    "USERPROFILE",
    "APPDATA",
    "LOCALAPPDATA",
    "PROGRAMFILES",
)

STDERR_TAIL_LINES = 50
MAX_TOOL_PAGES = 100
# stdio_client waits 2s for a clean exit before terminating the process tree.
SHUTDOWN_GRACE_SECONDS = 5.0
STARTUP_ABORT_SECONDS = 1.0

CloseCallback = Callable[[MCPClientError], None]
Streams = Tuple[Any, Any]


def build_child_env(config_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Minimal environment for a child process, with the server's env merged on top."""
    env = {key: os.environ[key] for key in BASE_ENV_KEYS if key in os.environ}

    # Ensure HOME is set (needed by npx/uvx caches)
    if "HOME" not in env:
        env["HOME"] = str(Path.home())

    # Ensure PATH includes common binary locations
    path_entries = [p for p in env.get("PATH", "").split(os.pathsep) if p]
    required_paths = [
        str(Path.home() / ".local" / "bin"),  # User local binaries (uvx location)
        "/usr/local/bin",
        "/usr/bin",
    ]
    for path in required_paths:
        if path not in path_entries:
            path_entries.append(path)
    env["PATH"] = os.pathsep.join(path_entries)

    env.update(config_env or {})
    return env


class TransportAdapter(ABC):
    """Base contract for one connection to one tool server."""

    kind: TransportKind

    def __init__(self, config: ServerConfig):
        self.config = config
        self.server_id = config.id
        self.server_info: Optional[types.InitializeResult] = None
        self._session: Optional[ClientSession] = None
        self._runner: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        # Resolved (with the MCPClientError that ended it) once the connection is over.
        self._ended: Optional[asyncio.Future] = None
        self._connected = False
        self._closing = False
        self._on_close: Optional[CloseCallback] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_close_callback(self, callback: Optional[CloseCallback]):
        """Called once when an established connection is lost without disconnect()."""
        self._on_close = callback

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.config.timeout

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(self, timeout: Optional[float] = None):
        """Open the connection and run the initialize handshake."""
        if self._connected:
            return
        await self._stop_runner()
        limit = self._timeout(timeout)
        loop = asyncio.get_running_loop()
        ready, ended = loop.create_future(), loop.create_future()
        self._ready, self._ended = ready, ended
        self._closing = False
        self._runner = asyncio.create_task(self._run(ready, ended))

        try:
            await asyncio.wait({ready, ended}, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._abort(CancellationError(f"Connect to '{self.server_id}' was cancelled", self.server_id))
            raise

        if ready.done() and not ended.done():
            self._connected = True
            logger.info(f"Connected to {self.kind.value} server '{self.server_id}'")
            return

        if ended.done():
            error = ended.result()
        else:
            error = OperationTimeoutError(
                f"Timed out after {limit:.1f}s connecting to {self.kind.value} server '{self.server_id}'",
                self.server_id,
            )
        await self._abort(error)
        raise error

    async def list_tools(self, timeout: Optional[float] = None) -> List[Tool]:
        tools: List[Tool] = []
        cursor = None
        for _ in range(MAX_TOOL_PAGES):
            try:
                result = await self._call("tools/list", _list_page(cursor), timeout)
            except McpError as e:
                raise ProtocolError(f"tools/list on '{self.server_id}' failed: {e.error.message}", self.server_id)
            tools.extend(to_tools(result))
            cursor = result.nextCursor
            if not cursor:
                break
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None,
                        timeout: Optional[float] = None) -> ToolResult:
        try:
            result = await self._call(
                "tools/call", lambda session: session.call_tool(name, arguments or {}), timeout,
            )
        except McpError as e:
            raise ToolInvocationError(f"Tool '{name}' failed: {e.error.message}", self.server_id)
        return to_tool_result(result)

    async def ping(self, timeout: Optional[float] = None) -> bool:
        """Liveness check. Never raises for transport or protocol failures."""
        if not self._connected:
            return False
        try:
            await self._ping(timeout)
            return True
        except (MCPClientError, McpError) as e:
            logger.debug(f"Ping failed for '{self.server_id}': {e}")
            return False

    async def _ping(self, timeout: Optional[float]):
        try:
            await self._call("ping", lambda session: session.send_ping(), timeout)
        except McpError as e:
            if e.error.code != METHOD_NOT_FOUND:
                raise
            await self._call("tools/list", _list_page(None), timeout)

    async def disconnect(self):
        """Close the connection. Idempotent and safe when never connected."""
        was_connected = self._connected
        self._connected = False
        self._closing = True
        self._end(CancellationError(
            f"Connection to '{self.server_id}' closed while the call was in flight", self.server_id,
        ))
        await self._stop_runner()
        if was_connected:
            logger.info(f"Disconnected from {self.kind.value} server '{self.server_id}'")

    # ------------------------------------------------------------------
    # Connection runner
    # ------------------------------------------------------------------

    async def _run(self, ready: asyncio.Future, ended: asyncio.Future):
        """Own the SDK contexts for one connection, from open until the connection ends."""
        try:
            async with contextlib.AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(self._open_streams())
                relay_send, relay_receive = anyio.create_memory_object_stream(0)
                task_group = await stack.enter_async_context(anyio.create_task_group())
                task_group.start_soon(self._relay, read_stream, relay_send)
                session = await stack.enter_async_context(
                    ClientSession(relay_receive, write_stream, client_info=client_info())
                )
                if await self._initialize(session, ended):
                    self._session = session
                    ready.set_result(None)
                    await asyncio.wait({ended})
                task_group.cancel_scope.cancel()
        except Exception as e:
            self._end(self._translate(e, connected=ready.done()))
        finally:
            self._session = None
            if not ended.done():
                self._end(self._closed_error())

    async def _initialize(self, session: ClientSession, ended: asyncio.Future) -> bool:
        """Run the handshake unless the connection ends first."""
        initialize = asyncio.ensure_future(session.initialize())
        await asyncio.wait({initialize, ended}, return_when=asyncio.FIRST_COMPLETED)
        if initialize.done():
            self.server_info = initialize.result()
            return True
        initialize.cancel()
        await asyncio.gather(initialize, return_exceptions=True)
        return False

    async def _relay(self, source, sink):
        """Forward transport messages to the session, dropping stray output and noticing end of stream."""
        error: Optional[MCPClientError] = None
        try:
            async for item in source:
                if isinstance(item, Exception):
                    if is_stray_output(item):
                        logger.warning(f"[{self.server_id}] discarding output that is not JSON")
                        continue
                    detail = str(item).splitlines()[0] if str(item) else type(item).__name__
                    error = ProtocolError(f"Invalid message from '{self.server_id}': {detail}", self.server_id)
                    break
                await sink.send(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            logger.debug(f"[{self.server_id}] relay stopped: {type(e).__name__}")
        finally:
            if self._ended is not None and not self._ended.done():
                self._end(error or self._closed_error())
            sink.close()

    def _end(self, error: MCPClientError):
        """Resolve the connection's end exactly once; report it if it was not asked for."""
        ended = self._ended
        if ended is None or ended.done():
            return
        ended.set_result(error)
        was_connected, self._connected = self._connected, False
        if was_connected and not self._closing:
            logger.warning(f"Connection to '{self.server_id}' lost: {error}")
            if self._on_close is not None:
                self._on_close(error)

    async def _abort(self, error: MCPClientError):
        self._closing = True
        self._end(error)
        await self._stop_runner()

    async def _stop_runner(self):
        runner, self._runner = self._runner, None
        if runner is None or runner is asyncio.current_task():
            return
        # A runner still opening the transport has nothing to close gracefully.
        established = self._ready is not None and self._ready.done()
        grace = SHUTDOWN_GRACE_SECONDS if established else STARTUP_ABORT_SECONDS
        done, _ = await asyncio.wait({runner}, timeout=grace)
        if not done:
            logger.debug(f"Transport for '{self.server_id}' did not close within {grace:.1f}s, cancelling")
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _call(self, method: str, operation: Callable[[ClientSession], Awaitable[Any]],
                    timeout: Optional[float]) -> Any:
        session, ended = self._session, self._ended
        if not self._connected or session is None or ended is None:
            raise NotConnectedError(f"Server '{self.server_id}' is not connected", self.server_id)
        limit = self._timeout(timeout)
        task = asyncio.ensure_future(operation(session))
        try:
            await asyncio.wait({task, ended}, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if not task.cancelled():
            exc = task.exception()
            if exc is None:
                return task.result()
            if ended.done():
                raise ended.result()
            if isinstance(exc, (McpError, MCPClientError)):
                raise exc
            if isinstance(exc, (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)):
                raise NotConnectedError(f"Connection to '{self.server_id}' is closed", self.server_id)
            raise ProtocolError(f"'{method}' on '{self.server_id}' failed: {exc}", self.server_id) from exc

        if ended.done():
            raise ended.result()
        await self._on_request_timeout()
        raise OperationTimeoutError(f"'{method}' on '{self.server_id}' timed out after {limit:.1f}s", self.server_id)

    async def _on_request_timeout(self):
        """Hook for variants that must tear down after a timed-out request."""

    def _translate(self, exc: BaseException, connected: bool) -> MCPClientError:
        leaf = innermost(exc)
        if isinstance(leaf, MCPClientError):
            return leaf
        if isinstance(leaf, McpError):
            if connected:
                return ProtocolError(f"Session with '{self.server_id}' failed: {leaf.error.message}", self.server_id)
            return ConnectError(f"Server rejected initialize: {leaf.error.message}", self.server_id)
        return self._describe_failure(leaf)

    def _describe_failure(self, exc: BaseException) -> MCPClientError:
        return ConnectError(f"Connection to '{self.server_id}' failed: {exc}", self.server_id)

    @abstractmethod
    def _open_streams(self) -> contextlib.AbstractAsyncContextManager:
        """Async context yielding the SDK (read_stream, write_stream) pair."""

    @abstractmethod
    def _closed_error(self) -> MCPClientError:
        """Error for a connection whose stream ended on its own."""


def _list_page(cursor: Optional[str]) -> Callable[[ClientSession], Awaitable[types.ListToolsResult]]:
    if cursor:
        return lambda session: session.list_tools(cursor=cursor)
    return lambda session: session.list_tools()


class StdioTransport(TransportAdapter):
    """Child process speaking newline-delimited JSON-RPC over stdin/stdout."""

    kind = TransportKind.STDIO

    def __init__(self, config: ServerConfig):
        super().__init__(config)
        self.stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_path: Optional[str] = None

    @contextlib.asynccontextmanager
    async def _open_streams(self) -> AsyncIterator[Streams]:
        params = StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=build_child_env(self.config.env),
            cwd=self.config.working_directory or None,
        )
        self.stderr_tail.clear()
        # The child appends to this file directly; the tail is read back on failure.
        fd, self._stderr_path = tempfile.mkstemp(prefix="toolhost-mcp-", suffix=".stderr")
        os.close(fd)
        try:
            with open(self._stderr_path, "a", encoding="utf-8") as errlog:
                async with stdio_client(params, errlog=errlog) as (read_stream, write_stream):
                    logger.debug(f"Started '{self.server_id}': {self.config.command} {' '.join(self.config.args)}")
                    yield read_stream, write_stream
        finally:
            self._refresh_stderr()
            for line in self.stderr_tail:
                logger.debug(f"[{self.server_id} stderr] {line}")
            path, self._stderr_path = self._stderr_path, None
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)

    def _refresh_stderr(self):
        if self._stderr_path is None:
            return
        try:
            text = Path(self._stderr_path).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Could not read stderr for '{self.server_id}': {e}")
            return
        self.stderr_tail.clear()
        self.stderr_tail.extend(line.rstrip() for line in text.splitlines() if line.strip())

    def stderr_excerpt(self, lines: int = 5) -> str:
        self._refresh_stderr()
        return " | ".join(list(self.stderr_tail)[-lines:])

    def _stderr_detail(self) -> str:
        excerpt = self.stderr_excerpt()
        return f" Stderr: {excerpt}" if excerpt else ""

    def _closed_error(self) -> MCPClientError:
        return ConnectError(f"Server process for '{self.server_id}' exited.{self._stderr_detail()}", self.server_id)

    def _describe_failure(self, exc: BaseException) -> MCPClientError:
        command = self.config.command
        if isinstance(exc, FileNotFoundError):
            if self.config.working_directory and not Path(self.config.working_directory).is_dir():
                return ConnectError(
                    f"Working directory does not exist: {self.config.working_directory}", self.server_id,
                )
            return ConnectError(
                f"Command not found: {command}. Make sure it is installed and on PATH", self.server_id,
            )
        if isinstance(exc, PermissionError):
            return ConnectError(f"Permission denied executing: {command}", self.server_id)
        if isinstance(exc, OSError):
            return ConnectError(f"Failed to start '{command}': {exc}", self.server_id)
        return ConnectError(f"Server process for '{self.server_id}' failed: {exc}.{self._stderr_detail()}",
                            self.server_id)

    async def _on_request_timeout(self):
        # Ending the connection makes the runner leave stdio_client, which terminates the process.
        self._end(ConnectError(
            f"Server process for '{self.server_id}' was terminated after a timeout", self.server_id,
        ))


class _ObservedTransport(httpx.AsyncBaseTransport):
    """Delegating httpx transport that reports HTTP failures to the adapter before the SDK sees them."""

    def __init__(self, adapter: "_HttpAdapter", inner: Optional[httpx.AsyncBaseTransport] = None):
        self._adapter = adapter
        self._inner = inner if inner is not None else httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._inner.handle_async_request(request)
        except httpx.TransportError as e:
            self._adapter._request_failed(request, e)
            raise
        self._adapter._response_seen(request, response)
        return response

    async def aclose(self):
        await self._inner.aclose()


class _HttpAdapter(TransportAdapter):
    """Shared httpx plumbing for the HTTP-based variants."""

    # Methods whose failure ends the connection.
    watched_methods: Tuple[str, ...] = ("POST",)

    def __init__(self, config: ServerConfig, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._http_transport = http_transport

    def _client_factory(self, headers: Optional[Dict[str, str]] = None, timeout: Optional[httpx.Timeout] = None,
                        auth: Optional[httpx.Auth] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=headers,
            timeout=timeout if timeout is not None else httpx.Timeout(self.config.timeout),
            auth=auth,
            transport=_ObservedTransport(self, self._http_transport),
            follow_redirects=True,
        )

    def _response_seen(self, request: httpx.Request, response: httpx.Response):
        if request.method in self.watched_methods and response.status_code >= 400:
            self._end(self._status_error(response.status_code, str(request.url)))

    def _request_failed(self, request: httpx.Request, exc: Exception):
        if request.method in self.watched_methods:
            self._end(self._network_error(str(request.url), exc))

    def _describe_failure(self, exc: BaseException) -> MCPClientError:
        if isinstance(exc, httpx.HTTPStatusError):
            return self._status_error(exc.response.status_code, str(exc.request.url))
        if isinstance(exc, httpx.TransportError):
            return self._network_error(self.config.base_url, exc)
        return super()._describe_failure(exc)

    def _status_error(self, status: int, url: str) -> ConnectError:
        label = self.kind.value.upper()
        if status in (401, 403):
            return ConnectError(
                f"Authentication failed for {label} server '{self.server_id}' (HTTP {status}). "
                f"Check the configured headers",
                self.server_id,
            )
        if status == 404:
            return ConnectError(f"{label} server not found at {url} (HTTP 404)", self.server_id)
        return ConnectError(f"{label} server at {url} returned HTTP {status}", self.server_id)

    def _network_error(self, url: str, exc: Exception) -> MCPClientError:
        if isinstance(exc, httpx.TimeoutException):
            return OperationTimeoutError(f"Request to {url} timed out", self.server_id)
        return ConnectError(
            f"Network error connecting to {self.kind.value.upper()} server at {url}: {exc}", self.server_id,
        )


class HttpTransport(_HttpAdapter):
    """Streamable HTTP: every JSON-RPC message is a POST to baseUrl."""

    kind = TransportKind.HTTP

    def __init__(self, config: ServerConfig, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config, http_transport)
        self._get_session_id: Optional[Callable[[], Optional[str]]] = None

    @property
    def session_id(self) -> Optional[str]:
        if self._get_session_id is None:
            return None
        return self._get_session_id()

    @contextlib.asynccontextmanager
    async def _open_streams(self) -> AsyncIterator[Streams]:
        async with streamablehttp_client(
            self.config.base_url,
            headers=self.config.headers or None,
            timeout=timedelta(seconds=self.config.timeout),
            httpx_client_factory=self._client_factory,
        ) as (read_stream, write_stream, get_session_id):
            self._get_session_id = get_session_id
            try:
                yield read_stream, write_stream
            finally:
                self._get_session_id = None

    async def _ping(self, timeout: Optional[float]):
        await self._call("tools/list", _list_page(None), timeout)

    def _closed_error(self) -> MCPClientError:
        return ConnectError(f"HTTP session with '{self.server_id}' was closed", self.server_id)


class SseTransport(_HttpAdapter):
    """Legacy HTTP+SSE: GET event stream for responses, POST to the announced endpoint."""

    kind = TransportKind.SSE
    watched_methods = ("GET", "POST")

    @contextlib.asynccontextmanager
    async def _open_streams(self) -> AsyncIterator[Streams]:
        # sse_client rejects an endpoint on a different origin than baseUrl.
        async with sse_client(
            self.config.base_url,
            headers=self.config.headers or None,
            timeout=self.config.timeout,
            httpx_client_factory=self._client_factory,
        ) as (read_stream, write_stream):
            yield read_stream, write_stream

    def _closed_error(self) -> MCPClientError:
        return ConnectError(f"SSE stream for '{self.server_id}' closed by server", self.server_id)


def create_transport(config: ServerConfig,
                     http_transport: Optional[httpx.AsyncBaseTransport] = None) -> TransportAdapter:
    """Build the adapter for config.transport_kind."""
    if config.transport_kind == TransportKind.STDIO:
        return StdioTransport(config)
    if config.transport_kind == TransportKind.HTTP:
        return HttpTransport(config, http_transport)
    if config.transport_kind == TransportKind.SSE:
        return SseTransport(config, http_transport)
    raise ValueError(f"Unsupported transport kind: {config.transport_kind!r}")
