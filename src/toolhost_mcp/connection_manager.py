"""
Per-server connection state machine.

    Disconnected -> Connecting -> Connected
    Connecting --failure--> Disconnected (retry with capped exponential backoff)
    ... after max attempts -> Unhealthy
    Connected --disconnect / process exit / protocol failure--> Disconnected
    Connected --failed health checks >= threshold--> Unhealthy
    Unhealthy --reset--> Disconnected

All state lives here; other components read snapshots. Operations on one
server id (connect, disconnect, test, health transitions) are serialized by a
per-server asyncio.Lock; different servers never wait on each other.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from toolhost_mcp.env_config import ClientSettings
from toolhost_mcp.errors import ConnectError, MCPClientError, OperationTimeoutError, UnknownServerError
from toolhost_mcp.models import ConnectionState, ConnectionStatus, ServerConfig
from toolhost_mcp.transports import TransportAdapter, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ServerConfig], TransportAdapter]


class ConnectionListener:
    """Hooks invoked by the manager while it holds the server's lock."""

    async def server_connected(self, server_id: str, adapter: TransportAdapter):
        pass

    async def server_disconnected(self, server_id: str):
        pass


class ConnectionManager:
    """Owns every ConnectionState and live TransportAdapter."""

    def __init__(self, settings: Optional[ClientSettings] = None,
                 transport_factory: Optional[TransportFactory] = None):
        self.settings = settings or ClientSettings()
        self._factory = transport_factory or create_transport
        self._configs: Dict[str, ServerConfig] = {}
        self._states: Dict[str, ConnectionState] = {}
        self._adapters: Dict[str, TransportAdapter] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._background: set = set()
        self._generations: Dict[str, int] = {}
        self._listeners: List[ConnectionListener] = []

    def add_listener(self, listener: ConnectionListener):
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, config: ServerConfig):
        """Record (or replace) the configuration for a server. Does not connect."""
        self._configs[config.id] = config
        if config.id not in self._states:
            self._states[config.id] = ConnectionState(server_id=config.id)
            self._generations[config.id] = 0

    async def unregister(self, server_id: str):
        """Disconnect and forget a server entirely."""
        if server_id not in self._states:
            return
        await self.disconnect(server_id)
        async with self._lock(server_id):
            self._configs.pop(server_id, None)
            self._states.pop(server_id, None)
            self._generations.pop(server_id, None)
        self._locks.pop(server_id, None)
        logger.info(f"Removed server '{server_id}'")

    def server_ids(self) -> List[str]:
        return list(self._states)

    def get_config(self, server_id: str) -> ServerConfig:
        try:
            return self._configs[server_id]
        except KeyError:
            raise UnknownServerError(f"Unknown server '{server_id}'", server_id)

    def get_status(self, server_id: str) -> ConnectionState:
        try:
            return self._states[server_id].snapshot()
        except KeyError:
            raise UnknownServerError(f"Unknown server '{server_id}'", server_id)

    def statuses(self) -> Dict[str, ConnectionState]:
        return {server_id: state.snapshot() for server_id, state in self._states.items()}

    def get_adapter(self, server_id: str) -> Optional[TransportAdapter]:
        adapter = self._adapters.get(server_id)
        if adapter is not None and adapter.is_connected:
            return adapter
        return None

    def is_busy(self, server_id: str) -> bool:
        lock = self._locks.get(server_id)
        return lock is not None and lock.locked()

    def _lock(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = self._locks[server_id] = asyncio.Lock()
        return lock

    def _state(self, server_id: str) -> ConnectionState:
        try:
            return self._states[server_id]
        except KeyError:
            raise UnknownServerError(f"Unknown server '{server_id}'", server_id)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self, server_id: str) -> ConnectionState:
        """
        Connect a registered server.

        Failures are recorded on the state (and drive retries) rather than
        raised. Unhealthy servers are refused until their health is reset.

        Returns:
            Snapshot of the state after the attempt
        """
        self._state(server_id)
        async with self._lock(server_id):
            state = self._state(server_id)
            if state.status == ConnectionStatus.CONNECTED and self.get_adapter(server_id) is not None:
                return state.snapshot()
            if state.status == ConnectionStatus.UNHEALTHY:
                raise ConnectError(
                    f"Server '{server_id}' is unhealthy; reset its health before reconnecting", server_id,
                )
            self._cancel_retry(server_id)
            state.retry_count = 0
            await self._attempt(server_id)
            return state.snapshot()

    async def _attempt(self, server_id: str):
        """One connection attempt. Caller holds the lock."""
        state = self._states[server_id]
        config = self._configs[server_id]
        stale = self._adapters.pop(server_id, None)
        if stale is not None:
            self._generations[server_id] += 1
            await stale.disconnect()
            await self._notify_disconnected(server_id)
        state.status = ConnectionStatus.CONNECTING
        adapter = self._factory(config)
        try:
            await adapter.connect()
        except MCPClientError as e:
            self._connect_failed(server_id, e)
            return
        except asyncio.CancelledError:
            state.status = ConnectionStatus.DISCONNECTED
            raise

        adapter.set_close_callback(lambda exc: self._adapter_closed(server_id, adapter, exc))
        self._adapters[server_id] = adapter
        self._generations[server_id] = self._generations.get(server_id, 0) + 1
        state.status = ConnectionStatus.CONNECTED
        state.last_connected_at = datetime.now()
        state.last_error = None
        state.retry_count = 0
        state.consecutive_failures = 0
        await self._notify_connected(server_id, adapter)

    def _connect_failed(self, server_id: str, exc: MCPClientError):
        state = self._states[server_id]
        state.retry_count += 1
        state.last_error = str(exc)
        if state.retry_count >= self.settings.max_connect_attempts:
            state.status = ConnectionStatus.UNHEALTHY
            logger.error(
                f"Server '{server_id}' marked unhealthy after {state.retry_count} failed connection attempts: {exc}"
            )
            return
        state.status = ConnectionStatus.DISCONNECTED
        delay = self.settings.backoff_delay(state.retry_count)
        logger.warning(
            f"Connection to '{server_id}' failed (attempt {state.retry_count}/"
            f"{self.settings.max_connect_attempts}), retrying in {delay:.1f}s: {exc}"
        )
        self._schedule_retry(server_id, delay)

    def _schedule_retry(self, server_id: str, delay: float):
        self._cancel_retry(server_id)
        self._retry_tasks[server_id] = asyncio.create_task(self._retry_later(server_id, delay))

    def _cancel_retry(self, server_id: str):
        task = self._retry_tasks.pop(server_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def has_pending_retry(self, server_id: str) -> bool:
        task = self._retry_tasks.get(server_id)
        return task is not None and not task.done()

    async def _retry_later(self, server_id: str, delay: float):
        await asyncio.sleep(delay)
        if server_id not in self._states:
            return
        async with self._lock(server_id):
            if self._retry_tasks.get(server_id) is asyncio.current_task():
                del self._retry_tasks[server_id]
            state = self._states.get(server_id)
            if state is None or state.status != ConnectionStatus.DISCONNECTED:
                return
            logger.info(f"Retrying connection to '{server_id}' (attempt {state.retry_count + 1})")
            await self._attempt(server_id)

    async def disconnect(self, server_id: str) -> ConnectionState:
        """Close the live connection, if any. Unhealthy servers stay unhealthy."""
        self._state(server_id)
        self._cancel_retry(server_id)
        async with self._lock(server_id):
            state = self._state(server_id)
            adapter = self._adapters.pop(server_id, None)
            self._generations[server_id] = self._generations.get(server_id, 0) + 1
            if state.status != ConnectionStatus.UNHEALTHY:
                state.status = ConnectionStatus.DISCONNECTED
                state.retry_count = 0
            if adapter is not None:
                await adapter.disconnect()
                await self._notify_disconnected(server_id)
            return state.snapshot()

    def _adapter_closed(self, server_id: str, adapter: TransportAdapter, exc: MCPClientError):
        """Close callback from an adapter whose connection died underneath us."""
        task = asyncio.create_task(self._handle_lost(server_id, adapter, exc))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _handle_lost(self, server_id: str, adapter: TransportAdapter, exc: MCPClientError):
        if server_id not in self._states:
            return
        async with self._lock(server_id):
            if self._adapters.get(server_id) is not adapter:
                return
            del self._adapters[server_id]
            self._generations[server_id] += 1
            state = self._states[server_id]
            state.status = ConnectionStatus.DISCONNECTED
            state.last_error = str(exc)
            await adapter.disconnect()
            await self._notify_disconnected(server_id)
            logger.warning(f"Server '{server_id}' disconnected unexpectedly: {exc}")
            self._connect_failed(server_id, exc)

    # ------------------------------------------------------------------
    # Health transitions
    # ------------------------------------------------------------------

    def adapter_for_check(self, server_id: str) -> Tuple[Optional[TransportAdapter], int]:
        """Adapter to ping plus the generation the result must be recorded against."""
        return self.get_adapter(server_id), self._generations.get(server_id, 0)

    async def record_check(self, server_id: str, generation: int, ok: bool,
                           error: Optional[str] = None) -> Optional[ConnectionState]:
        """
        Record the outcome of a ping performed outside the lock.

        Results for a connection that has since been replaced are dropped.
        Returns the updated snapshot, or None if the result was stale.
        """
        if server_id not in self._states:
            return None
        async with self._lock(server_id):
            if self._generations.get(server_id) != generation or server_id not in self._adapters:
                return None
            state = self._states[server_id]
            state.last_check_at = datetime.now()
            if ok:
                state.consecutive_failures = 0
                state.last_success_at = state.last_check_at
                return state.snapshot()

            state.consecutive_failures += 1
            state.last_error = error or "Health check failed"
            logger.warning(
                f"Health check failed for '{server_id}' "
                f"({state.consecutive_failures}/{self.settings.failure_threshold})"
            )
            if state.consecutive_failures >= self.settings.failure_threshold:
                await self._mark_unhealthy(server_id)
            return state.snapshot()

    async def _mark_unhealthy(self, server_id: str):
        """Caller holds the lock."""
        state = self._states[server_id]
        state.status = ConnectionStatus.UNHEALTHY
        self._cancel_retry(server_id)
        adapter = self._adapters.pop(server_id, None)
        self._generations[server_id] += 1
        if adapter is not None:
            await adapter.disconnect()
            await self._notify_disconnected(server_id)
        logger.error(f"Server '{server_id}' marked unhealthy after {state.consecutive_failures} failed checks")

    async def reset_health(self, server_id: str) -> ConnectionState:
        """Clear failure counters; an Unhealthy server becomes Disconnected."""
        self._state(server_id)
        async with self._lock(server_id):
            state = self._state(server_id)
            if state.status == ConnectionStatus.UNHEALTHY:
                state.status = ConnectionStatus.DISCONNECTED
            state.consecutive_failures = 0
            state.retry_count = 0
            state.last_error = None
            logger.info(f"Health reset for '{server_id}'")
            return state.snapshot()

    # ------------------------------------------------------------------
    # Ephemeral test
    # ------------------------------------------------------------------

    async def test_connection(self, config: ServerConfig) -> Dict[str, Any]:
        """
        Connect with a throwaway adapter, list tools, and tear it down.

        Never registers the server and never touches live connections.

        Raises:
            MCPClientError: If the connection or tool listing fails
        """
        async with self._lock(config.id):
            adapter = self._factory(config)
            started = datetime.now()
            try:
                tools = await asyncio.wait_for(self._list_after_connect(adapter), self.settings.test_timeout)
            except OperationTimeoutError:
                raise
            except asyncio.TimeoutError:
                raise OperationTimeoutError(
                    f"Connection test timed out after {self.settings.test_timeout:.0f}s. "
                    f"The server may use a different transport than configured",
                    config.id,
                )
            finally:
                await adapter.disconnect()
        elapsed_ms = (datetime.now() - started).total_seconds() * 1000
        server_info = adapter.server_info.serverInfo.model_dump(mode="json") if adapter.server_info else None
        return {
            "serverInfo": server_info,
            "tools": [tool.to_dict() for tool in tools],
            "toolCount": len(tools),
            "response_time_ms": round(elapsed_ms, 2),
        }

    async def _list_after_connect(self, adapter: TransportAdapter):
        await adapter.connect()
        return await adapter.list_tools()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self):
        """Cancel retries and disconnect every server."""
        for server_id in list(self._retry_tasks):
            self._cancel_retry(server_id)
        results = await asyncio.gather(
            *(self.disconnect(server_id) for server_id in list(self._states)), return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Error during shutdown disconnect: {result}")
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Listener fan-out
    # ------------------------------------------------------------------

    async def _notify_connected(self, server_id: str, adapter: TransportAdapter):
        for listener in self._listeners:
            try:
                await listener.server_connected(server_id, adapter)
            except MCPClientError as e:
                logger.warning(f"Post-connect hook failed for '{server_id}': {e}")

    async def _notify_disconnected(self, server_id: str):
        for listener in self._listeners:
            await listener.server_disconnected(server_id)
