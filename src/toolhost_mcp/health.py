"""
Health monitoring for connected tool servers.

Each connected server gets its own polling task that pings it every
`health_interval` seconds. Pings run outside the server's lock and the
outcome is handed back to the ConnectionManager, which owns the state and
decides when a server becomes Unhealthy. A check that finds the server's
lock held is skipped for that cycle.

Usage:
    monitor = HealthMonitor(manager, settings)
    manager.add_listener(monitor)
    monitor.start()
    report = monitor.get_health_report()
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from toolhost_mcp.connection_manager import ConnectionListener, ConnectionManager
from toolhost_mcp.env_config import ClientSettings
from toolhost_mcp.models import ConnectionStatus, HealthRecord, ToolResult, ToolStats
from toolhost_mcp.transports import TransportAdapter

logger = logging.getLogger(__name__)

DEPRIORITIZE_BELOW = 0.5


class HealthMonitor(ConnectionListener):
    """Periodic liveness polling plus per-tool call statistics."""

    def __init__(self, manager: ConnectionManager, settings: Optional[ClientSettings] = None):
        self.manager = manager
        self.settings = settings or manager.settings
        self._timers: Dict[str, asyncio.Task] = {}
        self._tool_stats: Dict[str, Dict[str, ToolStats]] = {}
        self._running = False
        self.last_updated: Optional[datetime] = None

    @property
    def interval(self) -> float:
        return self.settings.health_interval

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def start(self):
        """Begin polling every currently connected server."""
        self._running = True
        for server_id in self.manager.server_ids():
            if self.manager.get_adapter(server_id) is not None:
                self._start_timer(server_id)
        logger.info(f"Health monitor started (interval {self.interval}s, threshold {self.settings.failure_threshold})")

    async def stop(self):
        self._running = False
        timers, self._timers = self._timers, {}
        for task in timers.values():
            task.cancel()
        if timers:
            await asyncio.gather(*timers.values(), return_exceptions=True)
        logger.info("Health monitor stopped")

    def polled_servers(self) -> List[str]:
        return list(self._timers)

    async def server_connected(self, server_id: str, adapter: TransportAdapter):
        if self._running:
            self._start_timer(server_id)

    async def server_disconnected(self, server_id: str):
        self._stop_timer(server_id)

    def _start_timer(self, server_id: str):
        existing = self._timers.get(server_id)
        if existing is not None and not existing.done():
            return
        self._timers[server_id] = asyncio.create_task(self._poll(server_id))

    def _stop_timer(self, server_id: str):
        task = self._timers.pop(server_id, None)
        # A timer stopping itself just falls out of its loop.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll(self, server_id: str):
        while True:
            await asyncio.sleep(self.interval)
            if self._timers.get(server_id) is not asyncio.current_task():
                return
            await self.check_server(server_id)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_server(self, server_id: str) -> Optional[bool]:
        """
        Ping one server and record the outcome.

        Returns:
            True/False for the ping result, None if the check was skipped
            (lock held, no live connection, or result superseded)
        """
        if self.manager.is_busy(server_id):
            logger.debug(f"Skipping health check for '{server_id}': operation in progress")
            return None
        adapter, generation = self.manager.adapter_for_check(server_id)
        if adapter is None:
            return None
        ok = await adapter.ping()
        snapshot = await self.manager.record_check(
            server_id, generation, ok, None if ok else f"Ping to '{server_id}' failed",
        )
        self.last_updated = datetime.now()
        if snapshot is None:
            return None
        return ok

    async def check_all(self) -> Dict[str, Optional[bool]]:
        """Run one check on every server concurrently."""
        server_ids = self.manager.server_ids()
        results = await asyncio.gather(*(self.check_server(server_id) for server_id in server_ids))
        return dict(zip(server_ids, results))

    # ------------------------------------------------------------------
    # Tool statistics
    # ------------------------------------------------------------------

    def record_tool_result(self, server_id: str, tool_name: str, result: ToolResult):
        stats = self._tool_stats.setdefault(server_id, {}).setdefault(tool_name, ToolStats())
        stats.last_called_at = datetime.now()
        if result.success:
            stats.success_count += 1
        else:
            stats.error_count += 1
            stats.last_error = result.error
        self.last_updated = stats.last_called_at

    def success_rate(self, server_id: str) -> float:
        return self.server_health(server_id).success_rate

    def should_deprioritize(self, server_id: str) -> bool:
        return self.success_rate(server_id) < DEPRIORITIZE_BELOW

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def server_health(self, server_id: str) -> HealthRecord:
        """
        Raises:
            UnknownServerError: If the server is not registered
        """
        state = self.manager.get_status(server_id)
        return HealthRecord(
            server_id=server_id,
            status=state.status,
            consecutive_failures=state.consecutive_failures,
            last_check_at=state.last_check_at,
            last_success_at=state.last_success_at,
            last_error=state.last_error,
            tool_stats=dict(self._tool_stats.get(server_id, {})),
        )

    def get_health_report(self) -> Dict[str, Any]:
        records = {server_id: self.server_health(server_id) for server_id in self.manager.server_ids()}
        counts = {status.value: 0 for status in ConnectionStatus}
        for record in records.values():
            counts[record.status.value] += 1
        return {
            "servers": {server_id: record.to_dict() for server_id, record in records.items()},
            "summary": {"total": len(records), **counts},
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

    def get_unhealthy_servers(self) -> List[str]:
        return [
            server_id for server_id, state in self.manager.statuses().items()
            if state.status == ConnectionStatus.UNHEALTHY
        ]

    async def reset_server_health(self, server_id: str) -> HealthRecord:
        """Unhealthy -> Disconnected, failure counters and tool statistics cleared."""
        await self.manager.reset_health(server_id)
        self._tool_stats.pop(server_id, None)
        self.last_updated = datetime.now()
        return self.server_health(server_id)

    def forget(self, server_id: str):
        self._stop_timer(server_id)
        self._tool_stats.pop(server_id, None)
