#!/usr/bin/env python3
"""
Tests for HealthMonitor polling and reporting.

Tests:
- Polling timers follow connect/disconnect
- Consecutive failed pings mark a server Unhealthy
- Checks are skipped while another operation holds the server
- Health report, unhealthy list and reset
- Per-tool success statistics
"""

import asyncio

import pytest

from conftest import stdio_config, wait_until
from toolhost_mcp.connection_manager import ConnectionManager
from toolhost_mcp.errors import UnknownServerError
from toolhost_mcp.health import HealthMonitor
from toolhost_mcp.models import ConnectionStatus, ToolResult


@pytest.fixture
def manager(settings, factory):
    return ConnectionManager(settings, transport_factory=factory)


@pytest.fixture
async def monitor(manager, settings):
    monitor = HealthMonitor(manager, settings)
    manager.add_listener(monitor)
    yield monitor
    await monitor.stop()
    await manager.shutdown()


class TestPolling:
    @pytest.mark.asyncio
    async def test_timer_follows_connection(self, manager, monitor):
        """A timer runs only while the server is connected."""
        monitor.start()
        manager.register(stdio_config("memory"))

        await manager.connect("memory")
        assert monitor.polled_servers() == ["memory"]

        await manager.disconnect("memory")
        assert monitor.polled_servers() == []

    @pytest.mark.asyncio
    async def test_start_picks_up_connected_servers(self, manager, monitor):
        manager.register(stdio_config("memory"))
        await manager.connect("memory")
        assert monitor.polled_servers() == []

        monitor.start()

        assert monitor.running
        assert monitor.polled_servers() == ["memory"]

    @pytest.mark.asyncio
    async def test_successful_pings(self, manager, monitor, factory):
        monitor.start()
        manager.register(stdio_config("memory"))
        await manager.connect("memory")

        await wait_until(lambda: factory.backend("memory").pings >= 2)

        state = manager.get_status("memory")
        assert state.status == ConnectionStatus.CONNECTED
        assert state.last_success_at is not None
        assert monitor.last_updated is not None

    @pytest.mark.asyncio
    async def test_failed_pings_mark_unhealthy(self, manager, monitor, factory, settings):
        """Three failed pings in a row take the server out of service."""
        monitor.start()
        manager.register(stdio_config("memory"))
        await manager.connect("memory")
        factory.backend("memory").ping_ok = False

        await wait_until(lambda: manager.get_status("memory").status == ConnectionStatus.UNHEALTHY)

        state = manager.get_status("memory")
        assert state.consecutive_failures == settings.failure_threshold
        assert manager.get_adapter("memory") is None
        assert monitor.polled_servers() == []
        assert monitor.get_unhealthy_servers() == ["memory"]

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, manager, monitor):
        monitor.start()
        manager.register(stdio_config("memory"))
        await manager.connect("memory")

        await monitor.stop()

        assert not monitor.running
        assert monitor.polled_servers() == []


class TestChecks:
    @pytest.mark.asyncio
    async def test_check_server(self, manager, monitor, factory):
        manager.register(stdio_config("memory"))
        await manager.connect("memory")

        assert await monitor.check_server("memory") is True
        factory.backend("memory").ping_ok = False
        assert await monitor.check_server("memory") is False
        assert manager.get_status("memory").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_check_skipped_when_not_connected(self, manager, monitor):
        manager.register(stdio_config("memory"))
        assert await monitor.check_server("memory") is None

    @pytest.mark.asyncio
    async def test_check_skipped_while_busy(self, manager, monitor, factory):
        """A connection test holding the server's lock defers the check."""
        manager.register(stdio_config("memory"))
        await manager.connect("memory")
        backend = factory.backend("memory")
        backend.connect_delay = 0.2

        trial = asyncio.create_task(manager.test_connection(stdio_config("memory")))
        await asyncio.sleep(0.02)

        assert await monitor.check_server("memory") is None
        assert backend.pings == 0
        await trial

    @pytest.mark.asyncio
    async def test_check_all(self, manager, monitor):
        for server_id in ("a", "b"):
            manager.register(stdio_config(server_id))
        await manager.connect("a")

        assert await monitor.check_all() == {"a": True, "b": None}


class TestReports:
    @pytest.mark.asyncio
    async def test_health_report(self, manager, monitor, factory):
        manager.register(stdio_config("up"))
        manager.register(stdio_config("down"))
        await manager.connect("up")

        report = monitor.get_health_report()

        assert report["summary"]["total"] == 2
        assert report["summary"]["connected"] == 1
        assert report["summary"]["disconnected"] == 1
        assert report["servers"]["up"]["isHealthy"] is True
        assert report["servers"]["down"]["isHealthy"] is False

    @pytest.mark.asyncio
    async def test_unknown_server(self, monitor):
        with pytest.raises(UnknownServerError):
            monitor.server_health("ghost")

    @pytest.mark.asyncio
    async def test_tool_statistics(self, manager, monitor):
        manager.register(stdio_config("memory"))
        monitor.record_tool_result("memory", "echo", ToolResult.ok([]))
        monitor.record_tool_result("memory", "echo", ToolResult.failed("boom"))
        monitor.record_tool_result("memory", "echo", ToolResult.failed("boom again"))

        record = monitor.server_health("memory")
        stats = record.tool_stats["echo"]
        assert stats.success_count == 1
        assert stats.error_count == 2
        assert stats.last_error == "boom again"
        assert monitor.success_rate("memory") == pytest.approx(1 / 3)
        assert monitor.should_deprioritize("memory")
        assert record.to_dict()["tools"]["echo"]["errorCount"] == 2

    @pytest.mark.asyncio
    async def test_no_calls_is_full_success(self, manager, monitor):
        manager.register(stdio_config("memory"))
        assert monitor.success_rate("memory") == 1.0
        assert not monitor.should_deprioritize("memory")

    @pytest.mark.asyncio
    async def test_reset_server_health(self, manager, monitor, factory):
        manager.register(stdio_config("dead"))
        factory.backend("dead").always_fail = True
        await manager.connect("dead")
        await wait_until(lambda: manager.get_status("dead").status == ConnectionStatus.UNHEALTHY)
        monitor.record_tool_result("dead", "echo", ToolResult.failed("boom"))

        record = await monitor.reset_server_health("dead")

        assert record.status == ConnectionStatus.DISCONNECTED
        assert record.consecutive_failures == 0
        assert record.tool_stats == {}
        assert monitor.get_unhealthy_servers() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
