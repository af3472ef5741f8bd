"""
Configuration reconciliation.

Diffs the desired configuration (active + disabled sections) against the
servers the ConnectionManager knows about and drives it to converge:
- new valid active entries are registered and connected
- entries that disappeared, moved to `disabled`, or became invalid are
  disconnected and discarded
- entries whose transport-affecting fields changed are disconnected and
  reconnected with the new configuration
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from toolhost_mcp.connection_manager import ConnectionManager
from toolhost_mcp.errors import MCPClientError
from toolhost_mcp.models import ConnectionStatus, ServerConfig
from toolhost_mcp.validation import ConfigValidator, duplicate_ids

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    connected: List[str] = field(default_factory=list)
    reconnected: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)
    unhealthy: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    invalid: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "reconnected": self.reconnected,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "disabled": self.disabled,
            "unhealthy": self.unhealthy,
            "failed": self.failed,
            "invalid": self.invalid,
        }


class ConfigReconciler:
    def __init__(self, manager: ConnectionManager, validator: ConfigValidator, on_removed=None):
        self.manager = manager
        self.validator = validator
        self.on_removed = on_removed
        self._lock = asyncio.Lock()

    async def reconcile(self, desired_active: Dict[str, Any], desired_disabled: Dict[str, Any]) -> ReconcileReport:
        """Converge live connections on the desired sections. One reconcile runs at a time."""
        async with self._lock:
            return await self._reconcile(desired_active or {}, desired_disabled or {})

    async def _reconcile(self, desired_active: Dict[str, Any], desired_disabled: Dict[str, Any]) -> ReconcileReport:
        report = ReconcileReport()

        for server_id in duplicate_ids(desired_active, desired_disabled):
            report.invalid[server_id] = [f"Server id '{server_id}' appears in both mcpServers and disabled"]

        desired: Dict[str, ServerConfig] = {}
        for server_id, raw in desired_active.items():
            if server_id in report.invalid:
                continue
            result = self.validator.validate(raw, server_id, enabled=True)
            if result.valid:
                desired[server_id] = result.config
            else:
                report.invalid[server_id] = result.errors
        for server_id, raw in desired_disabled.items():
            if server_id in report.invalid:
                continue
            result = self.validator.validate(raw, server_id, enabled=False)
            if result.valid:
                report.disabled.append(server_id)
            else:
                report.invalid[server_id] = result.errors

        live = set(self.manager.server_ids())

        for server_id in sorted(live - set(desired)):
            await self.manager.unregister(server_id)
            if self.on_removed is not None:
                self.on_removed(server_id)
            if server_id not in report.disabled and server_id not in report.invalid:
                report.removed.append(server_id)

        to_connect: List[str] = []
        for server_id, config in desired.items():
            if server_id not in live:
                self.manager.register(config)
                to_connect.append(server_id)
                continue
            current = self.manager.get_config(server_id)
            if config.transport_differs(current):
                await self.manager.disconnect(server_id)
                self.manager.register(config)
                # A new transport starts from a clean record, even if the old one was Unhealthy.
                await self.manager.reset_health(server_id)
                report.reconnected.append(server_id)
                to_connect.append(server_id)
                continue
            self.manager.register(config)
            state = self.manager.get_status(server_id)
            if state.status == ConnectionStatus.UNHEALTHY:
                report.unhealthy.append(server_id)
            elif state.status == ConnectionStatus.CONNECTED or self.manager.has_pending_retry(server_id):
                report.unchanged.append(server_id)
            else:
                to_connect.append(server_id)

        results = await asyncio.gather(
            *(self._connect(server_id) for server_id in to_connect), return_exceptions=True,
        )
        for server_id, outcome in zip(to_connect, results):
            if not isinstance(outcome, BaseException) and outcome.status == ConnectionStatus.CONNECTED:
                if server_id not in report.reconnected:
                    report.connected.append(server_id)
                continue
            if isinstance(outcome, BaseException):
                report.failed[server_id] = str(outcome)
            else:
                report.failed[server_id] = outcome.last_error or outcome.status.value
            if server_id in report.reconnected:
                report.reconnected.remove(server_id)

        logger.info(
            f"Reconciled configuration: {len(report.connected)} connected, {len(report.reconnected)} reconnected, "
            f"{len(report.removed)} removed, {len(report.failed)} failed, {len(report.invalid)} invalid"
        )
        return report

    async def _connect(self, server_id: str):
        try:
            return await self.manager.connect(server_id)
        except MCPClientError as e:
            logger.warning(f"Could not connect '{server_id}': {e}")
            raise
