"""Application handle wiring the client components together."""

import asyncio
import logging
from typing import Optional

from toolhost_mcp.config_store import ConfigStore
from toolhost_mcp.connection_manager import ConnectionManager, TransportFactory
from toolhost_mcp.env_config import ClientSettings
from toolhost_mcp.health import HealthMonitor
from toolhost_mcp.reconciler import ConfigReconciler, ReconcileReport
from toolhost_mcp.registry import ToolRegistry
from toolhost_mcp.security import SecurityGate
from toolhost_mcp.validation import ConfigValidator

logger = logging.getLogger(__name__)


class ClientContext:
    """
    Everything the command handlers need, created once at startup.

    Usage:
        async with ClientContext(settings) as ctx:
            await commands.dispatch(ctx, "listTools", {})
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        store: Optional[ConfigStore] = None,
        gate: Optional[SecurityGate] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.settings = settings or ClientSettings.from_env()
        self.gate = gate or SecurityGate()
        self.validator = ConfigValidator(self.gate)
        self.store = store or ConfigStore(self.settings.config_path)
        self.manager = ConnectionManager(self.settings, transport_factory)
        self.health = HealthMonitor(self.manager, self.settings)
        self.registry = ToolRegistry(self.manager, self.health)
        self.manager.add_listener(self.registry)
        self.manager.add_listener(self.health)
        self.reconciler = ConfigReconciler(self.manager, self.validator, on_removed=self.health.forget)
        # Serializes load/modify/save/reconcile sequences on the document.
        self.config_lock = asyncio.Lock()
        self.started = False

    async def start(self) -> ReconcileReport:
        """Load the document, connect the active servers, start health polling."""
        async with self.config_lock:
            report = await self.reload_locked()
        self.health.start()
        self.started = True
        logger.info(f"Client started with configuration {self.store.path}")
        return report

    async def reload(self) -> ReconcileReport:
        async with self.config_lock:
            return await self.reload_locked()

    async def reload_locked(self) -> ReconcileReport:
        """Re-read the document and reconcile. Caller holds config_lock."""
        self.store.load()
        return await self.reconcile_locked()

    async def reconcile_locked(self) -> ReconcileReport:
        active, disabled = self.store.sections()
        return await self.reconciler.reconcile(active, disabled)

    async def shutdown(self):
        """Stop health timers and disconnect everything."""
        await self.health.stop()
        await self.manager.shutdown()
        self.started = False
        logger.info("Client shut down")

    async def __aenter__(self) -> "ClientContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()
