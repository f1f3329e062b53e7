"""Service container — owns every long-lived service for the process lifetime.

Nothing here is a module-level singleton: the HTTP layer and the CLI receive
a :class:`ServiceContainer` and reach services through it.
"""

from __future__ import annotations

import asyncio
import os
import signal

from aiohttp import web

from pvescripts.catalog.sqlite import SqliteCatalog
from pvescripts.config import Settings, get_settings
from pvescripts.discovery import BackupDiscovery
from pvescripts.http_server import start_http_server
from pvescripts.logger import logger, set_level
from pvescripts.restore import RestoreOrchestrator
from pvescripts.sessions import ExecutionSessionRegistry
from pvescripts.storage import StorageService
from pvescripts.sync import FileSynchronizer
from pvescripts.transport import ShellTransport

# Hard-exit watchdog for a shutdown that hangs on a stuck child
_SHUTDOWN_DEADLINE = 12.0


class ServiceContainer:
    def __init__(self, settings: Settings, catalog: SqliteCatalog) -> None:
        self.settings = settings
        self.catalog = catalog
        self.transport = ShellTransport(settings)
        self.synchronizer = FileSynchronizer(self.transport)
        self.sessions = ExecutionSessionRegistry(self.transport, self.synchronizer, settings)
        self.storage = StorageService(self.transport, settings)
        self.discovery = BackupDiscovery(self.transport, self.storage, catalog, settings)
        self.restore = RestoreOrchestrator(self.transport, self.storage, catalog, settings)

        self._http_runner: web.AppRunner | None = None
        self._shutting_down = False
        self._stopped = asyncio.Event()

    @classmethod
    async def create(cls, settings: Settings | None = None) -> ServiceContainer:
        settings = settings or get_settings()
        set_level(settings.logging.level)
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        catalog = await SqliteCatalog.open(settings.catalog_path)
        logger.info("Catalog initialized", path=str(settings.catalog_path))
        return cls(settings, catalog)

    async def close(self) -> None:
        await self.sessions.shutdown()
        await self.catalog.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        loop = asyncio.get_running_loop()
        loop.call_later(_SHUTDOWN_DEADLINE, lambda: os._exit(1))

        if self._http_runner:
            await self._http_runner.cleanup()
            self._http_runner = None
        await self.sessions.shutdown()
        self._stopped.set()

    async def run(self) -> None:
        """Serve the HTTP/WebSocket surface until SIGTERM or SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        self._http_runner = await start_http_server(self)
        logger.info(
            "pvescripts ready",
            port=self.settings.server.port,
            scripts_dir=str(self.settings.scripts_dir),
        )
        try:
            await self._stopped.wait()
        finally:
            await self.catalog.close()
            logger.info("pvescripts stopped")
