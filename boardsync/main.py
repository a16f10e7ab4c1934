"""
boardsync sync service - main entry point.

Runs the background sync for one device:
- Opens (and if needed creates) the device's SQLite store
- Releases queue entries left in flight by a previous run
- Connects the remote store and syncs once
- Keeps syncing every SYNC_INTERVAL_SECONDS until SIGINT/SIGTERM

Usage:
    python -m boardsync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is usable even if the remote never connects
    - Shutdown cancels the loop; in-flight entries return to pending

How to change safely:
    - Keep start-up order: store before remote, recovery before first sync
    - Test shutdown with a push in flight
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import ClientConfig
from .domain.services import LocalDataLayer
from .errors import BoardSyncError, ConfigurationError
from .remote import RemoteStore, create_remote_store
from .store import EntityStore, OutboundQueue
from .sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def setup_logging(config: ClientConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Client configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class SyncService:
    """Device sync orchestrator.

    Attributes:
        config: Client configuration
        store: Local entity store
        queue: Outbound queue
        remote: Remote store
        engine: Sync engine
        data: Local data layer over the same store

    Example:
        >>> service = SyncService()
        >>> await service.start()   # runs until request_shutdown()
        >>> await service.stop()
    """

    def __init__(self, config: ClientConfig | None = None) -> None:
        self.config = config or ClientConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.store: EntityStore | None = None
        self.queue: OutboundQueue | None = None
        self.remote: RemoteStore | None = None
        self.engine: SyncEngine | None = None
        self.data: LocalDataLayer | None = None

    def open_store(self) -> None:
        """Open the local store and build the layers on top of it."""
        storage = self.config.storage
        self.store = EntityStore(
            data_dir=storage.data_dir,
            device_id=storage.device_id,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
        )
        self.store.initialize()
        self.queue = OutboundQueue(
            self.store,
            max_retries=self.config.queue.max_retries,
            backoff_base_ms=self.config.queue.backoff_base_ms,
            backoff_max_ms=self.config.queue.backoff_max_ms,
        )
        self.data = LocalDataLayer(self.store, self.queue, device_id=storage.device_id)
        logger.info("Local store opened", extra={"db_path": str(self.store.get_db_path())})

    async def start(self) -> None:
        """Start syncing and wait for shutdown."""
        if self._running:
            logger.warning("Sync service already running")
            return

        logger.info("Starting boardsync sync service")
        self.config.log_config()

        try:
            self.open_store()
            assert self.store is not None and self.queue is not None

            self.remote = create_remote_store(self.config.remote)
            self.engine = SyncEngine(self.store, self.queue, self.remote, self.config.sync)
            try:
                await self.remote.connect()
            except BoardSyncError as e:
                logger.warning(
                    "Remote not reachable, working offline", extra={"error": str(e)}
                )

            await self.engine.on_start()
            self.engine.start()
            self._running = True
            logger.info("boardsync sync service started")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Sync service startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the loop and close the remote."""
        if self.engine:
            await self.engine.stop()
        if self.remote:
            await self.remote.close()
        if self._running:
            logger.info("boardsync sync service stopped")
        self._running = False

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ClientConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    service = SyncService(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
