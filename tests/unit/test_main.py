"""
Unit tests for the sync service entry point.
"""

import asyncio
import logging

import json_log_formatter
import pytest

from boardsync.config import ClientConfig, ObservabilityConfig, StorageConfig
from boardsync.main import SyncService, setup_logging


@pytest.fixture
def config(tmp_path):
    return ClientConfig(storage=StorageConfig(data_dir=str(tmp_path), device_id="phone", wal_mode=False))


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for log configuration."""

    def test_json_format(self, restore_logging):
        setup_logging(ClientConfig(observability=ObservabilityConfig(log_level="debug", log_format="json")))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_text_format(self, restore_logging):
        setup_logging(ClientConfig())
        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)


class TestSyncService:
    """Tests for service start-up and shutdown."""

    @pytest.mark.asyncio
    async def test_starts_syncs_and_stops(self, config):
        service = SyncService(config)
        running = asyncio.create_task(service.start())
        for _ in range(200):
            if service.engine is not None and service.engine.stats["cycles"]:
                break
            await asyncio.sleep(0.01)

        assert service.data.create_task({"title": "Walk"}).success
        service.request_shutdown()
        await running
        await service.stop()

        assert service.engine.stats["cycles"] >= 1
        assert not service.engine.stats["running"]
        assert not service.remote.is_connected

    def test_open_store_without_remote(self, config):
        service = SyncService(config)
        service.open_store()
        result = service.data.create_task({"title": "Offline"})
        assert result.success
        assert service.queue.pending_count() == 1
