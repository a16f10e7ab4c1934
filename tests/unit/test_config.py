"""
Unit tests for environment configuration.
"""

import pytest

from boardsync.config import ClientConfig, QueueConfig, RemoteBackend, RemoteConfig, SyncConfig
from boardsync.errors import ConfigurationError


class TestFromEnv:
    """Tests for loading configuration from the environment."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        config = ClientConfig.from_env()
        assert config.queue.max_retries == 10
        assert config.sync.batch_size == 50
        assert config.sync.interval_seconds == 300.0
        assert config.remote.backend == RemoteBackend.MEMORY
        assert config.remote.api_token is None

    def test_reads_settings(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("DEVICE_ID", "tablet")
        monkeypatch.setenv("QUEUE_MAX_RETRIES", "3")
        monkeypatch.setenv("SYNC_BATCH_SIZE", "25")
        monkeypatch.setenv("SYNC_ADDITIVE_MERGE", "false")
        monkeypatch.setenv("REMOTE_BACKEND", "HTTP")
        monkeypatch.setenv("REMOTE_BASE_URL", "https://sync.example.com")
        monkeypatch.setenv("REMOTE_API_TOKEN", "secret")

        config = ClientConfig.from_env()

        assert config.storage.device_id == "tablet"
        assert config.queue.max_retries == 3
        assert config.sync.batch_size == 25
        assert config.sync.additive_merge is False
        assert config.remote.backend == RemoteBackend.HTTP
        assert config.remote.api_token == "secret"

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("REMOTE_BACKEND", "carrier-pigeon")
        with pytest.raises(ConfigurationError):
            ClientConfig.from_env()

    def test_non_numeric_setting(self, monkeypatch):
        monkeypatch.setenv("SYNC_BATCH_SIZE", "lots")
        with pytest.raises(ConfigurationError, match="Invalid numeric setting"):
            ClientConfig.from_env()


class TestValidate:
    """Tests for consistency checks."""

    def test_zero_batch_size(self):
        config = ClientConfig(sync=SyncConfig(batch_size=0))
        with pytest.raises(ConfigurationError, match="SYNC_BATCH_SIZE"):
            config.validate()

    def test_negative_retries(self):
        config = ClientConfig(queue=QueueConfig(max_retries=-1))
        with pytest.raises(ConfigurationError, match="QUEUE_MAX_RETRIES"):
            config.validate()

    def test_http_needs_base_url(self):
        config = ClientConfig(remote=RemoteConfig(backend=RemoteBackend.HTTP, base_url=""))
        with pytest.raises(ConfigurationError, match="REMOTE_BASE_URL"):
            config.validate()

    def test_log_config_hides_token(self, caplog):
        config = ClientConfig(remote=RemoteConfig(api_token="secret"))
        with caplog.at_level("INFO", logger="boardsync.config"):
            config.log_config()
        record = caplog.records[-1]
        assert record.remote_token_set is True
        assert "secret" not in str(record.__dict__)
