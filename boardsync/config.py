"""
Configuration management for boardsync.

All configuration is done via environment variables. This module provides
typed, frozen configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The remote API token is never logged or exposed in error messages
    - QUEUE_MAX_RETRIES defaults to 10

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep env var names stable; they are the public configuration surface
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class RemoteBackend(Enum):
    """Supported remote store backends."""

    MEMORY = "memory"
    HTTP = "http"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local SQLite storage configuration.

    Attributes:
        data_dir: Directory holding the device database
        device_id: Stable identifier of this device (used by additive merge)
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "./boardsync-data"
    device_id: str = "local"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./boardsync-data"),
            device_id=os.getenv("DEVICE_ID", "local"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Outbound queue retry configuration.

    Attributes:
        max_retries: Failures tolerated before an entry is dead-lettered
        backoff_base_ms: Delay after the first failure
        backoff_max_ms: Upper bound for the exponential delay
    """

    max_retries: int = 10
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 15 * 60 * 1000

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("QUEUE_MAX_RETRIES", "10")),
            backoff_base_ms=int(os.getenv("QUEUE_BACKOFF_BASE_MS", "1000")),
            backoff_max_ms=int(os.getenv("QUEUE_BACKOFF_MAX_MS", str(15 * 60 * 1000))),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync engine configuration.

    Attributes:
        batch_size: Maximum queue entries per push request
        interval_seconds: Period of the background sync timer
        pull_page_size: Maximum entities requested per pull page
        additive_merge: Merge shared counters additively instead of LWW
        user_scope: Owner scope sent with pull requests
    """

    batch_size: int = 50
    interval_seconds: float = 300.0
    pull_page_size: int = 200
    additive_merge: bool = True
    user_scope: str = "me"

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=int(os.getenv("SYNC_BATCH_SIZE", "50")),
            interval_seconds=float(os.getenv("SYNC_INTERVAL_SECONDS", "300")),
            pull_page_size=int(os.getenv("SYNC_PULL_PAGE_SIZE", "200")),
            additive_merge=_env_bool("SYNC_ADDITIVE_MERGE", "true"),
            user_scope=os.getenv("SYNC_USER_SCOPE", "me"),
        )


@dataclass(frozen=True)
class RemoteConfig:
    """Remote document store configuration.

    Attributes:
        backend: Which remote backend to use
        base_url: Base URL of the HTTP remote
        timeout_seconds: Request timeout for the HTTP remote
        api_token: Bearer token (optional, never logged)
    """

    backend: RemoteBackend = RemoteBackend.MEMORY
    base_url: str = "http://localhost:8080"
    timeout_seconds: float = 30.0
    api_token: str | None = None

    @classmethod
    def from_env(cls) -> RemoteConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("REMOTE_BACKEND", "memory").lower()
        try:
            backend = RemoteBackend(backend_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid REMOTE_BACKEND '{backend_str}'. Must be one of: memory, http"
            )
        return cls(
            backend=backend,
            base_url=os.getenv("REMOTE_BASE_URL", "http://localhost:8080"),
            timeout_seconds=float(os.getenv("REMOTE_TIMEOUT_SECONDS", "30")),
            api_token=os.getenv("REMOTE_API_TOKEN"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class ClientConfig:
    """Complete device configuration.

    Attributes:
        storage: Local storage configuration
        queue: Outbound queue configuration
        sync: Sync engine configuration
        remote: Remote store configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load complete configuration from environment variables.

        Returns:
            ClientConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If configuration is missing or invalid.
        """
        try:
            config = cls(
                storage=StorageConfig.from_env(),
                queue=QueueConfig.from_env(),
                sync=SyncConfig.from_env(),
                remote=RemoteConfig.from_env(),
                observability=ObservabilityConfig.from_env(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if self.queue.max_retries < 0:
            raise ConfigurationError("QUEUE_MAX_RETRIES must be >= 0")
        if self.queue.backoff_base_ms <= 0:
            raise ConfigurationError("QUEUE_BACKOFF_BASE_MS must be positive")
        if self.sync.batch_size < 1:
            raise ConfigurationError("SYNC_BATCH_SIZE must be >= 1")
        if self.sync.pull_page_size < 1:
            raise ConfigurationError("SYNC_PULL_PAGE_SIZE must be >= 1")
        if self.sync.interval_seconds <= 0:
            raise ConfigurationError("SYNC_INTERVAL_SECONDS must be positive")
        if self.remote.backend == RemoteBackend.HTTP and not self.remote.base_url:
            raise ConfigurationError("REMOTE_BASE_URL is required when REMOTE_BACKEND=http")
        if not self.storage.device_id:
            raise ConfigurationError("DEVICE_ID must not be empty")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Client configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "device_id": self.storage.device_id,
                "remote_backend": self.remote.backend.value,
                "remote_base_url": self.remote.base_url
                if self.remote.backend == RemoteBackend.HTTP
                else None,
                "remote_token_set": self.remote.api_token is not None,
                "batch_size": self.sync.batch_size,
                "interval_seconds": self.sync.interval_seconds,
                "max_retries": self.queue.max_retries,
                "additive_merge": self.sync.additive_merge,
                "log_level": self.observability.log_level,
            },
        )
