"""
Error types for boardsync.

This module defines the exception taxonomy used across the data layer:
- BoardSyncError: Base exception
- ValidationError: Malformed entity rejected at the write boundary
- EntityNotFoundError: Write against an id that does not exist locally
- TransientSyncError: Remote unavailable, retried with backoff
- PermanentSyncError: Remote rejected the payload, dead-lettered
- ConflictResolutionAnomaly: Entity version cannot be ordered
- ConfigurationError: Invalid environment configuration

Invariants:
    - All errors inherit from BoardSyncError
    - Errors carry a stable code for programmatic handling
    - Validation errors are raised before anything is written or queued
"""

from __future__ import annotations

from typing import Any


class BoardSyncError(Exception):
    """Base exception for all boardsync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BOARDSYNC_ERROR"
        self.details = details or {}


class ValidationError(BoardSyncError):
    """Entity failed validation.

    Raised when:
    - A required field is missing or has the wrong type
    - A multi-step task references another multi-step task
    - A composite leaf has zero or two references
    - A composite task would reference itself transitively
    - A foreign key points at a missing entity
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class EntityNotFoundError(BoardSyncError):
    """Entity does not exist in the local store."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            code="NOT_FOUND",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class TransientSyncError(BoardSyncError):
    """Remote store temporarily unavailable.

    The affected queue entries are retried with exponential backoff.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="TRANSIENT_SYNC_ERROR", details=details)


class PermanentSyncError(BoardSyncError):
    """Remote store rejected the request for good.

    Raised when the payload is structurally invalid or permission is
    denied. The affected queue entries are dead-lettered immediately.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="PERMANENT_SYNC_ERROR", details=details)


class ConflictResolutionAnomaly(BoardSyncError):
    """An entity version could not be ordered.

    Never raised out of the resolver. Instances are attached to the
    resolution and logged. A malformed side loses to a valid one.
    """

    def __init__(self, entity_type: str, entity_id: str, side: str, version: Any) -> None:
        super().__init__(
            f"Unorderable version {version!r} on {side} {entity_type} {entity_id}",
            code="CONFLICT_ANOMALY",
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "side": side,
                "version": version,
            },
        )
        self.side = side


class ConfigurationError(BoardSyncError):
    """Configuration is missing or inconsistent."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")
