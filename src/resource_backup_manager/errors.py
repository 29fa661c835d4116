"""
Error taxonomy for the resource backup manager.

Every error carries a human-readable message and an optional ``details``
mapping so callers can branch on the type and still log the context.
"""

from __future__ import annotations

from typing import Any


class BackupManagerError(Exception):
    """Base exception for all backup manager errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(BackupManagerError):
    """Raised when configuration is invalid."""


class NotFoundError(BackupManagerError):
    """Raised when a resource or backup record does not exist."""


class InvalidStateError(BackupManagerError):
    """Raised when an operation targets a record in the wrong status."""


class StorageError(BackupManagerError):
    """Raised when the catalog or the archive store cannot be read or written."""


class EngineError(BackupManagerError):
    """Raised when the backup engine fails to produce an archive."""


class MissingArchiveError(BackupManagerError):
    """Raised when a completed record points at an archive that is gone."""


class StagingUnavailableError(BackupManagerError):
    """Raised when the restore staging directory cannot be prepared."""
