# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Exceptions - Custom exceptions for the storeguard package.

Every failure the engine reports is one of these. Backup and restore
failures are never swallowed: they abort the current operation, clean up
its partial artifacts, and propagate to the caller.
"""


class StoreGuardError(Exception):
    """Base exception for all StoreGuard errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(StoreGuardError):
    """Raised when configuration is invalid."""

    pass


class StorageError(StoreGuardError):
    """Raised when the storage backend cannot complete an operation."""

    pass


class ObjectNotFound(StorageError):
    """Raised when a storage key does not exist."""

    pass


class WriteFailure(StorageError):
    """Raised when writing to the backup destination fails."""

    pass


class SourceUnavailable(StoreGuardError):
    """A protected item could not be read at backup time."""

    pass


class CorruptData(StoreGuardError):
    """Raised when stored bytes cannot be decompressed."""

    pass


class ValidationMismatch(StoreGuardError):
    """Raised when stored or staged content does not match its manifest."""

    def __init__(
        self,
        message: str,
        mismatches: list[str] | None = None,
        details: dict | None = None,
    ):
        self.mismatches = list(mismatches or [])
        merged = {"mismatches": self.mismatches, **(details or {})}
        super().__init__(message, details=merged)


class InvalidManifest(StoreGuardError):
    """Raised when a manifest is unreadable or not self-consistent."""

    pass


class NotFound(StoreGuardError):
    """Raised when a backup does not exist or has no valid manifest."""

    pass


class BackupFailed(StoreGuardError):
    """Raised when a backup run fails. The partial destination is removed."""

    def __init__(self, reason: str, details: dict | None = None):
        self.reason = reason
        super().__init__(f"Backup failed: {reason}", details=details)


class BackupInProgress(BackupFailed):
    """Raised when a backup for the same category is already running."""

    pass


class OperationTimeout(StoreGuardError):
    """Raised when a backup or restore exceeds its wall-clock budget."""

    pass


class RestoreFailed(StoreGuardError):
    """Raised when a restore fails. The live-data root is left untouched."""

    def __init__(self, reason: str, details: dict | None = None):
        self.reason = reason
        super().__init__(f"Restore failed: {reason}", details=details)


class CorruptBackup(RestoreFailed):
    """Raised when a backup fails integrity validation before restore."""

    def __init__(self, backup_id: str, mismatches: list[str], details: dict | None = None):
        self.backup_id = backup_id
        self.mismatches = list(mismatches)
        super().__init__(
            f"backup {backup_id} failed integrity validation",
            details={"backup_id": backup_id, "mismatches": self.mismatches, **(details or {})},
        )


class RestoreVerificationFailed(RestoreFailed):
    """Raised when staged restore output does not match the manifest."""

    def __init__(self, backup_id: str, mismatches: list[str], details: dict | None = None):
        self.backup_id = backup_id
        self.mismatches = list(mismatches)
        super().__init__(
            f"staged output of {backup_id} failed verification",
            details={"backup_id": backup_id, "mismatches": self.mismatches, **(details or {})},
        )


class RetentionDeleteFailure(StoreGuardError):
    """Raised when an expired backup cannot be removed."""

    pass


class JournalError(StoreGuardError):
    """Raised when operation journal writes or reads fail."""

    pass
