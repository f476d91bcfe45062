# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification during runtime.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, List


class BackupCategory(str, Enum):
    """Retention bucket a backup belongs to."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    EMERGENCY = "emergency"  # Exempt from automatic cleanup
    MANUAL = "manual"  # Exempt from automatic cleanup


class ItemKind(str, Enum):
    """Kind of protected item."""

    FILE = "file"
    DIRECTORY = "directory"


# Categories that count-based cleanup skips unless explicitly included
EXEMPT_CATEGORIES = frozenset({BackupCategory.MANUAL, BackupCategory.EMERGENCY})

DEFAULT_RETENTION: Dict[BackupCategory, int] = {
    BackupCategory.DAILY: 7,
    BackupCategory.WEEKLY: 4,
    BackupCategory.MONTHLY: 12,
    BackupCategory.YEARLY: 5,
    BackupCategory.EMERGENCY: 10,
    BackupCategory.MANUAL: 20,
}

DEFAULT_SCHEDULE_HOURS: Dict[BackupCategory, float] = {
    BackupCategory.DAILY: 24.0,
}

# The dashboard's JSON store layout
DASHBOARD_DATA_FILES = [
    "colleges.json",
    "accountManagers.json",
    "users.json",
    "sessions.json",
    "security-logs.json",
    "login-attempts.json",
    "performance-report.json",
    "previous-reports.json",
    "kpis.json",
    "templates.json",
]
DASHBOARD_DATA_DIRECTORIES = ["reports", "analytics", "ai-cache"]

MANIFEST_FILENAME = "manifest.json"


@dataclass(frozen=True)
class ProtectedItem:
    """A named file or directory under the live-data root."""

    name: str  # POSIX path relative to the live root
    kind: ItemKind = ItemKind.FILE

    def source_path(self, live_root: Path) -> Path:
        """Absolute path of this item under the given live root."""
        return (Path(live_root) / PurePosixPath(self.name)).absolute()

    @property
    def is_directory(self) -> bool:
        return self.kind == ItemKind.DIRECTORY


def is_safe_relative_path(name: str) -> bool:
    """
    Check that a path is relative and cannot escape its root.

    Rules:
    - Not empty, not absolute
    - No '..' or '.' components
    - No backslashes or drive letters
    """
    if not name or "\\" in name or ":" in name:
        return False
    path = PurePosixPath(name)
    if path.is_absolute():
        return False
    return all(part not in ("", ".", "..") for part in name.split("/"))


def _validate_protected_items(items: List[ProtectedItem]) -> List[str]:
    """Validate protected item declarations, returning error strings."""
    errors: List[str] = []
    seen: set[str] = set()

    for item in items:
        if not isinstance(item, ProtectedItem):
            errors.append(f"Invalid protected item: {item!r}")
            continue
        if not is_safe_relative_path(item.name):
            errors.append(f"Protected item name must be a safe relative path: {item.name!r}")
            continue
        if item.name == MANIFEST_FILENAME:
            errors.append(f"Protected item name {MANIFEST_FILENAME!r} is reserved")
        if item.name in seen:
            errors.append(f"Duplicate protected item: {item.name}")
        seen.add(item.name)

    # One item must not live inside another
    names = sorted(seen)
    for i, outer in enumerate(names):
        for inner in names[i + 1:]:
            if inner.startswith(outer + "/"):
                errors.append(f"Protected items overlap: {inner!r} is inside {outer!r}")

    return errors


def is_within(path: Path, root: Path) -> bool:
    path = path.resolve()
    root = root.resolve()
    return path == root or path.is_relative_to(root)


@dataclass(frozen=True)
class StoreGuardConfig:
    """
    Immutable configuration for the backup engine.

    This configuration is frozen after creation to ensure that a backup
    run never observes a half-applied change.
    """

    # Required: root of the live JSON data store
    live_root: Path

    # Where backups are kept: <backup_root>/<category>/<backup_id>/
    backup_root: Path = field(default_factory=lambda: Path("./storeguard_backups"))

    # Where restores are staged before promotion
    staging_root: Path = field(default_factory=lambda: Path("./storeguard_staging"))

    # Files and directories to protect
    protected_items: List[ProtectedItem] = field(default_factory=list)

    # Backups kept per category
    retention: Dict[BackupCategory, int] = field(
        default_factory=lambda: dict(DEFAULT_RETENTION)
    )

    # Compress stored items with zstd
    compress_backups: bool = True

    # zstd compression level (1-22)
    compression_level: int = 19

    # Scheduled backup interval in hours, per category
    schedule_hours: Dict[BackupCategory, float] = field(
        default_factory=lambda: dict(DEFAULT_SCHEDULE_HOURS)
    )

    # Wall-clock budget for one backup or restore (None disables)
    operation_timeout_seconds: float | None = 600.0

    # Record operations in the SQLite journal under the backup root
    journal_enabled: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        # Normalize path-likes
        for name in ("live_root", "backup_root", "staging_root"):
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, Path(value))

        # Validate roots do not overlap in unsafe ways
        if is_within(self.staging_root, self.live_root):
            errors.append("staging_root must not be the live root or inside it")
        if is_within(self.staging_root, self.backup_root):
            errors.append("staging_root must not be the backup root or inside it")
        if is_within(self.live_root, self.backup_root):
            errors.append("live_root must not be inside backup_root")

        # Validate protected items
        errors.extend(_validate_protected_items(self.protected_items))
        for item in self.protected_items:
            if not isinstance(item, ProtectedItem):
                continue
            source = item.source_path(self.live_root)
            if is_within(self.backup_root, source) or is_within(self.staging_root, source):
                errors.append(
                    f"Protected item {item.name!r} contains the backup or staging root"
                )

        # Validate retention
        for category, count in self.retention.items():
            if not isinstance(category, BackupCategory):
                errors.append(f"Unknown retention category: {category!r}")
            elif not isinstance(count, int) or count < 0:
                errors.append(f"retention[{category.value}] must be >= 0, got {count!r}")
        missing = [c.value for c in BackupCategory if c not in self.retention]
        if missing:
            errors.append(f"retention missing categories: {missing}")

        # Validate compression level
        if not 1 <= self.compression_level <= 22:
            errors.append(f"compression_level must be 1-22, got {self.compression_level}")

        # Validate schedules
        for category, hours in self.schedule_hours.items():
            if not isinstance(category, BackupCategory):
                errors.append(f"Unknown schedule category: {category!r}")
            elif hours is None or hours <= 0:
                errors.append(f"schedule_hours[{category.value}] must be > 0, got {hours!r}")

        # Validate timeout
        if self.operation_timeout_seconds is not None and self.operation_timeout_seconds <= 0:
            errors.append(
                f"operation_timeout_seconds must be > 0 or None, got {self.operation_timeout_seconds}"
            )

        # Raise all errors at once
        if errors:
            from storeguard.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

        # Print warning when nothing is protected
        if not self.protected_items:
            import sys

            print(
                "\u26a0\ufe0f  WARNING: No protected items configured. Backups will be empty.",
                file=sys.stderr,
            )

    def with_updates(self, **kwargs) -> "StoreGuardConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)


# Type alias for retention configuration
RetentionPolicy = Dict[BackupCategory, int]
