# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Builder - Functional builder pattern for configuration.

This module provides pure functions for building StoreGuardConfig
objects. Each function takes a config dict and returns a new dict with
the modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from storeguard.config import (
    BackupCategory,
    DASHBOARD_DATA_DIRECTORIES,
    DASHBOARD_DATA_FILES,
    DEFAULT_RETENTION,
    DEFAULT_SCHEDULE_HOURS,
    ItemKind,
    ProtectedItem,
    StoreGuardConfig,
)


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "live_root": None,
        "backup_root": Path("./storeguard_backups"),
        "staging_root": Path("./storeguard_staging"),
        "protected_items": [],
        "retention": dict(DEFAULT_RETENTION),
        "compress_backups": True,
        "compression_level": 19,
        "schedule_hours": dict(DEFAULT_SCHEDULE_HOURS),
        "operation_timeout_seconds": 600.0,
        "journal_enabled": True,
    }


def with_live_root(config: ConfigDict, path: Path | str) -> ConfigDict:
    """
    Set the root of the live data store.

    Args:
        config: Current configuration dictionary
        path: Directory holding the JSON documents

    Returns:
        New configuration dictionary with live root set
    """
    return {**config, "live_root": Path(path)}


def with_backup_root(config: ConfigDict, path: Path | str) -> ConfigDict:
    return {**config, "backup_root": Path(path)}


def with_staging_root(config: ConfigDict, path: Path | str) -> ConfigDict:
    """Set where restores are staged. Must be outside the live and backup roots."""
    return {**config, "staging_root": Path(path)}


def protect_file(config: ConfigDict, name: str) -> ConfigDict:
    """
    Add a file to protect.

    Args:
        config: Current configuration dictionary
        name: Path relative to the live root (e.g., 'colleges.json')

    Returns:
        New configuration dictionary with the file added
    """
    item = ProtectedItem(name=name, kind=ItemKind.FILE)
    return {**config, "protected_items": [*config["protected_items"], item]}


def protect_directory(config: ConfigDict, name: str) -> ConfigDict:
    """
    Add a directory to protect. All files below it are backed up.

    Args:
        config: Current configuration dictionary
        name: Path relative to the live root (e.g., 'reports')

    Returns:
        New configuration dictionary with the directory added
    """
    item = ProtectedItem(name=name, kind=ItemKind.DIRECTORY)
    return {**config, "protected_items": [*config["protected_items"], item]}


def protect_dashboard_data(config: ConfigDict) -> ConfigDict:
    """
    Protect the reporting dashboard's standard data files and directories.

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with the dashboard items added
    """
    for name in DASHBOARD_DATA_FILES:
        config = protect_file(config, name)
    for name in DASHBOARD_DATA_DIRECTORIES:
        config = protect_directory(config, name)
    return config


def retain(config: ConfigDict, category: BackupCategory | str, count: int) -> ConfigDict:
    """
    Set how many backups of a category are kept.

    Args:
        config: Current configuration dictionary
        category: Backup category (e.g., 'daily')
        count: Number of backups to keep

    Returns:
        New configuration dictionary with retention set
    """
    if count < 0:
        raise ValueError(f"retention count must be >= 0, got {count}")
    category = BackupCategory(category)
    return {**config, "retention": {**config["retention"], category: count}}


def run_every(config: ConfigDict, category: BackupCategory | str, hours: float) -> ConfigDict:
    """
    Schedule periodic backups of a category.

    Args:
        config: Current configuration dictionary
        category: Backup category (e.g., 'weekly')
        hours: Interval between backups

    Returns:
        New configuration dictionary with schedule set
    """
    if hours <= 0:
        raise ValueError(f"interval hours must be > 0, got {hours}")
    category = BackupCategory(category)
    return {**config, "schedule_hours": {**config["schedule_hours"], category: float(hours)}}


def without_schedule(config: ConfigDict) -> ConfigDict:
    """Disable all periodic backups."""
    return {**config, "schedule_hours": {}}


def with_timeout(config: ConfigDict, seconds: float | None) -> ConfigDict:
    """
    Set the wall-clock budget for one backup or restore.

    Args:
        config: Current configuration dictionary
        seconds: Budget in seconds, or None for no limit

    Returns:
        New configuration dictionary with timeout set
    """
    if seconds is not None and seconds <= 0:
        raise ValueError(f"timeout must be > 0 or None, got {seconds}")
    return {**config, "operation_timeout_seconds": seconds}


def with_compression_level(config: ConfigDict, level: int) -> ConfigDict:
    if not 1 <= level <= 22:
        raise ValueError(f"compression level must be 1-22, got {level}")
    return {**config, "compression_level": level}


def disable_compression(config: ConfigDict) -> ConfigDict:
    """
    Disable backup compression.

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with compression disabled
    """
    return {**config, "compress_backups": False}


def disable_journal(config: ConfigDict) -> ConfigDict:
    """
    Disable the operation journal.

    WARNING: Backup and restore history will not be recorded.
    """
    import sys

    print(
        "\u26a0\ufe0f  WARNING: Operation journal is disabled. No audit trail will be kept.",
        file=sys.stderr,
    )
    return {**config, "journal_enabled": False}


def build_config(config_dict: ConfigDict) -> StoreGuardConfig:
    """
    Validate and build an immutable StoreGuardConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable StoreGuardConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    if not config_dict.get("live_root"):
        from storeguard.exceptions import ConfigurationError

        raise ConfigurationError("live_root is required")

    return StoreGuardConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_live_root(c, "./data"),
            lambda c: protect_file(c, "colleges.json"),
            disable_compression,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> StoreGuardConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().

    Example:
        config = build_from_steps(
            lambda c: with_live_root(c, "./data"),
            protect_dashboard_data,
            lambda c: retain(c, "daily", 14),
        )

    Args:
        *steps: Builder functions to apply in sequence

    Returns:
        Validated, immutable StoreGuardConfig instance
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    live_root: str | Path,
    *,
    files: List[str] | None = None,
    directories: List[str] | None = None,
    backup_root: str | Path | None = None,
    staging_root: str | Path | None = None,
    retention: Dict[BackupCategory | str, int] | None = None,
    schedule_hours: Dict[BackupCategory | str, float] | None = None,
    compress: bool = True,
    timeout_seconds: float | None = 600.0,
    **kwargs: Any,
) -> StoreGuardConfig:
    """
    Create StoreGuard configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.
    It's simpler than the builder pattern and easier to understand.

    Args:
        live_root: Directory holding the live JSON documents (required)
        files: Files to protect, relative to live_root. When neither
               files nor directories are given, the dashboard defaults
               are protected.
        directories: Directories to protect, relative to live_root
        backup_root: Where backups are kept (default: "./storeguard_backups")
        staging_root: Where restores are staged (default: "./storeguard_staging")
        retention: Per-category overrides, e.g. {"daily": 14}
        schedule_hours: Per-category intervals, e.g. {"weekly": 168}
        compress: Compress stored files with zstd (default: True)
        timeout_seconds: Budget per backup/restore, None for no limit
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable StoreGuardConfig instance

    Example:
        # Protect the dashboard's data directory with defaults
        config = create_config("/srv/dashboard/data")

        # Explicit items and a longer daily history
        config = create_config(
            "/srv/dashboard/data",
            files=["colleges.json", "users.json"],
            directories=["reports"],
            retention={"daily": 14},
            schedule_hours={"weekly": 168},
        )
    """
    # Start with defaults
    config_dict = with_live_root(create_empty_config(), live_root)

    if files is None and directories is None:
        config_dict = protect_dashboard_data(config_dict)
    else:
        for name in files or []:
            config_dict = protect_file(config_dict, name)
        for name in directories or []:
            config_dict = protect_directory(config_dict, name)

    if backup_root:
        config_dict = with_backup_root(config_dict, backup_root)

    if staging_root:
        config_dict = with_staging_root(config_dict, staging_root)

    for category, count in (retention or {}).items():
        config_dict = retain(config_dict, category, count)

    for category, hours in (schedule_hours or {}).items():
        config_dict = run_every(config_dict, category, hours)

    if not compress:
        config_dict = disable_compression(config_dict)

    config_dict = with_timeout(config_dict, timeout_seconds)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    # Build and return validated config
    return build_config(config_dict)
