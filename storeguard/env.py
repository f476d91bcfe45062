# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and retention profiles.

These helpers are small, convenient wrappers around create_config() and
StoreGuardConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made retention profiles
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

from storeguard.builder import create_config
from storeguard.config import BackupCategory, StoreGuardConfig
from storeguard.errors import (
    explain_invalid_bool_env,
    explain_invalid_interval_env,
    explain_invalid_retention_env,
    explain_invalid_timeout_env,
    explain_missing_live_root_env,
    explain_missing_protected_items,
)
from storeguard.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_retention() -> Dict[BackupCategory, int]:
    overrides: Dict[BackupCategory, int] = {}
    for category in BackupCategory:
        name = f"STOREGUARD_RETENTION_{category.value.upper()}"
        value = os.getenv(name)
        if not value:
            continue
        try:
            count = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(explain_invalid_retention_env(name, value)) from exc
        if count < 0:
            raise ConfigurationError(explain_invalid_retention_env(name, value))
        overrides[category] = count
    return overrides


def _parse_interval_hours(value: str | None) -> float | None:
    if not value:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_interval_env(value)) from exc
    if hours <= 0:
        raise ConfigurationError(explain_invalid_interval_env(value))
    return hours


def _parse_timeout(value: str | None) -> float | None:
    if value is None or value == "":
        return 600.0
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_timeout_env(value)) from exc
    if seconds < 0:
        raise ConfigurationError(explain_invalid_timeout_env(value))
    # 0 disables the timeout
    return seconds or None


def create_config_from_env(
    *,
    files: List[str] | None = None,
    directories: List[str] | None = None,
) -> StoreGuardConfig:
    """
    Create a StoreGuardConfig from environment variables plus explicit items.

    When neither files nor directories are passed, the dashboard's
    standard data files and directories are protected. Passing both as
    empty lists is an error.

    Required:
        - STOREGUARD_LIVE_ROOT: Directory holding the live JSON documents

    Optional environment variables:
        - STOREGUARD_BACKUP_ROOT: Backup directory (default: ./storeguard_backups)
        - STOREGUARD_STAGING_ROOT: Restore staging directory (default: ./storeguard_staging)
        - STOREGUARD_RETENTION_<CATEGORY>: Backups kept per category,
          e.g. STOREGUARD_RETENTION_DAILY=14
        - STOREGUARD_COMPRESS: 'true' | 'false' (default: true)
        - STOREGUARD_DAILY_INTERVAL_HOURS: Hours between daily backups (default: 24)
        - STOREGUARD_TIMEOUT_SECONDS: Budget per backup/restore, 0 disables (default: 600)
    """

    if files is not None and directories is not None and not files and not directories:
        raise ConfigurationError(explain_missing_protected_items())

    live_root = os.getenv("STOREGUARD_LIVE_ROOT")
    if not live_root:
        raise ConfigurationError(explain_missing_live_root_env())

    backup_root_env = os.getenv("STOREGUARD_BACKUP_ROOT")
    staging_root_env = os.getenv("STOREGUARD_STAGING_ROOT")
    daily_hours = _parse_interval_hours(os.getenv("STOREGUARD_DAILY_INTERVAL_HOURS"))

    return create_config(
        live_root=Path(live_root),
        files=files,
        directories=directories,
        backup_root=Path(backup_root_env) if backup_root_env else None,
        staging_root=Path(staging_root_env) if staging_root_env else None,
        retention=_parse_retention(),
        schedule_hours={BackupCategory.DAILY: daily_hours} if daily_hours else None,
        compress=_parse_bool("STOREGUARD_COMPRESS", os.getenv("STOREGUARD_COMPRESS"), True),
        timeout_seconds=_parse_timeout(os.getenv("STOREGUARD_TIMEOUT_SECONDS")),
    )


# ============================================================================
# Profiles
# ============================================================================

def extended_retention(config: StoreGuardConfig) -> StoreGuardConfig:
    """
    Keep a longer history.

    - At least 30 daily, 12 weekly, 24 monthly, 10 yearly backups
    - Weekly (every 7 days) and monthly (every 30 days) backups scheduled
      in addition to daily ones
    """

    retention = dict(config.retention)
    for category, minimum in (
        (BackupCategory.DAILY, 30),
        (BackupCategory.WEEKLY, 12),
        (BackupCategory.MONTHLY, 24),
        (BackupCategory.YEARLY, 10),
    ):
        retention[category] = max(retention[category], minimum)

    schedule = dict(config.schedule_hours)
    schedule.setdefault(BackupCategory.DAILY, 24.0)
    schedule.setdefault(BackupCategory.WEEKLY, 24.0 * 7)
    schedule.setdefault(BackupCategory.MONTHLY, 24.0 * 30)

    return config.with_updates(retention=retention, schedule_hours=schedule)


def minimal_retention(config: StoreGuardConfig) -> StoreGuardConfig:
    """
    Keep as little history as is still useful, for small disks.

    - At most 3 daily and 2 of each other scheduled category
    - Manual and emergency backups capped at 5
    - Only daily backups are scheduled
    """

    retention = {
        category: min(count, 3 if category == BackupCategory.DAILY else 2)
        for category, count in config.retention.items()
    }
    retention[BackupCategory.MANUAL] = min(config.retention[BackupCategory.MANUAL], 5)
    retention[BackupCategory.EMERGENCY] = min(config.retention[BackupCategory.EMERGENCY], 5)

    schedule = {
        BackupCategory.DAILY: config.schedule_hours.get(BackupCategory.DAILY, 24.0),
    }

    return config.with_updates(retention=retention, schedule_hours=schedule)
