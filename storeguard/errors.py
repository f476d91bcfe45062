# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for StoreGuard.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_live_root_env() -> str:
    """
    Explain that the live-data root environment variable is missing.
    """

    return (
        "Live data root is not configured. "
        "Set the STOREGUARD_LIVE_ROOT environment variable or pass live_root=... to create_config()."
    )


def explain_missing_protected_items() -> str:
    """
    Explain that at least one protected item is required.
    """

    return (
        "No protected items were provided. "
        "StoreGuard cannot guess which files and directories hold your data. "
        "Pass files=[\"colleges.json\", ...] and/or directories=[\"reports\", ...] "
        "to create_config_from_env() or create_config()."
    )


def explain_invalid_retention_env(name: str, value: str | None) -> str:
    """
    Explain that a STOREGUARD_RETENTION_<CATEGORY> value is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative integer number of backups to keep."
    )


def explain_invalid_interval_env(value: str | None) -> str:
    """
    Explain that STOREGUARD_DAILY_INTERVAL_HOURS is invalid.
    """

    return (
        f"Invalid STOREGUARD_DAILY_INTERVAL_HOURS value: {value!r}. "
        "It must be a positive number of hours."
    )


def explain_invalid_timeout_env(value: str | None) -> str:
    """
    Explain that STOREGUARD_TIMEOUT_SECONDS is invalid.
    """

    return (
        f"Invalid STOREGUARD_TIMEOUT_SECONDS value: {value!r}. "
        "Expected a positive number of seconds, or 0 to disable the timeout."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment flag is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: '1', '0', 'true', 'false', 'yes', 'no'."
    )
