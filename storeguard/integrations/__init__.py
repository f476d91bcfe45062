# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin and other framework integrations.
"""

from storeguard.integrations.fastapi import (
    register_storeguard_routes,
    setup_storeguard_plugin,
    storeguard_lifespan,
    verify_api_key,
)

__all__ = [
    "register_storeguard_routes",
    "setup_storeguard_plugin",
    "storeguard_lifespan",
    "verify_api_key",
]
