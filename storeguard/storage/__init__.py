# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage Backends - Where backup artifacts live.
"""

from storeguard.storage.base import StorageBackend, join_key
from storeguard.storage.local import LocalStorageBackend
from storeguard.storage.memory import MemoryStorageBackend

__all__ = [
    "StorageBackend",
    "join_key",
    "LocalStorageBackend",
    "MemoryStorageBackend",
]
