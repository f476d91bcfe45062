# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local disk storage backend.

Files are written atomically (write to temp, then rename) so a reader
never sees a half-written object. Directory trees are removed by first
renaming them to a hidden sibling, so they disappear from listings in a
single step before the slow recursive delete runs.
"""

import asyncio
import os
import secrets
import shutil
from pathlib import Path
from typing import List

import aiofiles
import structlog

from storeguard.config import is_safe_relative_path
from storeguard.exceptions import ObjectNotFound, StorageError, WriteFailure

logger = structlog.get_logger()

TRASH_PREFIX = ".deleting-"


class LocalStorageBackend:
    """Stores backup artifacts under a directory on the local filesystem."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"LocalStorageBackend(root={str(self.root)!r})"

    def path_for(self, key: str) -> Path:
        """
        Map a storage key to a filesystem path under the root.

        Raises:
            StorageError: If the key could escape the root
        """
        if key == "":
            return self.root
        if not is_safe_relative_path(key):
            raise StorageError(f"Unsafe storage key: {key!r}", details={"key": key})
        return self.root / key

    async def write(self, key: str, data: bytes) -> int:
        path = self.path_for(key)
        temp_path = path.with_name(f".{path.name}.tmp-{secrets.token_hex(4)}")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)

            # Rename to final path (atomic on most filesystems)
            os.replace(temp_path, path)

        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise WriteFailure(
                f"Failed to write backup object: {e}",
                details={"key": key, "size": len(data)},
            ) from e

        logger.debug("storage_object_written", key=key, size=len(data))
        return len(data)

    async def read(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise ObjectNotFound(
                f"Backup object not found: {key}",
                details={"key": key},
            ) from e
        except OSError as e:
            raise StorageError(
                f"Failed to read backup object: {e}",
                details={"key": key},
            ) from e

    async def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    async def list(self, prefix: str = "") -> List[str]:
        path = self.path_for(prefix)
        if not path.is_dir():
            return []
        return sorted(child.name for child in path.iterdir())

    async def delete(self, prefix: str) -> None:
        path = self.path_for(prefix)

        try:
            if path.is_dir():
                trash = path.with_name(f"{TRASH_PREFIX}{path.name}-{secrets.token_hex(4)}")
                path.rename(trash)
                loop = asyncio.get_event_loop()
                await loop.run_in_executor(None, shutil.rmtree, trash)
            elif path.exists():
                path.unlink()
            else:
                return
        except OSError as e:
            raise StorageError(
                f"Failed to delete {prefix}: {e}",
                details={"key": prefix},
            ) from e

        logger.debug("storage_prefix_deleted", key=prefix)

    async def move(self, src_prefix: str, dst_prefix: str) -> None:
        src = self.path_for(src_prefix)
        dst = self.path_for(dst_prefix)

        if not src.exists():
            raise ObjectNotFound(
                f"Cannot move missing prefix: {src_prefix}",
                details={"src": src_prefix, "dst": dst_prefix},
            )
        if dst.exists():
            raise WriteFailure(
                f"Move destination already exists: {dst_prefix}",
                details={"src": src_prefix, "dst": dst_prefix},
            )

        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            src.rename(dst)
        except OSError as e:
            raise WriteFailure(
                f"Failed to move {src_prefix} to {dst_prefix}: {e}",
                details={"src": src_prefix, "dst": dst_prefix},
            ) from e

    async def size(self, prefix: str = "") -> int:
        path = self.path_for(prefix)
        if path.is_file():
            return path.stat().st_size
        if not path.is_dir():
            return 0
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _tree_size, path)


def _tree_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())
