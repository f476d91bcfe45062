# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Manifest - What a backup contains, captured at backup time.

A manifest is the sole description of one backup run: one entry per
backed-up file (size, checksum of the uncompressed content, source
modification time), one aggregate per protected directory, and the
protected items that could not be read. It is written once next to the
backup's data and never modified afterwards.

The ManifestBuilder reads each source file exactly once. The bytes it
yields are the bytes that get checksummed, so a backup writer that
stores those same bytes can never record a checksum for content it did
not copy.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator, Dict, List

import aiofiles
import structlog
from ulid import ULID

from storeguard.config import BackupCategory, ProtectedItem, is_safe_relative_path
from storeguard.exceptions import InvalidManifest, SourceUnavailable
from storeguard.vault.checksum import ChecksumService
from storeguard.vault.compressor import CODEC_NONE, CODEC_ZSTD

logger = structlog.get_logger()

MANIFEST_VERSION = "1.0"
SUPPORTED_VERSIONS = frozenset({MANIFEST_VERSION})


@dataclass(frozen=True)
class ManifestEntry:
    """One backed-up file."""

    path: str  # Relative POSIX path under the live root
    size: int  # Uncompressed bytes
    checksum: str  # Hex digest of uncompressed content
    modified: str  # ISO 8601 mtime of the source
    stored_size: int = 0  # Bytes as stored

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "checksum": self.checksum,
            "modified": self.modified,
            "storedSize": self.stored_size,
        }


@dataclass(frozen=True)
class DirectoryEntry:
    """Aggregate fingerprint of one protected directory."""

    name: str
    checksum: str
    file_count: int
    size: int

    def to_dict(self) -> dict:
        return {
            "checksum": self.checksum,
            "fileCount": self.file_count,
            "size": self.size,
        }


def _object(data: dict, key: str, required: bool = True) -> dict:
    """Fetch a nested JSON object, rejecting any other type."""
    if key not in data and not required:
        return {}
    value = data[key]
    if not isinstance(value, dict):
        raise InvalidManifest(
            f"Manifest field {key!r} must be an object",
            details={"type": type(value).__name__},
        )
    return value


@dataclass(frozen=True)
class BackupManifest:
    """Full description of one backup run."""

    backup_id: str
    timestamp: datetime
    category: BackupCategory
    entries: Dict[str, ManifestEntry]
    directories: Dict[str, DirectoryEntry] = field(default_factory=dict)
    missing: Dict[str, str] = field(default_factory=dict)
    label: str | None = None
    compression: str = CODEC_ZSTD
    version: str = MANIFEST_VERSION

    @property
    def total_files(self) -> int:
        return len(self.entries)

    @property
    def total_directories(self) -> int:
        return len(self.directories)

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.entries.values())

    @property
    def total_stored_size(self) -> int:
        return sum(e.stored_size for e in self.entries.values())

    def to_dict(self) -> dict:
        return {
            "backupId": self.backup_id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "version": self.version,
            "label": self.label,
            "compression": self.compression,
            "entries": {path: e.to_dict() for path, e in self.entries.items()},
            "directories": {name: d.to_dict() for name, d in self.directories.items()},
            "missing": dict(self.missing),
            "summary": {
                "totalFiles": self.total_files,
                "totalDirectories": self.total_directories,
                "totalSize": self.total_size,
                "totalStoredSize": self.total_stored_size,
            },
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict) -> "BackupManifest":
        """
        Parse and check a manifest dict.

        Raises:
            InvalidManifest: If required fields are missing, malformed, or
                the summary counters disagree with the entries
        """
        try:
            version = data["version"]
            if version not in SUPPORTED_VERSIONS:
                raise InvalidManifest(
                    f"Unsupported manifest version: {version!r}",
                    details={"version": version},
                )

            entries: Dict[str, ManifestEntry] = {}
            for path, raw in _object(data, "entries").items():
                if not is_safe_relative_path(path):
                    raise InvalidManifest(f"Unsafe entry path: {path!r}")
                entry = ManifestEntry(
                    path=path,
                    size=int(raw["size"]),
                    checksum=str(raw["checksum"]),
                    modified=str(raw["modified"]),
                    stored_size=int(raw.get("storedSize", 0)),
                )
                if entry.size < 0 or entry.stored_size < 0:
                    raise InvalidManifest(f"Negative size in entry: {path!r}")
                entries[path] = entry

            directories: Dict[str, DirectoryEntry] = {}
            for name, raw in _object(data, "directories", required=False).items():
                if not is_safe_relative_path(name):
                    raise InvalidManifest(f"Unsafe directory name: {name!r}")
                directories[name] = DirectoryEntry(
                    name=name,
                    checksum=str(raw["checksum"]),
                    file_count=int(raw["fileCount"]),
                    size=int(raw["size"]),
                )

            compression = data.get("compression", CODEC_ZSTD)
            if compression not in (CODEC_ZSTD, CODEC_NONE):
                raise InvalidManifest(f"Unknown compression codec: {compression!r}")

            timestamp = datetime.fromisoformat(data["timestamp"])
            if timestamp.tzinfo is None:
                raise InvalidManifest(
                    "Manifest timestamp has no timezone",
                    details={"timestamp": data["timestamp"]},
                )

            missing = _object(data, "missing", required=False)
            manifest = cls(
                backup_id=str(data["backupId"]),
                timestamp=timestamp.astimezone(UTC),
                category=BackupCategory(data["category"]),
                entries=entries,
                directories=directories,
                missing={str(k): str(v) for k, v in missing.items()},
                label=data.get("label"),
                compression=compression,
                version=version,
            )
            summary = _object(data, "summary")
        except InvalidManifest:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidManifest(f"Malformed manifest: {e}") from e

        counters = {
            "totalFiles": manifest.total_files,
            "totalDirectories": manifest.total_directories,
            "totalSize": manifest.total_size,
        }
        for key, actual in counters.items():
            if summary.get(key) != actual:
                raise InvalidManifest(
                    f"Manifest summary {key} does not match entries",
                    details={"recorded": summary.get(key), "actual": actual},
                )

        for name, directory in directories.items():
            inside = [p for p in entries if p.startswith(name + "/")]
            if len(inside) != directory.file_count:
                raise InvalidManifest(
                    f"Directory {name!r} file count does not match entries",
                    details={"recorded": directory.file_count, "actual": len(inside)},
                )

        return manifest

    @classmethod
    def from_json(cls, raw: bytes) -> "BackupManifest":
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidManifest(f"Manifest is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidManifest("Manifest root must be an object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class CapturedFile:
    """One source file read for backup: its manifest entry and its bytes."""

    item: ProtectedItem
    entry: ManifestEntry
    content: bytes


@dataclass
class ManifestDraft:
    """Manifest under construction during a backup run."""

    entries: Dict[str, ManifestEntry] = field(default_factory=dict)
    directory_items: List[str] = field(default_factory=list)
    missing: Dict[str, str] = field(default_factory=dict)

    def add(self, entry: ManifestEntry) -> None:
        self.entries[entry.path] = entry

    def finish(
        self,
        checksum: ChecksumService,
        backup_id: str,
        category: BackupCategory,
        timestamp: datetime | None = None,
        label: str | None = None,
        compression: str = CODEC_ZSTD,
    ) -> BackupManifest:
        """Freeze the draft into a manifest, computing directory aggregates."""
        directories: Dict[str, DirectoryEntry] = {}
        for name in self.directory_items:
            prefix = name + "/"
            files = [e for p, e in self.entries.items() if p.startswith(prefix)]
            directories[name] = DirectoryEntry(
                name=name,
                checksum=checksum.aggregate(
                    (e.path[len(prefix):], e.checksum) for e in files
                ),
                file_count=len(files),
                size=sum(e.size for e in files),
            )

        return BackupManifest(
            backup_id=backup_id,
            timestamp=timestamp or datetime.now(UTC),
            category=category,
            entries=dict(self.entries),
            directories=directories,
            missing=dict(self.missing),
            label=label,
            compression=compression,
        )


class ManifestBuilder:
    """Walks protected items under the live root and fingerprints them."""

    def __init__(self, checksum: ChecksumService | None = None):
        self.checksum = checksum or ChecksumService()

    async def capture(
        self,
        items: List[ProtectedItem],
        live_root: Path,
        draft: ManifestDraft,
    ) -> AsyncIterator[CapturedFile]:
        """
        Read every protected file once, yielding its content and entry.

        Items that cannot be read are recorded in draft.missing and
        logged. They never abort the capture.

        Args:
            items: Protected items, in declaration order
            live_root: Root of the live data store
            draft: Receives directory names and missing items
        """
        for item in items:
            source = item.source_path(live_root)

            if not source.exists():
                self._record_missing(draft, item.name, "not_found")
                continue

            if item.is_directory:
                if not source.is_dir():
                    self._record_missing(draft, item.name, "not_a_directory")
                    continue
                draft.directory_items.append(item.name)
                for path in _walk_files(source):
                    relative = f"{item.name}/{path.relative_to(source).as_posix()}"
                    captured = await self._capture_file(item, path, relative, draft)
                    if captured is not None:
                        yield captured
            else:
                if not source.is_file():
                    self._record_missing(draft, item.name, "not_a_file")
                    continue
                captured = await self._capture_file(item, source, item.name, draft)
                if captured is not None:
                    yield captured

    async def build(
        self,
        items: List[ProtectedItem],
        live_root: Path,
        category: BackupCategory = BackupCategory.MANUAL,
        backup_id: str | None = None,
        label: str | None = None,
    ) -> BackupManifest:
        """
        Build a manifest of the live data without storing anything.

        Args:
            items: Protected items
            live_root: Root of the live data store
            category: Category recorded in the manifest
            backup_id: Identifier to record (default: new ULID)
            label: Optional human label

        Returns:
            BackupManifest describing the live data
        """
        draft = ManifestDraft()
        async for captured in self.capture(items, live_root, draft):
            draft.add(captured.entry)
        return draft.finish(
            self.checksum,
            backup_id=backup_id or str(ULID()),
            category=category,
            label=label,
        )

    async def _capture_file(
        self,
        item: ProtectedItem,
        path: Path,
        relative: str,
        draft: ManifestDraft,
    ) -> CapturedFile | None:
        try:
            stat = path.stat()
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except FileNotFoundError:
            # Removed between listing and reading
            logger.info("source_file_vanished", path=relative)
            return None
        except OSError as e:
            self._record_missing(draft, relative, f"unreadable: {e.strerror or e}")
            return None

        entry = ManifestEntry(
            path=relative,
            size=len(content),
            checksum=self.checksum.digest(content),
            modified=datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
        )
        return CapturedFile(item=item, entry=entry, content=content)

    def _record_missing(self, draft: ManifestDraft, name: str, reason: str) -> None:
        draft.missing[name] = reason
        error = SourceUnavailable(
            f"Protected item unavailable: {name}",
            details={"item": name, "reason": reason},
        )
        logger.warning("source_unavailable", item=name, reason=reason, error=str(error))


def _walk_files(root: Path) -> List[Path]:
    """All regular files under root, in sorted relative-path order."""
    files = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            files.append(Path(dirpath) / name)
    return sorted(files, key=lambda p: p.relative_to(root).as_posix())
