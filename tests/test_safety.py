# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for StoreGuard.

These tests verify the core safety guarantees:
1. Lossless storage - Compression and checksums round-trip exactly
2. Faithful restore - Backup, restore, promote reproduces the data byte for byte
3. Corruption detection - A damaged backup is NEVER restored
4. Atomic backups - A failed run leaves NOTHING visible
5. Restore isolation - Restoring NEVER touches live data before promotion
6. Retention - Only the oldest backups beyond the limit are removed

These tests MUST pass before any production deployment.
"""

import asyncio
import errno
import hashlib
import json
from pathlib import Path
from typing import Dict

import pytest
import pytest_asyncio

from storeguard.backup.restore import PendingSwap, RestoreEngine
from storeguard.backup.validator import REASON_MISSING
from storeguard.builder import create_config
from storeguard.config import BackupCategory
from storeguard.core import (
    create_backup,
    delete_backup,
    discard_restore,
    enforce_retention,
    get_backup_details,
    initialize_engine,
    list_backups,
    promote_restore,
    restore_backup,
    shutdown_engine,
)
from storeguard.exceptions import (
    BackupFailed,
    BackupInProgress,
    CorruptBackup,
    NotFound,
    OperationTimeout,
    RestoreFailed,
    RestoreVerificationFailed,
    WriteFailure,
)
from storeguard.storage.memory import MemoryStorageBackend
from storeguard.vault.checksum import ChecksumService
from storeguard.vault.compressor import Compressor


def snapshot_tree(root: Path) -> Dict[str, str]:
    """Map every file under root to the SHA-256 of its content."""
    return {
        path.relative_to(root).as_posix(): hashlib.sha256(path.read_bytes()).hexdigest()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


# ============================================================================
# Test 1: LOSSLESS STORAGE
# ============================================================================

@pytest.mark.asyncio
async def test_compression_is_lossless():
    """
    CRITICAL: decompress(compress(x)) must equal x for every payload.
    """
    payloads = [
        b"",
        b"[]",
        json.dumps([{"id": i, "name": f"College {i}"} for i in range(500)]).encode(),
        bytes(range(256)) * 8,
    ]

    for compressor in (Compressor(), Compressor(level=3), Compressor(enabled=False)):
        for data in payloads:
            stored = await compressor.compress(data)
            assert await compressor.decompress(stored) == data


def test_checksums_are_deterministic():
    """Same content, same digest; directory aggregates ignore listing order."""
    checksum = ChecksumService()

    assert checksum.digest(b"colleges") == checksum.digest(b"colleges")
    assert checksum.digest(b"colleges") != checksum.digest(b"colleges ")
    assert checksum.digest(b"") == hashlib.sha256(b"").hexdigest()

    pairs = [("a.json", "11"), ("2026/q1.json", "22"), ("b.json", "33")]
    assert checksum.aggregate(pairs) == checksum.aggregate(reversed(pairs))
    assert checksum.aggregate(pairs) != checksum.aggregate(pairs[:2])


# ============================================================================
# Test 2: FAITHFUL RESTORE
# ============================================================================

@pytest.mark.asyncio
async def test_backup_restore_promote_reproduces_live_data(
    test_config, engine_state, live_root: Path
):
    """
    CRITICAL: Promoting a restored backup must reproduce the backed-up
    files byte for byte, including dropping files added since.
    """
    original = snapshot_tree(live_root)
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL, "before-edit")

    assert summary.file_count == 4
    assert summary.directory_count == 1
    assert summary.label == "before-edit"

    # Damage the live data
    (live_root / "colleges.json").unlink()
    (live_root / "reports" / "summary.json").write_text("{}", encoding="utf-8")
    (live_root / "reports" / "stray.json").write_text("[1]", encoding="utf-8")

    handle = await restore_backup(test_config, engine_state, summary.backup_id)
    result = await promote_restore(test_config, engine_state, handle)

    assert snapshot_tree(live_root) == original
    assert sorted(result.promoted_items) == ["colleges.json", "reports", "users.json"]
    assert result.promoted_files == 4
    assert result.skipped_items == []
    assert not handle.staging_path.exists()


@pytest.mark.asyncio
async def test_missing_items_are_recorded_and_left_alone(
    test_config, engine_state, live_root: Path
):
    """
    Items absent at backup time are listed as missing and never
    overwritten or deleted by a later promotion.
    """
    (live_root / "users.json").unlink()

    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    assert summary.missing_items == ["users.json"]
    assert summary.file_count == 3

    # users.json reappears with new content after the backup
    (live_root / "users.json").write_text('[{"id": "u2"}]', encoding="utf-8")

    handle = await restore_backup(test_config, engine_state, summary.backup_id)
    result = await promote_restore(test_config, engine_state, handle)

    assert result.skipped_items == ["users.json"]
    assert (live_root / "users.json").read_text(encoding="utf-8") == '[{"id": "u2"}]'


@pytest.mark.asyncio
async def test_scenario_counts_files_and_directories(temp_dir: Path):
    """A 40 byte document plus a directory with one 120 byte report."""
    root = temp_dir / "scenario"
    (root / "reports").mkdir(parents=True)
    (root / "colleges.json").write_bytes(b'{"colleges": []}'.ljust(40))
    (root / "reports" / "r1.json").write_bytes(b'{"r": 1}'.ljust(120))

    config = create_config(
        root,
        files=["colleges.json"],
        directories=["reports"],
        backup_root=temp_dir / "scenario-backups",
        staging_root=temp_dir / "scenario-staging",
    )
    state = await initialize_engine(config)

    summary = await create_backup(config, state, BackupCategory.MANUAL)

    assert summary.file_count == 2
    assert summary.directory_count == 1
    assert summary.total_size == 160
    assert summary.category == BackupCategory.MANUAL

    details = await get_backup_details(state, summary.backup_id)
    manifest = details["manifest"]
    assert manifest["entries"]["colleges.json"]["size"] == 40
    assert manifest["entries"]["reports/r1.json"]["size"] == 120
    assert manifest["directories"]["reports"]["fileCount"] == 1

    await shutdown_engine(state)


# ============================================================================
# Test 3: CORRUPTION DETECTION
# ============================================================================

@pytest.mark.asyncio
async def test_corrupted_backup_is_never_restored(test_config, engine_state, live_root: Path):
    """
    CRITICAL: A single flipped byte in a stored file must make the
    restore fail, and nothing may be staged.
    """
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    stored = test_config.backup_root / "manual" / summary.backup_id / "colleges.json"
    data = bytearray(stored.read_bytes())
    data[len(data) // 2] ^= 0xFF
    stored.write_bytes(bytes(data))

    before = snapshot_tree(live_root)

    with pytest.raises(CorruptBackup) as exc_info:
        await restore_backup(test_config, engine_state, summary.backup_id)

    assert "colleges.json" in exc_info.value.mismatches
    assert snapshot_tree(live_root) == before
    staging = test_config.staging_root
    assert not staging.exists() or not any(staging.iterdir())


@pytest.mark.asyncio
async def test_deleted_stored_file_is_never_restored(test_config, engine_state):
    """A stored file that vanished from the backup counts as a mismatch."""
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    stored = test_config.backup_root / "manual" / summary.backup_id / "reports" / "summary.json"
    stored.unlink()

    with pytest.raises(CorruptBackup) as exc_info:
        await restore_backup(test_config, engine_state, summary.backup_id)

    assert "reports/summary.json" in exc_info.value.mismatches
    assert exc_info.value.details["reasons"]["reports/summary.json"] == REASON_MISSING


@pytest.mark.asyncio
async def test_tampered_manifest_hides_backup(test_config, engine_state):
    """A manifest whose summary disagrees with its entries is not a backup."""
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    manifest_path = test_config.backup_root / "manual" / summary.backup_id / "manifest.json"
    data = json.loads(manifest_path.read_text(encoding="utf-8"))
    data["summary"]["totalFiles"] += 1
    manifest_path.write_text(json.dumps(data), encoding="utf-8")

    assert await list_backups(engine_state) == []

    with pytest.raises(NotFound):
        await restore_backup(test_config, engine_state, summary.backup_id)


@pytest.mark.asyncio
async def test_unknown_backup_id_is_not_found(test_config, engine_state):
    for backup_id in ("01HZZZZZZZZZZZZZZZZZZZZZZZ", "../manual", ".incoming-x", ""):
        with pytest.raises(NotFound):
            await restore_backup(test_config, engine_state, backup_id)

    with pytest.raises(NotFound):
        await get_backup_details(engine_state, "does-not-exist")

    with pytest.raises(NotFound):
        await delete_backup(engine_state, "does-not-exist")


# ============================================================================
# Test 4: ATOMIC BACKUPS
# ============================================================================

class FailingBackend(MemoryStorageBackend):
    """Memory backend whose writes start failing after a few succeed."""

    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after
        self.writes = 0

    async def write(self, key: str, data: bytes) -> int:
        self.writes += 1
        if self.writes > self.fail_after:
            raise WriteFailure(f"disk full writing {key}", details={"key": key})
        return await super().write(key, data)


class BitRotBackend(MemoryStorageBackend):
    """Memory backend that silently damages everything except manifests."""

    async def write(self, key: str, data: bytes) -> int:
        if not key.endswith("manifest.json") and data:
            damaged = bytearray(data)
            damaged[len(damaged) // 2] ^= 0xFF
            data = bytes(damaged)
        return await super().write(key, data)


@pytest.mark.asyncio
async def test_failed_write_leaves_nothing_visible(test_config):
    """
    CRITICAL: A backup that fails mid-way must not leave a partial
    backup behind, not even under a hidden prefix.
    """
    backend = FailingBackend(fail_after=2)
    state = await initialize_engine(test_config, backend=backend)

    with pytest.raises(BackupFailed):
        await create_backup(test_config, state, BackupCategory.DAILY)

    assert backend.objects == {}
    assert await list_backups(state) == []
    assert state["failed_backups"] == 1

    await shutdown_engine(state)


@pytest.mark.asyncio
async def test_unverifiable_backup_is_discarded(test_config):
    """Stored bytes that fail validation abort the run before publishing."""
    backend = BitRotBackend()
    state = await initialize_engine(test_config, backend=backend)

    with pytest.raises(BackupFailed) as exc_info:
        await create_backup(test_config, state, BackupCategory.DAILY)

    assert exc_info.value.details["mismatches"]
    assert backend.objects == {}

    await shutdown_engine(state)


@pytest.mark.asyncio
async def test_timed_out_backup_is_discarded(test_config):
    config = test_config.with_updates(operation_timeout_seconds=1e-9)
    state = await initialize_engine(config)

    with pytest.raises(BackupFailed) as exc_info:
        await create_backup(config, state, BackupCategory.DAILY)

    assert isinstance(exc_info.value.__cause__, OperationTimeout)
    daily = config.backup_root / "daily"
    assert not daily.exists() or list(daily.iterdir()) == []

    await shutdown_engine(state)


class StalledBackend(MemoryStorageBackend):
    """Memory backend whose writes fail with a network timeout."""

    async def write(self, key: str, data: bytes) -> int:
        raise TimeoutError(errno.ETIMEDOUT, "connection timed out")


@pytest.mark.asyncio
async def test_storage_timeout_is_not_a_budget_overrun(test_config):
    """An I/O timeout from storage is reported as the I/O error it is."""
    backend = StalledBackend()
    state = await initialize_engine(test_config, backend=backend)

    with pytest.raises(BackupFailed) as exc_info:
        await create_backup(test_config, state, BackupCategory.DAILY)

    assert isinstance(exc_info.value.__cause__, TimeoutError)
    assert exc_info.value.message != "operation timed out"
    assert backend.objects == {}

    await shutdown_engine(state)


@pytest.mark.asyncio
async def test_concurrent_backup_of_same_category_is_rejected(test_config, engine_state):
    results = await asyncio.gather(
        create_backup(test_config, engine_state, BackupCategory.DAILY),
        create_backup(test_config, engine_state, BackupCategory.DAILY),
        return_exceptions=True,
    )

    rejected = [r for r in results if isinstance(r, BackupInProgress)]
    created = [r for r in results if not isinstance(r, Exception)]
    assert len(rejected) == 1
    assert len(created) == 1
    assert len(await list_backups(engine_state, BackupCategory.DAILY)) == 1


# ============================================================================
# Test 5: RESTORE ISOLATION
# ============================================================================

@pytest.mark.asyncio
async def test_restore_never_touches_live_data(test_config, engine_state, live_root: Path):
    """
    CRITICAL: restore() only writes to staging. The live data stays
    as it is until promotion.
    """
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    (live_root / "colleges.json").write_text("[]", encoding="utf-8")
    before = snapshot_tree(live_root)

    handle = await restore_backup(test_config, engine_state, summary.backup_id)

    assert snapshot_tree(live_root) == before
    assert handle.staging_path.is_dir()
    assert (handle.staging_path / "reports" / "2026" / "q1.json").is_file()
    assert handle.restored_files == 4

    await discard_restore(engine_state, handle.restore_id)
    assert not handle.staging_path.exists()
    assert snapshot_tree(live_root) == before


@pytest.mark.asyncio
async def test_timed_out_restore_removes_staging(test_config, engine_state):
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    config = test_config.with_updates(operation_timeout_seconds=1e-9)
    state = await initialize_engine(config)

    with pytest.raises(RestoreFailed) as exc_info:
        await restore_backup(config, state, summary.backup_id)

    assert isinstance(exc_info.value.__cause__, OperationTimeout)
    staging = config.staging_root
    assert not staging.exists() or not any(staging.iterdir())

    await shutdown_engine(state)


@pytest.mark.asyncio
async def test_unverifiable_staging_is_removed(test_config, engine_state, monkeypatch):
    """Staged output that differs from the manifest is dropped, not kept."""
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    unpack = RestoreEngine._unpack

    async def unpack_with_damage(self, prefix, manifest, staging):
        await unpack(self, prefix, manifest, staging)
        (staging / "users.json").write_text("[]", encoding="utf-8")

    monkeypatch.setattr(RestoreEngine, "_unpack", unpack_with_damage)

    with pytest.raises(RestoreVerificationFailed) as exc_info:
        await restore_backup(test_config, engine_state, summary.backup_id)

    assert "users.json" in exc_info.value.mismatches
    staging = test_config.staging_root
    assert not staging.exists() or not any(staging.iterdir())


@pytest.mark.asyncio
async def test_staging_inside_live_root_is_rejected(test_config, engine_state, live_root: Path):
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    before = snapshot_tree(live_root)

    with pytest.raises(RestoreFailed):
        await restore_backup(
            test_config, engine_state, summary.backup_id, staging_root=live_root / "staging"
        )

    with pytest.raises(RestoreFailed):
        await restore_backup(
            test_config, engine_state, summary.backup_id, staging_root=test_config.backup_root
        )

    assert snapshot_tree(live_root) == before


@pytest.mark.asyncio
async def test_promote_rejects_tampered_staging(test_config, engine_state, live_root: Path):
    """Staging edited after verification must not reach the live data."""
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    handle = await restore_backup(test_config, engine_state, summary.backup_id)

    (handle.staging_path / "colleges.json").write_text('["tampered"]', encoding="utf-8")
    before = snapshot_tree(live_root)

    with pytest.raises(RestoreFailed):
        await promote_restore(test_config, engine_state, handle)

    assert snapshot_tree(live_root) == before


@pytest.mark.asyncio
async def test_failed_promotion_puts_live_data_back(
    test_config, engine_state, live_root: Path, monkeypatch
):
    """
    CRITICAL: If one item cannot be swapped in, the items already
    swapped are restored, so the live data is never half promoted.
    """
    original = snapshot_tree(live_root)
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)

    (live_root / "colleges.json").write_text("[]", encoding="utf-8")
    (live_root / "reports" / "summary.json").write_text("{}", encoding="utf-8")
    before = snapshot_tree(live_root)

    handle = await restore_backup(test_config, engine_state, summary.backup_id)

    apply = PendingSwap.apply
    applied = []

    def apply_until_disk_full(self):
        if applied:
            raise OSError(errno.ENOSPC, "No space left on device")
        apply(self)
        applied.append(self.target.name)

    monkeypatch.setattr(PendingSwap, "apply", apply_until_disk_full)

    with pytest.raises(RestoreFailed) as exc_info:
        await promote_restore(test_config, engine_state, handle)

    assert applied == ["reports"]
    assert exc_info.value.details["rolled_back"] is True
    assert snapshot_tree(live_root) == before
    assert sorted(p.name for p in live_root.iterdir()) == ["colleges.json", "reports", "users.json"]
    assert handle.staging_path.is_dir()

    # The staged restore is still pending and can be promoted again
    monkeypatch.undo()
    await promote_restore(test_config, engine_state, handle.restore_id)
    assert snapshot_tree(live_root) == original


# ============================================================================
# Test 6: RETENTION
# ============================================================================

@pytest.mark.asyncio
async def test_retention_keeps_newest_daily_backups(test_config, engine_state):
    """Twelve daily backups with a limit of seven leave the seven newest."""
    assert test_config.retention[BackupCategory.DAILY] == 7

    created = []
    for _ in range(12):
        summary = await create_backup(test_config, engine_state, BackupCategory.DAILY)
        created.append(summary.backup_id)

    remaining = [s.backup_id for s in await list_backups(engine_state, BackupCategory.DAILY)]

    assert remaining == list(reversed(created[-7:]))
    assert engine_state["total_deletions"] == 5


@pytest.mark.asyncio
async def test_retention_skips_exempt_categories(test_config):
    retention = {**test_config.retention, BackupCategory.MANUAL: 1}
    config = test_config.with_updates(retention=retention)
    state = await initialize_engine(config)

    for _ in range(3):
        await create_backup(config, state, BackupCategory.MANUAL)
    assert len(await list_backups(state, BackupCategory.MANUAL)) == 3

    skipped = await enforce_retention(state, BackupCategory.MANUAL)
    assert skipped.skipped is True
    assert skipped.removed == []

    forced = await enforce_retention(state, BackupCategory.MANUAL, include_exempt=True)
    assert len(forced.removed) == 2
    assert len(await list_backups(state, BackupCategory.MANUAL)) == 1

    await shutdown_engine(state)


@pytest_asyncio.fixture
async def memory_state(test_config):
    state = await initialize_engine(test_config, backend=MemoryStorageBackend())
    yield state
    await shutdown_engine(state)


@pytest.mark.asyncio
async def test_memory_backend_round_trip(test_config, memory_state, live_root: Path):
    """The engine works the same over the in-memory backend."""
    original = snapshot_tree(live_root)
    summary = await create_backup(test_config, memory_state, BackupCategory.WEEKLY)

    (live_root / "reports" / "summary.json").unlink()

    handle = await restore_backup(test_config, memory_state, summary.backup_id)
    await promote_restore(test_config, memory_state, handle.restore_id)

    assert snapshot_tree(live_root) == original
