# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for StoreGuard.

These tests verify the integration between components:
- FastAPI endpoints
- Catalog and statistics
- Scheduler
- Configuration, builder and environment helpers
- Operation journal
- Automatic recovery
"""

import json
from datetime import datetime, timedelta, UTC
from pathlib import Path

import aiosqlite
import pytest

from storeguard.backup.catalog import format_bytes
from storeguard.backup.manifest import BackupManifest
from storeguard.config import BackupCategory, StoreGuardConfig
from storeguard.core import (
    create_backup,
    create_emergency_backup,
    get_backup_stats,
    get_journal_summary,
    get_metrics,
    initialize_engine,
    list_backups,
    recover_if_missing,
    restore_backup,
    shutdown_engine,
)
from storeguard.exceptions import (
    BackupFailed,
    BackupInProgress,
    ConfigurationError,
    InvalidManifest,
    NotFound,
)


# ============================================================================
# FastAPI Integration Tests
# ============================================================================

def _make_app(config, state):
    from fastapi import FastAPI

    from storeguard.integrations.fastapi import register_storeguard_routes

    app = FastAPI()
    register_storeguard_routes(app, config, state)
    return app


@pytest.mark.asyncio
async def test_fastapi_requires_api_key(test_config, engine_state):
    """Requests without a valid bearer token are refused."""
    from httpx import AsyncClient, ASGITransport

    app = _make_app(test_config, engine_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/admin/backups")
        assert response.status_code == 401

        response = await client.get(
            "/admin/backups",
            headers={"Authorization": "Bearer wrong-key"},
        )
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_fastapi_plugin_lifespan(test_config):
    """The plugin initializes the engine on startup and registers routes."""
    from fastapi import FastAPI
    from httpx import AsyncClient, ASGITransport

    from storeguard.integrations.fastapi import (
        get_storeguard_config,
        get_storeguard_state,
        setup_storeguard_plugin,
    )

    app = FastAPI()
    setup_storeguard_plugin(app, test_config, start_scheduler=False)

    with pytest.raises(RuntimeError):
        get_storeguard_state(app)

    async with app.router.lifespan_context(app):
        state = get_storeguard_state(app)
        assert get_storeguard_config(app) is test_config
        assert state["journal_db_path"].exists()

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/admin/backups/emergency",
                params={"label": "pre-deploy"},
                headers={"Authorization": "Bearer test-api-key-12345"},
            )
            assert response.status_code == 200
            assert response.json()["category"] == "emergency"
            assert response.json()["label"] == "pre-deploy"

    assert app.state.storeguard_state is None


@pytest.mark.asyncio
async def test_fastapi_health_endpoint(test_config, engine_state):
    """Test the health check endpoint."""
    from httpx import AsyncClient, ASGITransport

    app = _make_app(test_config, engine_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(
            "/admin/backups/health",
            headers={"Authorization": "Bearer test-api-key-12345"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["live_root_accessible"] is True
        assert data["journal_accessible"] is True


@pytest.mark.asyncio
async def test_fastapi_backup_restore_flow(test_config, engine_state, live_root: Path):
    """Create, inspect, restore, promote and delete a backup over HTTP."""
    from httpx import AsyncClient, ASGITransport

    app = _make_app(test_config, engine_state)
    headers = {"Authorization": "Bearer test-api-key-12345"}
    original = (live_root / "colleges.json").read_bytes()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/admin/backups",
            json={"category": "manual", "label": "api"},
            headers=headers,
        )
        assert response.status_code == 200
        created = response.json()
        backup_id = created["backup_id"]
        assert created["label"] == "api"
        assert created["file_count"] == 4

        response = await client.get("/admin/backups", headers=headers)
        assert [b["backup_id"] for b in response.json()] == [backup_id]

        response = await client.get("/admin/backups/stats", headers=headers)
        assert response.status_code == 200
        assert response.json()["count"] == 1

        response = await client.get(f"/admin/backups/{backup_id}", headers=headers)
        assert response.status_code == 200
        assert "colleges.json" in response.json()["manifest"]["entries"]

        (live_root / "colleges.json").write_text("[]", encoding="utf-8")

        response = await client.post(f"/admin/backups/{backup_id}/restore", headers=headers)
        assert response.status_code == 200
        restore_id = response.json()["restore_id"]

        response = await client.post(
            f"/admin/backups/restores/{restore_id}/promote",
            headers=headers,
        )
        assert response.status_code == 200
        assert (live_root / "colleges.json").read_bytes() == original

        response = await client.delete(f"/admin/backups/{backup_id}", headers=headers)
        assert response.status_code == 200

        response = await client.get(f"/admin/backups/{backup_id}", headers=headers)
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NotFound"


@pytest.mark.asyncio
async def test_fastapi_corrupt_backup_returns_422(test_config, engine_state):
    from httpx import AsyncClient, ASGITransport

    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    stored = test_config.backup_root / "manual" / summary.backup_id / "users.json"
    stored.write_bytes(b"not a zstd frame")

    app = _make_app(test_config, engine_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            f"/admin/backups/{summary.backup_id}/restore",
            headers={"Authorization": "Bearer test-api-key-12345"},
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error"] == "CorruptBackup"
        assert "users.json" in detail["mismatches"]


@pytest.mark.asyncio
async def test_fastapi_status_and_operations(test_config, engine_state):
    from httpx import AsyncClient, ASGITransport

    await create_backup(test_config, engine_state, BackupCategory.DAILY)
    app = _make_app(test_config, engine_state)
    headers = {"Authorization": "Bearer test-api-key-12345"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/admin/backups/status", headers=headers)
        assert response.status_code == 200
        data = response.json()
        assert data["metrics"]["total_backups"] == 1
        assert data["metrics"]["backup_count"] == 1
        assert data["scheduler"]["running"] is False

        response = await client.get(
            "/admin/backups/operations",
            params={"kind": "backup"},
            headers=headers,
        )
        assert response.status_code == 200
        operations = response.json()
        assert len(operations) == 1
        assert operations[0]["status"] == "succeeded"
        assert operations[0]["category"] == "daily"

        response = await client.delete("/admin/backups/restores/unknown", headers=headers)
        assert response.status_code == 404


# ============================================================================
# Catalog Tests
# ============================================================================

def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024 * 1024) == "5 MB"


@pytest.mark.asyncio
async def test_backup_stats_by_category(test_config, engine_state):
    empty = await get_backup_stats(engine_state)
    assert empty.count == 0
    assert empty.newest is None

    await create_backup(test_config, engine_state, BackupCategory.DAILY)
    await create_backup(test_config, engine_state, BackupCategory.DAILY)
    await create_emergency_backup(test_config, engine_state)

    stats = await get_backup_stats(engine_state)
    assert stats.count == 3
    assert stats.by_category == {"daily": 2, "emergency": 1}
    assert stats.oldest <= stats.newest
    assert stats.total_original_size > 0
    assert stats.total_size > 0


@pytest.mark.asyncio
async def test_emergency_backup_is_labelled(test_config, engine_state):
    summary = await create_emergency_backup(test_config, engine_state)
    assert summary.category == BackupCategory.EMERGENCY
    assert summary.label == "emergency"


@pytest.mark.asyncio
async def test_metrics_track_operations(test_config, engine_state):
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    await restore_backup(test_config, engine_state, summary.backup_id)

    metrics = await get_metrics(engine_state)
    assert metrics.total_backups == 1
    assert metrics.total_restores == 1
    assert metrics.pending_restores == 1
    assert metrics.last_backup_id == summary.backup_id
    assert metrics.stored_bytes > 0


@pytest.mark.asyncio
async def test_incomplete_backups_swept_on_start(test_config):
    leftover = test_config.backup_root / "daily" / ".incoming-01HXYZ"
    leftover.mkdir(parents=True)
    (leftover / "colleges.json").write_bytes(b"partial")

    state = await initialize_engine(test_config)

    assert not leftover.exists()
    await shutdown_engine(state)


# ============================================================================
# Manifest Tests
# ============================================================================

@pytest.mark.asyncio
async def test_manifest_rejects_bad_documents(test_config, engine_state):
    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    raw = (test_config.backup_root / "manual" / summary.backup_id / "manifest.json").read_bytes()

    manifest = BackupManifest.from_json(raw)
    assert manifest.backup_id == summary.backup_id
    assert manifest.directories["reports"].file_count == 2

    data = json.loads(raw)

    with pytest.raises(InvalidManifest):
        BackupManifest.from_dict({**data, "version": "9.9"})

    with pytest.raises(InvalidManifest):
        bad = json.loads(raw)
        bad["entries"]["../escape.json"] = bad["entries"].pop("colleges.json")
        BackupManifest.from_dict(bad)

    with pytest.raises(InvalidManifest):
        BackupManifest.from_json(b"not json")

    for field_name in ("summary", "entries", "directories", "missing"):
        with pytest.raises(InvalidManifest):
            BackupManifest.from_dict({**data, field_name: []})

    with pytest.raises(InvalidManifest):
        BackupManifest.from_dict({**data, "timestamp": data["timestamp"][:19]})


@pytest.mark.asyncio
async def test_catalog_skips_malformed_manifests(test_config, engine_state):
    """Backups with a mistyped summary or a naive timestamp are not listed."""
    kept = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    wrong_summary = await create_backup(test_config, engine_state, BackupCategory.DAILY)
    naive_time = await create_backup(test_config, engine_state, BackupCategory.WEEKLY)

    path = test_config.backup_root / "daily" / wrong_summary.backup_id / "manifest.json"
    data = json.loads(path.read_bytes())
    data["summary"] = []
    path.write_text(json.dumps(data), encoding="utf-8")

    path = test_config.backup_root / "weekly" / naive_time.backup_id / "manifest.json"
    data = json.loads(path.read_bytes())
    data["timestamp"] = datetime.fromisoformat(data["timestamp"]).replace(tzinfo=None).isoformat()
    path.write_text(json.dumps(data), encoding="utf-8")

    backups = await list_backups(engine_state)
    assert [b.backup_id for b in backups] == [kept.backup_id]

    stats = await get_backup_stats(engine_state)
    assert stats.count == 1


@pytest.mark.asyncio
async def test_manifest_builder_matches_stored_backup(test_config, engine_state, live_root: Path):
    """A dry manifest of unchanged live data agrees with the stored one."""
    from storeguard.backup.manifest import ManifestBuilder
    from storeguard.vault.checksum import ChecksumService

    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    stored = await engine_state["catalog"].find(summary.backup_id)

    built = await ManifestBuilder().build(test_config.protected_items, live_root)

    assert built.category == BackupCategory.MANUAL
    assert {p: e.checksum for p, e in built.entries.items()} == {
        p: e.checksum for p, e in stored.entries.items()
    }
    assert built.directories["reports"].checksum == stored.directories["reports"].checksum

    async def chunks():
        content = (live_root / "colleges.json").read_bytes()
        for i in range(0, len(content), 7):
            yield content[i:i + 7]

    streamed = await ChecksumService().digest_stream(chunks())
    assert streamed == stored.entries["colleges.json"].checksum


# ============================================================================
# Scheduler Tests
# ============================================================================

@pytest.mark.asyncio
async def test_next_run_follows_newest_backup(test_config, engine_state):
    scheduler = engine_state["scheduler"]
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    # Nothing yet: due immediately
    assert await scheduler.next_run_time(BackupCategory.DAILY, now=now) == now

    summary = await create_backup(test_config, engine_state, BackupCategory.DAILY)
    taken = summary.timestamp

    assert await scheduler.next_run_time(BackupCategory.DAILY, now=taken) == taken + timedelta(hours=24)

    late = taken + timedelta(hours=30)
    assert await scheduler.next_run_time(BackupCategory.DAILY, now=late) == late


@pytest.mark.asyncio
async def test_scheduler_start_and_trigger(test_config, engine_state):
    scheduler = engine_state["scheduler"]

    # A fresh daily backup pushes the first scheduled run a day out
    await create_backup(test_config, engine_state, BackupCategory.DAILY)
    await scheduler.start()
    status = scheduler.status()
    assert status["running"] is True
    assert [job["category"] for job in status["jobs"]] == ["daily"]
    assert status["jobs"][0]["next_run_time"] is not None

    result = await scheduler.trigger(BackupCategory.WEEKLY, "by-hand")
    assert scheduler.runs == 1
    assert scheduler.last_backup_id == result.backup_id

    scheduler.shutdown()
    assert scheduler.status()["running"] is False


@pytest.mark.asyncio
async def test_scheduled_run_records_failures(engine_state):
    from storeguard.scheduler import BackupScheduler

    async def failing(category, label):
        raise BackupFailed("disk full")

    async def busy(category, label):
        raise BackupInProgress("a daily backup is already running")

    scheduler = BackupScheduler(engine_state["catalog"], busy, {BackupCategory.DAILY: 24.0})
    await scheduler._scheduled_run(BackupCategory.DAILY)
    assert scheduler.last_error is None

    scheduler = BackupScheduler(engine_state["catalog"], failing, {BackupCategory.DAILY: 24.0})
    await scheduler._scheduled_run(BackupCategory.DAILY)
    assert scheduler.last_error == "Backup failed: disk full"
    assert scheduler.runs == 0


# ============================================================================
# Configuration Tests
# ============================================================================

def test_config_rejects_unsafe_layouts(temp_dir: Path, live_root: Path):
    from storeguard.config import ItemKind, ProtectedItem

    with pytest.raises(ConfigurationError):
        StoreGuardConfig(
            live_root=live_root,
            backup_root=temp_dir / "backups",
            staging_root=live_root / "staging",
            protected_items=[ProtectedItem("colleges.json")],
        )

    with pytest.raises(ConfigurationError):
        StoreGuardConfig(
            live_root=live_root,
            backup_root=temp_dir / "backups",
            staging_root=temp_dir / "staging",
            protected_items=[ProtectedItem("../outside.json")],
        )

    with pytest.raises(ConfigurationError) as exc_info:
        StoreGuardConfig(
            live_root=live_root,
            backup_root=temp_dir / "backups",
            staging_root=temp_dir / "staging",
            protected_items=[
                ProtectedItem("reports", ItemKind.DIRECTORY),
                ProtectedItem("reports/summary.json"),
            ],
        )
    assert any("overlap" in e for e in exc_info.value.details["errors"])


def test_builder_steps(temp_dir: Path, live_root: Path):
    from storeguard.builder import (
        build_config,
        build_from_steps,
        create_empty_config,
        protect_directory,
        protect_file,
        retain,
        run_every,
        with_backup_root,
        with_live_root,
        with_staging_root,
    )

    config = build_from_steps(
        lambda c: with_live_root(c, live_root),
        lambda c: with_backup_root(c, temp_dir / "backups"),
        lambda c: with_staging_root(c, temp_dir / "staging"),
        lambda c: protect_file(c, "colleges.json"),
        lambda c: protect_directory(c, "reports"),
        lambda c: retain(c, "daily", 14),
        lambda c: run_every(c, "weekly", 168),
    )

    assert [item.name for item in config.protected_items] == ["colleges.json", "reports"]
    assert config.protected_items[1].is_directory
    assert config.retention[BackupCategory.DAILY] == 14
    assert config.schedule_hours == {BackupCategory.DAILY: 24.0, BackupCategory.WEEKLY: 168.0}

    with pytest.raises(ValueError):
        retain(create_empty_config(), "daily", -1)

    with pytest.raises(ConfigurationError):
        build_config(create_empty_config())


def test_builder_tuning_steps(temp_dir: Path, live_root: Path):
    from storeguard.builder import (
        build_from_steps,
        create_empty_config,
        disable_compression,
        disable_journal,
        protect_dashboard_data,
        with_backup_root,
        with_compression_level,
        with_live_root,
        with_staging_root,
        with_timeout,
        without_schedule,
    )

    config = build_from_steps(
        lambda c: with_live_root(c, live_root),
        lambda c: with_backup_root(c, temp_dir / "backups"),
        lambda c: with_staging_root(c, temp_dir / "staging"),
        protect_dashboard_data,
        lambda c: with_compression_level(c, 3),
        lambda c: with_timeout(c, None),
        without_schedule,
        disable_compression,
        disable_journal,
    )

    assert config.compression_level == 3
    assert config.operation_timeout_seconds is None
    assert config.schedule_hours == {}
    assert config.compress_backups is False
    assert config.journal_enabled is False

    with pytest.raises(ValueError):
        with_compression_level(create_empty_config(), 30)


def test_create_config_defaults_to_dashboard_data(temp_dir: Path, live_root: Path):
    from storeguard.builder import create_config
    from storeguard.config import DASHBOARD_DATA_DIRECTORIES, DASHBOARD_DATA_FILES

    config = create_config(
        live_root,
        backup_root=temp_dir / "backups",
        staging_root=temp_dir / "staging",
    )

    names = [item.name for item in config.protected_items]
    assert names == DASHBOARD_DATA_FILES + DASHBOARD_DATA_DIRECTORIES


def test_config_from_env(monkeypatch, temp_dir: Path, live_root: Path):
    from storeguard.env import create_config_from_env, extended_retention, minimal_retention

    monkeypatch.setenv("STOREGUARD_LIVE_ROOT", str(live_root))
    monkeypatch.setenv("STOREGUARD_BACKUP_ROOT", str(temp_dir / "backups"))
    monkeypatch.setenv("STOREGUARD_STAGING_ROOT", str(temp_dir / "staging"))
    monkeypatch.setenv("STOREGUARD_RETENTION_DAILY", "14")
    monkeypatch.setenv("STOREGUARD_COMPRESS", "false")
    monkeypatch.setenv("STOREGUARD_TIMEOUT_SECONDS", "0")

    config = create_config_from_env(files=["colleges.json"], directories=["reports"])

    assert config.live_root == live_root
    assert config.retention[BackupCategory.DAILY] == 14
    assert config.compress_backups is False
    assert config.operation_timeout_seconds is None

    extended = extended_retention(config)
    assert extended.retention[BackupCategory.DAILY] == 30
    assert BackupCategory.WEEKLY in extended.schedule_hours

    minimal = minimal_retention(config)
    assert minimal.retention[BackupCategory.DAILY] == 3
    assert list(minimal.schedule_hours) == [BackupCategory.DAILY]

    monkeypatch.setenv("STOREGUARD_RETENTION_DAILY", "lots")
    with pytest.raises(ConfigurationError):
        create_config_from_env()

    monkeypatch.delenv("STOREGUARD_RETENTION_DAILY")
    with pytest.raises(ConfigurationError):
        create_config_from_env(files=[], directories=[])

    monkeypatch.delenv("STOREGUARD_LIVE_ROOT")
    with pytest.raises(ConfigurationError):
        create_config_from_env()


# ============================================================================
# Journal Tests
# ============================================================================

@pytest.mark.asyncio
async def test_journal_records_operations(test_config, engine_state):
    from storeguard.vault import list_operations

    summary = await create_backup(test_config, engine_state, BackupCategory.MANUAL)
    await restore_backup(test_config, engine_state, summary.backup_id)

    with pytest.raises(NotFound):
        await restore_backup(test_config, engine_state, "missing-backup")

    async with aiosqlite.connect(engine_state["journal_db_path"]) as db:
        operations = await list_operations(db)
        by_backup = await list_operations(db, backup_id=summary.backup_id)

    assert [op["kind"] for op in operations] == ["restore", "restore", "backup"]
    assert operations[0]["status"] == "failed"
    assert {op["kind"] for op in by_backup} == {"backup", "restore"}
    assert by_backup[-1]["details"]["files"] == 4

    journal = await get_journal_summary(engine_state)
    assert journal["total_operations"] == 3
    assert journal["failed_operations"] == 1
    assert journal["operations_by_kind"] == {"backup": 1, "restore": 2}


@pytest.mark.asyncio
async def test_disabled_journal(test_config):
    config = test_config.with_updates(journal_enabled=False)
    state = await initialize_engine(config)

    await create_backup(config, state, BackupCategory.MANUAL)

    assert state["journal_db_path"] is None
    assert await get_journal_summary(state) is None
    assert not (config.backup_root / ".journal.db").exists()

    await shutdown_engine(state)


# ============================================================================
# Recovery Tests
# ============================================================================

@pytest.mark.asyncio
async def test_recover_when_data_present_is_noop(test_config, engine_state):
    await create_backup(test_config, engine_state, BackupCategory.DAILY)
    assert await recover_if_missing(test_config, engine_state) is None


@pytest.mark.asyncio
async def test_recover_wiped_data_skips_corrupt_backup(test_config, engine_state, live_root: Path):
    """
    A wiped colleges.json is recovered from the newest backup that still
    validates.
    """
    original = (live_root / "colleges.json").read_bytes()

    good = await create_backup(test_config, engine_state, BackupCategory.DAILY)
    (live_root / "colleges.json").write_text('[{"id": 99}]', encoding="utf-8")
    bad = await create_backup(test_config, engine_state, BackupCategory.DAILY)

    stored = test_config.backup_root / "daily" / bad.backup_id / "colleges.json"
    stored.write_bytes(b"garbage")

    (live_root / "colleges.json").write_text("[]", encoding="utf-8")

    result = await recover_if_missing(test_config, engine_state)

    assert result is not None
    assert result.backup_id == good.backup_id
    assert (live_root / "colleges.json").read_bytes() == original


@pytest.mark.asyncio
async def test_recover_skips_backup_that_fails_staging(
    test_config, engine_state, live_root: Path, monkeypatch
):
    """A candidate whose staged output fails verification falls back to an older one."""
    from storeguard.backup.restore import RestoreEngine

    original = (live_root / "colleges.json").read_bytes()

    good = await create_backup(test_config, engine_state, BackupCategory.DAILY)
    bad = await create_backup(test_config, engine_state, BackupCategory.DAILY)

    unpack = RestoreEngine._unpack

    async def unpack_with_damage(self, prefix, manifest, staging):
        await unpack(self, prefix, manifest, staging)
        if manifest.backup_id == bad.backup_id:
            (staging / "colleges.json").write_text("[]", encoding="utf-8")

    monkeypatch.setattr(RestoreEngine, "_unpack", unpack_with_damage)
    (live_root / "colleges.json").unlink()

    result = await recover_if_missing(test_config, engine_state)

    assert result is not None
    assert result.backup_id == good.backup_id
    assert (live_root / "colleges.json").read_bytes() == original


@pytest.mark.asyncio
async def test_recover_without_backups_is_not_found(test_config, engine_state, live_root: Path):
    (live_root / "colleges.json").unlink()

    with pytest.raises(NotFound):
        await recover_if_missing(test_config, engine_state)
