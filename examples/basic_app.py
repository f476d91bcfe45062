# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with StoreGuard Integration.

A small reporting dashboard that keeps its data as JSON documents on
disk, with scheduled daily backups and admin endpoints for restores.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    DASHBOARD_DATA_DIR: Directory holding the dashboard's JSON documents
    STOREGUARD_BACKUP_ROOT: Where backups are kept
    STOREGUARD_ADMIN_API_KEY: API key for admin endpoints
"""

import json
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from storeguard.builder import (
    build_config,
    create_empty_config,
    protect_dashboard_data,
    retain,
    run_every,
    with_backup_root,
    with_live_root,
    with_staging_root,
)
from storeguard.config import BackupCategory
from storeguard.integrations.fastapi import get_storeguard_state, setup_storeguard_plugin

DATA_DIR = Path(os.getenv("DASHBOARD_DATA_DIR", "./dashboard_data"))

# Create FastAPI app
app = FastAPI(
    title="College Dashboard with StoreGuard",
    description="Example application demonstrating verified JSON backups",
    version="1.0.0",
)


def create_storeguard_config():
    """
    Create StoreGuard configuration.

    This uses the functional builder pattern for clean, composable configuration.
    """
    backup_root = Path(os.getenv("STOREGUARD_BACKUP_ROOT", "./dashboard_backups"))

    config = create_empty_config()
    config = with_live_root(config, DATA_DIR)
    config = with_backup_root(config, backup_root)
    config = with_staging_root(config, Path("./dashboard_staging"))

    # colleges.json, users.json, reports/ and friends
    config = protect_dashboard_data(config)

    # Two weeks of dailies, plus weekly backups kept for two months
    config = retain(config, BackupCategory.DAILY, 14)
    config = retain(config, BackupCategory.WEEKLY, 8)
    config = run_every(config, BackupCategory.WEEKLY, 24 * 7)

    return build_config(config)


DATA_DIR.mkdir(parents=True, exist_ok=True)
storeguard_config = create_storeguard_config()

# Setup StoreGuard plugin
setup_storeguard_plugin(app, storeguard_config)


# ============================================================================
# Application Routes
# ============================================================================


class College(BaseModel):
    """Example college record."""

    id: int
    name: str
    city: str | None = None


def _load_colleges() -> list:
    path = DATA_DIR / "colleges.json"
    if not path.exists():
        return []
    return json.loads(path.read_text(encoding="utf-8"))


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to the College Dashboard",
        "docs": "/docs",
        "storeguard_admin": "/admin/backups/health",
    }


@app.get("/colleges")
async def list_colleges() -> list:
    return _load_colleges()


@app.post("/colleges")
async def add_college(college: College) -> College:
    """Add a college record."""
    colleges = _load_colleges()
    if any(existing["id"] == college.id for existing in colleges):
        raise HTTPException(status_code=409, detail="College already exists")
    colleges.append(college.model_dump())
    (DATA_DIR / "colleges.json").write_text(json.dumps(colleges, indent=2), encoding="utf-8")
    return college


@app.get("/backup-summary")
async def backup_summary() -> dict:
    """Show backup counts to dashboard users without the admin key."""
    state = get_storeguard_state(app)
    stats = await state["catalog"].stats()
    return {
        "backups": stats.count,
        "newest": stats.newest.isoformat() if stats.newest else None,
        "size": stats.total_size_formatted,
    }


# ============================================================================
# StoreGuard Admin Endpoints (auto-registered by plugin)
# ============================================================================
#
# The following endpoints are registered on startup by setup_storeguard_plugin:
#
# POST   /admin/backups                              - Take a backup now
# POST   /admin/backups/emergency                    - Take an emergency backup
# GET    /admin/backups                              - List backups
# GET    /admin/backups/stats                        - Backup statistics
# GET    /admin/backups/status                       - Scheduler status and metrics
# GET    /admin/backups/operations                   - Journal records
# GET    /admin/backups/health                       - Health check
# GET    /admin/backups/{backup_id}                  - Backup details and manifest
# POST   /admin/backups/{backup_id}/restore          - Restore into staging
# POST   /admin/backups/restores/{restore_id}/promote - Apply a staged restore
# DELETE /admin/backups/restores/{restore_id}        - Discard a staged restore
# DELETE /admin/backups/{backup_id}                  - Delete a backup
#
# All admin endpoints require: Authorization: Bearer <STOREGUARD_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
