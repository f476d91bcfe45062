# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for StoreGuard tests.

Provides temporary live/backup/staging roots, a seeded JSON data store,
configuration helpers, and initialized engine state.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio

# Set test environment variables
os.environ["STOREGUARD_ADMIN_API_KEY"] = "test-api-key-12345"

COLLEGES = [
    {"id": 1, "name": "North Campus", "city": "Pune"},
    {"id": 2, "name": "South Campus", "city": "Nagpur"},
]
USERS = [{"id": "u1", "email": "admin@example.com", "role": "admin"}]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def live_root(temp_dir: Path) -> Path:
    """
    Create a live data store with two JSON files and a reports directory.
    """
    root = temp_dir / "data"
    root.mkdir()
    (root / "colleges.json").write_text(json.dumps(COLLEGES), encoding="utf-8")
    (root / "users.json").write_text(json.dumps(USERS), encoding="utf-8")

    reports = root / "reports"
    (reports / "2026").mkdir(parents=True)
    (reports / "summary.json").write_text('{"total": 2}', encoding="utf-8")
    (reports / "2026" / "q1.json").write_text('{"quarter": 1, "score": 91}', encoding="utf-8")
    return root


@pytest.fixture
def test_config(temp_dir: Path, live_root: Path):
    """Create a test configuration protecting the seeded store."""
    from storeguard.builder import create_config

    return create_config(
        live_root,
        files=["colleges.json", "users.json"],
        directories=["reports"],
        backup_root=temp_dir / "backups",
        staging_root=temp_dir / "staging",
        timeout_seconds=30.0,
    )


@pytest_asyncio.fixture
async def engine_state(test_config):
    """Create initialized engine state for testing."""
    from storeguard.core import initialize_engine, shutdown_engine

    state = await initialize_engine(test_config)
    yield state
    await shutdown_engine(state)
