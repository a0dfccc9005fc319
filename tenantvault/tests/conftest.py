from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point the engine at a throwaway sqlite file before any tenantvault module builds it.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="tenantvault-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT / 'tenantvault.db'}"
os.environ["BACKUP_LOCAL_DIR"] = str(_TEST_ROOT / "backups")

import pytest

from tenantvault.core.config import get_settings

get_settings.cache_clear()

from tenantvault.persistence.db import SessionLocal, drop_models, engine, init_models


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Build a fresh schema per test and dispose the engine so no connection crosses loops.
    await init_models()
    yield
    await drop_models()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests that tweak settings through env vars must not leak into the next test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session
