from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any opsuite module builds it.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="opsuite-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'opsuite.db')}"
os.environ["NOTIFY_WEBHOOK_URLS_JSON"] = "[]"

import pytest

from opsuite.domain.models import Base
from opsuite.persistence.db import engine
from opsuite.services.capabilities import get_capability_registry, register_default_capabilities
from opsuite.services.telemetry import reset_counters


@pytest.fixture(autouse=True)
async def fresh_schema_between_tests() -> None:
    # Rebuild the schema per test and dispose the engine so connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and the capability registry are process globals shared by every test.
    reset_counters()
    registry = get_capability_registry()
    registry.clear()
    register_default_capabilities(registry)
    yield
    registry.clear()
