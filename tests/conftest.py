# tests/conftest.py

import os
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import sqlalchemy as sa

# Point the app at a process-local in-memory DB before any app module builds
# an engine. StaticPool keeps the single connection (and schema) alive.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STOCKWRIGHT_SQLITE_STATIC_POOL"] = "1"

# db.DATABASE_URL is computed at import, so pin it here as well
import Stockwright.db as _db  # noqa: E402

_db.DATABASE_URL = os.environ["DATABASE_URL"]
_db._engine = None
_db._sessionmaker = None

from Stockwright import models as _models  # noqa: F401,E402
from Stockwright.config import Settings  # noqa: E402
from Stockwright.db import Base, get_engine  # noqa: E402
from Stockwright.metrics import reset_counters  # noqa: E402
from Stockwright.pipeline import CommandPipeline  # noqa: E402
from Stockwright.seed import seed_demo_data  # noqa: E402
from Stockwright.store import SqlInventoryStore  # noqa: E402


# Store methods commit through session_scope(), so every test gets a fresh
# engine and schema, disposed again when the test ends.
@pytest.fixture(autouse=True)
async def _reset_db_per_test() -> AsyncIterator[None]:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(sa.text("PRAGMA foreign_keys=OFF"))
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(sa.text("PRAGMA foreign_keys=ON"))
    try:
        yield None
    finally:
        await _db.dispose_engine()


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    reset_counters()


@pytest.fixture
async def store() -> SqlInventoryStore:
    """Store over the demo inventory (widget-A: 100 in warehouse-1, 15 in warehouse-2)."""
    await seed_demo_data()
    return SqlInventoryStore()


@pytest.fixture
def make_pipeline(store: SqlInventoryStore) -> Callable[..., CommandPipeline]:
    def _make(gateway: Any, settings: Settings | None = None) -> CommandPipeline:
        return CommandPipeline.build(settings or Settings(), gateway=gateway, store=store)

    return _make
