from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from delayguard.core.config import get_settings
from delayguard.domain.models import Base
from delayguard.persistence.db import build_engine, build_session_factory
from delayguard.services.notifications import ledger as ledger_module
from delayguard.services.notifications import queue as queue_module
from delayguard.services import reporter as reporter_module
from delayguard.services.telemetry import reset_telemetry


class FrozenClock:
    # Deterministic UTC clock patched over module-level _utc_now helpers.
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Telemetry and cached settings are process-global; isolate every test.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # File-backed SQLite so separate sessions observe each other's commits like real dispatchers.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'delayguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock(monkeypatch) -> FrozenClock:
    frozen = FrozenClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(queue_module, "_utc_now", frozen)
    monkeypatch.setattr(ledger_module, "_utc_now", frozen)
    monkeypatch.setattr(reporter_module, "_utc_now", frozen)
    return frozen
