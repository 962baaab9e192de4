"""Shared fixtures for unit tests.

Patches async_session everywhere so no unit test touches vidopt.db.
"""

import importlib

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from tests.fixtures.fake_encoder import FakeEncoder
from vidopt.models.job import JobRecord
from vidopt.services.job_state_machine import JobStateMachine
from vidopt.services.job_store import JobStore
from vidopt.services.queue_scheduler import QueueScheduler

_unit_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

_unit_session_factory = sessionmaker(_unit_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def isolate_database(monkeypatch):
    """Patch async_session everywhere so no unit test touches vidopt.db."""
    async with _unit_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    # Patch via direct module references to avoid name-shadowing in __init__.py
    import vidopt.database as _db_mod

    _config_mod = importlib.import_module("vidopt.services.config_service")

    monkeypatch.setattr(_db_mod, "async_session", _unit_session_factory)
    monkeypatch.setattr(_config_mod, "async_session", _unit_session_factory)

    yield

    async with _unit_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
def unit_engine():
    """The in-memory engine behind session_factory."""
    return _unit_engine


@pytest.fixture
def session_factory():
    """The in-memory session factory used by the patched services."""
    return _unit_session_factory


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def state_machine(store):
    return JobStateMachine(store)


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def scheduler(store, state_machine, fake_encoder):
    return QueueScheduler(store, fake_encoder, state_machine=state_machine)


@pytest.fixture
def make_job(store):
    """Factory adding an idle job for /videos/<name> to the store."""

    def _make(name: str = "movie.mkv", **fields) -> JobRecord:
        record = JobRecord(source_path=f"/videos/{name}", display_name=name, **fields)
        return store.add_job(record)

    return _make
