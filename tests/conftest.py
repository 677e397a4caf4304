"""
Pytest configuration and fixtures for testing.

Provides:
- Store and queue databases (SQLite files under tmp_path, via aiosqlite)
- A row store wrapper that simulates connectivity loss
- A fully wired sync core with instant backoff
- Event recording

Usage:
    uv run pytest tests/ -v
"""

from typing import Callable

import pytest
import pytest_asyncio

from fieldsync.core.database import create_engine, init_store_schema
from fieldsync.core.factory import SyncCore, build_sync_core
from fieldsync.crud.queue_store import QueueStore
from fieldsync.crud.row_store import SQLAlchemyRowStore
from fieldsync.services.event_bus import EventBus
from fieldsync.services.retry import RetryPolicy
from fieldsync.services.transactional_writer import TransactionalWriter

from tests.doubles import EventRecorder, FlakyRowStore, RecordingSleep
from tests.factories import DEFAULT_LOCATION_ID, seed_store


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def store_engine(tmp_path):
    """Authoritative store database with the schema created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await init_store_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def row_store(store_engine) -> SQLAlchemyRowStore:
    return SQLAlchemyRowStore(store_engine)


@pytest_asyncio.fixture
async def flaky_store(row_store) -> FlakyRowStore:
    return FlakyRowStore(row_store)


@pytest_asyncio.fixture
async def queue_store(tmp_path):
    """Local durable queue database."""
    store = QueueStore(create_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"))
    await store.initialize()
    yield store
    await store.dispose()


@pytest_asyncio.fixture
async def raw_writer(row_store) -> TransactionalWriter:
    """Writer that bypasses connectivity simulation, used to play 'another device'."""
    return TransactionalWriter(row_store, timeout_seconds=5)


@pytest_asyncio.fixture
async def seeded(raw_writer):
    """Store seeded with two locations, three jobs and five available units."""
    return await seed_store(raw_writer)


# ============================================================================
# Sync core Fixtures
# ============================================================================

@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=30.0, backoff_factor=2.0)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def core(flaky_store, queue_store, fast_policy, recording_sleep, seeded) -> SyncCore:
    """Wired sync core over the flaky store, with the mirror loaded."""
    sync_core = build_sync_core(
        row_store=flaky_store,
        queue_store=queue_store,
        policy=fast_policy,
        default_storage_location_id=DEFAULT_LOCATION_ID,
        write_timeout_seconds=5,
        sleep=recording_sleep,
    )
    await sync_core.start(run_scheduler=False)
    await sync_core.engine.load_equipment()
    yield sync_core
    sync_core.scheduler.shutdown()
    sync_core.engine.close()


@pytest.fixture
def go_offline(core, flaky_store) -> Callable:
    async def _go_offline() -> None:
        flaky_store.online = False
        await core.monitor.set_online(False)

    return _go_offline


@pytest.fixture
def go_online(core, flaky_store) -> Callable:
    async def _go_online() -> None:
        flaky_store.online = True
        await core.monitor.set_online(True)

    return _go_online


# ============================================================================
# Event Fixtures
# ============================================================================

@pytest.fixture
def events(core) -> EventRecorder:
    recorder = EventRecorder(core.event_bus)
    yield recorder
    recorder.close()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def bus_events(bus) -> EventRecorder:
    return EventRecorder(bus)


