"""
Sync core factory.

This module provides build_sync_core(), which creates exactly one instance
of each component and wires them together: the event bus, the transactional
writer over the store, the durable sync queue, the conflict resolver, the
allocation engine, the connectivity monitor and the periodic drain.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fieldsync.core.config import settings
from fieldsync.core.connectivity import ConnectionMonitor
from fieldsync.core.database import create_queue_engine, create_store_engine, init_store_schema
from fieldsync.core.logging_config import LogConfig, setup_logging, stop_queue_listener
from fieldsync.core.scheduler import SyncScheduler
from fieldsync.crud.queue_store import QueueStore
from fieldsync.crud.row_store import RowStore, SQLAlchemyRowStore
from fieldsync.services.allocation_service import AllocationEngine
from fieldsync.services.conflict_resolver import ConflictResolver
from fieldsync.services.event_bus import EventBus
from fieldsync.services.retry import RetryPolicy
from fieldsync.services.sync_queue import SyncQueue
from fieldsync.services.transactional_writer import TransactionalWriter

logger = logging.getLogger(__name__)


@dataclass
class SyncCore:
    """The wired sync core. Start it before use and stop it on shutdown."""

    event_bus: EventBus
    row_store: RowStore
    writer: TransactionalWriter
    queue_store: QueueStore
    sync_queue: SyncQueue
    resolver: ConflictResolver
    engine: AllocationEngine
    monitor: ConnectionMonitor
    scheduler: SyncScheduler

    async def start(
        self,
        create_store_schema: bool = False,
        run_scheduler: bool = True,
        configure_logging: bool = False,
    ) -> None:
        """
        Restore the durable queue and begin periodic draining.

        Args:
            create_store_schema: Create missing store tables (local/dev stores)
            run_scheduler: Start the APScheduler drain job
            configure_logging: Install console/file logging from settings
        """
        if configure_logging:
            setup_logging(LogConfig(**settings.logging.log_config))
        if create_store_schema and isinstance(self.row_store, SQLAlchemyRowStore):
            await init_store_schema(self.row_store.engine)
        await self.queue_store.initialize()
        restored = await self.sync_queue.load()
        if restored:
            await self.engine.restore_from_queue()
        if run_scheduler:
            self.scheduler.start()
        logger.info(f"Sync core started ({restored} queued operations restored)")

    async def stop(self) -> None:
        self.scheduler.shutdown()
        self.engine.close()
        await self.queue_store.dispose()
        if isinstance(self.row_store, SQLAlchemyRowStore):
            await self.row_store.dispose()
        logger.info("Sync core stopped")
        stop_queue_listener()


def build_sync_core(
    store_url: Optional[str] = None,
    queue_url: Optional[str] = None,
    row_store: Optional[RowStore] = None,
    queue_store: Optional[QueueStore] = None,
    policy: Optional[RetryPolicy] = None,
    online: bool = True,
    default_storage_location_id: Optional[str] = None,
    write_timeout_seconds: Optional[float] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> SyncCore:
    """
    Build and wire every sync core component.

    ``row_store`` and ``queue_store`` override the engines built from
    ``store_url`` / ``queue_url`` (or settings), e.g. for tests.
    """
    event_bus = EventBus()
    monitor = ConnectionMonitor(online=online)

    row_store = row_store or SQLAlchemyRowStore(create_store_engine(store_url))
    queue_store = queue_store or QueueStore(create_queue_engine(queue_url))
    writer = TransactionalWriter(row_store, timeout_seconds=write_timeout_seconds)

    sync_queue = SyncQueue(
        writer,
        queue_store,
        policy=policy or RetryPolicy.from_settings(settings.queue),
        event_bus=event_bus,
        is_online=monitor,
        sleep=sleep,
    )
    resolver = ConflictResolver(writer, event_bus)
    sync_queue.set_guard(resolver.guard)

    engine = AllocationEngine(
        writer,
        event_bus,
        sync_queue,
        resolver,
        default_storage_location_id=default_storage_location_id,
    )
    monitor.on_reconnect(sync_queue.drain)
    scheduler = SyncScheduler(sync_queue, monitor)

    return SyncCore(
        event_bus=event_bus,
        row_store=row_store,
        writer=writer,
        queue_store=queue_store,
        sync_queue=sync_queue,
        resolver=resolver,
        engine=engine,
        monitor=monitor,
        scheduler=scheduler,
    )
