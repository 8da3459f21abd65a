"""Composition root wiring the PaySync services together.

One :class:`PaySyncRuntime` owns the engine, the processor client, the
worker pool and the periodic workers for a process.  Local SQLite
databases get their tables created on startup; PostgreSQL is expected to
be migrated with Alembic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from paysync.config import ServiceSettings
from paysync.json_formatter import configure_logging
from paysync.processor_client import ProcessorClient
from paysync.services.event_intake import EventIntake
from paysync.services.event_router import EventRouter
from paysync.services.ledger_service import LedgerAccountant
from paysync.services.mirror_service import ExternalPaymentMirror, MirrorWorker
from paysync.services.notifier import BillingNotifier
from paysync.services.retry_scheduler import RetryScheduler
from paysync.services.worker_pool import EventWorkerPool
from paysync_core.config import Settings
from paysync_core.retry import RetryPolicy
from paysync_core.state.database import get_engine, session_factory
from paysync_core.state.sqlite_adapter import create_local_tables

logger = logging.getLogger(__name__)


@dataclass
class PaySyncRuntime:
    settings: Settings
    service_settings: ServiceSettings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    ledger: LedgerAccountant
    retry_policy: RetryPolicy
    pool: EventWorkerPool
    intake: EventIntake
    notifier: BillingNotifier
    processor: ProcessorClient | None = None
    retry_scheduler: RetryScheduler | None = None
    mirror: ExternalPaymentMirror | None = None
    mirror_worker: MirrorWorker | None = None

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        service_settings: ServiceSettings | None = None,
        *,
        processor: ProcessorClient | None = None,
        notifier: BillingNotifier | None = None,
        engine: AsyncEngine | None = None,
    ) -> PaySyncRuntime:
        """Build every component from settings.

        Without a processor client (no secret key configured and none
        passed in) the retry scheduler and the mirror engine are not
        created; event intake still works.
        """
        settings = settings or Settings()
        service_settings = service_settings or ServiceSettings()
        configure_logging(
            service_settings.log_level,
            structured=service_settings.structured_logging or settings.structured_logging,
        )

        if engine is None:
            engine = get_engine(
                settings.database_url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
            )
            if settings.is_local:
                await create_local_tables(engine)
        factory = session_factory(engine)

        if processor is None and service_settings.stripe_secret_key is not None:
            processor = ProcessorClient.from_settings(service_settings)
        if notifier is None:
            secret = service_settings.billing_notify_secret
            notifier = BillingNotifier(
                service_settings.billing_notify_url,
                secret.get_secret_value() if secret else "",
                timeout=service_settings.billing_notify_timeout,
            )

        ledger = LedgerAccountant.from_settings(settings)
        policy = RetryPolicy.from_settings(settings)
        pool = EventWorkerPool(service_settings.worker_count, service_settings.queue_max_size)
        intake = EventIntake(factory, EventRouter(), ledger, service_settings, policy, pool=pool)

        runtime = cls(
            settings=settings,
            service_settings=service_settings,
            engine=engine,
            session_factory=factory,
            ledger=ledger,
            retry_policy=policy,
            pool=pool,
            intake=intake,
            notifier=notifier,
            processor=processor,
        )
        if processor is not None:
            runtime.retry_scheduler = RetryScheduler(
                factory,
                processor,
                policy,
                service_settings,
                notifier=notifier,
                interval_seconds=service_settings.retry_sweep_interval_seconds,
            )
            runtime.mirror = ExternalPaymentMirror(factory, processor, service_settings, notifier)
            runtime.mirror_worker = MirrorWorker(
                factory,
                runtime.mirror,
                batch_size=service_settings.mirror_batch_size,
                interval_seconds=service_settings.mirror_sweep_interval_seconds,
            )
        else:
            logger.warning("No processor credentials configured; retry and mirror workers are disabled")
        return runtime

    async def start(self) -> None:
        self.pool.start()
        if self.retry_scheduler is not None:
            await self.retry_scheduler.start()
        if self.mirror_worker is not None:
            await self.mirror_worker.start()

    async def stop(self) -> None:
        if self.mirror_worker is not None:
            await self.mirror_worker.stop()
        if self.retry_scheduler is not None:
            await self.retry_scheduler.stop()
        await self.pool.stop()
        await self.notifier.close()
        await self.engine.dispose()
