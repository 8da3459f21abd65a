"""Event intake: event store, idempotency guard and processing pipeline.

Every event follows store -> guard -> route -> handle -> ledger ->
mark-processed inside a single transaction.  The primary-key insert on
``raw_events`` is the idempotency guard: concurrent deliveries of one
event id serialise on it and the loser sees a duplicate.

Two intake modes share that pipeline:

* :meth:`EventIntake.ingest` runs it synchronously in one transaction.
* :meth:`EventIntake.receive` stores the raw event, commits, and hands
  the id to the :class:`~paysync.services.worker_pool.EventWorkerPool`,
  whose workers call :meth:`EventIntake.process_stored`.

A stored event that is still unprocessed (an earlier run failed, or the
pool was full) is re-run under a skip-locked claim on redelivery or by
:meth:`EventIntake.replay_unprocessed`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.config import ServiceSettings
from paysync.errors import TransientProcessingError
from paysync.handlers.base import HandlerContext, Outcome
from paysync.services.event_router import EventRouter
from paysync.services.ledger_service import LedgerAccountant
from paysync.services.worker_pool import EventWorkerPool
from paysync_core.events.types import ProcessorEvent
from paysync_core.retry import RetryPolicy
from paysync_core.state.repository import RawEventRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one delivery.

    ``accepted`` is True when this call stored or processed the event.
    ``duplicate`` is True when the event was already processed (or is
    being processed by another worker) and nothing was done.
    """

    accepted: bool
    duplicate: bool
    outcome: Outcome | None = None
    reason: str | None = None

    @classmethod
    def duplicate_of(cls, event_id: str) -> IngestResult:
        return cls(accepted=False, duplicate=True, reason=f"event {event_id} already processed")


@dataclass
class ReplaySummary:
    found: int = 0
    processed: int = 0
    flagged: int = 0
    duplicates: int = 0
    failed: int = 0


class EventIntake:
    """Applies verified processor events exactly once.

    Parameters
    ----------
    session_factory:
        Source of sessions; each unit of work gets its own.
    router:
        Dispatches events to domain handlers.
    ledger:
        Fee policy and ledger appends handed to handlers.
    settings:
        Service settings (platform marker, pool sizing).
    retry_policy:
        Used by handlers that enqueue payment retries.
    pool:
        Worker pool for deferred processing; required by :meth:`receive`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: EventRouter,
        ledger: LedgerAccountant,
        settings: ServiceSettings,
        retry_policy: RetryPolicy,
        *,
        pool: EventWorkerPool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._router = router
        self._ledger = ledger
        self._settings = settings
        self._retry_policy = retry_policy
        self._pool = pool

    # -- Intake modes ------------------------------------------------------

    async def ingest(self, event: ProcessorEvent) -> IngestResult:
        """Store, route and apply *event* in one transaction."""
        try:
            async with self._session_factory() as session:
                raw = RawEventRepository(session)
                inserted = await self._store(raw, event)
                if not inserted:
                    row = await raw.claim(event.id)
                    if row is None or row.processed:
                        logger.debug("Duplicate event %s", event.id, extra={"event_id": event.id})
                        return IngestResult.duplicate_of(event.id)
                    logger.info("Re-running stored event %s", event.id, extra={"event_id": event.id})

                result = await self._apply(session, event)
                await session.commit()
                return result
        except Exception as exc:
            logger.exception("Transient failure processing event %s", event.id, extra={"event_id": event.id})
            # The atomic transaction rolled back the raw row too; keep it
            # (unprocessed) so a replay can pick it up.
            await self._store_failure(event, exc)
            raise TransientProcessingError(event.id, exc) from exc

    async def receive(self, event: ProcessorEvent) -> IngestResult:
        """Store *event* and queue it for a worker."""
        if self._pool is None:
            raise RuntimeError("receive() needs an EventWorkerPool; use ingest() instead")

        async with self._session_factory() as session:
            raw = RawEventRepository(session)
            inserted = await self._store(raw, event)
            if not inserted:
                row = await raw.get(event.id)
                if row is not None and row.processed:
                    logger.debug("Duplicate event %s", event.id, extra={"event_id": event.id})
                    return IngestResult.duplicate_of(event.id)
            await session.commit()

        if not self._pool.submit(event.id, lambda: self.process_stored(event.id)):
            logger.warning(
                "Worker queue full; event %s stays stored for replay",
                event.id,
                extra={"event_id": event.id},
            )
        return IngestResult(accepted=True, duplicate=False)

    async def process_stored(self, event_id: str) -> IngestResult:
        """Process a stored event; the worker-side half of :meth:`receive`."""
        try:
            async with self._session_factory() as session:
                raw = RawEventRepository(session)
                row = await raw.claim(event_id)
                if row is None:
                    logger.debug("Event %s missing or claimed elsewhere", event_id, extra={"event_id": event_id})
                    return IngestResult.duplicate_of(event_id)
                if row.processed:
                    return IngestResult.duplicate_of(event_id)

                event = ProcessorEvent.model_validate(row.payload)
                result = await self._apply(session, event)
                await session.commit()
                return result
        except Exception as exc:
            logger.exception("Transient failure processing stored event %s", event_id, extra={"event_id": event_id})
            async with self._session_factory() as session:
                await RawEventRepository(session).record_failure(event_id, f"{type(exc).__name__}: {exc}")
                await session.commit()
            raise TransientProcessingError(event_id, exc) from exc

    async def replay_unprocessed(self, *, limit: int = 100, older_than_seconds: float = 0) -> ReplaySummary:
        """Re-run stored events that never reached ``processed``.

        ``older_than_seconds`` leaves recently received events to the
        workers that are already handling them.
        """
        cutoff = datetime.now(UTC) - timedelta(seconds=older_than_seconds)
        async with self._session_factory() as session:
            rows = await RawEventRepository(session).list_unprocessed(limit=limit, received_before=cutoff)
            event_ids = [row.event_id for row in rows]

        summary = ReplaySummary(found=len(event_ids))
        for event_id in event_ids:
            try:
                result = await self.process_stored(event_id)
            except TransientProcessingError:
                summary.failed += 1
                continue
            if result.duplicate:
                summary.duplicates += 1
            elif result.outcome is Outcome.SKIPPED:
                summary.flagged += 1
            else:
                summary.processed += 1
        logger.info(
            "Replayed %d event(s): %d processed, %d flagged, %d failed",
            summary.found,
            summary.processed,
            summary.flagged,
            summary.failed,
        )
        return summary

    # -- Internals ---------------------------------------------------------

    async def _store(self, raw: RawEventRepository, event: ProcessorEvent) -> bool:
        return await raw.insert_if_absent(
            event_id=event.id,
            event_type=event.type,
            payload=event.model_dump(mode="json"),
            api_version=event.api_version,
        )

    async def _store_failure(self, event: ProcessorEvent, exc: BaseException) -> None:
        try:
            async with self._session_factory() as session:
                raw = RawEventRepository(session)
                await self._store(raw, event)
                await raw.record_failure(event.id, f"{type(exc).__name__}: {exc}")
                await session.commit()
        except Exception:
            logger.exception("Could not record failure for event %s", event.id, extra={"event_id": event.id})

    async def _apply(self, session: AsyncSession, event: ProcessorEvent) -> IngestResult:
        ctx = HandlerContext(
            session=session,
            ledger=self._ledger,
            settings=self._settings,
            retry_policy=self._retry_policy,
        )
        result = await self._router.route(ctx, event)
        flagged = result.outcome is Outcome.SKIPPED
        await RawEventRepository(session).mark_processed(
            event.id,
            flagged=flagged,
            note=result.reason if flagged else None,
        )
        return IngestResult(accepted=True, duplicate=False, outcome=result.outcome, reason=result.reason)
