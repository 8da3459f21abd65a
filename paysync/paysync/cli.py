"""PaySync operator CLI.

Human-readable output goes to *stderr* via Rich.  Every command builds a
:class:`~paysync.runtime.PaySyncRuntime` from the environment
(``PAYSYNC_*`` and ``PAYSYNC_SERVICE_*``), does one unit of work, and
shuts the runtime down again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

import typer
from rich.console import Console

from paysync.display import (
    display_flagged_events,
    display_ledger_verification,
    display_mirror_sweep,
    display_pool_stats,
    display_replay_summary,
    display_retry_job,
    display_retry_sweep,
    display_unmatched_mirrors,
)
from paysync.runtime import PaySyncRuntime
from paysync_core.state.repository import (
    LedgerRepository,
    MirrorRecordRepository,
    RawEventRepository,
    RetryJobRepository,
)

if TYPE_CHECKING:
    from paysync.services.event_intake import ReplaySummary
    from paysync.services.ledger_service import LedgerVerification
    from paysync.services.mirror_service import MirrorSweepSummary
    from paysync.services.retry_scheduler import SweepSummary
    from paysync_core.state.tables import MirrorRecordTable, RawEventTable, RetryJobTable

T = TypeVar("T")

app = typer.Typer(
    name="paysync",
    help="PaySync - payment event processing, ledger and retry operations",
    no_args_is_help=True,
)
console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(work: Callable[[PaySyncRuntime], Awaitable[T]]) -> T:
    """Create a runtime, run *work* against it, and always shut it down."""

    async def _main() -> T:
        runtime = await PaySyncRuntime.create()
        try:
            return await work(runtime)
        finally:
            await runtime.stop()

    return asyncio.run(_main())


def _processor_missing() -> typer.Exit:
    console.print("[red]PAYSYNC_SERVICE_STRIPE_SECRET_KEY is not configured.[/red]")
    return typer.Exit(code=2)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("replay-events")
def replay_events(
    limit: int = typer.Option(100, "--limit", min=1, help="Maximum number of events to replay."),
    older_than: float = typer.Option(
        0.0,
        "--older-than",
        min=0.0,
        help="Only replay events received at least this many seconds ago.",
    ),
) -> None:
    """Re-run stored events that were never marked processed."""

    async def _work(runtime: PaySyncRuntime) -> ReplaySummary:
        return await runtime.intake.replay_unprocessed(limit=limit, older_than_seconds=older_than)

    summary = _run(_work)
    display_replay_summary(console, summary)
    if summary.failed:
        raise typer.Exit(code=1)


@app.command("sweep-retries")
def sweep_retries() -> None:
    """Process one batch of due payment retry jobs."""

    async def _work(runtime: PaySyncRuntime) -> SweepSummary:
        if runtime.retry_scheduler is None:
            raise _processor_missing()
        return await runtime.retry_scheduler.sweep()

    display_retry_sweep(console, _run(_work))


@app.command("sweep-mirrors")
def sweep_mirrors() -> None:
    """Mirror one batch of external charges into internal invoices."""

    async def _work(runtime: PaySyncRuntime) -> MirrorSweepSummary:
        if runtime.mirror_worker is None:
            raise _processor_missing()
        return await runtime.mirror_worker.sweep()

    display_mirror_sweep(console, _run(_work))


@app.command("verify-ledger")
def verify_ledger(
    tenant: list[str] | None = typer.Option(
        None,
        "--tenant",
        "-t",
        help="Tenant to verify (repeatable). Defaults to every tenant with entries.",
    ),
) -> None:
    """Replay tenant ledgers and check every running balance."""

    async def _work(runtime: PaySyncRuntime) -> list[LedgerVerification]:
        async with runtime.session_factory() as session:
            tenants = tenant or await LedgerRepository(session).tenant_ids()
            return [await runtime.ledger.verify(session, tenant_id) for tenant_id in tenants]

    results = _run(_work)
    display_ledger_verification(console, results)
    if any(not result.ok for result in results):
        raise typer.Exit(code=1)


@app.command("retry-status")
def retry_status(
    invoice_id: str = typer.Argument(..., help="Internal invoice id."),
) -> None:
    """Show the most recent retry job for an invoice."""

    async def _work(runtime: PaySyncRuntime) -> RetryJobTable | None:
        async with runtime.session_factory() as session:
            return await RetryJobRepository(session).latest_for_invoice(invoice_id)

    job = _run(_work)
    if job is None:
        console.print(f"[yellow]No retry jobs for invoice {invoice_id}.[/yellow]")
        raise typer.Exit(code=1)
    display_retry_job(console, job)


@app.command("list-flagged")
def list_flagged(
    limit: int = typer.Option(50, "--limit", min=1, help="Maximum number of events to show."),
) -> None:
    """List events marked processed but flagged for review."""

    async def _work(runtime: PaySyncRuntime) -> list[RawEventTable]:
        async with runtime.session_factory() as session:
            return await RawEventRepository(session).list_flagged(limit=limit)

    display_flagged_events(console, _run(_work))


@app.command("list-unmatched")
def list_unmatched(
    limit: int = typer.Option(50, "--limit", min=1, help="Maximum number of payments to show."),
) -> None:
    """List external payments that matched no patient."""

    async def _work(runtime: PaySyncRuntime) -> list[MirrorRecordTable]:
        async with runtime.session_factory() as session:
            return await MirrorRecordRepository(session).list_by_mode("unmatched", limit=limit)

    display_unmatched_mirrors(console, _run(_work))


@app.command("run-workers")
def run_workers(
    duration: float | None = typer.Option(
        None,
        "--duration",
        min=0.0,
        help="Stop after this many seconds (runs until interrupted by default).",
    ),
    replay: bool = typer.Option(
        True,
        "--replay/--no-replay",
        help="Replay unprocessed events once on startup.",
    ),
) -> None:
    """Run the event workers, retry scheduler and mirror worker."""

    async def _work(runtime: PaySyncRuntime) -> None:
        await runtime.start()
        console.print("[bold]PaySync workers running[/bold] (Ctrl-C to stop)")
        if replay:
            display_replay_summary(console, await runtime.intake.replay_unprocessed())
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            display_pool_stats(console, runtime.pool.stats())

    try:
        _run(_work)
    except KeyboardInterrupt:
        console.print("[dim]Interrupted.[/dim]")


if __name__ == "__main__":
    app()
