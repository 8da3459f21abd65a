"""Rich output formatting for the PaySync CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from paysync.services.event_intake import ReplaySummary
    from paysync.services.ledger_service import LedgerVerification
    from paysync.services.mirror_service import MirrorSweepSummary
    from paysync.services.retry_scheduler import SweepSummary
    from paysync.services.worker_pool import PoolStats
    from paysync_core.state.tables import MirrorRecordTable, RawEventTable, RetryJobTable


_STATUS_COLOURS: dict[str, str] = {
    "succeeded": "green",
    "pending": "yellow",
    "processing": "yellow",
    "retrying": "yellow",
    "requires_action": "magenta",
    "failed": "red",
    "cancelled": "dim",
}


def _coloured_status(status: str) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _counts_table(title: str, rows: list[tuple[str, int]]) -> Table:
    table = Table(title=title, show_lines=False, expand=False)
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for label, value in rows:
        table.add_row(label, str(value))
    return table


def display_replay_summary(console: Console, summary: ReplaySummary) -> None:
    if not summary.found:
        console.print("[dim]No unprocessed events.[/dim]")
        return
    console.print(
        _counts_table(
            "Event Replay",
            [
                ("found", summary.found),
                ("processed", summary.processed),
                ("flagged", summary.flagged),
                ("duplicates", summary.duplicates),
                ("failed", summary.failed),
            ],
        )
    )


def display_retry_sweep(console: Console, summary: SweepSummary) -> None:
    if not summary.due:
        console.print("[dim]No retry jobs due.[/dim]")
        return
    console.print(_counts_table("Retry Sweep", list(summary.as_dict().items())))


def display_mirror_sweep(console: Console, summary: MirrorSweepSummary) -> None:
    if not summary.scanned:
        console.print("[dim]No charges awaiting mirroring.[/dim]")
        return
    rows = [("scanned", summary.scanned), *sorted(summary.results.items()), ("deferred", summary.deferred)]
    console.print(_counts_table("Mirror Sweep", rows))


def display_ledger_verification(console: Console, results: list[LedgerVerification]) -> None:
    """Render one row per tenant ledger.

    Parameters
    ----------
    console:
        Rich console to write to.
    results:
        Verification results, one per tenant.
    """
    if not results:
        console.print("[dim]No ledger entries.[/dim]")
        return

    table = Table(title="Ledger Verification", expand=False)
    table.add_column("Tenant", style="bold")
    table.add_column("Entries", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Status")
    for result in results:
        status = "[green]ok[/green]" if result.ok else f"[red]mismatch at entry {result.first_mismatch_id}[/red]"
        table.add_row(result.tenant_id, str(result.entries_checked), str(result.balance), status)
    console.print(table)


def display_retry_job(console: Console, job: RetryJobTable) -> None:
    table = Table(title=f"Retry Job {job.id}", show_header=False, expand=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Invoice", job.invoice_id)
    table.add_row("Tenant", job.tenant_id)
    table.add_row("Status", _coloured_status(job.status))
    table.add_row("Attempt", str(job.attempt_number))
    table.add_row("Amount", f"{job.amount} {job.currency}")
    table.add_row("Next attempt", job.retry_at.isoformat() if job.retry_at else "-")
    table.add_row("Last error", job.last_error or "-")
    console.print(table)


def display_pool_stats(console: Console, stats: PoolStats) -> None:
    console.print(
        f"workers={stats.workers} submitted={stats.submitted} queued={stats.queued} "
        f"completed={stats.completed} [red]failed={stats.failed}[/red] rejected={stats.rejected}"
    )


def display_flagged_events(console: Console, events: list[RawEventTable]) -> None:
    if not events:
        console.print("[dim]No flagged events.[/dim]")
        return
    table = Table(title="Flagged Events", expand=False)
    table.add_column("Event", style="bold")
    table.add_column("Type")
    table.add_column("Received")
    table.add_column("Reason")
    for event in events:
        table.add_row(event.event_id, event.event_type, event.received_at.isoformat(), event.error_message or "-")
    console.print(table)


def display_unmatched_mirrors(console: Console, records: list[MirrorRecordTable]) -> None:
    """List external charges no patient could be matched to."""
    if not records:
        console.print("[dim]No unmatched external payments.[/dim]")
        return
    table = Table(title="Unmatched External Payments", expand=False)
    table.add_column("Charge", style="bold")
    table.add_column("Amount", justify="right")
    table.add_column("Email")
    table.add_column("Seen")
    for record in records:
        table.add_row(
            record.processor_charge_id,
            f"{record.amount} {record.currency}",
            record.email or "-",
            record.created_at.isoformat(),
        )
    console.print(table)
