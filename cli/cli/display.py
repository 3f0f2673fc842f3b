"""Rich output formatting for the ledger CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.  API payloads arrive as decoded
JSON; money is rendered exactly as the API serialised it.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "pending": "yellow",
    "billed": "cyan",
    "settled": "green",
    "waived": "dim",
    "failed": "red",
    "matched": "green",
    "partial": "yellow",
    "overpaid": "magenta",
    "unmatched": "red",
    "critical": "bold red",
    "warning": "yellow",
    "info": "dim",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def display_ledger_summary(console: Console, summary: dict[str, Any]) -> None:
    """Render the per-status totals of a tenant's ledger.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    summary:
        Body of ``GET /ledger/summary``.
    """
    header_lines = [
        f"[bold]Outstanding:[/bold] {summary.get('outstanding_amount', '0.00')}",
        f"[bold]Settled:[/bold]     {summary.get('settled_amount', '0.00')}",
        f"[bold]Waived:[/bold]      {summary.get('waived_amount', '0.00')}",
        f"[bold]Failed:[/bold]      {summary.get('failed_amount', '0.00')}",
        f"[bold]Total:[/bold]       {summary.get('total_fees', '0.00')}",
    ]
    console.print(Panel("\n".join(header_lines), title="Platform Fees", border_style="blue"))

    counts: dict[str, Any] = summary.get("counts") or {}
    if not counts:
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Status")
    table.add_column("Entries", justify="right")
    for status, count in sorted(counts.items()):
        table.add_row(_coloured_status(status), str(count))
    console.print(table)


def display_entries(console: Console, entries: list[dict[str, Any]]) -> None:
    """Render ledger entries as a table."""
    if not entries:
        console.print("[dim]No ledger entries.[/dim]")
        return

    table = Table(title=f"Ledger ({len(entries)} entries)", show_header=True, header_style="bold")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Reference")
    table.add_column("Fee", justify="right")
    table.add_column("Cycle")
    table.add_column("Status")
    table.add_column("Created", style="dim")

    for entry in entries:
        table.add_row(
            str(entry.get("id", ""))[:12],
            str(entry.get("reference_type", "")),
            str(entry.get("reference_id", "")),
            str(entry.get("fee_amount", "")),
            str(entry.get("billing_cycle", "")),
            _coloured_status(str(entry.get("status", ""))),
            str(entry.get("created_at", ""))[:19],
        )
    console.print(table)


def display_fee_record(console: Console, result: dict[str, Any]) -> None:
    if not result.get("applied"):
        console.print(f"[yellow]No fee applied[/yellow] [dim]({result.get('reason') or 'not applicable'})[/dim]")
        return
    verb = "Recorded" if result.get("created") else "Already recorded"
    console.print(
        f"[green]✓[/green] {verb} fee {result.get('fee_amount')} "
        f"(total {result.get('total_amount')}, payer {result.get('payer')}) "
        f"as {_coloured_status(str(result.get('status')))}"
    )
    console.print(f"[dim]  Ledger ID: {result.get('ledger_id')}[/dim]")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def display_payment_initiation(console: Console, initiation: dict[str, Any]) -> None:
    lines = [
        f"[bold]Reference:[/bold] {initiation.get('payment_reference')}",
        f"[bold]Provider:[/bold]  {initiation.get('provider')}",
        f"[bold]Amount:[/bold]    {initiation.get('total_amount')}",
        f"[bold]Fees:[/bold]      {initiation.get('fee_count', 0)}",
        "",
        f"[bold]Pay at:[/bold] {initiation.get('payment_url')}",
    ]
    console.print(Panel("\n".join(lines), title="Payment Initiated", border_style="green"))


def display_settlement(console: Console, result: dict[str, Any]) -> None:
    outcome = str(result.get("outcome", ""))
    colour = {"settled": "green", "failed": "red"}.get(outcome, "yellow")
    console.print(f"Payment {result.get('payment_reference', '')}: [{colour}]{outcome}[/{colour}]")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def display_import_result(console: Console, result: dict[str, Any]) -> None:
    """Render the outcome of a statement import, including rejected rows."""
    console.print(
        f"[green]✓[/green] Parsed {result.get('parsed', 0)} rows, inserted {result.get('inserted', 0)} records"
    )
    errors: list[dict[str, Any]] = result.get("errors") or []
    if not errors:
        return

    table = Table(title=f"{len(errors)} rejected rows", show_header=True, header_style="bold red")
    table.add_column("Row", justify="right")
    table.add_column("Reason")
    for error in errors:
        table.add_row(str(error.get("row_number")), str(error.get("reason")))
    console.print(table)


def display_match_result(console: Console, result: dict[str, Any]) -> None:
    console.print(f"Examined {result.get('examined', 0)} records, matched {result.get('matched', 0)}")
    for link in result.get("links") or []:
        console.print(
            f"  [dim]{str(link.get('record_id'))[:12]}[/dim] -> "
            f"[dim]{str(link.get('payment_id'))[:12]}[/dim] {_coloured_status(str(link.get('status')))}"
        )


def display_reconciliation_summary(console: Console, summary: dict[str, Any]) -> None:
    table = Table(title="Reconciliation", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for key in ("total", "matched", "partial", "overpaid", "unmatched"):
        if key in summary:
            table.add_row(key.replace("_", " ").capitalize(), str(summary[key]))
    if "match_rate" in summary:
        table.add_row("Match rate", f"{float(summary['match_rate']):.1f}%")
    console.print(table)


# ---------------------------------------------------------------------------
# Billing and alerts
# ---------------------------------------------------------------------------


def display_billing_run(console: Console, result: dict[str, Any]) -> None:
    invoices: list[dict[str, Any]] = result.get("invoices") or []
    if not invoices:
        console.print("[dim]No pending monthly fees to invoice.[/dim]")
        return

    table = Table(title=f"Invoiced {len(invoices)} tenants", show_header=True, header_style="bold")
    table.add_column("Tenant")
    table.add_column("Invoice")
    table.add_column("Fees", justify="right")
    table.add_column("Total", justify="right")
    for invoice in invoices:
        table.add_row(
            str(invoice.get("tenant_id")),
            str(invoice.get("invoice_number")),
            str(invoice.get("fee_count")),
            str(invoice.get("total_amount")),
        )
    console.print(table)


def display_alerts(console: Console, alerts: list[dict[str, Any]]) -> None:
    if not alerts:
        console.print("[dim]No revenue alerts.[/dim]")
        return

    table = Table(title="Revenue Alerts", show_header=True, header_style="bold")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Tenant")
    table.add_column("Current", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Ack")
    for alert in alerts:
        table.add_row(
            str(alert.get("id", ""))[:12],
            _coloured_status(str(alert.get("severity", ""))),
            str(alert.get("alert_type", "")),
            str(alert.get("tenant_id") or "-"),
            str(alert.get("current_value", "")),
            str(alert.get("threshold_value", "")),
            "✓" if alert.get("acknowledged") else "",
        )
    console.print(table)
