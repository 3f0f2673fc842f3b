"""Ledger CLI application -- Typer-based operator interface.

Provides commands for inspecting and acting on the platform fee ledger
through the HTTP API: recording fees, waiving, paying, disputing,
running the monthly billing job, reconciling provider statements and
evaluating revenue alerts.  Human-readable output goes to *stderr* via
Rich; ``--json`` writes the raw API response to *stdout* so that
pipelines can compose cleanly.
"""

from __future__ import annotations

import base64
import json
import os
import sys
from pathlib import Path
from typing import Any, cast

import typer
from rich.console import Console

from cli.display import (
    display_alerts,
    display_billing_run,
    display_entries,
    display_fee_record,
    display_import_result,
    display_ledger_summary,
    display_match_result,
    display_payment_initiation,
    display_reconciliation_summary,
    display_settlement,
)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="ledger",
    help="Platform fee ledger and transaction reconciliation",
    no_args_is_help=True,
)
console = Console(stderr=True)

dispute_app = typer.Typer(name="dispute", help="Open fee disputes.", no_args_is_help=True)
app.add_typer(dispute_app, name="dispute")

billing_app = typer.Typer(name="billing", help="Monthly invoicing.", no_args_is_help=True)
app.add_typer(billing_app, name="billing")

reconcile_app = typer.Typer(
    name="reconcile",
    help="Match provider statements against platform payments.",
    no_args_is_help=True,
)
app.add_typer(reconcile_app, name="reconcile")

alerts_app = typer.Typer(name="alerts", help="Revenue alerts.", no_args_is_help=True)
app.add_typer(alerts_app, name="alerts")

# Register the serve and db commands.
from cli.commands.db import db_app  # noqa: E402
from cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)
app.add_typer(db_app, name="db")

_DEFAULT_API_URL = "http://localhost:8000"

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_api_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    api_url: str | None = typer.Option(
        None,
        "--api-url",
        help="Ledger API base URL (defaults to the URL stored by login).",
        envvar="LEDGER_API_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _api_url  # noqa: PLW0603
    _json_output = json_mode
    _api_url = api_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _credentials_path() -> Path:
    """Return the path to the stored credentials file."""
    return Path.home() / ".ledger" / "credentials.json"


def _load_credentials() -> dict[str, Any]:
    cred_path = _credentials_path()
    if not cred_path.exists():
        return {}
    try:
        return cast("dict[str, Any]", json.loads(cred_path.read_text(encoding="utf-8")))
    except (OSError, ValueError):
        return {}


def _save_credentials(api_url: str, access_token: str) -> None:
    """Persist credentials to ``~/.ledger/credentials.json`` (chmod 600)."""
    cred_path = _credentials_path()
    cred_path.parent.mkdir(parents=True, exist_ok=True)
    cred_path.write_text(
        json.dumps({"api_url": api_url, "access_token": access_token}, indent=2),
        encoding="utf-8",
    )
    cred_path.chmod(0o600)


def _resolve_api_url() -> str:
    return _api_url or _load_credentials().get("api_url") or _DEFAULT_API_URL


def _decode_claims(token: str) -> dict[str, Any] | None:
    """Read the claims segment of a bearer token without verifying it."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        return cast("dict[str, Any]", json.loads(base64.urlsafe_b64decode(parts[1].encode())))
    except (ValueError, TypeError):
        return None


def _api_request(
    method: str,
    path: str,
    *,
    body: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
    content: bytes | None = None,
) -> Any:
    """Send an HTTP request to the ledger API and return the JSON response.

    Uses ``httpx`` for synchronous calls.  Auth token is resolved in order:

    1. ``LEDGER_API_TOKEN`` environment variable
    2. Stored credentials from ``~/.ledger/credentials.json``
       (written by ``ledger login``)
    """
    import httpx

    api_url = _resolve_api_url()
    headers: dict[str, str] = {"Content-Type": "text/csv" if content is not None else "application/json"}
    token = os.environ.get("LEDGER_API_TOKEN") or _load_credentials().get("access_token")
    if token:
        headers["Authorization"] = f"Bearer {token}"

    url = f"{api_url.rstrip('/')}{path}"
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.request(
                method,
                url,
                headers=headers,
                json=body,
                params={k: v for k, v in (params or {}).items() if v is not None},
                content=content,
            )
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as exc:
        detail: Any = exc.response.text
        try:
            detail = exc.response.json().get("detail", detail)
        except ValueError:
            pass
        console.print(f"[red]API error ({exc.response.status_code}): {detail}[/red]")
        raise typer.Exit(code=3) from exc
    except httpx.ConnectError as exc:
        console.print(f"[red]Cannot connect to API at {api_url}: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _emit_json(data: Any) -> bool:
    """Write *data* to stdout when ``--json`` is active."""
    if not _json_output:
        return False
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")
    return True


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@app.command()
def login(
    api_url: str = typer.Option(
        _DEFAULT_API_URL,
        "--api-url",
        help="Ledger API base URL.",
        envvar="LEDGER_API_URL",
    ),
    token: str = typer.Option(
        ...,
        "--token",
        help="Bearer token issued for this operator or service.",
        prompt="Token",
        hide_input=True,
    ),
) -> None:
    """Store an API URL and bearer token for subsequent commands.

    Credentials are saved to ``~/.ledger/credentials.json`` (mode 0600).
    Subsequent commands use the stored token when ``LEDGER_API_TOKEN`` is
    not set.
    """
    claims = _decode_claims(token)
    if claims is None:
        console.print("[red]That does not look like a ledger token.[/red]")
        raise typer.Exit(code=1)

    _save_credentials(api_url, token)
    console.print(f"[green]✓ Logged in as {claims.get('sub', 'unknown')}[/green]")
    console.print(f"[dim]  Tenant:      {claims.get('tenant_id', 'unknown')}[/dim]")
    console.print(f"[dim]  Role:        {claims.get('role', 'unknown')}[/dim]")
    console.print(f"[dim]  Credentials: {_credentials_path()}[/dim]")


@app.command()
def logout() -> None:
    """Remove stored credentials.

    This does **not** revoke the token server-side.
    """
    cred_path = _credentials_path()
    if cred_path.exists():
        cred_path.unlink()
        console.print("[green]✓ Logged out, credentials removed.[/green]")
    else:
        console.print("[dim]No stored credentials found.[/dim]")


@app.command()
def whoami() -> None:
    """Show the identity carried by the stored token."""
    creds = _load_credentials()
    token = creds.get("access_token")
    if not token:
        console.print("[yellow]Not logged in. Run [bold]ledger login[/bold] first.[/yellow]")
        raise typer.Exit(code=1)

    claims = _decode_claims(token) or {}
    if _emit_json({"api_url": creds.get("api_url"), **claims}):
        return
    console.print(f"[green]✓ {claims.get('sub', 'unknown')}[/green]")
    console.print(f"[dim]  Tenant:  {claims.get('tenant_id', 'unknown')}[/dim]")
    console.print(f"[dim]  Role:    {claims.get('role', 'unknown')}[/dim]")
    console.print(f"[dim]  Kind:    {claims.get('identity_kind', 'user')}[/dim]")
    console.print(f"[dim]  API URL: {creds.get('api_url', '')}[/dim]")


@app.command()
def token(
    tenant_id: str = typer.Option(..., "--tenant", help="Tenant the token is bound to."),
    sub: str = typer.Option(..., "--sub", help="Subject (user email or service name)."),
    role: str = typer.Option("viewer", "--role", help="Role claim."),
    service: bool = typer.Option(False, "--service", help="Issue a service identity token."),
    ttl: int = typer.Option(3600, "--ttl", help="Lifetime in seconds."),
) -> None:
    """Mint a bearer token signed with ``JWT_SECRET``.

    The token is written to stdout so it can be piped into ``ledger login``
    or an environment variable.
    """
    from pydantic import SecretStr

    from ledger_api.middleware.rbac import parse_role
    from ledger_api.security import TokenConfig, TokenManager

    secret = os.environ.get("JWT_SECRET", "")
    if not secret:
        console.print("[red]JWT_SECRET must be set to mint tokens.[/red]")
        raise typer.Exit(code=1)
    try:
        parse_role(role)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    manager = TokenManager(TokenConfig(jwt_secret=SecretStr(secret)))
    minted = manager.generate_token(
        sub,
        tenant_id,
        role=role,
        identity_kind="service" if service else "user",
        ttl_seconds=ttl,
    )
    sys.stdout.write(minted + "\n")


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@app.command()
def summary() -> None:
    """Show outstanding, settled and waived fee totals."""
    data = _api_request("GET", "/api/v1/ledger/summary")
    if not _emit_json(data):
        display_ledger_summary(console, data)


@app.command()
def entries(
    status: str | None = typer.Option(None, "--status", help="Filter by ledger status."),
    limit: int = typer.Option(50, "--limit", help="Maximum entries to show."),
) -> None:
    """List ledger entries, newest first."""
    data = _api_request("GET", "/api/v1/ledger", params={"status": status, "limit": limit})
    if not _emit_json(data):
        display_entries(console, data)


@app.command()
def record(
    reference_id: str = typer.Argument(..., help="Transaction reference."),
    amount: str = typer.Argument(..., help="Base transaction amount."),
    transaction_class: str = typer.Option("qr_payments", "--class", help="Transaction class."),
) -> None:
    """Record the platform fee for one billable transaction."""
    data = _api_request(
        "POST",
        "/api/v1/fees/record",
        body={"transaction_class": transaction_class, "reference_id": reference_id, "amount": amount},
    )
    if not _emit_json(data):
        display_fee_record(console, data)


@app.command()
def waive(
    ledger_ids: list[str] = typer.Argument(..., help="Ledger entry ids to waive."),
    reason: str = typer.Option(..., "--reason", help="Why the fees are waived."),
    notes: str | None = typer.Option(None, "--notes", help="Approval notes."),
) -> None:
    """Waive open fees (platform admin only)."""
    data = _api_request(
        "POST",
        "/api/v1/ledger/waive",
        body={"ledger_ids": ledger_ids, "reason": reason, "notes": notes},
    )
    if not _emit_json(data):
        console.print(f"[green]✓[/green] Waived {len(data['ledger_ids'])} fees totalling {data['total_amount']}")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@app.command()
def pay(
    ledger_ids: list[str] | None = typer.Argument(None, help="Retry only these entries."),
    provider: str | None = typer.Option(None, "--provider", help="Payment provider to use."),
) -> None:
    """Start a checkout for outstanding fees."""
    body: dict[str, Any] = {"provider": provider}
    if ledger_ids:
        body["ledger_ids"] = ledger_ids
    data = _api_request("POST", "/api/v1/payments/initiate", body=body)
    if not _emit_json(data):
        display_payment_initiation(console, data)


@app.command()
def verify(
    payment_reference: str = typer.Argument(..., help="Payment reference (PF-...)."),
    session_id: str | None = typer.Option(None, "--session-id", help="Stripe checkout session id."),
) -> None:
    """Ask the provider for a payment's status and settle the ledger."""
    data = _api_request(
        "POST",
        "/api/v1/payments/verify",
        body={"payment_reference": payment_reference, "session_id": session_id},
    )
    if not _emit_json(data):
        display_settlement(console, data)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@dispute_app.command("open")
def dispute_open(
    ledger_ids: list[str] = typer.Argument(..., help="Disputed ledger entry ids."),
    reason: str = typer.Option(..., "--reason", help="Why the fees are disputed."),
    action: str = typer.Option("review", "--action", help="waive, reduce or review."),
    amount: str | None = typer.Option(None, "--amount", help="Requested amount when reducing."),
) -> None:
    """Open a dispute over one or more fees."""
    data = _api_request(
        "POST",
        "/api/v1/disputes",
        body={"ledger_ids": ledger_ids, "reason": reason, "requested_action": action, "requested_amount": amount},
    )
    if not _emit_json(data):
        console.print(f"[green]✓[/green] Dispute {data['id']} opened ({data['status']})")


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


@billing_app.command("run")
def billing_run(
    period_end: str | None = typer.Option(
        None,
        "--period-end",
        help="Exclusive ISO-8601 cut-off; defaults to the start of the current month.",
    ),
) -> None:
    """Invoice every tenant's pending monthly fees."""
    data = _api_request("POST", "/api/v1/billing/run", body={"period_end": period_end})
    if not _emit_json(data):
        display_billing_run(console, data)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@reconcile_app.command("import")
def reconcile_import(
    statement: Path = typer.Argument(..., exists=True, dir_okay=False, help="reference,amount,date CSV file."),
    provider: str | None = typer.Option(None, "--provider", help="Provider label stored on every record."),
) -> None:
    """Import an external statement as unmatched reconciliation records."""
    data = _api_request(
        "POST",
        "/api/v1/reconciliation/import",
        params={"provider": provider},
        content=statement.read_bytes(),
    )
    if not _emit_json(data):
        display_import_result(console, data)


@reconcile_app.command("auto-match")
def reconcile_auto_match() -> None:
    """Link unmatched records to payments with the same amount."""
    data = _api_request("POST", "/api/v1/reconciliation/auto-match")
    if not _emit_json(data):
        display_match_result(console, data)


@reconcile_app.command("summary")
def reconcile_summary() -> None:
    """Show matched, partial and unmatched record counts."""
    data = _api_request("GET", "/api/v1/reconciliation/summary")
    if not _emit_json(data):
        display_reconciliation_summary(console, data)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@alerts_app.command("evaluate")
def alerts_evaluate() -> None:
    """Evaluate every active revenue rule now."""
    data = _api_request("POST", "/api/v1/alerts/evaluate")
    if not _emit_json(data):
        display_alerts(console, data["alerts"])


@alerts_app.command("list")
def alerts_list(
    unacknowledged: bool = typer.Option(False, "--unacknowledged", help="Only alerts not yet acknowledged."),
) -> None:
    """List raised revenue alerts."""
    data = _api_request("GET", "/api/v1/alerts", params={"acknowledged": False if unacknowledged else None})
    if not _emit_json(data):
        display_alerts(console, data)
