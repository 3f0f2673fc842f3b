"""``ledger serve`` -- local API server.

Starts the ledger API locally with zero external dependencies:

  * SQLite for ledger storage (no PostgreSQL required); tables are
    created on startup
  * Embedded FastAPI API server via uvicorn

Payment providers are configured per deployment through
``PUT /api/v1/providers/{provider}``; nothing is contacted until a
payment is initiated.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)

_STATE_DIR = ".ledger"


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
    scheduler: bool = typer.Option(
        False,
        "--scheduler/--no-scheduler",
        help="Run the billing, alert and outbox jobs in-process.",
    ),
) -> None:
    """Start a local ledger API server backed by SQLite."""
    console = Console(stderr=True)

    project_root = Path.cwd()
    _setup_local_env(project_root, port, scheduler)

    console.print(
        Panel(
            _build_services_table(host, port, scheduler, project_root),
            title="Platform Fee Ledger",
            border_style="blue",
        )
    )
    console.print("[dim]Press Ctrl+C to stop.[/dim]\n")

    try:
        import uvicorn

        uvicorn_config = uvicorn.Config(
            "ledger_api.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
            access_log=False,
        )
        server = uvicorn.Server(uvicorn_config)

        console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
        console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
        console.print(f"[green]✓[/green] Readiness probe at http://{host}:{port}/ready")

        server.run()

    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except Exception as exc:
        console.print(f"[red]Server error: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    console.print("[green]Server stopped cleanly.[/green]")


def _setup_local_env(project_root: Path, port: int, scheduler: bool) -> None:
    """Configure environment variables for local-only operation.

    Points the API at a SQLite file under ``.ledger/`` so that it runs
    without PostgreSQL.  Values from a ``.env`` file apply only where no
    explicit override was made.
    """
    state_db = project_root / _STATE_DIR / "ledger.db"
    state_db.parent.mkdir(parents=True, exist_ok=True)

    os.environ["API_DATABASE_URL"] = f"sqlite+aiosqlite:///{state_db}"
    os.environ.setdefault("API_PLATFORM_ENV", "dev")
    os.environ["API_PORT"] = str(port)
    os.environ["API_SCHEDULER_ENABLED"] = "true" if scheduler else "false"

    # Deterministic secret so tokens minted with ``ledger token`` verify locally.
    os.environ.setdefault("JWT_SECRET", "ledger-local-dev-secret-not-for-production")

    env_file = project_root / ".env"
    if env_file.exists():
        _load_dotenv(env_file)


def _load_dotenv(env_file: Path) -> None:
    """Load environment variables from a .env file.

    Only sets variables that are not already present in ``os.environ``
    (existing values take precedence).
    """
    try:
        content = env_file.read_text(encoding="utf-8")
    except OSError:
        return

    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        os.environ.setdefault(key.strip(), value.strip().strip("'\""))


def _build_services_table(host: str, port: int, scheduler: bool, project_root: Path) -> Table:
    """Build a Rich table showing what the server will run."""
    table = Table(show_header=True, header_style="bold", expand=False)
    table.add_column("Service", style="bold")
    table.add_column("URL")
    table.add_column("Status")

    table.add_row("API Server", f"http://{host}:{port}", "[green]starting[/green]")

    state_db = project_root / _STATE_DIR / "ledger.db"
    table.add_row("Database", f"SQLite ({state_db.name})", "[green]local[/green]")

    if scheduler:
        table.add_row("Scheduler", "billing, alerts, outbox", "[green]enabled[/green]")
    else:
        table.add_row("Scheduler", "-", "[dim]disabled[/dim]")

    return table
