"""CLI interface for the DCA service."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="dcabot",
    help="Dollar-cost averaging service: scheduled market buys across Binance, Coinbase and Bybit.",
    add_completion=False,
)
console = Console()


def _configure_logging(level: str = "INFO", fmt: str | None = None) -> None:
    """Configure the root logger once per CLI invocation."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt or "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _fmt_dt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "-"


async def _run_scheduler(settings) -> None:
    """Run the scheduler loop with graceful shutdown on signals."""
    from dcabot.container import Container

    container = Container(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _shutdown():
        console.print("\n[yellow]Shutdown signal received, stopping...[/]")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown)
        except NotImplementedError:
            # not available on the Windows proactor loop
            pass

    await container.start()
    try:
        await container.scheduler.start()
        await stop.wait()
    finally:
        await container.stop()


@app.command()
def run(
    profile: str = typer.Option("default", help="Config profile (default/testnet/production)"),
    log_level: str = typer.Option("INFO", help="Log level"),
) -> None:
    """Start the scheduler loop without the HTTP API."""
    from dcabot.config.settings import load_settings

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)

    console.print(f"[bold green]Starting scheduler[/] (profile={profile})")
    console.print(f"  Database: {settings.database.path}")
    console.print(f"  Poll interval: {settings.scheduler.poll_interval:g}s")

    try:
        asyncio.run(_run_scheduler(settings))
    except KeyboardInterrupt:
        pass

    console.print("[green]Scheduler stopped.[/]")


@app.command()
def serve(
    profile: str = typer.Option("default", help="Config profile"),
    host: Optional[str] = typer.Option(None, help="Bind address (overrides config)"),
    port: Optional[int] = typer.Option(None, help="Port (overrides config)"),
    scheduler: bool = typer.Option(True, help="Run the scheduler loop in-process"),
    log_level: str = typer.Option("INFO", help="Log level"),
) -> None:
    """Start the HTTP API (and, by default, the scheduler)."""
    import uvicorn

    from dcabot.api.app import create_app
    from dcabot.config.settings import load_settings
    from dcabot.container import Container

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)
    bind_host = host or settings.api.host
    bind_port = port or settings.api.port

    console.print(f"[bold green]Serving API[/] on http://{bind_host}:{bind_port} (profile={profile})")
    api = create_app(Container(settings), run_scheduler=scheduler)
    uvicorn.run(api, host=bind_host, port=bind_port, log_level=log_level.lower())


async def _run_execute(settings, strategy_id: int) -> None:
    from dcabot.config.constants import ExecutionType
    from dcabot.container import Container
    from dcabot.core.errors import DCAError

    async with Container(settings) as container:
        try:
            outcome = await container.engine.execute_strategy(strategy_id, ExecutionType.MANUAL)
        except DCAError as e:
            console.print(f"[red]Not executed:[/] {e}")
            raise typer.Exit(code=1)

        if outcome.status == "pending":
            console.print(
                f"[yellow]Order {outcome.order_id} not filled yet, waiting for the monitor...[/]"
            )
            await container.monitor.wait(outcome.execution.id)
            execution = await container.repo.get_execution(outcome.execution.id)
            console.print(f"Execution {execution.id}: [bold]{execution.status.value}[/]")
            return

        table = Table(title=f"Strategy {strategy_id}", show_header=True)
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        for key, value in outcome.to_dict().items():
            table.add_row(key, str(value))
        console.print(table)
        if outcome.status == "failed":
            raise typer.Exit(code=1)


@app.command()
def execute(
    strategy_id: int = typer.Argument(..., help="Strategy id to fire"),
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("WARNING", help="Log level"),
) -> None:
    """Fire one strategy now (manual execution)."""
    from dcabot.config.settings import load_settings

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)
    console.print(f"[bold]Executing strategy {strategy_id}[/]")
    asyncio.run(_run_execute(settings, strategy_id))


async def _run_reconcile(settings) -> dict[int, str]:
    from dcabot.container import Container

    async with Container(settings) as container:
        return await container.reconciler.sweep()


@app.command()
def reconcile(
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("INFO", help="Log level"),
) -> None:
    """Resolve stale pending executions against their venues."""
    from dcabot.config.settings import load_settings

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)
    results = asyncio.run(_run_reconcile(settings))
    if not results:
        console.print("[green]No stale pending executions.[/]")
        return
    for execution_id, status_ in results.items():
        console.print(f"  Execution {execution_id}: {status_}")
    console.print(f"[green]Reconciled {len(results)} executions.[/]")


async def _run_status(settings) -> None:
    """Fetch and display scheduled jobs."""
    from dcabot.data.database import Database
    from dcabot.data.migrations import run_migrations
    from dcabot.data.repository import Repository

    db_path = settings.database.path
    await run_migrations(db_path)
    db = Database(db_path)
    await db.connect()

    try:
        repo = Repository(db)
        jobs = await repo.list_jobs()

        table = Table(title="Scheduled Jobs", show_header=True)
        table.add_column("Strategy", style="cyan", justify="right")
        table.add_column("Active", justify="center")
        table.add_column("Next run", style="green")
        table.add_column("Last run")
        table.add_column("Runs", justify="right")
        table.add_column("Failures", justify="right", style="red")
        table.add_column("Leased by")

        for job in jobs:
            table.add_row(
                str(job.strategy_id),
                "yes" if job.is_active else "no",
                _fmt_dt(job.next_run_at),
                _fmt_dt(job.last_run_at),
                str(job.run_count),
                str(job.failure_count),
                job.locked_by or "-",
            )

        console.print(table)
        if not jobs:
            console.print("[dim]No strategies scheduled.[/]")
    finally:
        await db.disconnect()


@app.command()
def status(
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("WARNING", help="Log level"),
) -> None:
    """Show scheduled jobs (next/last run, counters, leases)."""
    from dcabot.config.settings import load_settings

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)

    asyncio.run(_run_status(settings))


@app.command()
def migrate(
    profile: str = typer.Option("default", help="Config profile"),
) -> None:
    """Initialize or migrate the database schema."""
    from dcabot.config.settings import load_settings
    from dcabot.data.migrations import run_migrations

    settings = load_settings(profile)
    console.print(f"[bold]Running migrations[/] → {settings.database.path}")
    asyncio.run(run_migrations(settings.database.path))
    console.print("[green]Migrations complete.[/]")


@app.command()
def encrypt(
    value: str = typer.Argument(..., help="Plaintext to encrypt (e.g. an API key)"),
    profile: str = typer.Option("default", help="Config profile"),
) -> None:
    """Encrypt a credential with the configured vault secret."""
    from dcabot.config.settings import load_settings
    from dcabot.core.vault import CredentialVault

    settings = load_settings(profile)
    vault = CredentialVault(settings.security.encryption_secret)
    console.print(vault.encrypt(value), soft_wrap=True)


if __name__ == "__main__":
    app()
