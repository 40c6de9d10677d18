"""flowrunner CLI — the main entry point."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from flowrunner import __version__
from flowrunner.config.constants import LOGS_DIR

app = typer.Typer(
    name="flowrunner",
    help="Schedule encrypted automation flows as isolated worker processes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
_LOG_FILE_NAME = "flowrunner.log"


def _resolve_key(key: Optional[str]) -> str:
    from flowrunner.config.settings import get_settings

    resolved = key or get_settings().encrypt_key.get_secret_value()
    if not resolved:
        console.print("[red]No encryption key.[/red] Pass --key or set FLOWRUNNER_ENCRYPT_KEY.")
        raise typer.Exit(1)
    return resolved


@app.callback(invoke_without_command=True)
def version_callback(
    version: bool = typer.Option(False, "--version", "-v", help="Show version"),
):
    if version:
        console.print(f"flowrunner [dim]v{__version__}[/dim]")
        raise typer.Exit()


@app.command()
def recurrence(
    measure: Optional[str] = typer.Option(
        None, "--measure", "-m", help="seconds, minutes, hours, days or months"
    ),
    value: Optional[int] = typer.Option(None, "--value", "-n", help="Interval length"),
    weekday: list[int] = typer.Option([], "--weekday", "-d", help="Weekday, 1=Monday..7=Sunday"),
    month: list[int] = typer.Option([], "--month", "-M", help="Month, 1=January..12=December"),
    raw: bool = typer.Option(False, "--raw", help="Keep the leading space of weekday/month-only output"),
):
    """Print the recurrence string for a set of schedule fields."""
    from flowrunner.scheduler.recurrence import build_recurrence

    fields = {
        "interval_measure": measure,
        "interval_value": value,
        "week_days": weekday,
        "year_months": month,
    }
    try:
        text = build_recurrence(fields, normalize=not raw)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    if text is None:
        console.print("[dim]No recurrence fields given.[/dim]")
        raise typer.Exit()
    console.print(text, highlight=False)


@app.command()
def encrypt(
    flow_file: Path = typer.Argument(help="JSON file with the flow's nodes and edges"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Encryption key"),
):
    """Encrypt a flow graph for use as a job's flow content."""
    from flowrunner.flows.crypto import encrypt_flow

    secret = _resolve_key(key)
    plaintext = flow_file.read_text(encoding="utf-8")
    try:
        json.loads(plaintext)
    except json.JSONDecodeError as exc:
        console.print(f"[red]{flow_file} is not valid JSON: {exc}[/red]")
        raise typer.Exit(1)
    console.print(encrypt_flow(plaintext, secret), highlight=False, soft_wrap=True)


@app.command()
def decrypt(
    content: str = typer.Argument(help="Encrypted flow content"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Encryption key"),
):
    """Decrypt a job's flow content and print the graph."""
    from flowrunner.errors import DecryptionError
    from flowrunner.flows.crypto import decrypt_flow

    try:
        plaintext = decrypt_flow(content, _resolve_key(key))
    except DecryptionError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print_json(plaintext)


@app.command()
def run(
    jobs_file: Path = typer.Argument(help="JSON file with one job or a list of jobs"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Encryption key"),
    log_file: bool = typer.Option(
        False, "--log-file", help="Also write logs to ~/.flowrunner/logs/flowrunner.log"
    ),
):
    """Schedule jobs from a file and stream worker events until Ctrl-C."""
    from pydantic import ValidationError

    from flowrunner.config.settings import get_settings
    from flowrunner.scheduler.models import JobOptions

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format=_LOG_FORMAT,
        handlers=_log_handlers(log_file),
    )

    data = json.loads(jobs_file.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = [data]
    try:
        jobs = [JobOptions.model_validate(raw) for raw in data]
    except ValidationError as exc:
        console.print(f"[red]Invalid job definition:[/red]\n{exc}")
        raise typer.Exit(1)

    secret = _resolve_key(key)
    try:
        asyncio.run(_run_jobs(settings, secret, jobs))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")


def _log_handlers(log_file: bool) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(LOGS_DIR / _LOG_FILE_NAME, encoding="utf-8"))
    return handlers


async def _run_jobs(settings, secret: str, jobs) -> None:
    from flowrunner.config.settings import SchedulerConfig
    from flowrunner.scheduler.orchestrator import Orchestrator

    config = SchedulerConfig.from_settings(
        settings,
        on_worker_created=lambda name: console.print(f"  [green]▶[/green] {name} started"),
        on_worker_deleted=lambda name: console.print(f"  [dim]■ {name} finished[/dim]"),
        worker_message_handler=lambda msg: console.print(f"  [cyan]{msg.name}[/cyan] {msg.message}"),
        error_handler=lambda err: console.print(f"  [red]✗ {err}[/red]"),
    )
    config.encrypt_key = secret
    orchestrator = Orchestrator(config)
    await orchestrator.initialize()
    try:
        registered = await _schedule(orchestrator, jobs)
        _print_jobs(jobs, registered)
        if not registered:
            return
        await asyncio.Event().wait()
    finally:
        await orchestrator.shutdown()


async def _schedule(orchestrator, jobs) -> dict:
    """Write scripts for the jobs that have not ended and start them.

    Returns the engine's specs for the jobs it registered, keyed by id.
    """
    from flowrunner.scheduler.job import is_expired

    runnable = [options for options in jobs if not is_expired(options)]
    if not runnable:
        return {}
    await orchestrator.create_python_scripts(runnable)
    names = await orchestrator.run_jobs(runnable) or []
    specs = orchestrator.engine.jobs
    return {name: specs[name] for name in names}


def _describe_schedule(spec) -> str:
    if spec.date is not None:
        return spec.date.isoformat()
    if spec.cron is not None:
        return spec.cron
    return str(spec.interval or "once, now")


def _print_jobs(jobs, registered: dict) -> None:
    table = Table(title="Jobs", show_lines=False)
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Schedule")
    table.add_column("Status")

    for options in jobs:
        spec = registered.get(options.id)
        if spec is not None:
            table.add_row(
                options.id, options.name, _describe_schedule(spec), "[green]scheduled[/green]"
            )
        else:
            table.add_row(options.id, options.name, "-", "[yellow]ended[/yellow]")

    console.print(table)


if __name__ == "__main__":
    app()
