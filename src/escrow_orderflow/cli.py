"""Typer CLI for the escrow orderflow services."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal

import typer
from pydantic import ValidationError

from escrow_orderflow.config import Settings, get_settings
from escrow_orderflow.pipeline import ConsumerRole, ConsumerService, ListenerService, run_replay
from escrow_orderflow.projector.replay import VerifyReport
from escrow_orderflow.retry import RetryError
from escrow_orderflow.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="escrow-orderflow",
    help="Escrow orderflow: on-chain escrow events -> bus -> store, risk and notifications.",
    no_args_is_help=True,
)


def _load_settings() -> Settings:
    try:
        settings = get_settings()
    except ValidationError as e:
        typer.echo(f"Invalid configuration:\n{e}", err=True)
        raise typer.Exit(2) from e
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


async def _run_until_signal(service: ListenerService | ConsumerService) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, service.request_stop)
    await service.run()


def _run_service(service: ListenerService | ConsumerService) -> None:
    try:
        asyncio.run(_run_until_signal(service))
    except RetryError as e:
        logger.error("Fatal: %s (last error: %s)", e, e.last_exception)
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        pass


def _run_consumer(role: ConsumerRole) -> None:
    settings = _load_settings()
    settings.validate_requirements(command=role)
    _run_service(ConsumerService(settings, role=role))


@app.command()
def listen() -> None:
    """Subscribe to program logs and publish normalized events."""
    settings = _load_settings()
    try:
        settings.validate_requirements(command="listen")
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from e
    _run_service(ListenerService(settings))


@app.command()
def store() -> None:
    """Project events into the event log and offer snapshots."""
    _run_consumer("store")


@app.command()
def risk() -> None:
    """Evaluate risk rules and publish alerts."""
    _run_consumer("risk")


@app.command()
def notify() -> None:
    """Deliver event and alert notifications."""
    _run_consumer("notify")


@app.command()
def replay(
    verify: bool = typer.Option(
        False,
        "--verify",
        help="Only compare stored offers with a projection of the log; change nothing.",
    ),
) -> None:
    """Rebuild the offer snapshots from the event log (stop the store service first)."""
    settings = _load_settings()
    settings.validate_requirements(command="replay")
    report = asyncio.run(run_replay(settings, verify=verify))
    if isinstance(report, VerifyReport):
        typer.echo(
            f"Checked {report.offers_checked} offers from {report.events_read} events: "
            f"{len(report.missing)} missing, {len(report.unexpected)} unexpected, "
            f"{len(report.mismatched)} mismatched"
        )
        for offer_id in report.missing + report.unexpected + report.mismatched:
            typer.echo(f"  {offer_id}")
        if not report.ok:
            raise typer.Exit(1)
        return
    outcomes = json.dumps(dict(report.outcomes), sort_keys=True)
    typer.echo(f"Replayed {report.events_replayed} events: {outcomes}")


@app.command(name="init-db")
def init_db() -> None:
    """Create the tables directly (development; use Alembic in production)."""
    settings = _load_settings()

    async def _init() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    asyncio.run(_init())
    typer.echo("Database schema initialized")


@app.command(name="show-config")
def show_config() -> None:
    """Print the effective configuration with secrets redacted."""
    settings = _load_settings()
    typer.echo(json.dumps(settings.redacted_summary(), indent=2))
