"""CLI for the calendar sync engine."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from calsync.config import ConfigError, SyncConfig, load_config
from calsync.db import Database
from calsync.logging import configure_logging
from calsync.models import RunStatus, SyncOutcome
from calsync.orchestrator import SyncOrchestrator, build_orchestrator
from calsync.storage import PostgresCredentialRepository
from calsync.telemetry import init_telemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG, then ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: per-tenant Google Calendar synchronization."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> SyncConfig:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(config.logging.level, config.logging.format)
    init_telemetry("calsync")
    return config


async def _with_orchestrator(
    config: SyncConfig, fn: Callable[[SyncOrchestrator], Awaitable[T]]
) -> T:
    database = Database.from_config(config.database)
    pool = await database.connect()
    orchestrator = build_orchestrator(config, pool)
    try:
        return await fn(orchestrator)
    finally:
        await orchestrator.aclose()
        await database.close()


def _echo_outcome(outcome: SyncOutcome) -> None:
    click.echo(json.dumps({"tenant_id": outcome.tenant_id, **outcome.to_payload()}))


@cli.command()
@click.argument("tenant_id")
@click.option("--force", is_flag=True, help="Ignore the cooldown since the last run")
@click.pass_context
def sync(ctx: click.Context, tenant_id: str, force: bool) -> None:
    """Run one sync for TENANT_ID and print the outcome as JSON."""
    config = _load(ctx)
    outcome = asyncio.run(
        _with_orchestrator(config, lambda orch: orch.sync_now(tenant_id, force=force))
    )
    _echo_outcome(outcome)
    if outcome.status is RunStatus.failed:
        sys.exit(1)


@cli.command("sync-all")
@click.pass_context
def sync_all(ctx: click.Context) -> None:
    """Run one sync for every tenant with an active integration."""
    config = _load(ctx)
    outcomes = asyncio.run(_with_orchestrator(config, lambda orch: orch.sync_all()))
    for outcome in outcomes:
        _echo_outcome(outcome)
    failed = [o for o in outcomes if o.status is RunStatus.failed]
    click.echo(f"Synced {len(outcomes) - len(failed)} of {len(outcomes)} tenant(s)")
    if failed:
        sys.exit(1)


@cli.command()
@click.option(
    "--interval",
    "interval_minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Minutes between passes (defaults to sync.interval_minutes)",
)
@click.pass_context
def poll(ctx: click.Context, interval_minutes: int | None) -> None:
    """Run sync-all on a fixed interval until interrupted."""
    config = _load(ctx)
    interval = interval_minutes or config.sync.interval_minutes
    click.echo(f"Polling every {interval} minute(s)")
    asyncio.run(_with_orchestrator(config, lambda orch: _poll_forever(orch, interval * 60)))


async def _poll_forever(orchestrator: SyncOrchestrator, interval_s: float) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    while not shutdown_event.is_set():
        try:
            outcomes = await orchestrator.sync_all()
        except Exception:
            logger.exception("Poll pass failed; retrying in %.0fs", interval_s)
        else:
            failed = sum(1 for o in outcomes if o.status is RunStatus.failed)
            logger.info("Poll pass finished: %d tenant(s), %d failed", len(outcomes), failed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
        except TimeoutError:
            continue


@cli.command()
@click.argument("tenant_id")
@click.pass_context
def disconnect(ctx: click.Context, tenant_id: str) -> None:
    """Delete TENANT_ID's calendar credential; the tenant must re-authorize."""
    config = _load(ctx)

    async def _delete() -> bool:
        database = Database.from_config(config.database)
        pool = await database.connect()
        try:
            return await PostgresCredentialRepository(pool).delete(tenant_id)
        finally:
            await database.close()

    if asyncio.run(_delete()):
        click.echo(f"Disconnected calendar integration for tenant {tenant_id}")
    else:
        click.echo(f"No calendar integration found for tenant {tenant_id}")
        sys.exit(1)


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Apply database migrations up to head."""
    from calsync.migrations import run_migrations

    config = _load(ctx)
    run_migrations(config.database.dsn())
    click.echo("Migrations applied")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the sync trigger API."""
    import uvicorn

    from calsync.api.app import create_app

    config = _load(ctx)
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)
