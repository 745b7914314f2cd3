"""CLI for calsync: one-shot sync, polling loop and schema migrations."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
import httpx

from calsync.auth import token_provider_from_env
from calsync.config import CalendarSyncConfig, ConfigError, load_config
from calsync.db import Database, resolve_database_url
from calsync.errors import CalendarCredentialError, ProviderError
from calsync.logging import configure_logging
from calsync.metrics import SyncMetrics, init_metrics
from calsync.migrations import run_migrations
from calsync.models import SyncOutcome
from calsync.provider import GoogleCalendarClient
from calsync.scheduler import SyncScheduler
from calsync.store import PostgresEventStore
from calsync.sync import CalendarSyncEngine

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("calsync.toml")
SERVICE_NAME = "calsync"


def build_engine(
    config: CalendarSyncConfig,
    pool,
    http_client: httpx.AsyncClient,
    metrics: SyncMetrics | None = None,
) -> CalendarSyncEngine:
    """Wire the provider client, the Postgres store and the engine from *config*."""
    sync_metrics = metrics or SyncMetrics()

    def _on_retry(error: ProviderError, delay_ms: int) -> None:
        sync_metrics.retry(error.code)

    token_provider = token_provider_from_env(
        http_client,
        credentials_env=config.credentials_env,
        access_token_env=config.access_token_env,
    )
    client = GoogleCalendarClient(
        token_provider,
        http_client=http_client,
        retry_policy=config.retry,
        page_size=config.page_size,
        on_retry=_on_retry,
    )
    return CalendarSyncEngine(
        client,
        PostgresEventStore(pool),
        calendar_ids=config.calendar_ids,
        runtime=config.runtime_settings(),
        page_cap=config.page_cap,
        batch_size=config.batch_size,
        detail_limit=config.detail_limit,
        concurrent_upserts=config.concurrent_upserts,
        metrics=sync_metrics,
    )


async def _run_sync(config: CalendarSyncConfig, calendars: list[str] | None) -> SyncOutcome:
    db = Database(resolve_database_url(config.database_url))
    pool = await db.connect()
    try:
        async with httpx.AsyncClient(timeout=30.0) as http_client:
            engine = build_engine(config, pool, http_client)
            return await engine.run_sync(calendars)
    finally:
        await db.close()


async def _run_poller(config: CalendarSyncConfig) -> None:
    db = Database(resolve_database_url(config.database_url))
    pool = await db.connect()
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    try:
        async with httpx.AsyncClient(timeout=30.0) as http_client:
            scheduler = SyncScheduler(
                build_engine(config, pool, http_client),
                pool=pool,
                interval_minutes=config.interval_minutes,
                min_interval_minutes=config.min_interval_minutes,
                stale_run_minutes=config.stale_run_minutes,
            )
            poller = asyncio.create_task(scheduler.run_forever())
            await shutdown_event.wait()
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
    finally:
        await db.close()


def _format_outcome(outcome: SyncOutcome) -> str:
    lines = [
        f"inserted={outcome.inserted} updated={outcome.updated} "
        f"skipped={outcome.skipped} deleted={outcome.deleted}"
        + (" (truncated)" if outcome.truncated else "")
    ]
    for summary in outcome.calendars:
        mode = "full" if summary.full_sync else "incremental"
        status = f"FAILED: {summary.error}" if summary.error else "ok"
        lines.append(
            f"  {summary.calendar_id}: {mode}, pages={summary.pages}, "
            f"fetched={summary.fetched}, excluded={summary.excluded} [{status}]"
        )
    for label in outcome.details.inserted:
        lines.append(f"  + {label}")
    for detail in outcome.details.updated:
        lines.append(f"  ~ {detail.summary}: {'; '.join(detail.changes)}")
    for label in outcome.details.deleted:
        lines.append(f"  - {label}")
    return "\n".join(lines)


def _load(ctx: click.Context) -> CalendarSyncConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=ctx.obj["log_level"] or config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.log_file,
    )
    init_metrics(SERVICE_NAME)
    return config


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the calsync TOML configuration",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, log_level: str | None) -> None:
    """calsync: incremental Google Calendar sync into PostgreSQL."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option(
    "--calendar",
    "calendars",
    multiple=True,
    help="Sync only this calendar id (repeatable); defaults to all configured calendars",
)
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON")
@click.pass_context
def sync(ctx: click.Context, calendars: tuple[str, ...], as_json: bool) -> None:
    """Run one sync pass over the configured calendars."""
    config = _load(ctx)
    try:
        outcome = asyncio.run(_run_sync(config, list(calendars) or None))
    except CalendarCredentialError as exc:
        click.echo(f"Credential error: {exc}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(outcome.model_dump_json(indent=2))
    else:
        click.echo(_format_outcome(outcome))

    if outcome.failed_calendars:
        sys.exit(1)


@cli.command()
@click.pass_context
def poll(ctx: click.Context) -> None:
    """Run the sync scheduler until interrupted."""
    config = _load(ctx)
    click.echo(
        f"Polling {len(config.calendar_ids)} calendar(s) every {config.interval_minutes} minute(s)"
    )
    try:
        asyncio.run(_run_poller(config))
    except CalendarCredentialError as exc:
        click.echo(f"Credential error: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Apply database migrations up to the latest revision."""
    config = _load(ctx)
    asyncio.run(run_migrations(resolve_database_url(config.database_url)))
    click.echo("Migrations applied")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
