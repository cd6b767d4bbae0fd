"""CLI for TimeFlow calendar sync: one-off runs, auto sync and the API server."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

import click

from timeflow.config import DEFAULT_CONFIG_PATH, ConfigError, TimeflowConfig, load_config
from timeflow.core.logging import configure_logging
from timeflow.models import ProviderKind, SyncConfig, SyncManagerResult
from timeflow.runtime import SyncRuntime


def _load(ctx: click.Context) -> TimeflowConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    log_file = Path(config.logging.file) if config.logging.file else None
    configure_logging(config.logging.level, config.logging.format, log_file)
    return config


async def _create_runtime(config: TimeflowConfig) -> SyncRuntime:
    return await SyncRuntime.create(config)


def format_result(result: SyncManagerResult) -> list[str]:
    """Render a run result as human-readable lines."""
    if result.skipped:
        return ["Sync skipped: another sync is already in progress"]
    lines: list[str] = []
    if not result.providers and not result.errors:
        lines.append("No connected providers to sync")
    for kind, report in result.providers.items():
        status = "ok" if report.success else "FAILED"
        local = report.to_local
        lines.append(
            f"{kind.value}: {status} "
            f"(created={local.created} updated={local.updated} unsynced={local.deleted}, "
            f"exported={report.to_remote.created + report.to_remote.updated})"
        )
        for error in (*local.errors, *report.to_remote.errors):
            lines.append(f"  - {error}")
    for error in result.errors:
        lines.append(f"error: {error}")
    return lines


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to timeflow.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """TimeFlow: sync Google and Microsoft calendars into the local store."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate the configuration file and print what it enables."""
    config = _load(ctx)
    providers = ", ".join(kind.value for kind in config.enabled_providers) or "none"
    click.echo(f"Providers: {providers}")
    click.echo(f"Mode: {config.sync.mode.value}")
    click.echo(f"Auto sync interval: {config.sync.auto_sync_interval_minutes:g} min")


@cli.command()
@click.argument("user_id")
@click.option("--parallel/--sequential", default=None, help="Sync providers concurrently")
@click.option(
    "--only",
    type=click.Choice([kind.value for kind in ProviderKind]),
    default=None,
    help="Sync a single provider",
)
@click.pass_context
def sync(ctx: click.Context, user_id: str, parallel: bool | None, only: str | None) -> None:
    """Run one sync for USER_ID and print the result."""
    config = _load(ctx)
    sync_config = SyncConfig(
        parallel=config.sync.parallel if parallel is None else parallel,
        sync_google=None if only is None else only == ProviderKind.GOOGLE.value,
        sync_microsoft=None if only is None else only == ProviderKind.MICROSOFT.value,
    )

    result = asyncio.run(_sync_once(config, user_id, sync_config))
    for line in format_result(result):
        click.echo(line)
    if not result.overall_success:
        sys.exit(1)


async def _sync_once(
    config: TimeflowConfig, user_id: str, sync_config: SyncConfig
) -> SyncManagerResult:
    runtime = await _create_runtime(config)
    try:
        return await runtime.manager_for(user_id).sync_all(sync_config)
    finally:
        await runtime.aclose()


@cli.command()
@click.argument("user_id")
@click.option("--interval", type=float, default=None, help="Minutes between syncs")
@click.pass_context
def autosync(ctx: click.Context, user_id: str, interval: float | None) -> None:
    """Keep USER_ID's calendars in sync until interrupted."""
    config = _load(ctx)
    if interval is not None and interval <= 0:
        raise click.BadParameter("must be positive", param_hint="--interval")
    asyncio.run(_run_autosync(config, user_id, interval))


async def _run_autosync(config: TimeflowConfig, user_id: str, interval: float | None) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    runtime = await _create_runtime(config)
    manager = runtime.manager_for(user_id)

    def _print_result(result: SyncManagerResult) -> None:
        for line in format_result(result):
            click.echo(line)

    manager.on_sync_complete(_print_result)
    manager.start_auto_sync(interval)
    try:
        await shutdown_event.wait()
    finally:
        await runtime.aclose()


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to [api].host)")
@click.option("--port", type=int, default=None, help="Port (defaults to [api].port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the sync HTTP API."""
    import uvicorn

    from timeflow.api.app import create_app

    config = _load(ctx)
    app = create_app(config=config)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
