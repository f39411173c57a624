"""Command-line entry point: ``relay-ingest``."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from ..adapters.registry import PluginRegistry
from ..engine.materializer import (
    DryRunMaterializer,
    InMemoryTaskMaterializer,
    KafkaTaskMaterializer,
    TaskMaterializer,
)
from ..engine.service import IngestionEngine
from ..engine.state import InMemoryStateStore, StateStore
from ..exceptions import ConfigurationError
from ..schemas.source import IntegrationSource
from ..utils.config import GlobalSettings, get_settings, load_sources
from ..utils.logging import setup_logger
from ..utils.reload import SourceFileReloader
from ..utils.secrets import build_secret_resolver
from ..utils.signals import ShutdownCoordinator, install_signal_handlers

logger = setup_logger(__name__, component="cli")


def _load(sources_file: Path) -> list[IntegrationSource]:
    try:
        return load_sources(sources_file)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


def _find_source(sources: list[IntegrationSource], source_id: str) -> IntegrationSource:
    for source in sources:
        if source.id == source_id:
            return source
    known = ", ".join(source.id for source in sources) or "none"
    raise click.ClickException(f"Unknown source '{source_id}'. Configured sources: {known}")


def build_state_store(settings: GlobalSettings) -> StateStore:
    """SQL-backed store when a database URL is configured, in-memory otherwise."""
    if settings.database_url:
        from ..models.repository import SqlStateStore

        return SqlStateStore.from_url(settings.database_url)
    logger.warning("RELAY_DATABASE_URL not set; cursor state will not survive restarts")
    return InMemoryStateStore()


def build_materializer(settings: GlobalSettings, *, dry_run: bool) -> TaskMaterializer:
    if dry_run:
        return DryRunMaterializer()
    if settings.kafka_bootstrap_servers:
        return KafkaTaskMaterializer(settings=settings)
    logger.warning("Kafka not configured; work items are only logged in memory")
    return InMemoryTaskMaterializer()


@click.group()
@click.option(
    "--sources",
    "sources_file",
    type=click.Path(path_type=Path),
    default=None,
    help="Sources YAML file (defaults to RELAY_SOURCES_FILE)",
)
@click.option(
    "--plugin-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory with user plugins (defaults to RELAY_PLUGIN_DIR)",
)
@click.pass_context
def cli(ctx: click.Context, sources_file: Path | None, plugin_dir: Path | None) -> None:
    """Multi-protocol message ingestion engine."""
    settings = get_settings()
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["sources_file"] = sources_file or settings.sources_file
    ctx.obj["registry"] = PluginRegistry(settings, plugin_dir=plugin_dir)


@cli.command("plugins")
@click.option("--json", "output_json", is_flag=True, help="Output plugin metadata as JSON")
@click.pass_context
def plugins_command(ctx: click.Context, output_json: bool) -> None:
    """List discovered adapter plugins."""
    infos = ctx.obj["registry"].infos()
    if output_json:
        click.echo(json.dumps([info.model_dump(by_alias=True) for info in infos], indent=2))
        return

    for info in infos:
        if not info.enabled:
            click.echo(f"  ✗ {info.type:<10} failed to load: {info.error}")
            continue
        flags = [name for name, on in info.capabilities.model_dump().items() if on]
        origin = "built-in" if info.is_builtin else info.path or "plugin"
        click.echo(
            f"  ✓ {info.type:<10} {info.name} v{info.version} "
            f"[{', '.join(flags) or 'poll'}] ({origin})"
        )


@cli.command("validate")
@click.pass_context
def validate_command(ctx: click.Context) -> None:
    """Validate every configured source without network access."""
    registry: PluginRegistry = ctx.obj["registry"]
    sources = _load(ctx.obj["sources_file"])
    failures = 0
    for source in sources:
        result = registry.validate_source(source)
        state = "" if source.enabled else " (disabled)"
        if result.valid:
            click.echo(f"  ✓ {source.id} [{source.type}]{state}")
        else:
            failures += 1
            click.echo(f"  ✗ {source.id} [{source.type}]{state}: {result.error}")
    click.echo(f"{len(sources) - failures}/{len(sources)} source(s) valid")
    if failures:
        raise SystemExit(1)


def _print_test_result(source: IntegrationSource, result: Any) -> None:
    if result.ok:
        click.echo(f"✓ {source.id}: {result.message}")
    else:
        click.echo(f"✗ {source.id} [{result.category or 'error'}]: {result.message}")
    for sample in result.sample_items:
        click.echo(f"    - {sample.get('title') or sample.get('id')}")


@cli.command("test")
@click.argument("source_id")
@click.pass_context
def test_command(ctx: click.Context, source_id: str) -> None:
    """Make one real request for SOURCE_ID and diagnose connectivity."""
    registry: PluginRegistry = ctx.obj["registry"]
    settings: GlobalSettings = ctx.obj["settings"]
    source = _find_source(_load(ctx.obj["sources_file"]), source_id)

    validation = registry.validate_source(source)
    if not validation.valid:
        click.echo(f"✗ {source.id} [configuration]: {validation.error}")
        raise SystemExit(1)

    adapter = registry.create(source.type).bind(source)
    result = asyncio.run(adapter.test(source, build_secret_resolver(settings)))
    _print_test_result(source, result)
    if not result.ok:
        raise SystemExit(1)


async def run_engine(
    engine: IngestionEngine,
    reloader: SourceFileReloader,
    sources: list[IntegrationSource],
    *,
    watch: bool = True,
) -> None:
    """Run until SIGTERM/SIGINT; SIGHUP and file changes reconcile sources."""
    coordinator = ShutdownCoordinator()
    coordinator.register_handler(engine.stop)

    def _reload() -> Any:
        try:
            fresh = reloader.load()
        except ConfigurationError as exc:
            logger.error(f"Reload failed, keeping current sources: {exc}")
            return None
        return engine.reconcile(fresh)

    install_signal_handlers(coordinator, asyncio.get_running_loop(), reload_fn=_reload)

    await engine.start(sources)
    watcher = asyncio.create_task(engine.watch_config(reloader)) if watch else None
    try:
        await coordinator.wait_for_stop_request()
    finally:
        if watcher is not None:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
        await coordinator.shutdown()


@cli.command("run")
@click.option("--source", "source_id", default=None, help="Run only this source")
@click.option("--dry-run", is_flag=True, help="Log items instead of creating work items")
@click.pass_context
def run_command(ctx: click.Context, source_id: str | None, dry_run: bool) -> None:
    """Start polling and realtime sessions until interrupted."""
    settings: GlobalSettings = ctx.obj["settings"]
    registry: PluginRegistry = ctx.obj["registry"]
    reloader = SourceFileReloader(ctx.obj["sources_file"])
    try:
        sources = reloader.load()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    if source_id is not None:
        sources = [_find_source(sources, source_id)]

    registry.discover()
    click.echo(f"Discovered plugin(s): {', '.join(registry.types()) or 'none'}")

    engine = IngestionEngine(
        registry,
        build_state_store(settings),
        build_materializer(settings, dry_run=dry_run),
        build_secret_resolver(settings),
        settings,
    )
    asyncio.run(run_engine(engine, reloader, sources, watch=source_id is None))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
