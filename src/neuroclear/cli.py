"""CLI commands for neuroclear."""

import click


def _load_config():
    """Load config, exiting with a message if the file is invalid."""
    from neuroclear.config import Config

    try:
        return Config.load()
    except ValueError as e:
        click.echo(f"Error: invalid config: {e}", err=True)
        raise SystemExit(1) from e


@click.group()
@click.version_option(package_name="neuroclear")
def main() -> None:
    """Triage running processes with AI classification."""
    pass


@main.command()
@click.option(
    "--source",
    type=click.Choice(["mock", "live"]),
    default=None,
    help="Inventory source (defaults to config)",
)
def tui(source: str | None) -> None:
    """Launch interactive dashboard."""
    from neuroclear.tui import run_tui

    config = _load_config()
    run_tui(config, source=source)


@main.command()
@click.option("--deep", is_flag=True, help="Use the exhaustive reasoning profile")
@click.option(
    "--source",
    type=click.Choice(["mock", "live"]),
    default=None,
    help="Inventory source (defaults to config)",
)
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
def scan(deep: bool, source: str | None, fmt: str) -> None:
    """Classify the top processes once and print the triage.

    Nothing is terminated; the recommended selection is only listed.
    """
    import asyncio
    import json

    from neuroclear import logging as nc_log
    from neuroclear.engine import Notification, NotificationKind, ScanOutcome, TriageEngine
    from neuroclear.formatting import format_category, format_mb, format_risk, format_safe
    from neuroclear.inventory import load_inventory
    from neuroclear.models import ScanMode
    from neuroclear.service import GeminiService

    config = _load_config()
    nc_log.configure(config, source="cli")

    service = GeminiService(config.service)
    if not service.has_api_key:
        nc_log.missing_api_key(config.service.api_key_env)
        raise SystemExit(1)

    notifications: list[Notification] = []
    records = load_inventory(config.inventory, source=source)
    engine = TriageEngine.from_config(records, service, config, on_notify=notifications.append)
    if deep:
        engine.set_mode(ScanMode.DEEP)

    batch_count = min(len(records), engine.batch_size)
    if fmt == "table":
        nc_log.scan_started(batch_count, engine.mode.value)

    outcome = asyncio.run(engine.scan())
    snapshot = engine.snapshot()

    if outcome is ScanOutcome.NOT_CONFIGURED:
        nc_log.missing_api_key(config.service.api_key_env)
        raise SystemExit(1)
    if outcome is ScanOutcome.FAILED:
        for note in notifications:
            if note.kind is NotificationKind.SCAN_FAILED:
                nc_log.scan_failed(note.message)
        raise SystemExit(1)
    if outcome is ScanOutcome.REJECTED:
        click.echo("No processes to analyze.")
        return

    if fmt == "json":
        data = [
            {
                "id": r.id,
                "name": r.name,
                "pid": r.pid,
                "memory_mb": r.memory_mb,
                "category": r.category.value if r.category else None,
                "risk_level": r.risk_level.value if r.risk_level else None,
                "safe_to_kill": r.safe_to_kill,
                "description": r.description,
                "selected": r.id in snapshot.selected,
            }
            for r in snapshot.records
        ]
        click.echo(json.dumps(data, indent=2))
        return

    nc_log.scan_completed(batch_count, len(snapshot.selected))
    click.echo(
        f"{'':2}{'Name':28}  {'PID':>7}  {'Memory':>9}  {'Category':>10}  "
        f"{'Risk':>8}  {'Safe':>4}"
    )
    click.echo("-" * 78)
    for r in snapshot.records:
        mark = "*" if r.id in snapshot.selected else " "
        click.echo(
            f"{mark:2}{r.name[:28]:28}  {r.pid:>7}  {format_mb(r.memory_mb):>9}  "
            f"{format_category(r):>10}  {format_risk(r):>8}  {format_safe(r):>4}"
        )

    click.echo()
    if snapshot.selected:
        click.echo(
            f"Recommended: {len(snapshot.selected)} processes, "
            f"{format_mb(snapshot.selected_memory_mb)} reclaimable"
        )
    else:
        click.echo("Nothing recommended for termination.")


@main.command()
@click.argument("name")
def lookup(name: str) -> None:
    """Look up what a process is and whether it is safe to disable."""
    import asyncio

    from neuroclear import logging as nc_log
    from neuroclear.errors import EnrichmentFailure
    from neuroclear.service import GeminiService

    config = _load_config()
    nc_log.configure(config, source="cli")

    service = GeminiService(config.service)
    if not service.has_api_key:
        nc_log.missing_api_key(config.service.api_key_env)
        raise SystemExit(1)

    try:
        text = asyncio.run(service.lookup(name))
    except EnrichmentFailure as e:
        nc_log.lookup_failed(name)
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e

    click.echo(text)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[scan]")
    click.echo(f"  batch_size = {cfg.scan.batch_size}")
    click.echo(f"  default_mode = {cfg.scan.default_mode}")
    click.echo(f"  total_memory_gb = {cfg.scan.total_memory_gb}")
    click.echo()
    click.echo("[service]")
    click.echo(f"  api_key_env = {cfg.service.api_key_env}")
    click.echo(f"  api_key = {'set' if cfg.service.resolve_api_key() else 'missing'}")
    click.echo(f"  quick_model = {cfg.service.quick_model}")
    click.echo(f"  deep_model = {cfg.service.deep_model}")
    click.echo(f"  lookup_model = {cfg.service.lookup_model}")
    click.echo()
    click.echo("[inventory]")
    click.echo(f"  source = {cfg.inventory.source}")
    click.echo(f"  min_memory_mb = {cfg.inventory.min_memory_mb}")
    click.echo(f"  max_processes = {cfg.inventory.max_processes}")
    click.echo(f"  protected_names = {len(cfg.inventory.protected_names)} names")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from neuroclear import logging as nc_log

    cfg = _load_config()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        nc_log.config_created(str(cfg.config_path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from neuroclear.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
