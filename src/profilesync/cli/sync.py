"""Sync commands for profilesync CLI.

Commands:
- sync: Back up and/or restore once
- watch: Run the engine until interrupted
- status: Show what is configured
- poll: Check the remote store for changes once
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

import click

from profilesync.backends import create_backend
from profilesync.core.config import SyncConfig, get_config_file, load_config
from profilesync.notifications import notify_error
from profilesync.sync.dispatcher import RequestDispatcher
from profilesync.sync.engine import SyncEngine
from profilesync.sync.snapshot import GSettingsStore
from profilesync.sync.tokens import ChangeTokenCache
from profilesync.sync.types import (
    ConfigurationError,
    RestoreReport,
    SyncError,
    SyncOutcome,
    UploadReport,
)


def build_engine(config: SyncConfig) -> SyncEngine:
    """Create an engine on the desktop's settings store.

    Exits with an error if gsettings is not installed.
    """
    if not GSettingsStore.is_available():
        click.echo("Error: gsettings not found. profilesync needs a GNOME desktop.", err=True)
        sys.exit(1)
    return SyncEngine(config, GSettingsStore())


def echo_report(report: Any) -> None:
    """Print an upload or restore report."""
    if isinstance(report, tuple):
        for part in report:
            echo_report(part)
        return

    if isinstance(report, UploadReport):
        if not report.network_used:
            click.echo("Backup: nothing changed")
            return
        click.echo(f"Backup: {len(report.uploaded)} uploaded, {len(report.skipped)} unchanged")
        for path in report.uploaded:
            click.echo(f"  ↑ {path}")
        for path in report.failed:
            click.echo(click.style(f"  ✗ {path}", fg="red"))
        if report.revision:
            click.echo(f"  Revision: {report.revision}")

    elif isinstance(report, RestoreReport):
        if not report.found:
            click.echo("Restore: no backup on the remote store yet")
            return
        click.echo(
            f"Restore: {report.keys_applied} keys in {len(report.schemas_applied)} schemas"
        )
        if report.keys_failed:
            click.echo(click.style(f"  {report.keys_failed} keys could not be set", fg="yellow"))
        for schema in report.schemas_skipped:
            click.echo(f"  - {schema} (not installed)")
        for path in report.files_restored:
            click.echo(f"  ↓ {path}")
        for path in report.wallpapers_restored:
            click.echo(f"  ↓ {path}")


async def _run_sync(engine: SyncEngine, direction: str) -> SyncOutcome:
    try:
        if direction == "out":
            return await engine.sync_out(allow_queue=False)
        if direction == "in":
            return await engine.sync_in(allow_queue=False)
        return await engine.sync_both(allow_queue=False)
    finally:
        await engine.close()


@click.command()
@click.option(
    "--direction",
    "-d",
    type=click.Choice(["out", "in", "both"]),
    default="both",
    show_default=True,
    help="out: back up, in: restore, both: back up then restore.",
)
def sync(direction: str) -> None:
    """Synchronize settings with the remote store once."""
    engine = build_engine(load_config())

    try:
        outcome = asyncio.run(_run_sync(engine, direction))
    except SyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    echo_report(outcome.value)
    click.echo(click.style(engine.orchestrator.status_text, fg="green"))


async def _watch(engine: SyncEngine, session: bool, monitor_settings: bool) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await engine.start(watch=True, monitor_settings=monitor_settings)
    try:
        if session:
            try:
                echo_report((await engine.on_login()).value)
            except SyncError as e:
                click.echo(f"Restore failed: {e}", err=True)
                notify_error(f"Restore failed: {e}")

        click.echo("Watching for changes. Press Ctrl+C to stop.")
        await stop.wait()

        if session:
            try:
                echo_report((await engine.on_logout()).value)
            except SyncError as e:
                click.echo(f"Backup failed: {e}", err=True)
                notify_error(f"Backup failed: {e}")
    finally:
        await engine.close()


@click.command()
@click.option(
    "--session/--no-session",
    default=True,
    show_default=True,
    help="Restore at start and back up at exit.",
)
@click.option(
    "--monitor-settings/--no-monitor-settings",
    default=True,
    show_default=True,
    help="Follow settings changes with 'gsettings monitor'.",
)
def watch(session: bool, monitor_settings: bool) -> None:
    """Run continuously: back up local changes, poll for remote ones."""
    config = load_config()
    engine = build_engine(config)
    if config.poll_enabled:
        click.echo(f"Polling {engine.backend.name} every {config.poll_interval} min")

    asyncio.run(_watch(engine, session, monitor_settings))
    click.echo("Stopped.")


@click.command()
def status() -> None:
    """Show the configured backend and what is synced."""
    config = load_config()
    config_file = get_config_file()

    try:
        backend = create_backend(config.backend, RequestDispatcher(), ChangeTokenCache())
    except SyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    credentials_ok = backend.has_valid_credentials(backend.get_credentials(config))

    click.echo(f"Config:       {config_file}{'' if config_file.exists() else ' (missing)'}")
    click.echo(f"Backend:      {backend.name}")
    if credentials_ok:
        click.echo(f"Credentials:  {click.style('configured', fg='green')}")
    else:
        click.echo(f"Credentials:  {click.style('missing', fg='red')}")
    click.echo(f"Schemas:      {len(config.schemas)}")
    click.echo(f"Files:        {len(config.sync_files)}")
    click.echo(f"Wallpapers:   {'on' if config.sync_wallpapers else 'off'}")
    if config.poll_enabled:
        auto = ", auto-restore" if config.auto_sync_remote else ""
        click.echo(f"Remote poll:  every {config.poll_interval} min{auto}")
    else:
        click.echo("Remote poll:  off")
    gsettings = "found" if GSettingsStore.is_available() else "not found"
    click.echo(f"gsettings:    {gsettings}")


async def _poll_remote(config: SyncConfig) -> tuple[str, str | None, str]:
    dispatcher = RequestDispatcher(config.max_concurrency)
    tokens = ChangeTokenCache()
    backend = create_backend(config.backend, dispatcher, tokens, timeout=config.timeout)
    try:
        credentials = backend.get_credentials(config)
        if not backend.has_valid_credentials(credentials):
            raise ConfigurationError(f"{backend.name} credentials are not configured")
        result = await backend.poll_for_changes(credentials)
        return backend.name, result.revision, backend.tokens.status(backend.token_key).status_text
    finally:
        dispatcher.shutdown()
        await backend.cleanup()


@click.command()
def poll() -> None:
    """Check the remote store for a new backup."""
    try:
        name, revision, status_text = asyncio.run(_poll_remote(load_config()))
    except SyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"{name}: {status_text}")
    if revision:
        click.echo(f"  Revision: {revision}")
