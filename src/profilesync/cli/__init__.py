"""Command-line interface for profilesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Interactive first-time setup
- config show / config set: Inspect and change the configuration
- set-secret: Store a credential in the system keyring
- sync: Back up and/or restore once
- watch: Run the sync engine until interrupted
- status: Show what is configured
- poll: Check the remote store for changes once
"""

from __future__ import annotations

import logging

import click

from profilesync import __version__
from profilesync.cli.config import config, init, set_secret
from profilesync.cli.sync import poll, status, sync, watch

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """Send profilesync log records to stderr.

    Args:
        verbose: Log at DEBUG instead of INFO.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))

    package_logger = logging.getLogger("profilesync")
    for existing in package_logger.handlers[:]:
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


@click.group()
@click.version_option(__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """profilesync - Desktop settings backup and sync."""
    configure_logging(verbose)


# Configuration commands
cli.add_command(init)
cli.add_command(config)
cli.add_command(set_secret)

# Sync commands
cli.add_command(sync)
cli.add_command(watch)
cli.add_command(status)
cli.add_command(poll)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "configure_logging",
    "main",
]
