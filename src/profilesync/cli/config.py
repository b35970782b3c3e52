"""Configuration commands for profilesync CLI.

Commands:
- init: Interactive first-time setup
- config show: Print the configuration (secrets masked)
- config set: Change one configuration key
- set-secret: Store a credential in the system keyring
"""

from __future__ import annotations

import sys
from dataclasses import fields
from typing import Any

import click
from keyring.errors import KeyringError

from profilesync.core.config import (
    SECRET_FIELDS,
    SyncConfig,
    get_config_file,
    load_config,
    save_config,
    store_secret,
)
from profilesync.core.types import BackendKind

# Prompted by init, per backend: (field, label)
BACKEND_FIELDS: dict[BackendKind, list[tuple[str, str]]] = {
    BackendKind.GITHUB: [
        ("github_username", "GitHub username"),
        ("github_repo", "Repository name"),
    ],
    BackendKind.WEBDAV: [
        ("webdav_url", "Server URL"),
        ("webdav_username", "Username"),
    ],
    BackendKind.GDRIVE: [
        ("gdrive_client_id", "OAuth client ID"),
    ],
}

BACKEND_SECRETS: dict[BackendKind, list[tuple[str, str]]] = {
    BackendKind.GITHUB: [("github_token", "Personal access token")],
    BackendKind.WEBDAV: [("webdav_password", "Password (or app password)")],
    BackendKind.GDRIVE: [
        ("gdrive_client_secret", "OAuth client secret"),
        ("gdrive_refresh_token", "OAuth refresh token"),
    ],
}


def mask_secrets(data: dict[str, Any]) -> dict[str, Any]:
    """Replace non-empty secret values with asterisks."""
    return {
        key: ("********" if key in SECRET_FIELDS and value else value)
        for key, value in data.items()
    }


def parse_value(key: str, raw: str) -> Any:
    """Convert a command-line string to the type of a SyncConfig field.

    Args:
        key: SyncConfig field name.
        raw: Value as typed by the user.

    Returns:
        The converted value.

    Raises:
        click.BadParameter: If the key is unknown or the value invalid.
    """
    defaults = {f.name: getattr(SyncConfig(), f.name) for f in fields(SyncConfig)}
    if key not in defaults:
        raise click.BadParameter(f"Unknown configuration key: {key}", param_hint="KEY")

    current = defaults[key]
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise click.BadParameter(f"Expected a boolean for {key}, got '{raw}'")
    if isinstance(current, (int, float)):
        try:
            return type(current)(raw)
        except ValueError:
            raise click.BadParameter(
                f"Expected a number for {key}, got '{raw}'"
            ) from None
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def save_secret(config: SyncConfig, name: str, value: str) -> bool:
    """Store a secret in the keyring, or in the config file if that fails.

    Returns:
        True if the keyring was used.
    """
    try:
        store_secret(name, value)
    except KeyringError as e:
        click.echo(f"Warning: keyring unavailable ({e}), storing {name} in the config file.")
        setattr(config, name, value)
        return False
    return True


@click.command()
@click.option(
    "--backend",
    type=click.Choice([k.value for k in BackendKind]),
    prompt="Storage backend",
    default=BackendKind.GITHUB.value,
    show_default=True,
    help="Where backups are stored.",
)
def init(backend: str) -> None:
    """Set up profilesync.

    Asks for the storage backend and its credentials. Secrets are
    stored in the system keyring when one is available.
    """
    config_file = get_config_file()
    if config_file.exists():
        click.echo("Error: profilesync already configured.", err=True)
        click.echo(f"Config file exists at: {config_file}", err=True)
        click.echo("\nUse 'profilesync config set' to change it.")
        sys.exit(1)

    kind = BackendKind(backend)
    config = SyncConfig(backend=kind.value)

    for name, label in BACKEND_FIELDS[kind]:
        setattr(config, name, click.prompt(label))
    for name, label in BACKEND_SECRETS[kind]:
        value = click.prompt(label, hide_input=True)
        save_secret(config, name, value)

    # Normalize prompted URLs
    config.__post_init__()
    save_config(config)

    click.echo(click.style("\nprofilesync configured.", fg="green"))
    click.echo(f"  Backend: {kind.value}")
    click.echo(f"  Config:  {config_file}")
    click.echo("\nRun 'profilesync sync' to make the first backup.")


@click.group()
def config() -> None:
    """Show or change the configuration."""


@config.command("show")
def config_show() -> None:
    """Print the configuration with secrets masked."""
    data = mask_secrets(load_config().to_dict())
    click.echo(f"# {get_config_file()}")
    for key, value in data.items():
        if isinstance(value, list):
            value = ", ".join(value) if value else "(none)"
        click.echo(f"{key} = {value}")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set KEY to VALUE.

    Lists are given comma-separated, e.g.
    profilesync config set sync_files "~/.bashrc,~/.gitconfig"
    """
    if key in SECRET_FIELDS:
        click.echo(f"Error: {key} is a secret. Use 'profilesync set-secret {key}'.", err=True)
        sys.exit(1)

    parsed = parse_value(key, value)
    if key == "backend" and parsed not in {k.value for k in BackendKind}:
        names = ", ".join(k.value for k in BackendKind)
        raise click.BadParameter(f"Backend must be one of: {names}", param_hint="VALUE")

    cfg = load_config()
    setattr(cfg, key, parsed)
    cfg.__post_init__()
    save_config(cfg)
    click.echo(f"{key} = {parsed}")


@click.command("set-secret")
@click.argument("name", type=click.Choice(sorted(SECRET_FIELDS)))
def set_secret(name: str) -> None:
    """Store the credential NAME in the system keyring."""
    value = click.prompt(name, hide_input=True, confirmation_prompt=True)
    cfg = load_config()
    if save_secret(cfg, name, value):
        click.echo(f"Stored {name} in the system keyring.")
    else:
        save_config(cfg)
