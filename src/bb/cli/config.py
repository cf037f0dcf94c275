"""
Configuration commands for bb.

``bb config`` reads and writes the preferences in ``config.yml``. With
``--host``, the per-host ``git_protocol`` stored in ``hosts.yml`` is used
instead.
"""

import click

from bb.core.config import SETTING_VALIDATORS, get_config
from bb.core.exceptions import ValidationError
from bb.core.hosts import HostsConfig
from bb.utils.output import OutputFormatter

HOST_KEYS = ("git_protocol",)

KEYS_HELP = """
\b
Available keys:
  git_protocol         The protocol to use for git operations (ssh, https)
  editor               The editor to use for composing text
  prompt               Whether to enable interactive prompts (enabled, disabled)
  pager                The pager to use for output
  browser              The browser command used to open URLs
  http_timeout         HTTP request timeout in seconds
  oauth_callback_port  Default local port for the OAuth callback (0 picks one)
  default_workspace    Workspace used when none is given
"""


def _check_host_key(key: str) -> None:
    if key not in HOST_KEYS:
        raise ValidationError(
            f"{key} cannot be set per host",
            suggestion=f"Per-host keys: {', '.join(HOST_KEYS)}",
        )


@click.group()
def config() -> None:
    """Manage bb configuration."""


@config.command("get")
@click.argument("key")
@click.option("--host", "-h", help="Get per-host configuration")
@click.pass_context
def get_value(ctx: click.Context, key: str, host: str | None) -> None:
    """Print the value of a configuration key."""
    key = key.lower()
    if host:
        _check_host_key(key)
        click.echo(HostsConfig.load().get_git_protocol(host))
        return

    if key not in SETTING_VALIDATORS:
        raise ValidationError(
            f"Unknown configuration key: {key}",
            suggestion=f"Valid keys: {', '.join(SETTING_VALIDATORS)}",
        )
    value = get_config().get(key)
    click.echo("" if value is None else str(value))


@config.command("set", epilog=KEYS_HELP)
@click.argument("key")
@click.argument("value")
@click.option("--host", "-h", help="Set per-host configuration")
@click.pass_context
def set_value(ctx: click.Context, key: str, value: str, host: str | None) -> None:
    """Update configuration with a value for the given key."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    key = key.lower()

    if host:
        _check_host_key(key)
        with HostsConfig.edit() as registry:
            registry.set_git_protocol(host, value)
        formatter.success(f"Set {key} to {value} for {host}", details={"key": key, "value": value, "host": host})
        return

    stored = get_config().set(key, value)
    formatter.success(f"Set {key} to {stored}", details={"key": key, "value": stored})


@config.command("list")
@click.option("--host", "-h", help="List per-host configuration")
@click.pass_context
def list_values(ctx: click.Context, host: str | None) -> None:
    """Print a list of configuration keys and values."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    if host:
        registry = HostsConfig.load()
        data = {"git_protocol": registry.get_git_protocol(host)}
        user = registry.get_active_user(host)
        if user:
            data["user"] = user
    else:
        values = get_config().get_all()
        data = {key: values.get(key) for key in SETTING_VALIDATORS}

    if formatter.is_structured:
        formatter.format_output(data)
        return
    for key, value in data.items():
        click.echo(f"{key}={'' if value is None else value}")
