"""
Authentication commands for bb.

This module provides commands for logging in to Bitbucket (OAuth 2.0 in the
browser, or a token piped on stdin), logging out, switching between
accounts, checking status, and printing the active token.
"""

import click

from bb.core.auth_manager import AuthManager, AuthState
from bb.core.config import DEFAULT_HOST, GIT_PROTOCOLS
from bb.core.exceptions import ValidationError
from bb.utils.output import OutputFormatter
from bb.utils.validation import validate_hostname


def _hostname_callback(ctx: click.Context, param: click.Parameter, value: str) -> str:
    try:
        return validate_hostname(value)
    except ValidationError as e:
        raise click.BadParameter(e.message) from e


hostname_option = click.option(
    "--hostname",
    "-h",
    default=DEFAULT_HOST,
    show_default=True,
    callback=_hostname_callback,
    help="Bitbucket hostname",
)


@click.group()
def auth() -> None:
    """Manage authentication with Bitbucket."""


@auth.command()
@hostname_option
@click.option("--with-token", is_flag=True, help="Read a token from standard input")
@click.option("--port", type=click.IntRange(0, 65535), help="Local port for the OAuth callback")
@click.option("--no-browser", is_flag=True, help="Print the authorization URL instead of opening a browser")
@click.option(
    "--git-protocol",
    "-p",
    type=click.Choice(GIT_PROTOCOLS),
    help="Protocol to use for git operations on this host",
)
@click.pass_context
def login(
    ctx: click.Context,
    hostname: str,
    with_token: bool,
    port: int | None,
    no_browser: bool,
    git_protocol: str | None,
) -> None:
    """
    Authenticate with Bitbucket.

    By default this runs the OAuth 2.0 Authorization Code flow: a browser is
    opened on Bitbucket's consent page and a local server receives the
    redirect. The OAuth consumer is read from BB_OAUTH_CLIENT_ID and
    BB_OAUTH_CLIENT_SECRET.

    With --with-token, the first line of standard input is stored as the
    token instead:

        echo "$TOKEN" | bb auth login --with-token
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    auth_manager = AuthManager()

    if with_token:
        user = auth_manager.login_with_token(
            hostname,
            click.get_text_stream("stdin"),
            git_protocol=git_protocol,
        )
    else:
        user = auth_manager.login_oauth(
            hostname,
            port=port,
            launch_browser=not no_browser,
            git_protocol=git_protocol,
            notify=formatter.info,
        )

    formatter.success(
        f"Logged in as {user.username}",
        details={"hostname": hostname, "user": user.username, "display_name": user.display_name},
    )


@auth.command()
@hostname_option
@click.option("--user", "-u", help="User to log out (defaults to the active user)")
@click.pass_context
def logout(ctx: click.Context, hostname: str, user: str | None) -> None:
    """Remove a stored credential for a Bitbucket host."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    removed = AuthManager().logout(hostname, user)
    if removed is None:
        formatter.info(f"Not logged in to {hostname}")
        return
    formatter.success(f"Logged out of {hostname} as {removed}", details={"hostname": hostname, "user": removed})


@auth.command()
@hostname_option
@click.option("--user", "-u", required=True, help="Account to make active")
@click.pass_context
def switch(ctx: click.Context, hostname: str, user: str) -> None:
    """Switch the active account for a Bitbucket host."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    AuthManager().switch(hostname, user)
    formatter.success(f"Switched active account for {hostname} to {user}", details={"hostname": hostname, "user": user})


@auth.command()
@hostname_option
@click.pass_context
def status(ctx: click.Context, hostname: str) -> None:
    """Show the authentication status for a Bitbucket host."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    result = AuthManager().status(hostname)
    if formatter.is_structured:
        formatter.format_output(result.to_dict())
        return

    console = formatter.console
    console.print(f"[bold]{hostname}[/bold]")
    if result.state is AuthState.NOT_LOGGED_IN:
        console.print(f"  [red]X[/red] Not logged in to {hostname}")
        console.print("  Run 'bb auth login' to authenticate")
        return

    if result.state is AuthState.TOKEN_INVALID:
        console.print(f"  [red]X[/red] Token is invalid or expired for {result.user or hostname}")
        if result.error:
            console.print(f"  - Error: {result.error}", markup=False, soft_wrap=True)
        console.print("  Run 'bb auth login' to re-authenticate")
        return

    data = result.to_dict()
    console.print(f"  [green]✓[/green] Logged in to {hostname} account {result.user} ({result.source})")
    console.print("  - Active account: true")
    console.print(f"  - Git operations protocol: {result.git_protocol}")
    console.print(f"  - Token: {data['token']}", markup=False)


@auth.command()
@hostname_option
def token(hostname: str) -> None:
    """
    Print the authentication token for a Bitbucket host.

    For OAuth logins this is the current access token.
    """
    click.echo(AuthManager().get_token(hostname))
