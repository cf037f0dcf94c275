"""
Main entry point for the bb command-line interface.

This module sets up the main CLI group, configures logging, and registers all
command modules.
"""

import logging
import os
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.traceback import install

from bb import __version__
from bb.cli import api, auth, config
from bb.core.exceptions import BBError
from bb.utils.output import OutputFormatter

DEBUG_ENV_VARS = ("BB_DEBUG", "DEBUG")

# Install rich traceback handler only in development mode
if any(os.getenv(name) for name in DEBUG_ENV_VARS):
    install(show_locals=True)

# Global console instances
console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool) -> None:
    """Route the ``bb`` loggers to stderr; DEBUG when verbose, otherwise WARNING."""
    debug = verbose or any(os.getenv(name) for name in DEBUG_ENV_VARS)
    logger = logging.getLogger("bb")
    logger.handlers.clear()
    handler = RichHandler(console=err_console, show_path=debug, rich_tracebacks=debug)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False


@click.group()
@click.version_option(version=__version__, prog_name="bb")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output for debugging.",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json", "yaml"], case_sensitive=False),
    default="text",
    help="Output format (default: text).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, output: str) -> None:
    """
    bb - A command-line interface for Bitbucket Cloud.

    Log in to Bitbucket, manage stored credentials, and call the Bitbucket
    Cloud REST API from the terminal.

    Examples:
        bb auth login                       # Log in with OAuth in the browser
        echo $TOKEN | bb auth login --with-token
        bb auth status                      # Check the stored credential
        bb api user                         # Call any API endpoint

    For more information on specific commands, use:
        bb <command> --help
    """
    setup_logging(verbose)

    # Ensure context object exists
    ctx.ensure_object(dict)

    # Store global options in context
    ctx.obj["verbose"] = verbose
    ctx.obj["output_format"] = output.lower()
    ctx.obj["console"] = console
    ctx.obj["formatter"] = OutputFormatter(output.lower(), console, err_console)


# Register command groups
cli.add_command(auth.auth)
cli.add_command(config.config)
cli.add_command(api.api)


def handle_exception(exc: Exception) -> None:
    """Handle exceptions and display appropriate error messages."""
    if isinstance(exc, BBError):
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}", highlight=False)
        if exc.suggestion:
            err_console.print(f"[yellow]Suggestion:[/yellow] {escape(exc.suggestion)}", highlight=False)
        sys.exit(exc.exit_code)
    elif isinstance(exc, click.ClickException):
        # Let Click handle its own exceptions
        exc.show()
        sys.exit(exc.exit_code)
    else:
        # Unexpected error
        err_console.print(f"[red]Unexpected error:[/red] {escape(str(exc))}", highlight=False)
        err_console.print("[yellow]This is likely a bug. Run with --verbose for details.[/yellow]")
        sys.exit(1)


def main() -> None:
    """Main entry point with exception handling."""
    try:
        cli.main(standalone_mode=False)
    except click.exceptions.Abort:
        err_console.print("Aborted.")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as exc:
        handle_exception(exc)


if __name__ == "__main__":
    main()
