"""
Output formatting utilities for bb.

Command results can be rendered as human-readable text, JSON, or YAML.
Status messages go to stderr in text mode so that stdout only carries data
(for example ``bb auth token`` piped into another program).
"""

import json
from typing import Any

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Renders command results and status messages in the selected format."""

    def __init__(
        self,
        format_type: str = "text",
        console: Console | None = None,
        err_console: Console | None = None,
    ) -> None:
        """
        Initialize the output formatter.

        Args:
            format_type: Output format ('text', 'json', 'yaml')
            console: Rich console for data written to stdout
            err_console: Rich console for status messages in text mode
        """
        self.format_type = format_type.lower()
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    @property
    def is_structured(self) -> bool:
        return self.format_type in ("json", "yaml")

    def format_output(self, data: Any, title: str | None = None) -> None:
        """
        Write ``data`` to stdout in the configured format.

        Args:
            data: A mapping, a list, or a scalar
            title: Heading shown above text output; ignored for JSON and YAML
        """
        if self.format_type == "json":
            self._print_plain(json.dumps(data, indent=2, ensure_ascii=False))
        elif self.format_type == "yaml":
            self._print_plain(
                yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False).rstrip()
            )
        else:
            self._format_text(data, title)

    def _print_plain(self, text: str) -> None:
        self.console.print(text, markup=False, highlight=False, soft_wrap=True)

    def _format_text(self, data: Any, title: str | None) -> None:
        if title:
            self.console.print(f"[bold]{escape(title)}[/bold]")

        if isinstance(data, dict):
            table = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
            table.add_column("Setting", style="cyan", no_wrap=True)
            table.add_column("Value", overflow="fold")
            for key, value in data.items():
                table.add_row(escape(str(key)), escape("" if value is None else str(value)))
            self.console.print(table)
        elif isinstance(data, list):
            for item in data:
                self._print_plain(str(item))
        else:
            self._print_plain(str(data))

    def success(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Report a completed action; in JSON/YAML mode the details go to stdout."""
        if self.is_structured:
            self.format_output({"status": "success", "message": message, **(details or {})})
            return
        self.err_console.print(f"[green]✓ {escape(message)}[/green]", soft_wrap=True)

    def info(self, message: str) -> None:
        self.err_console.print(message, markup=False, highlight=False, soft_wrap=True)
