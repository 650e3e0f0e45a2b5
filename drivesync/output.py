"""Output formatting for the command line."""

import json
from typing import Any

import click
from rich.console import Console
from rich.markup import escape

from .utils import format_size


class OutputFormatter:
    """Formats command output as rich text or JSON."""

    def __init__(self, json_output: bool = False, quiet: bool = False):
        """Initialize output formatter.

        Args:
            json_output: Emit machine-readable JSON instead of text
            quiet: Suppress informational output (errors are still shown)
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False, soft_wrap=True)
        self.error_console = Console(stderr=True, highlight=False, soft_wrap=True)

    def print(self, message: str = "") -> None:
        """Print a plain line unless quiet or in JSON mode."""
        if not self.quiet and not self.json_output:
            self.console.print(message, markup=False)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(f"[green]{escape(message)}[/green]")

    def warning(self, message: str) -> None:
        if not self.json_output:
            self.error_console.print(f"[yellow]Warning: {escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        if self.json_output:
            click.echo(json.dumps({"error": message}), err=True)
        else:
            self.error_console.print(f"[red]Error: {escape(message)}[/red]")

    def output_json(self, data: Any) -> None:
        """Write data as indented JSON to stdout."""
        click.echo(json.dumps(data, indent=2, default=str))

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a titled list of label/value pairs."""
        if self.quiet or self.json_output:
            return
        self.console.print(f"\n[bold]{escape(title)}[/bold]")
        width = max((len(label) for label, _ in items), default=0)
        for label, value in items:
            self.console.print(f"  {label.ljust(width)}  {value}", markup=False)

    @staticmethod
    def format_size(size: int) -> str:
        return format_size(size)
