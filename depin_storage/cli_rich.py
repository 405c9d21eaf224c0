"""Rich UI components for the depin-storage CLI."""

import argparse
import io
import logging
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

# Create a global console instance
console = Console()

TITLE = "depin-storage: encrypted storage on a decentralized provider network"


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through Rich.

    Args:
        verbose: Log at DEBUG instead of WARNING
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )
    # Provider processes report their ticks at INFO
    logging.getLogger("depin_storage").setLevel(logging.DEBUG if verbose else logging.INFO)


def log(message: str, style: Optional[str] = None) -> None:
    """Log a message to the console with optional styling."""
    console.print(message, style=style)


def info(message: str) -> None:
    console.print(f"[blue]INFO:[/blue] {message}")


def success(message: str) -> None:
    console.print(f"[green]SUCCESS:[/green] {message}")


def warning(message: str) -> None:
    console.print(f"[yellow]WARNING:[/yellow] {message}")


def error(message: str) -> None:
    console.print(f"[bold red]ERROR:[/bold red] {message}")


def print_table(
    title: str,
    data: List[Dict[str, Any]],
    columns: List[str],
    style: Optional[str] = None,
) -> None:
    """Print a table of data.

    Args:
        title: The title of the table
        data: List of dictionaries containing the data
        columns: List of column names to include
        style: Optional style to apply to the table
    """
    table = Table(title=title, style=style, expand=True, show_edge=True)

    for column in columns:
        table.add_column(column)

    for row in data:
        table.add_row(*[str(row.get(column, "")) for column in columns])

    console.print(table)


def print_panel(content: str, title: Optional[str] = None) -> None:
    """Print content in a panel."""
    console.print(Panel(content, title=title))


def print_steps(steps: List[str], completed: List[str], failed: Optional[str] = None) -> None:
    """Show which steps of an upload or download ran.

    Args:
        steps: All step names in order
        completed: Steps that finished
        failed: The step that raised, if any
    """
    lines = []
    for step in steps:
        if step in completed:
            lines.append(f"[green]done[/green]     {step}")
        elif step == failed:
            lines.append(f"[bold red]failed[/bold red]   {step}")
        else:
            lines.append(f"[dim]skipped  {step}[/dim]")
    print_panel("\n".join(lines), title="Steps")


def print_help_text(parser: argparse.ArgumentParser) -> None:
    """Print help text with Rich formatting.

    Args:
        parser: The argparse parser to display help for
    """
    buffer = io.StringIO()
    parser.print_help(buffer)

    for i, section in enumerate(buffer.getvalue().split("\n\n")):
        lines = section.split("\n")
        title, body = lines[0], "\n".join(lines[1:])
        if i == 0:  # Usage section
            console.print(f"[bold cyan]{title}[/bold cyan]")
            if body:
                console.print(f"[yellow]{body}[/yellow]")
        elif "positional arguments:" in section or "options:" in section:
            console.print(f"\n[bold green]{title}[/bold green]")
            console.print(body)
        elif "examples:" in section:
            console.print(f"\n[bold magenta]{title}[/bold magenta]")
            console.print(f"[cyan]{body}[/cyan]")
        else:
            console.print(f"\n{section}")


class RichHelpAction(argparse.Action):
    """Custom help action that prints the title and uses Rich formatting."""

    def __init__(
        self,
        option_strings,
        dest=argparse.SUPPRESS,
        default=argparse.SUPPRESS,
        help=None,
    ):
        super().__init__(
            option_strings=option_strings,
            dest=dest,
            default=default,
            nargs=0,
            help=help,
        )

    def __call__(self, parser, namespace, values, option_string=None):
        console.print(TITLE, style="bold cyan")
        print_help_text(parser)
        parser.exit()
