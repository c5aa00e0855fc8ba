"""Main CLI application using Typer."""

from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console

from tierconvert import __version__
from tierconvert.cli.commands.capabilities import capabilities
from tierconvert.cli.commands.convert import convert
from tierconvert.cli.commands.services import services

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="tierconvert",
    help="Convert HTML documents with the best available backend, falling back gracefully.",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)

console = Console()

app.command(name="convert", help="Convert a single HTML document.")(convert)
app.command(name="capabilities", help="Show which backends this host can run.")(capabilities)
app.command(name="services", help="List remote conversion services and their health.")(services)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]TierConvert[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """TierConvert - tiered HTML document conversion.

    Picks the highest-fidelity backend the host supports (headless engine,
    drawing surface, remote service or sanitized markup) and falls back to the
    next one when a conversion fails.
    """
    pass


if __name__ == "__main__":
    app()
