"""Convert command for single file conversion."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from tierconvert.config.constants import FILE_EXTENSIONS
from tierconvert.config.settings import TierConvertSettings, get_settings
from tierconvert.converters.base import BackendId, ConversionResult, Document, normalize_format
from tierconvert.core.orchestrator import UserFeedback, create_orchestrator
from tierconvert.exceptions import FallbackExhaustedError, TierConvertError, ValidationError
from tierconvert.utils.logging import get_logger, setup_task_logging

console = Console()
log = get_logger(__name__)


def convert(
    input_file: Annotated[
        Path,
        typer.Argument(
            help="Input HTML file to convert.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            resolve_path=True,
        ),
    ],
    output: Annotated[
        Path | None,
        typer.Option(
            "--output",
            "-o",
            help="Output file path. Defaults to the input name with the format's extension.",
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    target_format: Annotated[
        str | None,
        typer.Option(
            "--format",
            "-f",
            help="Output format: pdf, png, jpeg, webp, mhtml or html. Defaults per tier.",
        ),
    ] = None,
    tiers: Annotated[
        list[BackendId] | None,
        typer.Option(
            "--tier",
            "-t",
            help="Backend to try, in order. Repeat for several.",
            case_sensitive=False,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose output.",
        ),
    ] = False,
) -> None:
    """Convert a single HTML file.

    Examples:
        tierconvert convert page.html
        tierconvert convert page.html -f png -o page.png
        tierconvert convert page.html --tier canvas --tier markup
    """
    settings = get_settings()

    task_id, log_path = setup_task_logging(
        log_dir=settings.log_dir,
        prefix="convert",
        verbose=verbose,
    )
    if verbose:
        log.info("Logs will be saved to", log_file=str(log_path))

    config_dump = settings.model_dump()
    for auth in config_dump.get("remote", {}).get("authentication", {}).values():
        for key in ("api_key", "bearer_token"):
            if auth.get(key):
                auth[key] = "***"
    log.info("Task Configuration", task_id=task_id, config=config_dump)

    fmt = normalize_format(target_format)
    if fmt is not None and fmt not in FILE_EXTENSIONS:
        console.print(
            f"[red]Error:[/red] Invalid format '{target_format}'. "
            f"Options: {', '.join(FILE_EXTENSIONS)}"
        )
        raise typer.Exit(1)

    try:
        result = asyncio.run(
            _execute_conversion(input_file, fmt, tiers or None, settings, verbose)
        )
    except KeyboardInterrupt:
        log.warning("Task Interrupted by KeyboardInterrupt", input_file=str(input_file))
        console.print("\n[yellow]Interrupted. Exiting...[/yellow]")
        raise typer.Exit(130) from None
    except ValidationError as e:
        log.error("Document failed validation", errors=e.errors)
        console.print(f"[red]Invalid document:[/red] {e.errors[0] if e.errors else e}")
        for warning in e.warnings:
            console.print(f"  [yellow]warning:[/yellow] {warning}")
        raise typer.Exit(1) from e
    except FallbackExhaustedError as e:
        log.error("Conversion failed", error=str(e))
        console.print("[red]Error:[/red] every conversion tier failed")
        for attempt in e.attempts:
            console.print(f"  [dim]{attempt.tier}:[/dim] {attempt.error}")
        raise typer.Exit(1) from e
    except TierConvertError as e:
        log.error("Conversion failed", error=str(e), exc_info=True)
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    output_fmt = result.metadata.get("target_format", fmt or "html")
    output_path = output or input_file.with_suffix(FILE_EXTENSIONS.get(output_fmt, ".out"))
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result.raw_bytes())

    _show_summary(result, output_path)


async def _execute_conversion(
    input_file: Path,
    fmt: str | None,
    tiers: list[BackendId] | None,
    settings: TierConvertSettings,
    verbose: bool,
) -> ConversionResult:
    """Run one conversion through a fully wired orchestrator."""
    document = Document.from_file(input_file)

    async with create_orchestrator(settings) as orchestrator:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Assessing capabilities...", total=None)

            def on_feedback(feedback: UserFeedback) -> None:
                if feedback.progress is not None:
                    progress.update(task, description=feedback.progress.operation)
                transition = feedback.fallback_transition
                if transition is not None:
                    console.print(
                        f"[yellow]Falling back[/yellow] {transition.from_tier} -> "
                        f"{transition.to_tier}: {transition.reason}"
                    )
                if verbose:
                    for limitation in feedback.capability_limitations:
                        console.print(f"  [dim]limitation:[/dim] {limitation}")

            orchestrator.add_feedback_callback(on_feedback)
            return await orchestrator.convert(document, fmt, tier_priority=tiers)


def _show_summary(result: ConversionResult, output_path: Path) -> None:
    metadata = result.metadata
    console.print(f"[green]Converted[/green] -> {output_path}")
    console.print(f"  [bold]Tier:[/bold] {metadata.get('tier')}")
    console.print(f"  [bold]Format:[/bold] {result.mime_type}")
    if metadata.get("service_used"):
        console.print(f"  [bold]Service:[/bold] {metadata['service_used']}")
    if metadata.get("fallback_attempts"):
        attempted = ", ".join(metadata.get("attempted_tiers", []))
        console.print(
            f"  [bold]Fallbacks:[/bold] {metadata['fallback_attempts']} ({attempted})"
        )
    console.print(f"  [bold]Time:[/bold] {metadata.get('execution_time', 0):.2f}s")
