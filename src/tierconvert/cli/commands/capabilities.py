"""Capabilities command showing which backends this host can run."""

import asyncio
import json
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from tierconvert.config.settings import get_settings
from tierconvert.core.capability import (
    CapabilityAssessment,
    CapabilityProbe,
    RuntimeCapabilityProvider,
)
from tierconvert.utils.logging import setup_logging

console = Console()


def capabilities(
    intensive: Annotated[
        bool,
        typer.Option("--intensive", help="Run the engine benchmark as well."),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the assessment as JSON."),
    ] = False,
) -> None:
    """Probe every backend and print the capability assessment."""
    settings = get_settings()
    setup_logging(level="WARNING")
    config = settings.capability.model_copy(update={"intensive": intensive})
    probe = CapabilityProbe(RuntimeCapabilityProvider(settings.engine, settings.remote), config)

    assessment = asyncio.run(probe.get_complete_assessment(cache=False))

    if as_json:
        console.print_json(json.dumps(assessment.to_dict()))
        return
    display_assessment(assessment)


def display_assessment(assessment: CapabilityAssessment) -> None:
    table = Table(title="Backend Capabilities")
    table.add_column("Backend", style="cyan")
    table.add_column("Available")
    table.add_column("Performance", justify="right")
    table.add_column("Details", style="dim")

    for backend, capability in assessment.backend_scores.items():
        available = "[green]yes[/green]" if capability.available else "[red]no[/red]"
        if backend is assessment.recommended_tier:
            available += " [bold](recommended)[/bold]"
        details = ", ".join(f"{k}={v}" for k, v in capability.details.items())
        table.add_row(backend.value, available, f"{capability.performance:.2f}", details)

    console.print(table)
    console.print(f"Overall score: [bold]{assessment.overall_score:.2f}[/bold]")
