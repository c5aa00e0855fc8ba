"""Services command listing remote conversion services and their health."""

import asyncio
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from tierconvert.config.settings import get_settings
from tierconvert.remote.client import RemoteServiceClient
from tierconvert.remote.models import HealthStatus
from tierconvert.utils.logging import setup_logging

console = Console()

_STATUS_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "red",
}


def services(
    category: Annotated[
        str | None,
        typer.Argument(help="Only list this category (pdf, image, mhtml)."),
    ] = None,
    check: Annotated[
        bool,
        typer.Option("--check", "-c", help="Probe each service's /health endpoint first."),
    ] = False,
) -> None:
    """List registered remote conversion services."""
    settings = get_settings()
    setup_logging(level="WARNING")
    asyncio.run(_list_services(RemoteServiceClient(settings.remote), category, check))


async def _list_services(client: RemoteServiceClient, category: str | None, check: bool) -> None:
    async with client:
        categories = [category] if category else client.categories
        unknown = [c for c in categories if c not in client.categories]
        if unknown:
            console.print(
                f"[red]Error:[/red] Unknown category '{unknown[0]}'. "
                f"Options: {', '.join(client.categories)}"
            )
            raise typer.Exit(1)

        if check:
            with console.status("Checking service health..."):
                await client.health_check_all()

        table = Table(title="Remote Conversion Services")
        table.add_column("Category", style="cyan")
        table.add_column("Id")
        table.add_column("Priority", justify="right")
        table.add_column("Quality", justify="right")
        table.add_column("Formats")
        table.add_column("Health")

        for name in categories:
            for service in client.get_services(name):
                health = client.get_health(service.id)
                style = _STATUS_STYLES[health.status]
                status = f"[{style}]{health.status.value}[/{style}]"
                if health.error:
                    status += f" [dim]({health.error})[/dim]"
                table.add_row(
                    name,
                    service.id,
                    str(service.priority),
                    f"{service.quality_score:.2f}",
                    ", ".join(service.supported_formats),
                    status if health.last_checked is not None else "[dim]unchecked[/dim]",
                )

        console.print(table)
