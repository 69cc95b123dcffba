"""Command-line entry point for the mirror."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import typer
import uvicorn
from rich.console import Console

from common.config import Settings
from common.logging import configure_logging

from . import __version__

console = Console()
app = typer.Typer(help="Deduplicating, terminal-optimized image mirror.")


def _settings(**overrides: Any) -> Settings:
    return Settings(**{key: value for key, value in overrides.items() if value is not None})


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Listen address."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listen port."),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "--data", "-d", help="Data directory for images and catalog."),
    interval_minutes: Optional[int] = typer.Option(
        None,
        "--interval-minutes",
        "--interval",
        "-i",
        min=1,
        help="Minutes between ingest cycles.",
    ),
    no_ingest: bool = typer.Option(False, "--no-ingest", help="Serve the catalog without background ingest."),
) -> None:
    """Serve the HTTP API with periodic background ingest."""
    from .app import create_app

    settings = _settings(
        mirror_host=host,
        mirror_port=port,
        mirror_data_dir=data_dir,
        mirror_ingest_interval_minutes=interval_minutes,
        mirror_enable_periodic_ingest=False if no_ingest else None,
    )
    configure_logging(settings.log_level, force=True, service=settings.service_name)
    console.print(
        f"[bold]waifu-mirror {__version__}[/] listening on {settings.mirror_host}:{settings.mirror_port}"
    )
    uvicorn.run(
        create_app(settings),
        host=settings.mirror_host,
        port=settings.mirror_port,
        log_config=None,
    )


@app.command()
def ingest(
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "--data", "-d", help="Data directory for images and catalog."),
) -> None:
    """Run one ingest cycle then exit."""
    from .ingest import ingest_once

    settings = _settings(mirror_data_dir=data_dir)
    configure_logging(settings.log_level, force=True, service=settings.service_name)
    try:
        count = asyncio.run(ingest_once(settings))
    except Exception as exc:  # noqa: BLE001
        console.print(f"[red]Ingest failed: {exc}")
        raise typer.Exit(1) from exc
    console.print(f"ingested {count} new images")


@app.command()
def version() -> None:
    """Print version and exit."""
    console.print(f"waifu-mirror {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
