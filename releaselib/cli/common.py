"""Shared helpers for the relshare CLI commands."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console

from releaselib.config import get_settings
from releaselib.exceptions import ReleaseLibException
from releaselib.manifest_registry import ManifestTooLargeError
from releaselib.manifest_service import ManifestService

console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def get_manifest_service() -> ManifestService:
    return ManifestService.from_settings(get_settings())


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print release errors with their code and exit non-zero."""
    try:
        yield
    except ReleaseLibException as e:
        err_console.print(f"[red]✗[/red]  {e.message} [dim]({e.code})[/dim]")
        raise typer.Exit(1)
    except ManifestTooLargeError as e:
        err_console.print(f"[red]✗[/red]  {e}")
        raise typer.Exit(1)


def split_columns(columns: Optional[str]) -> Optional[List[str]]:
    if not columns:
        return None
    return [c.strip() for c in columns.split(",") if c.strip()]


def write_output(content: str, output: Optional[Path]) -> None:
    """Write to a file, or to stdout when no path is given."""
    if output is None:
        typer.echo(content, nl=False)
        return
    output.write_text(content, encoding="utf-8")
    err_console.print(f"[green]✓[/green]  Wrote {output}")
