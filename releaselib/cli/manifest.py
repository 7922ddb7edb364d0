"""Manifest commands for the relshare CLI."""

import json
from pathlib import Path
from typing import List, Optional

import typer

from releaselib.cli.common import (
    console,
    get_manifest_service,
    handle_errors,
    split_columns,
    write_output,
)
from releaselib.manifest_tsv import DEFAULT_TSV_COLUMNS, create_tsv

manifest_app = typer.Typer(help="Manifests of activated releases")


@manifest_app.command("tsv")
def tsv(
    release_key: str = typer.Argument(..., help="Release key"),
    columns: Optional[str] = typer.Option(None, "--columns", "-c", help="Comma separated TSV columns"),
    presign: bool = typer.Option(False, "--presign/--no-presign", help="Add presigned URLs (objectStoreSigned)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Flat TSV of every shared file."""
    from releaselib.config import get_settings
    from releaselib.presign import build_presigner_registry

    selected = split_columns(columns)
    with handle_errors():
        service = get_manifest_service()
        signers = build_presigner_registry(get_settings()) if presign else None
        if selected is None:
            selected = list(DEFAULT_TSV_COLUMNS) + (["objectStoreSigned"] if presign else [])
        content = service.get_active_tsv(release_key, selected, signers=signers)
    write_output(content, output)


@manifest_app.command("bucket-key")
def bucket_key(
    release_key: str = typer.Argument(..., help="Release key"),
    protocol: List[str] = typer.Option(["all"], "--protocol", "-p", help="s3, gs, r2 or all (repeatable)"),
    columns: Optional[str] = typer.Option(None, "--columns", "-c", help="Comma separated TSV columns"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Distinct objects of the release as TSV."""
    with handle_errors():
        manifest = get_manifest_service().get_active_bucket_key_manifest(release_key, protocol)
        content = create_tsv(manifest["objects"], split_columns(columns) or DEFAULT_TSV_COLUMNS)
    write_output(content, output)


@manifest_app.command("htsget")
def htsget(
    release_key: str = typer.Argument(..., help="Release key"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Htsget manifest JSON."""
    with handle_errors():
        manifest = get_manifest_service().get_active_htsget_manifest(release_key)
    write_output(json.dumps(manifest, indent=2) + "\n", output)


@manifest_app.command("htsget-tsv")
def htsget_tsv(
    release_key: str = typer.Argument(..., help="Release key"),
    columns: Optional[str] = typer.Option(None, "--columns", "-c", help="Comma separated TSV columns"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """TSV of htsget URLs for researchers."""
    with handle_errors():
        content = get_manifest_service().get_active_htsget_tsv(
            release_key, split_columns(columns) or DEFAULT_TSV_COLUMNS
        )
    write_output(content, output)


@manifest_app.command("htsget-publish")
def htsget_publish(
    release_key: str = typer.Argument(..., help="Release key"),
):
    """Publish the htsget manifest to the temp bucket."""
    with handle_errors():
        result = get_manifest_service().publish_htsget_manifest(release_key)
    location = result["location"]
    console.print(
        f"[green]✓[/green]  s3://{location['bucket']}/{location['key']} "
        f"[dim](valid for {result['maxAge']}s)[/dim]"
    )
