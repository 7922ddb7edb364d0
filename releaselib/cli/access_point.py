"""Access point commands for the relshare CLI."""

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from releaselib.cli.common import (
    console,
    get_manifest_service,
    handle_errors,
    split_columns,
    write_output,
)
from releaselib.manifest_tsv import DEFAULT_TSV_COLUMNS

access_point_app = typer.Typer(help="S3 access point sharing")


def _service():
    from releaselib.access_point_service import AccessPointService
    from releaselib.config import get_settings

    return AccessPointService(get_manifest_service(), get_settings())


@access_point_app.command("generate")
def generate(
    release_key: str = typer.Argument(..., help="Release key"),
    account_id: str = typer.Option(..., "--account-id", "-a", help="AWS account to share to"),
    vpc_id: Optional[str] = typer.Option(None, "--vpc-id", help="Restrict the access points to a VPC"),
):
    """Generate and save CloudFormation templates; prints the root template URL."""
    with handle_errors():
        root_https = _service().create_access_point_templates(release_key, account_id, vpc_id)
    console.print(f"[green]✓[/green]  Root template: {root_https}")


@access_point_app.command("resolve")
def resolve(
    release_key: str = typer.Argument(..., help="Release key"),
):
    """Show how objects map through the installed access points."""
    with handle_errors():
        object_map = _service().get_installed_object_map(release_key)

    table = Table(title=f"Access points for {release_key}")
    table.add_column("Object", style="cyan")
    table.add_column("Access point URL")
    for original in sorted(object_map):
        table.add_row(original, object_map[original].object_store_url)
    console.print(table)


@access_point_app.command("tsv")
def tsv(
    release_key: str = typer.Argument(..., help="Release key"),
    columns: Optional[str] = typer.Option(None, "--columns", "-c", help="Comma separated TSV columns"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Bucket-key TSV rewritten through the installed access points."""
    with handle_errors():
        content = _service().get_access_point_bucket_key_tsv(
            release_key, split_columns(columns) or DEFAULT_TSV_COLUMNS
        )
    write_output(content, output)
