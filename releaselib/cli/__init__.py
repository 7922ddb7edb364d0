"""relshare CLI - release manifest and sharing commands using Typer."""

from typing import Optional

import typer
from rich.table import Table

from releaselib.cli.access_point import access_point_app
from releaselib.cli.common import configure_logging, console, get_manifest_service, handle_errors
from releaselib.cli.manifest import manifest_app


def _main_callback(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    configure_logging(log_level)


app = typer.Typer(
    name="relshare",
    help="Release sharing - manifests, htsget and access points",
    add_completion=True,
    no_args_is_help=True,
    callback=_main_callback,
)

app.add_typer(manifest_app, name="manifest", help="Manifests of activated releases")
app.add_typer(access_point_app, name="access-point", help="S3 access point sharing")


@app.command("version")
def version():
    """Show relshare version."""
    from releaselib import __version__

    console.print(f"relshare [cyan]{__version__}[/cyan]")


@app.command("setup")
def setup():
    """Create the manifest snapshot table if it does not exist."""
    with handle_errors():
        get_manifest_service().registry.create_table_if_not_exists()
    console.print("[green]✓[/green]  Manifest table ready")


@app.command("activate")
def activate(
    release_key: str = typer.Argument(..., help="Release key"),
):
    """Build, filter and snapshot the manifest of a release."""
    with handle_errors():
        activated = get_manifest_service().activate_release(release_key)

    table = Table(title=f"Activated {release_key}")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Activation", activated.activation_id)
    table.add_row("Etag", activated.manifest_etag)
    table.add_row("Cases", str(activated.case_count))
    table.add_row("Specimens", str(activated.specimen_count))
    table.add_row("Artifacts", str(activated.artifact_count))
    console.print(table)


@app.command("deactivate")
def deactivate(
    release_key: str = typer.Argument(..., help="Release key"),
):
    """Remove the active manifest snapshot of a release."""
    with handle_errors():
        removed = get_manifest_service().deactivate_release(release_key)
    if removed:
        console.print(f"[green]✓[/green]  Deactivated {release_key}")
    else:
        console.print(f"[yellow]⚠[/yellow]  {release_key} was not activated")


@app.command("info")
def info():
    """Show effective settings."""
    from releaselib.config import get_settings

    settings = get_settings()
    table = Table(title="relshare settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name in (
        "aws_default_region",
        "aws_profile",
        "aws_account_id",
        "releases_table_name",
        "dataset_cases_table_name",
        "manifests_table_name",
        "temp_bucket",
        "objects_per_access_point",
        "access_points_per_stack",
        "htsget_url",
        "htsget_restrictions_file",
    ):
        value = getattr(settings, name)
        table.add_row(name, "[dim]not set[/dim]" if value is None else str(value))
    table.add_row("r2_configured", str(settings.r2_configured))
    console.print(table)


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    raise SystemExit(main())
