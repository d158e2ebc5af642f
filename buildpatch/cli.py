from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from buildpatch.config import settings
from buildpatch.core.exceptions import PatchError
from buildpatch.core.logging import configure_logging

console = Console()
cli_app = typer.Typer(name="buildpatch", help="Build patch installer CLI")

STATUS_REFRESH_SECONDS = 0.25


@cli_app.callback()
def _setup(
    log_level: str = typer.Option(settings.buildpatch_log_level, "--log-level", help="debug, info, warning or error"),
    log_format: str = typer.Option(settings.buildpatch_log_format, "--log-format", help="json or console"),
):
    configure_logging(level=log_level, fmt=log_format)


def _load_manifest(path: Path | None):
    from buildpatch.services.install.manifest import Manifest

    if path is None:
        return None
    try:
        return Manifest.load(path)
    except PatchError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        raise typer.Exit(code=2)


@cli_app.command("build-manifest")
def build_manifest(
    source_dir: Path = typer.Option(..., "--source-dir", help="Directory holding the build"),
    app_name: str = typer.Option(..., "--app-name", help="Application name"),
    version: str = typer.Option(..., "--version", help="Build version"),
    output: Path = typer.Option(..., "--output", help="Where to write the manifest JSON"),
    chunk_store: Path = typer.Option(None, "--chunk-store", help="Directory to write chunk data to"),
    chunk_size: int = typer.Option(None, "--chunk-size", help="Split files into chunks of this many bytes"),
    prereq_path: str = typer.Option("", "--prereq-path", help="Prerequisite installer, relative to the install"),
    prereq_args: str = typer.Option("", "--prereq-args", help="Arguments for the prerequisite installer"),
):
    """Describe a build directory as a manifest."""
    from buildpatch.services.install.manifest import Manifest

    if not source_dir.is_dir():
        console.print(f"[bold red]Source directory not found: {source_dir}[/bold red]")
        raise typer.Exit(code=2)

    manifest = Manifest.from_directory(
        source_dir,
        app_name=app_name,
        version=version,
        chunk_store=chunk_store,
        prereq_path=prereq_path,
        prereq_args=prereq_args,
        chunk_size=chunk_size,
    )
    manifest.save(output)

    console.print(f"\n[bold green]Manifest written to {output}[/bold green]")
    console.print(f"  App:     {manifest.app_name} {manifest.version}")
    console.print(f"  Files:   {manifest.num_files}")
    console.print(f"  Chunks:  {len(manifest.chunks)}")
    if chunk_store is not None:
        console.print(f"  Store:   {chunk_store}")


@cli_app.command("install")
def install(
    target: Path = typer.Option(..., "--target", help="Manifest of the build to install"),
    install_dir: Path = typer.Option(..., "--install-dir", help="Installation directory"),
    chunk_store: Path = typer.Option(..., "--chunk-store", help="Directory to fetch chunk data from"),
    current: Path = typer.Option(None, "--current", help="Manifest of the build currently installed"),
    staging_dir: Path = typer.Option(None, "--staging-dir", help="Staging directory (default: <install-dir>.staging)"),
    backup_dir: Path = typer.Option(None, "--backup-dir", help="Back up user-modified files here"),
):
    """Install or patch a build into a directory."""
    from buildpatch.services.install import (
        InstallationJob,
        InstallationOrchestrator,
        LocalCollaborators,
    )

    target_manifest = _load_manifest(target)
    current_manifest = _load_manifest(current)
    if staging_dir is None:
        staging_dir = install_dir.with_name(install_dir.name + ".staging")
    run_settings = settings
    if backup_dir is not None:
        run_settings = settings.model_copy(update={"buildpatch_backup_dir": str(backup_dir)})

    job = InstallationJob(
        target_manifest=target_manifest,
        install_directory=install_dir,
        staging_directory=staging_dir,
        current_manifest=current_manifest,
    )
    outcome = {}
    orchestrator = InstallationOrchestrator(
        job,
        LocalCollaborators(chunk_store).collaborators(),
        on_complete=lambda success, manifest: outcome.update(success=success, version=manifest.version),
        settings=run_settings,
    )
    orchestrator.start()

    with console.status("Initializing") as status:
        while not orchestrator.wait(STATUS_REFRESH_SECONDS):
            text = f"{orchestrator.get_status_text()} {orchestrator.get_progress():.0%}"
            speed = orchestrator.get_download_speed()
            if speed > 0:
                text += f" ({speed / 1024:.1f} KiB/s, {orchestrator.get_download_bytes_left()} bytes left)"
            status.update(text)
    orchestrator.dispatch_completion()

    stats = orchestrator.get_stats()
    table = Table(title="Build Stats")
    table.add_column("Stat", style="cyan")
    table.add_column("Value")
    for name, value in stats.model_dump(mode="json").items():
        table.add_row(name, str(value))
    console.print(table)

    if outcome.get("success"):
        console.print(f"\n[bold green]Installed {target_manifest.app_name} {outcome['version']}[/bold green]\n")
        if stats.prereq_restart_required:
            console.print("[yellow]A restart is required to finish installing prerequisites.[/yellow]")
        return

    console.print(f"\n[bold red]Installation failed: {stats.failure_reason}[/bold red]\n")
    raise typer.Exit(code=1)


@cli_app.command("verify")
def verify(
    manifest: Path = typer.Option(..., "--manifest", help="Manifest of the installed build"),
    install_dir: Path = typer.Option(..., "--install-dir", help="Installation directory"),
):
    """Check an installation against its manifest."""
    build = _load_manifest(manifest)
    outcome = build.verify_against_directory(install_dir)

    if outcome.success:
        console.print(f"[bold green]All {build.num_files} files verified.[/bold green]")
        return

    table = Table(title="Corrupt Files")
    table.add_column("File", style="red")
    for filename in outcome.corrupt_files:
        table.add_row(filename)
    console.print(table)
    raise typer.Exit(code=1)


def main():
    cli_app()


if __name__ == "__main__":
    main()
