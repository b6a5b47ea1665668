"""Command-line interface for modman-core."""

import logging
import sys
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from .errors import ModManagerError, ResolutionError
from .events import INSTALL_COMPLETE, INSTALL_PROGRESS
from .installer import InstallPhase, InstallReport
from .manifest import ModManifest
from .service import InstallResult, ModManagerService
from .state import ManagerState

console = Console()


def create_download_progress() -> Progress:
    """Create a progress bar for downloads."""
    return Progress(
        TextColumn("[bold blue]{task.fields[identity]}", justify="right"),
        BarColumn(bar_width=30),
        "[progress.percentage]{task.percentage:>3.0f}%",
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
    )


@contextmanager
def install_progress(service: ModManagerService):
    """Show a progress bar per identity while installs run."""
    with create_download_progress() as progress:
        task_ids = {}
        totals: dict[str, int] = {}

        def on_event(event: str, payload: dict) -> None:
            if event not in (INSTALL_PROGRESS, INSTALL_COMPLETE):
                return
            identity = payload["identity"]
            if identity not in task_ids:
                task_ids[identity] = progress.add_task("install", identity=identity[:40], total=None)
            task_id = task_ids[identity]
            if event == INSTALL_PROGRESS and payload.get("phase") == InstallPhase.DOWNLOAD:
                if "downloaded" in payload:
                    totals[identity] = payload["total"] or payload["downloaded"]
                    progress.update(task_id, completed=payload["downloaded"], total=totals[identity])
            elif event == INSTALL_COMPLETE:
                total = totals.get(identity) or 1
                progress.update(task_id, completed=total, total=total)

        unsubscribe = service.subscribe(on_event)
        try:
            yield progress
        finally:
            unsubscribe()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


def _print_plan_errors(e: ResolutionError) -> None:
    console.print(f"[red]Cannot proceed with {e.plan.target}:[/red]")
    for issue in e.plan.errors:
        console.print(f"  - [{issue.kind.value}] {issue.message}")


def _print_report(report: InstallReport) -> None:
    table = Table(title=f"Install: {report.target}")
    table.add_column("Mod", style="cyan")
    table.add_column("Version", style="blue")
    table.add_column("Result")

    for outcome in report.outcomes:
        if outcome.ok:
            status = f"[green]{outcome.status.value.replace('_', ' ')}[/green]"
        else:
            status = f"[red]{outcome.status.value}[/red] {outcome.message}"
        table.add_row(outcome.identity[:40], outcome.version or "-", status)
    console.print(table)


def _print_install_result(result: InstallResult) -> None:
    for warning in result.plan.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning.message}")
    if result.report is not None:
        _print_report(result.report)
    if result.enabled:
        console.print(f"[dim]Enabled: {', '.join(result.enabled)}[/dim]")
    if result.error:
        console.print(f"[red]Error:[/red] {result.error}")


def _status_label(mod: ModManifest) -> str:
    if mod.errors:
        kinds = ", ".join(k.value for k in mod.errors)
        return f"[red]{kinds}[/red]"
    if mod.warnings:
        return f"[yellow]{', '.join(k.value for k in mod.warnings)}[/yellow]"
    return "[green]ok[/green]"


@click.group()
@click.option(
    "--state-file",
    envvar="MODMAN_STATE_FILE",
    type=click.Path(path_type=Path),
    help="Manager state file (or set MODMAN_STATE_FILE env var)",
)
@click.option(
    "--mods-dir",
    envvar="MODMAN_MODS_DIR",
    type=click.Path(path_type=Path),
    help="Managed mods directory (or set MODMAN_MODS_DIR env var)",
)
@click.option(
    "--registry-url",
    envvar="MODMAN_REGISTRY_URL",
    help="Registry document URL (or set MODMAN_REGISTRY_URL env var)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    state_file: Path | None,
    mods_dir: Path | None,
    registry_url: str | None,
    verbose: bool,
) -> None:
    """Install and manage mods from a registry."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    try:
        state = ManagerState.open(state_file)
        service = ModManagerService(state, mods_dir=mods_dir, registry_url=registry_url)
        if mods_dir is not None or registry_url:
            state.save()
        service.refresh_local()
    except ModManagerError as e:
        _fail(str(e))
    ctx.obj = service


def _refresh_remote(service: ModManagerService) -> None:
    try:
        service.refresh_remote()
    except ModManagerError as e:
        console.print(f"[yellow]Could not fetch registry:[/yellow] {e}")


@main.command()
@click.pass_obj
def refresh(service: ModManagerService) -> None:
    """Rescan installed mods and fetch the registry."""
    try:
        local = service.refresh_local()
        remote = service.refresh_remote()
    except ModManagerError as e:
        _fail(str(e))

    console.print(f"[bold]Installed mods:[/bold] {local.mod_count}")
    if remote.changed:
        console.print(f"[bold]Registry mods:[/bold] {remote.mod_count}")
    else:
        console.print("[dim]Registry unchanged since last fetch.[/dim]")
    if service.db_has_issues():
        console.print("[yellow]Some installed mods have problems. Run 'list' for details.[/yellow]")


@main.command(name="list")
@click.option("--offline", is_flag=True, help="Do not fetch the registry")
@click.pass_obj
def list_mods(service: ModManagerService, offline: bool) -> None:
    """Show installed mods and their status."""
    if not offline:
        _refresh_remote(service)

    mods = service.list_mods()
    if not mods:
        console.print("[yellow]No mods installed.[/yellow]")
        return

    table = Table(title=f"Installed mods ({service.mods_dir})")
    table.add_column("Mod", style="cyan")
    table.add_column("Version", style="blue")
    table.add_column("Enabled")
    table.add_column("Status")

    for mod in mods:
        table.add_row(
            mod.identity[:40],
            str(mod.version),
            "[green]yes[/green]" if mod.enabled else "[dim]no[/dim]",
            _status_label(mod),
        )
    console.print(table)


@main.command()
@click.argument("identity")
@click.pass_obj
def info(service: ModManagerService, identity: str) -> None:
    """Show local and registry details for a mod."""
    _refresh_remote(service)
    try:
        view = service.get_mod(identity)
    except ModManagerError as e:
        _fail(str(e))

    mod = view.local or view.remote
    console.print(f"[bold]{mod.name}[/bold] ({mod.identity}) by {mod.author or 'unknown'}")
    if mod.description:
        console.print(mod.description)
    if view.local is not None:
        state = "enabled" if view.local.enabled else "disabled"
        console.print(f"[bold]Installed:[/bold] {view.local.version} ({state}) at {view.local.install_path}")
        for kind, subjects in view.local.errors.items():
            console.print(f"  [red]{kind.value}:[/red] {', '.join(subjects)}")
    else:
        console.print("[bold]Installed:[/bold] no")
    if view.remote is not None:
        console.print(f"[bold]Registry:[/bold] {view.remote.version}")
        if view.remote.prerelease is not None:
            console.print(f"[bold]Prerelease:[/bold] {view.remote.prerelease.version}")
    if view.update_available:
        console.print("[yellow]Update available![/yellow]")
    if mod.dependencies:
        console.print(f"[bold]Dependencies:[/bold] {', '.join(mod.dependencies)}")
    if mod.conflicts:
        console.print(f"[bold]Conflicts:[/bold] {', '.join(mod.conflicts)}")


@main.command()
@click.argument("query", default="")
@click.option("--limit", type=int, default=20, help="Maximum results to show")
@click.pass_obj
def search(service: ModManagerService, query: str, limit: int) -> None:
    """Search the registry by name or author."""
    _refresh_remote(service)
    results = service.search_remote(query, limit=limit)
    if not results:
        console.print("[yellow]No matching mods.[/yellow]")
        return

    table = Table(title=f"Search: {query}" if query else "Registry")
    table.add_column("Mod", style="cyan")
    table.add_column("Author")
    table.add_column("Version", style="blue")
    table.add_column("Downloads", justify="right")
    table.add_column("Installed")

    for mod in results:
        table.add_row(
            mod.identity[:40],
            mod.author[:20],
            str(mod.version),
            str(mod.download_count),
            "[green]yes[/green]" if mod.identity in service.local else "",
        )
    console.print(table)


@main.command()
@click.argument("target")
@click.option("--prerelease", is_flag=True, help="Install the registry's prerelease build")
@click.option("--force", is_flag=True, help="Install even if the plan reports problems")
@click.option("--dry-run", is_flag=True, help="Show the plan without installing")
@click.pass_obj
def install(service: ModManagerService, target: str, prerelease: bool, force: bool, dry_run: bool) -> None:
    """
    Install a mod and its dependencies.

    TARGET: mod identity, or path to a local archive
    """
    archive = Path(target)
    if archive.is_file():
        try:
            with install_progress(service):
                outcome = service.install_archive(archive)
        except ModManagerError as e:
            _fail(str(e))
        if not outcome.ok:
            _fail(outcome.message)
        console.print(f"[green]Installed {outcome.identity} {outcome.version}[/green]")
        return

    _refresh_remote(service)
    if dry_run:
        plan = service.plan_install(target, prerelease=prerelease)
        for step in plan.steps:
            console.print(f"  {step.action.value:<10} {step.identity} {step.manifest.version}")
        for issue in plan.errors:
            console.print(f"  [red]{issue.kind.value}:[/red] {issue.message}")
        for issue in plan.warnings:
            console.print(f"  [yellow]{issue.kind.value}:[/yellow] {issue.message}")
        return

    try:
        with install_progress(service):
            result = service.install(target, prerelease=prerelease, force=force)
    except ResolutionError as e:
        _print_plan_errors(e)
        sys.exit(1)
    except ModManagerError as e:
        _fail(str(e))

    _print_install_result(result)
    if not result.ok:
        sys.exit(1)


@main.command()
@click.argument("identity", required=False)
@click.option("--all", "update_all", is_flag=True, help="Update every outdated mod")
@click.pass_obj
def update(service: ModManagerService, identity: str | None, update_all: bool) -> None:
    """Update a mod (or all outdated mods) to the registry version."""
    if not identity and not update_all:
        _fail("Give a mod identity or --all")

    try:
        service.refresh_remote()
    except ModManagerError as e:
        _fail(f"Could not fetch registry: {e}")

    try:
        with install_progress(service):
            if update_all:
                results = service.update_all()
            else:
                results = [service.update(identity)]
    except ResolutionError as e:
        _print_plan_errors(e)
        sys.exit(1)
    except ModManagerError as e:
        _fail(str(e))

    if not results:
        console.print("[green]Everything is up to date.[/green]")
        return
    for result in results:
        _print_install_result(result)
    if not all(r.ok for r in results):
        sys.exit(1)


def _set_enabled(service: ModManagerService, identity: str, enabled: bool) -> None:
    try:
        result = service.enable(identity, enabled)
    except ResolutionError as e:
        _print_plan_errors(e)
        sys.exit(1)
    except ModManagerError as e:
        _fail(str(e))

    for warning in result.plan.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning.message}")
    if not result.changes:
        console.print(f"[dim]{identity} is already {'enabled' if enabled else 'disabled'}.[/dim]")
    for changed, value in sorted(result.changes.items()):
        console.print(f"[green]{'Enabled' if value else 'Disabled'} {changed}[/green]")


@main.command()
@click.argument("identity", required=False)
@click.option("--all", "all_mods", is_flag=True, help="Enable every installed mod")
@click.pass_obj
def enable(service: ModManagerService, identity: str | None, all_mods: bool) -> None:
    """Enable a mod together with its dependencies."""
    if all_mods:
        changes = service.toggle_all(True)
        console.print(f"[green]Enabled {len(changes)} mods.[/green]")
    elif identity:
        _set_enabled(service, identity, True)
    else:
        _fail("Give a mod identity or --all")


@main.command()
@click.argument("identity", required=False)
@click.option("--all", "all_mods", is_flag=True, help="Disable every mod that is not required")
@click.pass_obj
def disable(service: ModManagerService, identity: str | None, all_mods: bool) -> None:
    """Disable a mod. Its dependencies stay enabled."""
    if all_mods:
        changes = service.toggle_all(False)
        console.print(f"[green]Disabled {len(changes)} mods.[/green]")
    elif identity:
        _set_enabled(service, identity, False)
    else:
        _fail("Give a mod identity or --all")


@main.command()
@click.argument("target")
@click.confirmation_option(prompt="Remove this mod from disk?")
@click.pass_obj
def uninstall(service: ModManagerService, target: str) -> None:
    """
    Remove an installed mod.

    TARGET: mod identity, or directory of a broken mod
    """
    path = Path(target)
    try:
        if target not in service.local and path.is_dir():
            service.uninstall_broken(path)
            console.print(f"[green]Removed {path}[/green]")
            return
        result = service.uninstall(target)
    except ModManagerError as e:
        _fail(str(e))

    console.print(f"[green]Uninstalled {target}[/green]")
    if result.dependents:
        console.print(f"[yellow]Still required by:[/yellow] {', '.join(result.dependents)}")


@main.command(name="export")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def export_mods(service: ModManagerService, path: Path) -> None:
    """Write the enabled mods to a JSON file."""
    try:
        identities = service.export_mods(path)
    except ModManagerError as e:
        _fail(str(e))
    console.print(f"[green]Exported {len(identities)} mods to {path}[/green]")


@main.command(name="import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def import_mods(service: ModManagerService, path: Path) -> None:
    """Install and enable the mods listed in an export file."""
    _refresh_remote(service)
    try:
        with install_progress(service):
            result = service.import_mods(path)
    except ModManagerError as e:
        _fail(str(e))

    for installed in result.installed:
        _print_install_result(installed)
    console.print(f"[green]Enabled {len(set(result.enabled))} mods.[/green]")
    for error in result.errors:
        console.print(f"[red]Error:[/red] {error}")
    if result.errors:
        sys.exit(1)


if __name__ == "__main__":
    main()
