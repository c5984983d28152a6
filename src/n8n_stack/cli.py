"""
CLI module - Command line interface for n8n-stack

Entry points:
- ``n8n-stack`` with subcommands (backup, restore, update, status, list-backups, check)
- ``n8n-backup``, ``n8n-restore``, ``n8n-update`` shortcuts for cron and muscle memory
"""

import logging
import os
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backup import BackupOrchestrator, list_backups
from .compose import ComposeClient, StackHealth
from .config import AppConfig, load_config, validate_paths
from .constants import ENCRYPTION_KEY_ENV
from .environment import load_environment
from .errors import StackError
from .lock import deployment_lock
from .logging_setup import setup_logging
from .restore import RestoreOrchestrator, RestoreState, resolve_archive_path
from .tools import check_tools_status
from .update import ReleaseClient, Updater, UpdateOutcome, read_version

logger = logging.getLogger(__name__)

console = Console()
app = typer.Typer(
    name="n8n-stack",
    help="n8n-stack - backup, restore and update a docker-compose n8n deployment.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@dataclass
class CliState:
    config: AppConfig
    verbose: bool = False


def version_callback(value: bool):
    if value:
        console.print(f"n8n-stack version {__version__}")
        raise typer.Exit()


def _on_sigterm(signum, frame):
    # Unwind context managers (temp dirs, backup rollback, the lock) like Ctrl-C does
    raise SystemExit(128 + signum)


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool, typer.Option("--version", callback=version_callback, is_eager=True, help="Show version")
    ] = False,
    root: Annotated[
        Path | None,
        typer.Option("--root", "-r", help="Install root of the compose deployment (default: N8N_STACK_ROOT or cwd)"),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config file", exists=True, dir_okay=False),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
):
    """n8n-stack - backup, restore and update a docker-compose n8n deployment."""
    app_config = load_config(config, root)
    if app_config.logging.file:
        app_config.logging.file = app_config.resolve(app_config.logging.file)
    setup_logging(app_config.logging, verbose)
    signal.signal(signal.SIGTERM, _on_sigterm)
    ctx.obj = CliState(config=app_config, verbose=verbose)


@contextmanager
def _errors_exit() -> Iterator[None]:
    """Turn n8n-stack failures into ``Error: <message>`` and exit status 1."""
    try:
        yield
    except (StackError, OSError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130) from None


def _confirm_yes(question: str) -> bool:
    """Destructive prompts only accept a literal ``yes``."""
    answer = typer.prompt(f"{question} (yes/no)", default="no", show_default=False)
    return answer.strip() == "yes"


def _passphrase() -> str | None:
    return os.environ.get(ENCRYPTION_KEY_ENV) or None


def _compose(config: AppConfig) -> ComposeClient:
    return ComposeClient(config.compose_path)


def _backup_factory(config: AppConfig, compose: ComposeClient):
    def factory() -> BackupOrchestrator:
        environment = load_environment(config.env_path)
        return BackupOrchestrator(config, environment, compose, passphrase=_passphrase())

    return factory


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


@app.command()
def backup(
    ctx: typer.Context,
    target_dir: Annotated[
        Path | None, typer.Argument(help="Directory to write the backup to (default: <root>/backups)")
    ] = None,
):
    """
    Back up the database, the n8n data volume and the configuration.

    Set BACKUP_ENCRYPTION_KEY to encrypt the archive (openssl compatible).

    [bold]Examples:[/bold]

        n8n-stack backup

        n8n-stack backup /mnt/nas/n8n-backups

        BACKUP_ENCRYPTION_KEY=... n8n-stack backup
    """
    config = _state(ctx).config
    with _errors_exit():
        environment = load_environment(config.env_path)
        compose = _compose(config)
        passphrase = _passphrase()
        if not passphrase:
            logger.warning("%s not set - backup will NOT be encrypted", ENCRYPTION_KEY_ENV)

        with deployment_lock(config.root, "backup"):
            result = BackupOrchestrator(config, environment, compose, passphrase=passphrase).run(target_dir)

    console.print(f"\n[green]✓[/green] Backup completed: [cyan]{result.archive}[/cyan]")
    console.print(f"  Size:       {result.size_mb:.1f} MB")
    console.print(f"  Encrypted:  {'yes' if result.encrypted else 'no'}")
    console.print(f"  Volume:     {result.volume_name or '[yellow]not found, skipped[/yellow]'}")
    console.print(
        f"  Retention:  {len(result.retention.removed)} removed, {result.retention.retained} retained"
    )


@app.command()
def restore(
    ctx: typer.Context,
    archive: Annotated[Path, typer.Argument(help="Backup archive (.tar.gz or .tar.gz.enc)")],
    force: Annotated[bool, typer.Option("--force", "-f", help="Allow running without a terminal")] = False,
):
    """
    Restore a backup over the current deployment.

    Stops the stack, replaces the data volume and the database, optionally
    restores configuration files and starts everything again. Prompts must
    be answered with [bold]yes[/bold].

    [bold]Examples:[/bold]

        n8n-stack restore backups/backup-20240101-020000.tar.gz

        n8n-stack restore backup-20240101-020000.tar.gz.enc
    """
    config = _state(ctx).config
    with _errors_exit():
        environment = load_environment(config.env_path)
        compose = _compose(config)
        orchestrator = RestoreOrchestrator(
            config,
            environment,
            compose,
            confirm=_confirm_yes,
            passphrase=_passphrase(),
            force=force,
            backup_factory=_backup_factory(config, compose),
        )
        orchestrator.ensure_interactive()

        with deployment_lock(config.root, "restore"):
            result = orchestrator.run(resolve_archive_path(archive, config.root))

    if result.state == RestoreState.ABORTED:
        console.print("[yellow]Restore cancelled[/yellow]")
        return

    console.print(f"\n[green]✓[/green] Restored from [cyan]{result.archive.name}[/cyan]")
    if result.pre_restore_backup:
        console.print(f"  Pre-restore backup: {result.pre_restore_backup}")
    if result.config_restored:
        console.print(f"  Config restored:    {', '.join(result.config_restored)}")
    if not result.healthy:
        console.print("[yellow]Warning:[/yellow] services are not reporting healthy yet - check: docker compose ps")


@app.command()
def update(
    ctx: typer.Context,
    check: Annotated[bool, typer.Option("--check", help="Only check for updates (default)")] = False,
    apply: Annotated[bool, typer.Option("--apply", "-a", help="Download and apply the latest update")] = False,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Apply without confirmation, even if the backup fails")
    ] = False,
):
    """
    Check for a new release or apply it.

    [bold]Examples:[/bold]

        n8n-stack update

        n8n-stack update --apply

        n8n-stack update --force
    """
    config = _state(ctx).config
    compose = _compose(config)
    client = ReleaseClient(config.update.repository, config.update.api_base, config.update.timeout)
    updater = Updater(config, compose, client, confirm=_confirm_yes, backup_factory=_backup_factory(config, compose))

    if not (apply or force):
        try:
            status = updater.check()
        except StackError as e:
            console.print(f"[yellow]Warning:[/yellow] {escape(str(e))}", highlight=False)
            return

        if not status.update_available:
            console.print("[green]You are running the latest version![/green]")
            return
        console.print(f"[yellow]Update available:[/yellow] {status.current} -> [bold]{status.latest}[/bold]\n")
        console.print("[bold]Release notes:[/bold]")
        console.print("-" * 40)
        console.print(status.notes, markup=False, highlight=False)
        console.print("-" * 40)
        console.print("\nApply with: [cyan]n8n-stack update --apply[/cyan]")
        return

    with _errors_exit(), deployment_lock(config.root, "update"):
        result = updater.apply(force=force)

    if result.outcome == UpdateOutcome.UP_TO_DATE:
        console.print(f"[green]Already up to date[/green] ({result.version})")
    elif result.outcome == UpdateOutcome.CANCELLED:
        console.print("[yellow]Update cancelled[/yellow]")
    else:
        console.print(f"\n[green]✓[/green] Updated to [bold]{result.version}[/bold]")
        if result.backup:
            console.print(f"  Backup: {result.backup}")
        console.print("  Check service status with: [cyan]docker compose logs -f[/cyan]")


@app.command()
def status(ctx: typer.Context):
    """Show services, stack health and the installed version."""
    config = _state(ctx).config
    problems = validate_paths(config)
    if problems:
        for problem in problems:
            console.print(f"[red]Error:[/red] {escape(problem)}", highlight=False)
        raise typer.Exit(1)

    compose = _compose(config)
    with _errors_exit():
        containers = compose.ps()

    table = Table(title=f"Stack: {config.project_name}")
    table.add_column("Service", style="cyan")
    table.add_column("State")
    table.add_column("Health")

    for container in sorted(containers, key=lambda c: c.get("Service", "")):
        state = container.get("State", "")
        style = "green" if state.lower() == "running" else "red"
        table.add_row(container.get("Service", "?"), f"[{style}]{state}[/{style}]", container.get("Health") or "-")

    console.print(table)

    health = compose.stack_health()
    colour = {StackHealth.HEALTHY: "green", StackHealth.DEGRADED: "yellow"}.get(health, "dim")
    console.print(f"Health:  [{colour}]{health.value}[/{colour}]")
    console.print(f"Version: {read_version(config.version_path)}")


@app.command("list-backups")
def list_backups_cmd(
    ctx: typer.Context,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of backups to show (0=all)")] = 10,
):
    """List available backups, newest first."""
    config = _state(ctx).config
    archives = list_backups(config.backup_dir)
    if not archives:
        console.print(f"[yellow]No backups found in {config.backup_dir}[/yellow]")
        return

    table = Table(title=f"Backups in {config.backup_dir}")
    table.add_column("Archive", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    table.add_column("Encrypted")

    for path in archives[:limit] if limit > 0 else archives:
        stat = path.stat()
        created = datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M")
        encrypted = "yes" if path.name.endswith(".enc") else "no"
        table.add_row(path.name, f"{stat.st_size / (1024 * 1024):.1f} MB", created, encrypted)

    console.print(table)


@app.command()
def check():
    """Check system dependencies and show their locations."""
    tools = check_tools_status()

    table = Table(title="System Dependencies")
    table.add_column("Tool", style="cyan")
    table.add_column("Status")
    table.add_column("Location", style="dim")

    for tool, location in tools.items():
        if location:
            status_str = "[green]Available[/green]"
        else:
            status_str = "[red]Missing[/red]"
        table.add_row(tool, status_str, location or "-")

    console.print(table)

    missing = [t for t, p in tools.items() if p is None]
    if "docker" in missing or "docker compose" in missing:
        console.print("\n[yellow]Warning:[/yellow] Docker with the compose plugin is required.")
        console.print("Install: https://docs.docker.com/engine/install/")
        raise typer.Exit(1)
    if missing:
        console.print("\n[dim]openssl is optional; it lets you decrypt backups by hand.[/dim]")


def main_cli():
    """Entry point for the n8n-stack command."""
    app()


_GLOBAL_VALUE_OPTIONS = {"--root", "-r", "--config", "-c"}
_GLOBAL_FLAGS = {"--verbose", "-v"}


def split_global_options(args: list[str]) -> tuple[list[str], list[str]]:
    """
    Separate the app-level options from a shortcut's argument list.

    ``n8n-backup --root /opt/n8n /mnt/nas`` has to become
    ``--root /opt/n8n backup /mnt/nas`` because --root, --config and
    --verbose belong to the app callback, not to the subcommand.
    Everything after ``--`` is left to the subcommand.
    """
    global_args: list[str] = []
    command_args: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            command_args.extend(args[i:])
            break
        if arg in _GLOBAL_FLAGS:
            global_args.append(arg)
        elif arg in _GLOBAL_VALUE_OPTIONS and i + 1 < len(args):
            global_args.extend(args[i : i + 2])
            i += 1
        elif arg.split("=", 1)[0] in ("--root", "--config") and "=" in arg:
            global_args.append(arg)
        else:
            command_args.append(arg)
        i += 1
    return global_args, command_args


def _run_subcommand(name: str, prog_name: str):
    global_args, command_args = split_global_options(sys.argv[1:])
    app(args=[*global_args, name, *command_args], prog_name=prog_name)


def backup_cli():
    """Entry point for n8n-backup."""
    _run_subcommand("backup", "n8n-backup")


def restore_cli():
    """Entry point for n8n-restore."""
    _run_subcommand("restore", "n8n-restore")


def update_cli():
    """Entry point for n8n-update."""
    _run_subcommand("update", "n8n-update")


if __name__ == "__main__":
    main_cli()
