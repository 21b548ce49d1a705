"""CLI for mailcow-backup (Typer + Rich)."""

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from mailcow_backup import configure_logging
from mailcow_backup.backup.executor import BackupExecutor, PreconditionError, execute_backup
from mailcow_backup.backup.retention import decide, enforce_retention
from mailcow_backup.backup.storage import StorageError, create_target
from mailcow_backup.config import BackupConfig, ConfigError, load_config
from mailcow_backup.notify import create_notifier
from mailcow_backup.scheduler import run_scheduler
from mailcow_backup.utils.formatting import format_size, mask_secret

app = typer.Typer(
    name="mailcow-backup",
    help="Back up mailcow to several storage targets with per-target retention.",
    no_args_is_help=True,
)
console = Console()

ConfigPath = Annotated[
    Optional[str],
    typer.Option("--config", "-c", help="Configuration file (default: $MAILCOW_BACKUP_CONFIG or /etc/mailcow-backup.env)"),
]


def _load_config(config_path: Optional[str]) -> BackupConfig:
    """Load config and set up logging; exit 1 on configuration errors."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    configure_logging(config)
    return config


# ── backup run ──────────────────────────────────────────────────────────


@app.command()
def run(config_path: ConfigPath = None) -> None:
    """Create a backup, replicate it to every target and apply retention."""
    config = _load_config(config_path)
    result = execute_backup(config)
    raise typer.Exit(result.exit_code)


# ── backup check ────────────────────────────────────────────────────────


@app.command()
def check(
    config_path: ConfigPath = None,
    notify: Annotated[bool, typer.Option("--notify/--no-notify", help="Send a Gotify test message")] = True,
) -> None:
    """Check the mailcow directory, storage targets and notifications without backing up."""
    config = _load_config(config_path)
    failed = False

    table = Table(title="Preflight Checks")
    table.add_column("Check", style="cyan")
    table.add_column("Location")
    table.add_column("Status")

    executor = BackupExecutor(config)
    try:
        executor.check_preconditions()
        table.add_row("Mailcow", str(config.mailcow_dir), "[green]OK[/]")
    except PreconditionError as e:
        table.add_row("Mailcow / targets", str(config.mailcow_dir), f"[red]{e}[/]")
        failed = True

    if not failed:
        for target in config.targets:
            table.add_row(target.name, target.root_path, f"[green]OK[/] (retention: {target.retention_count})")

    if notify:
        notifier = create_notifier(config)
        ok = notifier.test_connection()
        status = "[green]OK[/]" if ok else "[yellow]FAILED (non-fatal)[/]"
        table.add_row("Gotify", f"{config.gotify_url} (token {mask_secret(config.gotify_token)})", status)

    console.print(table)
    if failed:
        raise typer.Exit(1)


# ── backup list ─────────────────────────────────────────────────────────


@app.command("list")
def list_backups(config_path: ConfigPath = None) -> None:
    """List backups on every target, newest first."""
    config = _load_config(config_path)
    failed = False

    for target in config.targets:
        try:
            client = create_target(target, config)
            entries = client.list_backups()
        except StorageError as e:
            console.print(f"[red]Error:[/] {target.name}: {e}")
            failed = True
            continue

        decision = decide(entries, target.retention_count)

        table = Table(title=f"{target.name} ({target.root_path}, retention: {target.retention_count})")
        table.add_column("#", style="dim", width=4)
        table.add_column("Backup")
        table.add_column("Modified")
        table.add_column("Size", justify="right")
        table.add_column("Retention")

        for i, entry in enumerate(decision.keep + decision.delete, 1):
            status = "[green]keep[/]" if i <= len(decision.keep) else "[yellow]expired[/]"
            size = format_size(entry.size) if entry.size is not None else "-"
            table.add_row(str(i), entry.name, entry.modified.strftime("%Y-%m-%d %H:%M UTC"), size, status)

        if entries:
            console.print(table)
        else:
            console.print(f"[yellow]No backups found on {target.name}.[/]")

    if failed:
        raise typer.Exit(1)


# ── backup prune ────────────────────────────────────────────────────────


@app.command()
def prune(
    config_path: ConfigPath = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Only show what would be deleted")] = False,
) -> None:
    """Apply each target's retention count without creating a backup."""
    config = _load_config(config_path)
    errors = 0

    for target in config.targets:
        try:
            client = create_target(target, config)
            client.check_available()
        except StorageError as e:
            console.print(f"[red]Error:[/] {e}")
            errors += 1
            continue

        if dry_run:
            try:
                decision = decide(client.list_backups(), target.retention_count)
            except StorageError as e:
                console.print(f"[red]Error:[/] {e}")
                errors += 1
                continue
            for entry in decision.delete:
                console.print(f"Would remove {client.location(entry.name)}")
            console.print(f"{target.name}: {len(decision.keep)} kept, {len(decision.delete)} to remove")
            continue

        result = enforce_retention(client, target.retention_count)
        errors += len(result.errors)
        for error in result.errors:
            console.print(f"[red]Error:[/] {error}")

        try:
            size, count = client.usage()
            usage = f"{format_size(size)} in {count} backups"
        except StorageError:
            usage = "usage unavailable"
        console.print(f"{target.name}: {len(result.kept)} kept, {len(result.deleted)} removed, {usage}")

    if errors:
        raise typer.Exit(1)


# ── backup schedule ─────────────────────────────────────────────────────


@app.command()
def schedule(config_path: ConfigPath = None) -> None:
    """Run backups in the foreground on the SCHEDULE_CRON crontab."""
    config = _load_config(config_path)
    try:
        run_scheduler(config)
    except ConfigError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
