"""
Main entry point for Media Backup Engine
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
)
from rich.table import Table

# Import application modules
import config
from core.backup_manager import BackupManager
from core.candidates import MediaLibrary
from core.exceptions import ConfigurationMissing
from core.network_monitor import NetworkMonitor
from core.progress import ProgressSnapshot, Completed, Cancelled, Failed
from core.settings import ConnectionSettings, SettingsRepository
from database.models import BackupResult, BackupStatus, init_database
from database.operations import SessionLedger

app = typer.Typer(
    name="media-backup",
    help=f"{config.APP_NAME} - back up photos and videos to an FTP server",
    add_completion=False,
)
console = Console()

RESULT_LABELS = {
    BackupResult.COMPLETED.value: ("Completed", "green"),
    BackupResult.USER_CANCELLED.value: ("Stopped by user", "yellow"),
    BackupResult.ERROR_STOPPED.value: ("Error", "red"),
    BackupResult.IN_PROGRESS.value: ("In progress", "cyan"),
}


def setup_logging(verbose: bool = False):
    """Setup application logging"""
    config.LOG_PATH.mkdir(parents=True, exist_ok=True)
    log_file = config.LOG_PATH / "app.log"

    # File handler
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.MAX_LOG_SIZE_MB * 1024 * 1024,
        backupCount=config.LOG_BACKUP_COUNT,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s'
    ))

    # Console handler, rendered above live progress bars
    console_handler = RichHandler(console=console, show_path=False, show_time=False)
    console_handler.setLevel(logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL))
    console_handler.setFormatter(logging.Formatter('%(message)s'))

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Suppress some noisy loggers
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def format_size(size_bytes: int) -> str:
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / 1024 / 1024:.1f} MB"


@app.callback()
def startup(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug output on the console")):
    """Prepare logging and the ledger database."""
    config.create_directories()
    setup_logging(verbose)
    logger = logging.getLogger(__name__)
    logger.debug(f"Starting {config.APP_NAME} v{config.APP_VERSION}")
    init_database()


@app.command()
def configure(
    host: str = typer.Option(..., "--host", "-H", help="FTP server address"),
    port: int = typer.Option(config.DEFAULT_FTP_PORT, "--port", "-p", help="FTP server port"),
    root: str = typer.Option(config.DEFAULT_UPLOAD_ROOT, "--root", "-r", help="Remote upload folder"),
    user: str = typer.Option("", "--user", "-u", help="FTP user name"),
    password: str = typer.Option(None, "--password", help="FTP password (will prompt if not provided)"),
):
    """Save the FTP connection settings."""
    if password is None:
        password = typer.prompt("Password", hide_input=True, default="", show_default=False)

    settings = ConnectionSettings(host=host, port=port, upload_root=root,
                                  username=user, password=password)
    try:
        settings.validate()
    except ConfigurationMissing as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    SettingsRepository().save_connection_settings(settings)
    console.print(f"[green]Saved settings for {host}:{port}/{root}[/green]")


@app.command()
def backup(
    directories: List[Path] = typer.Argument(..., help="Directories holding photos and videos"),
    concurrency: int = typer.Option(config.MAX_CONCURRENT_UPLOADS, "--concurrency", "-c",
                                    min=1, help="Simultaneous uploads"),
):
    """Back up new media files to the configured FTP server."""
    settings_repository = SettingsRepository()
    manager = BackupManager(
        MediaLibrary(directories),
        settings_repository,
        concurrency_limit=concurrency,
    )

    monitor = None
    settings = settings_repository.get_connection_settings()
    if settings.host:
        monitor = NetworkMonitor(settings.host, settings.port)
        monitor.start(manager.set_network_available)

    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task("Preparing backup...", total=None)

        def describe(snapshot):
            eta = manager.get_state()["estimated_time_remaining"]
            if eta is None or not snapshot.network_available:
                return snapshot.status_text
            return f"{snapshot.status_text} ~{eta}s left"

        def on_event(event):
            if isinstance(event, ProgressSnapshot):
                progress.update(
                    task_id,
                    total=event.total_count or None,
                    completed=event.completed_count,
                    description=describe(event),
                )

        manager.subscribe(on_event)
        manager.start()
        try:
            while not manager.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            console.print("[yellow]Stopping after in-flight uploads finish...[/yellow]")
            manager.cancel()
            manager.wait()
        finally:
            if monitor:
                monitor.stop()

    event = manager.last_event
    if isinstance(event, Completed):
        console.print(
            f"[green]{event.message}[/green] "
            f"({format_size(event.total_bytes)} in {event.duration_ms / 1000:.1f}s)"
        )
        if event.failure_count:
            raise typer.Exit(2)
    elif isinstance(event, Cancelled):
        console.print(f"[yellow]{event.message}: {event.success_count} succeeded, "
                      f"{event.failure_count} failed[/yellow]")
        raise typer.Exit(130)
    elif isinstance(event, Failed):
        console.print(f"[red]Backup failed: {event.message}[/red]")
        raise typer.Exit(1)


@app.command()
def history(limit: int = typer.Option(20, "--limit", "-n", help="Number of sessions")):
    """List recent backup sessions."""
    sessions = SessionLedger().get_recent_sessions(limit)

    table = Table(title="Backup Sessions")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Time")
    table.add_column("Result")
    table.add_column("Succeeded", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Duration", justify="right")

    for s in sessions:
        label, color = RESULT_LABELS.get(s.result, (s.result, "white"))
        table.add_row(
            str(s.id),
            s.started_at.strftime("%Y-%m-%d"),
            s.started_at.strftime("%H:%M:%S"),
            f"[{color}]{label}[/{color}]",
            str(s.success_count),
            str(s.failure_count),
            f"{s.total_duration_ms / 1000:.1f}s",
        )

    console.print(table)


@app.command()
def session(session_id: int = typer.Argument(..., help="Session ID from the history list")):
    """Show the files transferred in one session."""
    ledger = SessionLedger()
    backup_session = ledger.get_session(session_id)
    if not backup_session:
        console.print(f"[red]Session {session_id} not found[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Session {session_id} ({backup_session.started_at:%Y-%m-%d %H:%M:%S})")
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Upload time", justify="right")
    table.add_column("Status")

    for f in ledger.get_files_for_session(session_id):
        ok = f.status == BackupStatus.SUCCESS.value
        table.add_row(
            f.file_name,
            format_size(f.file_size),
            f"{f.duration_ms / 1000:.1f}s",
            "[green]Success[/green]" if ok else f"[red]Failure[/red] {f.error_message or ''}",
        )

    console.print(table)
    if backup_session.error_message:
        console.print(f"[red]{backup_session.error_message}[/red]")


@app.command()
def cleanup(days: int = typer.Option(config.SESSION_RETENTION_DAYS, "--days", "-d",
                                     help="Delete finished sessions older than this")):
    """Delete old sessions and their file records."""
    removed = SessionLedger().cleanup_old_sessions(days)
    console.print(f"Removed {removed} sessions older than {days} days")


if __name__ == "__main__":
    app()
