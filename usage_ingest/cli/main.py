"""
CLI interface for Usage Ingest.

The run-once command is the trigger entry point for external schedulers;
the remaining commands cover setup, inspection and the login hand-off.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_ingest.config.loader import CONFIG_PATH_ENV, IngestConfig, load_ingest_config
from usage_ingest.core.orchestrator import IngestionOrchestrator, OrchestratorSettings
from usage_ingest.errors import (
    AuthExpiredError,
    SessionAuthenticationError,
    UsageIngestError,
    describe_error,
)
from usage_ingest.fetch.http import HttpUsageFetcher
from usage_ingest.fetch.local import LocalFileFetcher
from usage_ingest.logging_config import configure_logging
from usage_ingest.storage.blob_store import BlobStore
from usage_ingest.storage.db import Database
from usage_ingest.storage.event_store import EventStore
from usage_ingest.storage.ingestion_log import IngestionLog
from usage_ingest.storage.models import SourceKind
from usage_ingest.session.store import SessionStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_AUTH = 2       # human re-login required
EXIT_CODE_RETRYABLE = 3  # safe to retry with backoff

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help=f"Path to YAML config (defaults to ${CONFIG_PATH_ENV})",
)


def _error_to_exit_code(error: UsageIngestError) -> int:
    """Map a classified error to a CLI exit code."""
    if isinstance(error, (AuthExpiredError, SessionAuthenticationError)):
        return EXIT_CODE_AUTH
    if error.retryable:
        return EXIT_CODE_RETRYABLE
    return EXIT_CODE_FAIL


def _load_config(config_path: Optional[str]) -> IngestConfig:
    try:
        return load_ingest_config(config_path or os.environ.get(CONFIG_PATH_ENV))
    except UsageIngestError as e:
        console.print(f"[red]Configuration error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Emit debug logs"),
):
    """Usage Ingest CLI."""
    configure_logging(logging.DEBUG if verbose else logging.INFO)
    if ctx.invoked_subcommand is None:
        console.print("Usage Ingest - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Initialize the ingestion database."""
    settings = _load_config(config)
    try:
        Database(settings.database_path).open().close()
    except UsageIngestError as e:
        console.print(f"[red]Error initializing database:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Database initialized at {settings.database_path}")
    sys.exit(EXIT_CODE_PASS)


@app.command("run-once")
def run_once(
    config: Optional[str] = ConfigOption,
    from_file: Optional[Path] = typer.Option(
        None,
        "--from-file",
        "-f",
        help="Ingest a saved export instead of fetching it",
    ),
    kind: Optional[SourceKind] = typer.Option(
        None,
        "--kind",
        "-k",
        help="Export format (overrides fetch.source_kind)",
    ),
):
    """Run the ingestion pipeline once."""
    settings = _load_config(config)
    source_kind = kind or settings.source_kind

    database = Database(settings.database_path)
    try:
        database.open()
        if from_file is not None:
            fetcher = LocalFileFetcher(str(from_file))
        else:
            fetcher = HttpUsageFetcher(SessionStore(settings.sessions_directory))
        orchestrator = IngestionOrchestrator(
            fetcher=fetcher,
            blob_store=BlobStore(database),
            event_store=EventStore(database),
            ingestion_log=IngestionLog(database),
            settings=OrchestratorSettings(
                target_url=settings.target_url,
                source_kind=source_kind,
                retention_count=settings.retention_count,
                fetch_timeout_seconds=settings.fetch_timeout_seconds,
                logic_version=settings.logic_version,
            ),
        )
        summary = orchestrator.run_once()
    except UsageIngestError as e:
        info = describe_error(e)
        console.print(f"[red]Run failed ({info['code']}):[/] {info['message']}")
        sys.exit(_error_to_exit_code(e))
    finally:
        database.close()

    table = Table(title="Ingestion Run")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Ingestion", summary.ingestion_id)
    table.add_row("Blob", "saved" if summary.saved_blob else "duplicate")
    table.add_row("Content hash", summary.content_hash or "-")
    table.add_row("Delta events", str(summary.delta_count))
    table.add_row("New events", str(summary.new_event_count))
    table.add_row("Merged events", str(summary.merged_count))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(config: Optional[str] = ConfigOption):
    """Show stored blobs, events, recent runs and session state."""
    settings = _load_config(config)
    database = Database(settings.database_path)
    try:
        database.open()
        blobs = BlobStore(database).list_blobs()
        event_store = EventStore(database)
        event_count = event_store.count_events()
        watermark = event_store.latest_captured_at()
        recent = IngestionLog(database).list_recent(limit=5)
    except UsageIngestError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        database.close()

    session_present = SessionStore(settings.sessions_directory).exists()
    console.print(f"Raw blobs stored: {len(blobs)}")
    console.print(f"Usage events: {event_count}")
    console.print(f"Watermark: {watermark.isoformat() if watermark else 'none'}")
    console.print(f"Session: {'present' if session_present else '[yellow]missing[/]'}")

    if recent:
        table = Table(title="Recent Ingestions")
        table.add_column("Ingested at")
        table.add_column("Source")
        table.add_column("Status")
        table.add_column("Rows")
        for ingestion in recent:
            table.add_row(
                ingestion.ingested_at.isoformat(),
                ingestion.source,
                ingestion.status.value,
                str(ingestion.metadata.get("row_count", "-")),
            )
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("save-session")
def save_session(
    session_file: Path = typer.Argument(..., help="JSON file with the captured session"),
    config: Optional[str] = ConfigOption,
    no_encrypt: bool = typer.Option(
        False,
        "--no-encrypt",
        help="Store the session in plaintext",
    ),
):
    """Store a captured login session as the active credential."""
    settings = _load_config(config)
    try:
        payload = json.loads(session_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read session file:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if not isinstance(payload, dict):
        console.print("[red]Session file must contain a JSON object[/]")
        sys.exit(EXIT_CODE_FAIL)

    try:
        filename = SessionStore(settings.sessions_directory).save(payload, encrypt=not no_encrypt)
    except UsageIngestError as e:
        console.print(f"[red]Error saving session:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Session saved as {filename}")
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-session")
def clear_session(config: Optional[str] = ConfigOption):
    """Remove the stored credential."""
    settings = _load_config(config)
    removed = SessionStore(settings.sessions_directory).clear()
    console.print(f"[green]✓[/] Removed {removed} session file(s)")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
