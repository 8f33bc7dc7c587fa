"""Command-line interface for mailfacts.

Provides commands for configuration validation, user setup, on-demand
pipeline runs, operator recovery, the scheduler and the API server.

Usage:
    python -m mailfacts validate-config
    python -m mailfacts add-user --user alice --email alice@example.com
    python -m mailfacts sync --all
    python -m mailfacts extract --batch-size 20
    python -m mailfacts ask --user alice "Total spent this month"
    python -m mailfacts users
    python -m mailfacts serve
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from mailfacts.config import validate_config_file
from mailfacts.core.logging import configure_logging

if TYPE_CHECKING:
    import anthropic

    from mailfacts.config_schema import AppConfig
    from mailfacts.db.store import DatabaseStore
    from mailfacts.engine.pipeline import Pipeline
    from mailfacts.engine.sync import SyncResult

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    anthropic_client: anthropic.Anthropic
    pipeline: Pipeline


def _load_config_or_exit() -> AppConfig:
    from mailfacts.config import get_config
    from mailfacts.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least a [cyan]google.client_id[/cyan].\n"
            "See config/config.yaml.example."
        )
        sys.exit(1)


async def _init_store(config: AppConfig) -> DatabaseStore:
    from mailfacts.db.store import DatabaseStore

    db_path = Path(config.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    return store


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, initializes DB/Anthropic/vault and the pipeline, and
    returns them in a frozen dataclass. Prints actionable error messages
    and calls sys.exit(1) on failure.
    """
    import anthropic as anthropic_mod

    from mailfacts.core.errors import VaultKeyError
    from mailfacts.engine.pipeline import Pipeline

    config = _load_config_or_exit()
    store = await _init_store(config)
    anthropic_client = anthropic_mod.Anthropic(max_retries=3, timeout=30.0)

    try:
        pipeline = Pipeline.build(config, store, anthropic_client)
    except VaultKeyError as e:
        console.print(f"[red]Vault error:[/red] {e}")
        sys.exit(1)

    return CLIDeps(
        config=config,
        store=store,
        anthropic_client=anthropic_client,
        pipeline=pipeline,
    )


def _run(coro: Coroutine[Any, Any, Any]) -> None:
    """Run a command coroutine with the CLI's error reporting."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailfacts - mailbox sync, fact extraction and questions over your email."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database and its tables if they don't exist."""

    async def _init() -> None:
        config = _load_config_or_exit()
        await _init_store(config)
        console.print(f"[green]✓[/green] Database ready at [cyan]{config.database_path}[/cyan]")

    _run(_init())


@cli.command("add-user")
@click.option("--user", "user_id", required=True, help="User identifier")
@click.option("--email", default=None, help="Mailbox address (informational)")
@click.option(
    "--refresh-token",
    prompt=True,
    hide_input=True,
    help="Google OAuth refresh token (gmail.readonly scope)",
)
@click.option("--access-token", default="", help="Current access token, if one is at hand")
@click.option(
    "--expires-in",
    default=0,
    type=int,
    help="Seconds until --access-token expires (0 = refresh on first sync)",
)
def add_user(
    user_id: str,
    email: str | None,
    refresh_token: str,
    access_token: str,
    expires_in: int,
) -> None:
    """Register a mailbox, or replace its credentials.

    Tokens are encrypted with TOKEN_ENCRYPTION_KEY before they are stored.
    """

    async def _add() -> None:
        from mailfacts.auth.vault import CredentialVault
        from mailfacts.core.errors import VaultKeyError

        config = _load_config_or_exit()
        try:
            vault = CredentialVault.from_env()
        except VaultKeyError as e:
            console.print(f"[red]Vault error:[/red] {e}")
            sys.exit(1)

        store = await _init_store(config)
        expires_at = None
        if access_token and expires_in > 0:
            expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)

        user = await store.upsert_user(
            user_id,
            email=email,
            access_token_enc=vault.encrypt(access_token),
            refresh_token_enc=vault.encrypt(refresh_token),
            token_expires_at=expires_at,
        )
        console.print(
            f"[green]✓[/green] User [cyan]{user.id}[/cyan] saved "
            f"(sync status: {user.sync_status})"
        )

    _run(_add())


def _print_sync_result(result: SyncResult) -> None:
    if result.status == "conflict":
        console.print(f"[yellow]{result.user_id}:[/yellow] sync already in progress")
        return
    if result.status == "error":
        console.print(f"[red]{result.user_id}:[/red] sync failed: {result.error}")
        return
    console.print(
        f"[green]{result.user_id}:[/green] fetched={result.fetched} stored={result.stored} "
        f"skipped={result.skipped} failed={result.failed} ({result.duration_ms}ms)"
    )


@cli.command("sync")
@click.option("--user", "user_id", default=None, help="Sync one user")
@click.option("--all", "sync_all", is_flag=True, help="Sync every user")
def sync(user_id: str | None, sync_all: bool) -> None:
    """Sync mailboxes now."""
    if not user_id and not sync_all:
        console.print("[red]Error:[/red] pass --user ID or --all")
        sys.exit(2)

    async def _sync() -> None:
        from mailfacts.core.errors import UserNotFoundError

        deps = await _init_cli_deps()
        if sync_all:
            results = await deps.pipeline.sync_all()
            if not results:
                console.print("No users registered.")
            for result in results:
                _print_sync_result(result)
            if any(r.status == "error" for r in results):
                sys.exit(1)
            return

        try:
            result = await deps.pipeline.trigger_sync(user_id)
        except UserNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        _print_sync_result(result)
        if result.status != "ok":
            sys.exit(1)

    _run(_sync())


@cli.command("extract")
@click.option(
    "--batch-size",
    default=None,
    type=click.IntRange(1, 100),
    help="Messages per batch (default: extraction.batch_size)",
)
def extract(batch_size: int | None) -> None:
    """Run one fact extraction batch."""

    async def _extract() -> None:
        deps = await _init_cli_deps()
        result = await deps.pipeline.extract_batch(batch_size)

        console.print(f"\n[bold]Extraction Batch Summary[/bold] (run {result.run_id[:8]}...)")
        console.print(f"  Duration:   {result.duration_ms}ms")
        console.print(f"  Selected:   {result.total}")
        console.print(f"  Processed:  {result.processed}")
        console.print(f"  Failed:     {result.failed}")
        console.print(f"  Facts:      {result.facts_created}")

    _run(_extract())


@cli.command("ask")
@click.option("--user", "user_id", required=True, help="User whose facts to query")
@click.option("--show-data", is_flag=True, help="Also print the intent and matching rows")
@click.argument("question")
def ask(user_id: str, show_data: bool, question: str) -> None:
    """Ask a question about a user's email."""

    async def _ask() -> None:
        from mailfacts.core.errors import QueryError, UserNotFoundError

        deps = await _init_cli_deps()
        try:
            result = await deps.pipeline.answer_query(user_id, question)
        except (QueryError, UserNotFoundError) as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)

        console.print(result.answer)
        if show_data:
            console.print_json(data={"intent": result.intent.to_dict(), "data": result.data})

    _run(_ask())


@cli.command("requeue-failed")
@click.option("--user", "user_id", default=None, help="Only this user's messages")
def requeue_failed(user_id: str | None) -> None:
    """Clear extraction errors so failed messages are picked up again."""

    async def _requeue() -> None:
        store = await _init_store(_load_config_or_exit())
        cleared = await store.clear_processing_errors(user_id)
        console.print(f"[green]✓[/green] Re-queued {cleared} message(s)")

    _run(_requeue())


@cli.command("unlock")
@click.option("--user", "user_id", required=True, help="User stuck in 'syncing'")
def unlock(user_id: str) -> None:
    """Release a sync lock left behind by a crashed process."""

    async def _unlock() -> None:
        store = await _init_store(_load_config_or_exit())
        if await store.reset_sync_status(user_id):
            console.print(f"[green]✓[/green] {user_id} is idle again")
        else:
            console.print(f"[yellow]{user_id} was not syncing; nothing to do[/yellow]")

    _run(_unlock())


@cli.command("stats")
def stats() -> None:
    """Show user, message and fact counts."""

    async def _stats() -> None:
        store = await _init_store(_load_config_or_exit())
        data = await store.get_stats()

        messages = Table(title="Messages")
        for column in ("total", "processed", "failed", "pending"):
            messages.add_column(column.capitalize(), justify="right")
        messages.add_row(
            *(str(data["messages"][c]) for c in ("total", "processed", "failed", "pending"))
        )
        console.print(messages)

        facts = Table(title="Facts by type")
        facts.add_column("Type")
        facts.add_column("Count", justify="right")
        for fact_type, count in data["facts_by_type"].items():
            facts.add_row(fact_type, str(count))
        console.print(facts)

        users = ", ".join(f"{status}={n}" for status, n in data["users_by_sync_status"].items())
        console.print(f"Users: {users or 'none'}")

    _run(_stats())


@cli.command("users")
def users() -> None:
    """List registered users with their sync state."""

    async def _users() -> None:
        from zoneinfo import ZoneInfo

        config = _load_config_or_exit()
        store = await _init_store(config)
        tz = ZoneInfo(config.timezone)

        table = Table(title=f"Users (times in {config.timezone})")
        table.add_column("User")
        table.add_column("Email")
        table.add_column("Status")
        table.add_column("Last sync")
        table.add_column("Cursor", justify="right")
        for user in await store.list_users():
            last_sync = (
                user.last_synced_at.astimezone(tz).strftime("%Y-%m-%d %H:%M")
                if user.last_synced_at
                else "never"
            )
            table.add_row(
                user.id, user.email or "", user.sync_status, last_sync, user.history_cursor or "-"
            )
        console.print(table)

    _run(_users())


@cli.command("run")
def run() -> None:
    """Run the sync and extraction schedule without the API server."""
    try:
        asyncio.run(_run_scheduler())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_scheduler() -> None:
    """Run the pipeline jobs with APScheduler until interrupted."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    deps = await _init_cli_deps()
    pipeline = deps.pipeline

    async def run_sync():
        for result in await pipeline.scheduled_sync():
            _print_sync_result(result)

    async def run_extraction():
        result = await pipeline.scheduled_extraction()
        console.print(
            f"[dim]Extraction {result.run_id[:8]}...[/dim] "
            f"processed={result.processed} failed={result.failed} "
            f"facts={result.facts_created} ({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_sync,
        "interval",
        hours=deps.config.sync.interval_hours,
        id="mailbox_sync",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(),
    )
    scheduler.add_job(
        run_extraction,
        "interval",
        minutes=deps.config.extraction.interval_minutes,
        id="fact_extraction",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(
        f"Sync every {deps.config.sync.interval_hours}h, extraction every "
        f"{deps.config.extraction.interval_minutes}m. Press Ctrl+C to stop."
    )

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the API server with the sync and extraction scheduler."""
    import uvicorn

    from mailfacts.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
