"""Command line interface for LinkHarbor.

Commands:
- ``linkharbor scrape``: archive new links (``--refresh-older-than`` re-fetches old ones)
- ``linkharbor failures``: list permanently failed links
- ``linkharbor clear-failure``: operator override to retry a permanent failure
"""

import asyncio
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError

from linkharbor.config import Settings
from linkharbor.errors import ConfigurationError, StorageError
from linkharbor.services.pipeline import open_ledger, run_archive
from linkharbor.services.report import RunSummary, format_summary
from linkharbor.utils.cancellation import CancellationToken
from linkharbor.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_SETUP_ERROR = 1
EXIT_CANCELLED = 130

app = typer.Typer(
    name="linkharbor",
    help="Archive a curated list of links for offline browsing",
    no_args_is_help=True,
)


def _load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment with CLI overrides on top."""
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=EXIT_SETUP_ERROR) from e


async def _run_with_interrupts(
    settings: Settings, refresh_older_than: datetime | None, token: CancellationToken
) -> RunSummary:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by operator")
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable, Ctrl-C will abort immediately")
    try:
        return await run_archive(settings, refresh_older_than=refresh_older_than, cancel_token=token)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@app.command()
def scrape(
    refresh_older_than: Optional[datetime] = typer.Option(
        None,
        "--refresh-older-than",
        formats=["%Y-%m-%d"],
        help="Re-fetch archived links scraped before this date (YYYY-MM-DD)",
    ),
    links: Optional[Path] = typer.Option(None, "--links", help="Links file to read"),
    archive_dir: Optional[Path] = typer.Option(None, "--archive-dir", help="Archive directory"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Concurrent fetches"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
) -> None:
    """Fetch and archive every link that is not archived yet."""
    settings = _load_settings(
        links_file=links, archive_dir=archive_dir, workers=workers, log_level=log_level
    )
    setup_logging(settings.log_level, json_logs=json_logs, stream=sys.stderr)

    cutoff = refresh_older_than.replace(tzinfo=UTC) if refresh_older_than else None
    token = CancellationToken()

    try:
        summary = asyncio.run(_run_with_interrupts(settings, cutoff, token))
    except (ConfigurationError, StorageError) as e:
        logger.error("Archive run aborted", error=str(e), error_type=type(e).__name__)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_SETUP_ERROR) from e

    typer.echo(format_summary(summary))
    if summary.cancelled:
        raise typer.Exit(code=EXIT_CANCELLED)


@app.command()
def failures(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
) -> None:
    """List links that are excluded from automatic retries."""
    settings = _load_settings(log_level=log_level)
    setup_logging(settings.log_level, json_logs=False, stream=sys.stderr)

    try:
        entries = open_ledger(settings).permanent_entries()
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_SETUP_ERROR) from e

    if not entries:
        typer.echo("No permanent failures.")
        return

    for article_id, meta in entries.items():
        line = f"{article_id}  {meta.get('url') or '-'}  failures={meta.get('failure_count', '?')}"
        if meta.get("last_error"):
            line += f"  last_error={meta['last_error']}"
        typer.echo(line)


@app.command("clear-failure")
def clear_failure(
    article_id: str = typer.Argument(..., help="ArticleId to clear"),
) -> None:
    """Forget the failure history of a link so the next run retries it."""
    settings = _load_settings()
    setup_logging(settings.log_level, json_logs=False, stream=sys.stderr)

    try:
        cleared = open_ledger(settings).clear(article_id)
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_SETUP_ERROR) from e

    if not cleared:
        typer.echo(f"No failure history for {article_id}", err=True)
        raise typer.Exit(code=EXIT_SETUP_ERROR)
    typer.echo(f"Cleared {article_id}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
