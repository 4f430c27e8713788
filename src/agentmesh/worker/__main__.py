"""CLI entry point for the ingestion worker.

Allows running the worker as a module:
    python -m agentmesh.worker watch
    python -m agentmesh.worker backfill
    python -m agentmesh.worker status
    python -m agentmesh.worker manual --title "..." --transcript notes.txt
"""

import signal
import sys
from pathlib import Path
from types import FrameType

import click

from agentmesh.config import Config, load_config
from agentmesh.ingestion.service import ManualEntryError, create_manual_session
from agentmesh.ingestion.validator import BundleValidationError
from agentmesh.logging import get_logger, setup_logging
from agentmesh.store import Store
from agentmesh.worker.daemon import request_shutdown, run_backfill, run_watcher

logger = get_logger("worker")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("Received signal %s, shutting down", sig_name)
    request_shutdown()


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to config.yaml (defaults to the standard search locations)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Ingest AI coding tool transcripts into the agentmesh store."""
    ctx.obj = load_config(config_path)


@cli.command()
@click.pass_obj
def watch(config: Config) -> None:
    """Poll all enabled sources until interrupted."""
    # Set up signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_watcher(config)
    except KeyboardInterrupt:
        # Handle case where signal handler didn't catch it
        logger.info("Interrupted, shutting down")
        request_shutdown()


@cli.command()
@click.pass_obj
def backfill(config: Config) -> None:
    """Run a single ingestion cycle over the lookback window."""
    outcomes = run_backfill(config)
    failed = 0
    for outcome in outcomes:
        if outcome.error is not None:
            failed += 1
            click.echo(f"{outcome.source_key}: failed ({outcome.error})")
        else:
            result = outcome.result
            click.echo(
                f"{outcome.source_key}: {result.upserted_sessions} sessions, "
                f"{result.upserted_messages} messages, {result.upserted_parts} parts"
            )
    if failed:
        sys.exit(1)


@cli.command()
@click.pass_obj
def status(config: Config) -> None:
    """Show source health and the latest run of each source."""
    with Store(config.store.db_path) as store:
        click.echo(f"Store: {config.store.db_path} ({'ok' if store.ping() else 'unreachable'})")

        sources = store.list_sources()
        if not sources:
            click.echo("No ingestion sources configured yet. Run 'backfill' or 'watch' first.")
            return

        for source in sources:
            click.echo("")
            click.echo(f"{source.name} ({source.type})")
            click.echo(f"  enabled:      {'yes' if source.is_enabled else 'no'}")
            click.echo(f"  status:       {source.status_message or '-'}")
            click.echo(f"  last success: {source.last_success_at or '-'}")
            click.echo(f"  last error:   {source.last_error_at or '-'}")

            run = store.latest_run(source.id)
            if run is not None:
                click.echo(
                    f"  last run:     {run.mode} {run.status} at {run.started_at} "
                    f"(sessions={run.upserted_sessions} messages={run.upserted_messages} "
                    f"parts={run.upserted_parts} errors={run.error_count})"
                )


@cli.command()
@click.option("--title", required=True, help="Session title")
@click.option(
    "--transcript",
    "transcript_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Plain-text transcript with optional 'user:'/'assistant:'/'tool:' prefixes",
)
@click.option("--message", "-m", "message_texts", multiple=True, help="Explicit user message (repeatable)")
@click.option("--summary", help="Session summary (derived from messages when omitted)")
@click.option("--external-id", help="External session id used for deduplication")
@click.option("--tag", "tags", multiple=True, help="Tag to attach (repeatable)")
@click.option("--tool-slug", default="manual", show_default=True, help="Source tool slug")
@click.option("--tool-name", default="Manual", show_default=True, help="Source tool display name")
@click.pass_obj
def manual(
    config: Config,
    title: str,
    transcript_path: Path | None,
    message_texts: tuple[str, ...],
    summary: str | None,
    external_id: str | None,
    tags: tuple[str, ...],
    tool_slug: str,
    tool_name: str,
) -> None:
    """Create a session from a pasted transcript or explicit messages."""
    setup_logging("worker")
    transcript = transcript_path.read_text(encoding="utf-8") if transcript_path else None

    with Store(config.store.db_path) as store:
        workspace_id = store.ensure_workspace()
        source_tool_id = store.ensure_source_tool(tool_slug, tool_name)
        try:
            result = create_manual_session(
                store,
                workspace_id,
                source_tool_id,
                title=title,
                summary=summary,
                transcript=transcript,
                messages=[{"role": "user", "content": text} for text in message_texts],
                external_session_id=external_id,
                tags=list(tags),
            )
        except BundleValidationError as e:
            for violation in e.violations:
                click.echo(f"{violation.path}: {violation.reason}", err=True)
            sys.exit(1)
        except ManualEntryError as e:
            click.echo(str(e), err=True)
            sys.exit(1)

    if result.deduplicated:
        click.echo(f"Session already exists: {result.session_id}")
    else:
        click.echo(f"Created session: {result.session_id}")


def main() -> None:
    """Main entry point for the ingestion worker."""
    cli()


if __name__ == "__main__":
    main()
