"""Ingestion orchestrator: one cycle over every enabled source.

A cycle makes sure the default sources exist, then runs each enabled source
in creation order. Every run is recorded (running -> success/failed), source
health is kept current for operators, and the per-source checkpoint advances
only after a successful run. A failing source never stops the cycle.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from agentmesh.config import Config
from agentmesh.dates import lookback_start, parse_iso, to_iso, utc_now
from agentmesh.ingestion.adapters import AdapterRegistry
from agentmesh.ingestion.persist import persist_sessions
from agentmesh.logging import get_logger
from agentmesh.models import SourceRunResult
from agentmesh.store import RUN_STATUS_FAILED, RUN_STATUS_SUCCESS, IngestionSource, Store

if TYPE_CHECKING:
    from agentmesh.search.indexer import TypesenseIndexer

logger = get_logger("ingestion.pipeline")

MODE_WATCH = "watch"
MODE_BACKFILL = "backfill"

CHECKPOINT_KEY = "lastTimestamp"
FAILURE_CODE = "INGESTION_FAILURE"

CLAUDE_SOURCE_KEY = "claude-default"
OPENCODE_SOURCE_KEY = "opencode-default"


class UnsupportedSourceTypeError(ValueError):
    """Raised when a source's type has no registered adapter."""

    def __init__(self, source_type: str, supported: list[str] | None = None) -> None:
        self.source_type = source_type
        message = f"Unsupported source type: {source_type}"
        if supported:
            message += f" (supported: {', '.join(sorted(supported))})"
        super().__init__(message)


@dataclass
class CycleOutcome:
    """Result of running one source during a cycle."""

    source_id: str
    source_key: str
    run_id: str
    status: str
    result: SourceRunResult | None = None
    error: str | None = None


def ensure_default_sources(store: Store, config: Config) -> None:
    """Create the built-in sources, or refresh their paths and lookback."""
    ingest = config.ingest
    store.upsert_ingestion_source(
        CLAUDE_SOURCE_KEY,
        source_type="claude",
        name="Claude default",
        root_path=str(ingest.claude_home),
        lookback_days=ingest.lookback_days,
        poll_interval_sec=30,
    )
    store.upsert_ingestion_source(
        OPENCODE_SOURCE_KEY,
        source_type="opencode",
        name="OpenCode default",
        root_path=str(ingest.opencode_home),
        db_path=str(ingest.opencode_home / "opencode.db"),
        lookback_days=ingest.lookback_days,
        poll_interval_sec=15,
    )


def effective_since(checkpoint: str | None, lookback_days: int, now: datetime | None = None) -> datetime:
    """Later of the stored checkpoint and the lookback floor."""
    floor = lookback_start(lookback_days, now)
    checkpoint_at = parse_iso(checkpoint)
    if checkpoint_at is None:
        return floor
    return max(checkpoint_at, floor)


def run_source(store: Store, source: IngestionSource, since: datetime) -> SourceRunResult:
    """Scan one source and persist what it finds.

    Raises:
        UnsupportedSourceTypeError: If no adapter handles the source type
    """
    adapter = AdapterRegistry.get(source.type)
    if adapter is None:
        raise UnsupportedSourceTypeError(source.type, AdapterRegistry.all_types())

    root = Path(source.root_path) if source.root_path else adapter.default_root()
    scan = adapter.scan(root, since)

    workspace_id = store.ensure_workspace()
    source_tool_id = store.ensure_source_tool(adapter.tool_slug, adapter.tool_name)

    result = persist_sessions(
        store,
        source_tool_id,
        workspace_id,
        adapter.import_source,
        scan.sessions,
        scan.max_timestamp,
    )
    if scan.skipped_records:
        result.note = f"Skipped {scan.skipped_records} malformed records"
    return result


def _mirror_sessions(indexer: "TypesenseIndexer", store: Store, session_ids: list[str]) -> None:
    for session_id in session_ids:
        try:
            indexer.index_session(store, session_id)
        except Exception:
            logger.exception("Search indexing failed: session_id=%s", session_id)


def run_ingestion_cycle(
    store: Store,
    mode: str,
    config: Config,
    indexer: "TypesenseIndexer | None" = None,
) -> list[CycleOutcome]:
    """Run every enabled source once.

    Args:
        store: Store holding sources, runs and sessions
        mode: Run mode label ("watch" or "backfill")
        config: Loaded configuration
        indexer: Optional search mirror for persisted sessions

    Returns:
        One CycleOutcome per enabled source, in source creation order
    """
    ensure_default_sources(store, config)

    outcomes: list[CycleOutcome] = []
    for source in store.list_sources(enabled_only=True):
        run_id = store.create_run(source.id, mode)
        store.update_source(source.id, last_run_at=to_iso(utc_now()), status_message=f"Running {mode}...")

        try:
            since = effective_since(store.get_checkpoint(source.id, CHECKPOINT_KEY), source.lookback_days)
            result = run_source(store, source, since)

            finished = to_iso(utc_now())
            store.update_run(
                run_id,
                status=RUN_STATUS_SUCCESS,
                finished_at=finished,
                scanned_sessions=result.scanned_sessions,
                upserted_sessions=result.upserted_sessions,
                upserted_messages=result.upserted_messages,
                upserted_parts=result.upserted_parts,
                note=result.note,
            )
            store.update_source(
                source.id,
                last_success_at=finished,
                status_message=result.note
                or f"Success: {result.upserted_sessions} sessions, {result.upserted_messages} messages",
            )
            if result.max_timestamp is not None:
                store.set_checkpoint(source.id, CHECKPOINT_KEY, to_iso(result.max_timestamp))

            logger.info(
                "Source run succeeded: source=%s mode=%s scanned=%d sessions=%d messages=%d parts=%d",
                source.key,
                mode,
                result.scanned_sessions,
                result.upserted_sessions,
                result.upserted_messages,
                result.upserted_parts,
            )
            outcomes.append(CycleOutcome(source.id, source.key, run_id, RUN_STATUS_SUCCESS, result=result))
        except Exception as e:
            logger.exception("Source run failed: source=%s mode=%s", source.key, mode)
            message = str(e) or type(e).__name__
            failed_at = to_iso(utc_now())
            store.update_run(run_id, status=RUN_STATUS_FAILED, finished_at=failed_at, error_count=1, note=message)
            store.record_error(source.id, run_id, FAILURE_CODE, message)
            store.update_source(source.id, last_error_at=failed_at, status_message=message)
            outcomes.append(CycleOutcome(source.id, source.key, run_id, RUN_STATUS_FAILED, error=message))
            continue

        if indexer is not None and result.session_ids:
            _mirror_sessions(indexer, store, result.session_ids)

    return outcomes
