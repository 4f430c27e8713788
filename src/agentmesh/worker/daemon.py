"""Ingestion worker: watcher loop, one-shot backfill and tick scheduling."""

import threading
import time

from agentmesh.config import Config
from agentmesh.ingestion.pipeline import MODE_BACKFILL, MODE_WATCH, CycleOutcome, run_ingestion_cycle
from agentmesh.logging import get_logger, setup_logging
from agentmesh.search.indexer import TypesenseIndexer
from agentmesh.store import Store

logger = get_logger("worker")

# Global flag for graceful shutdown
_shutdown_requested = False


def request_shutdown() -> None:
    """Request graceful shutdown of the watcher."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


class TickScheduler:
    """Runs ingestion cycles one at a time.

    A tick that fires while a cycle is still running is skipped rather than
    queued, so cycles never overlap even if a caller ticks from another thread.
    """

    def __init__(
        self,
        store: Store,
        config: Config,
        mode: str = MODE_WATCH,
        indexer: TypesenseIndexer | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._mode = mode
        self._indexer = indexer
        self._lock = threading.Lock()
        self._cycle_in_progress = False
        self.last_outcomes: list[CycleOutcome] = []

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_in_progress

    def tick(self) -> bool:
        """Run one cycle unless another is in progress.

        Returns:
            True if a cycle ran, False if the tick was skipped
        """
        with self._lock:
            if self._cycle_in_progress:
                logger.info("Skipping tick: previous cycle still running")
                return False
            self._cycle_in_progress = True

        try:
            self.last_outcomes = run_ingestion_cycle(self._store, self._mode, self._config, self._indexer)
        finally:
            with self._lock:
                self._cycle_in_progress = False

        failed = sum(1 for outcome in self.last_outcomes if outcome.error is not None)
        logger.info(
            "Cycle complete: mode=%s sources=%d failed=%d",
            self._mode,
            len(self.last_outcomes),
            failed,
        )
        return True


def connect_indexer(config: Config, attempts: int = 10, delay_seconds: int = 5) -> TypesenseIndexer | None:
    """Connect to Typesense with retry, or return None if mirroring is off or unreachable."""
    if not config.typesense.enabled:
        return None

    for attempt in range(attempts):
        try:
            indexer = TypesenseIndexer(config.typesense)
            indexer.ensure_collections()
            logger.info(
                "Connected to Typesense: host=%s port=%d",
                config.typesense.host,
                config.typesense.port,
            )
            return indexer
        except Exception:
            if attempt < attempts - 1 and not is_shutdown_requested():
                logger.warning(
                    "Could not connect to Typesense (attempt %d/%d), retrying in %ds...",
                    attempt + 1,
                    attempts,
                    delay_seconds,
                )
                time.sleep(delay_seconds)
            else:
                logger.warning(
                    "Could not connect to Typesense after %d attempts, indexing disabled",
                    attempt + 1,
                    exc_info=True,
                )
                break
    return None


def _wait_for_next_tick(interval_seconds: float) -> None:
    # Sleep in small increments to respond to shutdown quickly
    remaining = interval_seconds
    while remaining > 0 and not is_shutdown_requested():
        step = min(1.0, remaining)
        time.sleep(step)
        remaining -= step


def run_backfill(config: Config) -> list[CycleOutcome]:
    """Run a single ingestion cycle in backfill mode.

    Args:
        config: Application configuration

    Returns:
        One CycleOutcome per enabled source
    """
    setup_logging("worker")
    logger.info("Starting backfill: db=%s lookback_days=%d", config.store.db_path, config.ingest.lookback_days)

    indexer = connect_indexer(config, attempts=1)
    with Store(config.store.db_path) as store:
        scheduler = TickScheduler(store, config, MODE_BACKFILL, indexer)
        scheduler.tick()
        return scheduler.last_outcomes


def run_watcher(config: Config) -> None:
    """Run the watcher main loop.

    Runs a cycle immediately, then every poll interval, until shutdown is
    requested. The store is closed on exit.

    Args:
        config: Application configuration
    """
    reset_shutdown()
    setup_logging("worker")

    interval_seconds = config.ingest.poll_interval_seconds
    logger.info(
        "Starting watcher: db=%s interval=%.1fs lookback_days=%d",
        config.store.db_path,
        interval_seconds,
        config.ingest.lookback_days,
    )

    indexer = connect_indexer(config)

    with Store(config.store.db_path) as store:
        scheduler = TickScheduler(store, config, MODE_WATCH, indexer)
        while not is_shutdown_requested():
            try:
                scheduler.tick()
            except Exception:
                logger.exception("Ingestion cycle failed")

            if is_shutdown_requested():
                break

            logger.debug("Waiting %.1fs until next cycle", interval_seconds)
            _wait_for_next_tick(interval_seconds)

    logger.info("Watcher stopped")
