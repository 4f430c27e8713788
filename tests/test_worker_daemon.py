"""Tests for the ingestion worker."""

import logging
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from agentmesh.config import Config, IngestConfig, StoreConfig, TypesenseConfig
from agentmesh.ingestion.pipeline import MODE_BACKFILL, CycleOutcome
from agentmesh.store import Store
from agentmesh.worker.daemon import (
    TickScheduler,
    connect_indexer,
    is_shutdown_requested,
    request_shutdown,
    reset_shutdown,
    run_backfill,
    run_watcher,
)


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration."""
    return Config(
        ingest=IngestConfig(
            poll_interval_ms=1000,
            claude_home=tmp_path / "claude",
            opencode_home=tmp_path / "opencode",
        ),
        store=StoreConfig(db_path=tmp_path / "agentmesh.db"),
    )


@pytest.fixture(autouse=True)
def quiet_logging(caplog: pytest.LogCaptureFixture):
    """Keep log files out of the home directory and capture worker logs."""
    caplog.set_level(logging.DEBUG, logger="agentmesh")
    with patch("agentmesh.worker.daemon.setup_logging"):
        yield
    reset_shutdown()


class TestShutdownFlag:
    """Tests for shutdown flag management."""

    def test_request_and_reset(self) -> None:
        reset_shutdown()
        assert is_shutdown_requested() is False

        request_shutdown()
        assert is_shutdown_requested() is True

        reset_shutdown()
        assert is_shutdown_requested() is False


class TestTickScheduler:
    """Tests for TickScheduler."""

    def test_tick_runs_cycle(self, test_config: Config) -> None:
        store = MagicMock()
        outcome = CycleOutcome("s1", "claude-default", "r1", "success")

        with patch("agentmesh.worker.daemon.run_ingestion_cycle", return_value=[outcome]) as mock_cycle:
            scheduler = TickScheduler(store, test_config, MODE_BACKFILL)
            assert scheduler.tick() is True

        mock_cycle.assert_called_once_with(store, MODE_BACKFILL, test_config, None)
        assert scheduler.last_outcomes == [outcome]
        assert scheduler.cycle_in_progress is False

    def test_overlapping_tick_is_skipped(self, test_config: Config, caplog) -> None:
        """A tick fired while a cycle runs is skipped, not queued."""
        started = threading.Event()
        release = threading.Event()
        calls = 0

        def slow_cycle(*args, **kwargs):
            nonlocal calls
            calls += 1
            started.set()
            release.wait(timeout=5)
            return []

        with patch("agentmesh.worker.daemon.run_ingestion_cycle", side_effect=slow_cycle):
            scheduler = TickScheduler(MagicMock(), test_config)
            worker = threading.Thread(target=scheduler.tick)
            worker.start()
            assert started.wait(timeout=5)

            assert scheduler.cycle_in_progress is True
            assert scheduler.tick() is False

            release.set()
            worker.join(timeout=5)

        assert calls == 1
        assert scheduler.cycle_in_progress is False
        assert "Skipping tick" in caplog.text

    def test_flag_is_cleared_when_cycle_raises(self, test_config: Config) -> None:
        with patch("agentmesh.worker.daemon.run_ingestion_cycle", side_effect=RuntimeError("boom")):
            scheduler = TickScheduler(MagicMock(), test_config)
            with pytest.raises(RuntimeError):
                scheduler.tick()

        assert scheduler.cycle_in_progress is False


class TestConnectIndexer:
    """Tests for connect_indexer."""

    def test_disabled_returns_none(self, test_config: Config) -> None:
        with patch("agentmesh.worker.daemon.TypesenseIndexer") as mock_indexer:
            assert connect_indexer(test_config) is None

        mock_indexer.assert_not_called()

    def test_connects_when_enabled(self, test_config: Config) -> None:
        test_config.typesense = TypesenseConfig(enabled=True)

        with patch("agentmesh.worker.daemon.TypesenseIndexer") as mock_indexer:
            indexer = connect_indexer(test_config)

        assert indexer is mock_indexer.return_value
        indexer.ensure_collections.assert_called_once()

    def test_gives_up_after_attempts(self, test_config: Config, caplog) -> None:
        test_config.typesense = TypesenseConfig(enabled=True)

        with patch(
            "agentmesh.worker.daemon.TypesenseIndexer",
            side_effect=Exception("Connection refused"),
        ), patch("agentmesh.worker.daemon.time.sleep") as mock_sleep:
            assert connect_indexer(test_config, attempts=3, delay_seconds=5) is None

        assert mock_sleep.call_count == 2
        assert "Could not connect to Typesense" in caplog.text


class TestRunWatcher:
    """Tests for run_watcher main loop."""

    def test_runs_until_shutdown(self, test_config: Config, caplog) -> None:
        """Should run cycles until shutdown is requested."""
        cycle_count = 0

        def mock_cycle(*args, **kwargs):
            nonlocal cycle_count
            cycle_count += 1
            if cycle_count >= 2:
                request_shutdown()
            return []

        with patch("agentmesh.worker.daemon.run_ingestion_cycle", side_effect=mock_cycle):
            run_watcher(test_config)

        assert cycle_count == 2
        assert "Starting watcher" in caplog.text
        assert "Watcher stopped" in caplog.text

    def test_cycle_errors_do_not_stop_the_loop(self, test_config: Config, caplog) -> None:
        cycle_count = 0

        def mock_cycle(*args, **kwargs):
            nonlocal cycle_count
            cycle_count += 1
            if cycle_count == 1:
                raise RuntimeError("store locked")
            request_shutdown()
            return []

        with patch("agentmesh.worker.daemon.run_ingestion_cycle", side_effect=mock_cycle):
            run_watcher(test_config)

        assert cycle_count == 2
        assert "Ingestion cycle failed" in caplog.text

    def test_closes_store_on_exit(self, test_config: Config) -> None:
        def mock_cycle(*args, **kwargs):
            request_shutdown()
            return []

        with patch("agentmesh.worker.daemon.run_ingestion_cycle", side_effect=mock_cycle), patch.object(
            Store, "close"
        ) as mock_close:
            run_watcher(test_config)

        mock_close.assert_called_once()


class TestRunBackfill:
    def test_runs_single_cycle(self, test_config: Config) -> None:
        outcome = CycleOutcome("s1", "claude-default", "r1", "success")

        with patch("agentmesh.worker.daemon.run_ingestion_cycle", return_value=[outcome]) as mock_cycle:
            outcomes = run_backfill(test_config)

        assert outcomes == [outcome]
        assert mock_cycle.call_count == 1
        assert mock_cycle.call_args.args[1] == MODE_BACKFILL

    def test_end_to_end_against_empty_roots(self, test_config: Config) -> None:
        outcomes = run_backfill(test_config)

        assert [(o.source_key, o.status) for o in outcomes] == [
            ("claude-default", "success"),
            ("opencode-default", "success"),
        ]


class TestCli:
    """Tests for the worker command line."""

    def _invoke(self, test_config: Config, args: list[str]):
        from agentmesh.worker.__main__ import cli

        with patch("agentmesh.worker.__main__.load_config", return_value=test_config), patch(
            "agentmesh.worker.__main__.setup_logging"
        ):
            return CliRunner().invoke(cli, args)

    def test_watch_invokes_watcher(self, test_config: Config) -> None:
        with patch("agentmesh.worker.__main__.run_watcher") as mock_run, patch(
            "agentmesh.worker.__main__.signal.signal"
        ):
            result = self._invoke(test_config, ["watch"])

        assert result.exit_code == 0
        mock_run.assert_called_once_with(test_config)

    def test_signal_handler_requests_shutdown(self) -> None:
        import signal as sig

        from agentmesh.worker.__main__ import signal_handler

        reset_shutdown()
        signal_handler(sig.SIGTERM, None)

        assert is_shutdown_requested() is True

    def test_backfill_then_status(self, test_config: Config) -> None:
        backfill = self._invoke(test_config, ["backfill"])
        status = self._invoke(test_config, ["status"])

        assert backfill.exit_code == 0
        assert "claude-default: 0 sessions" in backfill.output
        assert status.exit_code == 0
        assert "Claude default (claude)" in status.output
        assert "OpenCode default (opencode)" in status.output
        assert "last run:     backfill success" in status.output

    def test_backfill_reports_failures(self, test_config: Config) -> None:
        failed = CycleOutcome("s1", "claude-default", "r1", "failed", error="disk unavailable")

        with patch("agentmesh.worker.__main__.run_backfill", return_value=[failed]):
            result = self._invoke(test_config, ["backfill"])

        assert result.exit_code == 1
        assert "claude-default: failed (disk unavailable)" in result.output

    def test_status_on_empty_store(self, test_config: Config) -> None:
        result = self._invoke(test_config, ["status"])

        assert result.exit_code == 0
        assert "No ingestion sources configured yet" in result.output

    def test_manual_entry(self, test_config: Config, tmp_path: Path) -> None:
        transcript = tmp_path / "chat.txt"
        transcript.write_text("user: Hello\n\nassistant: Hi there")

        result = self._invoke(test_config, ["manual", "--title", "Pasted", "--transcript", str(transcript)])

        assert result.exit_code == 0
        assert "Created session:" in result.output
        with Store(test_config.store.db_path) as store:
            assert store.count_rows("messages") == 2

    def test_manual_entry_without_messages(self, test_config: Config) -> None:
        result = self._invoke(test_config, ["manual", "--title", "Empty"])

        assert result.exit_code == 1
        assert "At least one message is required." in result.output
