"""Tests for canonical bundle ingestion and manual entry."""

from pathlib import Path
from typing import Any

import pytest

from agentmesh.ingestion.service import (
    MANUAL_IMPORT_SOURCE,
    ManualEntryError,
    create_manual_session,
    ingest_canonical_bundle,
    tag_slug,
)
from agentmesh.ingestion.validator import BundleValidationError
from agentmesh.store import Store


@pytest.fixture
def store(tmp_path: Path) -> Store:
    """Create a temporary store for testing."""
    return Store(tmp_path / "agentmesh.db")


@pytest.fixture
def ids(store: Store) -> tuple[str, str]:
    """Provide (workspace_id, source_tool_id)."""
    return store.ensure_workspace(), store.ensure_source_tool("manual", "Manual")


def bundle(**session: Any) -> dict[str, Any]:
    return {
        "session": {"title": "Cache design", **session},
        "messages": [
            {"role": "user", "content": "How should we cache results?", "promptTokens": 12},
            {"role": "assistant", "content": "Use an LRU keyed by query", "completionTokens": 40},
        ],
    }


class TestIngestCanonicalBundle:
    """Tests for ingest_canonical_bundle."""

    def test_creates_session_and_messages(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids

        result = ingest_canonical_bundle(store, bundle(), workspace_id, tool_id, "api")

        assert result.deduplicated is False
        session = store.get_session(result.session_id)
        assert session["title"] == "Cache design"
        assert session["summary"] == "Use an LRU keyed by query"
        assert session["import_source"] == "api"
        rows = store.list_messages(result.session_id)
        assert [(r["role"], r["ordinal"]) for r in rows] == [("user", 0), ("assistant", 1)]
        assert [r["total_tokens"] for r in rows] == [12, 40]

    def test_deduplicates_by_external_id(self, store: Store, ids: tuple[str, str]) -> None:
        """A known external session id returns the existing session and writes nothing."""
        workspace_id, tool_id = ids
        first = ingest_canonical_bundle(store, bundle(externalSessionId="ext-1"), workspace_id, tool_id, "api")
        messages_before = store.count_rows("messages")

        second = ingest_canonical_bundle(store, bundle(externalSessionId="ext-1"), workspace_id, tool_id, "api")

        assert second.deduplicated is True
        assert second.session_id == first.session_id
        assert store.count_rows("sessions") == 1
        assert store.count_rows("messages") == messages_before

    def test_without_external_id_always_creates(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids

        ingest_canonical_bundle(store, bundle(), workspace_id, tool_id, "api")
        ingest_canonical_bundle(store, bundle(), workspace_id, tool_id, "api")

        assert store.count_rows("sessions") == 2

    def test_tasks_tags_and_artifacts(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids
        candidate = bundle()
        candidate["tasks"] = [{"title": "Benchmark cache"}, {"title": "Ship", "status": "done", "priority": "high"}]
        candidate["tags"] = ["Performance Work", "performance   work", "cache"]
        candidate["artifacts"] = [
            {"type": "snippet", "name": "lru.py", "content": "@lru_cache", "messageIndex": 1},
            {"type": "note", "name": "orphan", "content": "x", "messageIndex": 9},
        ]

        result = ingest_canonical_bundle(store, candidate, workspace_id, tool_id, "api")

        assert store.count_rows("tasks") == 2
        assert store.count_rows("tags") == 2
        assert store.count_rows("session_tags") == 2
        assert store.count_rows("artifacts") == 2
        assert store.count_rows("metric_snapshots") == 1

        conn = store._conn
        tasks = conn.execute("SELECT status, priority FROM tasks ORDER BY rowid").fetchall()
        assert [tuple(t) for t in tasks] == [("open", "medium"), ("done", "high")]

        assistant_id = store.list_messages(result.session_id)[1]["id"]
        artifacts = conn.execute("SELECT name, message_id FROM artifacts ORDER BY rowid").fetchall()
        assert [tuple(a) for a in artifacts] == [("lru.py", assistant_id), ("orphan", None)]

        snapshot = conn.execute("SELECT * FROM metric_snapshots").fetchone()
        assert (snapshot["prompt_tokens"], snapshot["completion_tokens"], snapshot["total_tokens"]) == (12, 40, 52)
        assert snapshot["estimated_cost"] == pytest.approx(0.000052)

    def test_invalid_bundle_writes_nothing(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids
        candidate = bundle()
        candidate["messages"] = []

        with pytest.raises(BundleValidationError):
            ingest_canonical_bundle(store, candidate, workspace_id, tool_id, "api")

        assert store.count_rows("sessions") == 0

    def test_blank_tags_are_skipped_and_names_trimmed(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids
        candidate = bundle()
        candidate["tags"] = ["   ", "  Refactor  "]

        result = ingest_canonical_bundle(store, candidate, workspace_id, tool_id, "api")

        tags = store._conn.execute("SELECT name, slug FROM tags").fetchall()
        assert [tuple(t) for t in tags] == [("Refactor", "refactor")]
        links = store._conn.execute("SELECT session_id FROM session_tags").fetchall()
        assert [row["session_id"] for row in links] == [result.session_id]


class TestTagSlug:
    @pytest.mark.parametrize(
        ("name", "slug"),
        [("Performance Work", "performance-work"), ("  a \t b  ", "a-b"), ("cache", "cache")],
    )
    def test_slugs(self, name: str, slug: str) -> None:
        assert tag_slug(name) == slug


class TestCreateManualSession:
    """Tests for create_manual_session."""

    def test_from_transcript(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids

        result = create_manual_session(
            store,
            workspace_id,
            tool_id,
            title="Pasted chat",
            transcript="user: Hello\n\nassistant: Hi there",
        )

        rows = store.list_messages(result.session_id)
        assert [(r["role"], r["content"]) for r in rows] == [("user", "Hello"), ("assistant", "Hi there")]
        assert store.get_session(result.session_id)["import_source"] == MANUAL_IMPORT_SOURCE

    def test_explicit_messages_come_first(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids

        result = create_manual_session(
            store,
            workspace_id,
            tool_id,
            title="Mixed",
            transcript="assistant: from transcript",
            messages=[{"role": "user", "content": "explicit"}, {"role": "user", "content": "   "}],
        )

        assert [r["content"] for r in store.list_messages(result.session_id)] == ["explicit", "from transcript"]

    def test_rejects_when_no_message_remains(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids

        with pytest.raises(ManualEntryError, match="At least one message is required."):
            create_manual_session(store, workspace_id, tool_id, title="Empty", transcript="\n\n  \n")

        assert store.count_rows("sessions") == 0

    def test_invalid_title_is_reported(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids

        with pytest.raises(BundleValidationError) as exc_info:
            create_manual_session(store, workspace_id, tool_id, title="", messages=[{"role": "user", "content": "x"}])

        assert [v.path for v in exc_info.value.violations] == ["session.title"]

    def test_external_id_deduplicates(self, store: Store, ids: tuple[str, str]) -> None:
        workspace_id, tool_id = ids
        kwargs = {"title": "t", "transcript": "hello", "external_session_id": "paste-1", "tags": ["notes"]}

        first = create_manual_session(store, workspace_id, tool_id, **kwargs)
        second = create_manual_session(store, workspace_id, tool_id, **kwargs)

        assert second.deduplicated is True
        assert second.session_id == first.session_id
