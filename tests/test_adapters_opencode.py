"""Tests for the OpenCode adapter."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from agentmesh.ingestion.adapters import AdapterRegistry, OpenCodeAdapter, hash_value
from agentmesh.models import MessageRole, PartType

SINCE = datetime(2020, 1, 1, tzinfo=timezone.utc)


def ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


T0 = datetime(2026, 1, 20, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: int) -> int:
    return ms(T0) + seconds * 1000


@pytest.fixture
def adapter() -> OpenCodeAdapter:
    """Create a fresh adapter instance."""
    return OpenCodeAdapter()


@pytest.fixture
def opencode_root(tmp_path: Path) -> Path:
    """Create an OpenCode data directory with an empty storage tree."""
    root = tmp_path / "opencode"
    (root / "storage" / "session").mkdir(parents=True)
    return root


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")


def add_session(root: Path, session_id: str, **fields: Any) -> None:
    record = {"id": session_id, "directory": "/home/user/project", **fields}
    write_json(root / "storage" / "session" / "proj-hash" / f"{session_id}.json", record)


def add_message(root: Path, session_id: str, message_id: str, role: str, created: int, **fields: Any) -> None:
    record = {"id": message_id, "sessionID": session_id, "role": role, "time": {"created": created}, **fields}
    write_json(root / "storage" / "message" / session_id / f"{message_id}.json", record)


def add_part(root: Path, message_id: str, name: str, record: dict[str, Any]) -> None:
    write_json(root / "storage" / "part" / message_id / f"{name}.json", record)


class TestRegistration:
    def test_registered_for_opencode_type(self) -> None:
        assert isinstance(AdapterRegistry.get("opencode"), OpenCodeAdapter)

    def test_tool_identity(self, adapter: OpenCodeAdapter) -> None:
        assert adapter.tool_slug == "opencode"
        assert adapter.import_source == "opencode-watcher"


class TestScan:
    """Tests for OpenCodeAdapter.scan."""

    def test_reconstructs_session(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        """Should build a session from session, message and part files."""
        add_session(opencode_root, "ses_1", title="Refactor parser", time={"created": at(0), "updated": at(60)})
        add_message(opencode_root, "ses_1", "msg_1", "user", at(1))
        add_part(opencode_root, "msg_1", "prt_1", {"id": "prt_1", "type": "text", "text": "Refactor it", "time": {"start": at(1)}})
        add_message(
            opencode_root,
            "ses_1",
            "msg_2",
            "assistant",
            at(5),
            providerID="anthropic",
            modelID="claude-sonnet-4-5",
            tokens={"input": 200, "output": 50},
        )
        add_part(opencode_root, "msg_2", "prt_a", {"id": "prt_a", "type": "step-start", "time": {"start": at(5)}})
        add_part(opencode_root, "msg_2", "prt_b", {"id": "prt_b", "type": "reasoning", "text": "thinking", "time": {"start": at(6)}})
        add_part(
            opencode_root,
            "msg_2",
            "prt_c",
            {"id": "prt_c", "type": "tool", "tool": "edit", "state": {"title": "Edit parser.py"}, "time": {"start": at(7)}},
        )
        add_part(opencode_root, "msg_2", "prt_d", {"id": "prt_d", "type": "text", "text": "Done.", "time": {"start": at(8)}})
        add_part(opencode_root, "msg_2", "prt_e", {"id": "prt_e", "type": "step-finish", "time": {"start": at(9)}})

        result = adapter.scan(opencode_root, SINCE)

        assert len(result.sessions) == 1
        session = result.sessions[0]
        assert session.external_session_id == "ses_1"
        assert session.title == "Refactor parser"
        assert session.source_session_path == "/home/user/project"
        assert session.started_at == T0
        assert session.last_activity_at == datetime(2026, 1, 20, 12, 1, 0, tzinfo=timezone.utc)

        user, assistant = session.messages
        assert user.role == MessageRole.USER
        assert user.content == "Refactor it"
        assert assistant.role == MessageRole.ASSISTANT
        assert assistant.content == "Done."
        assert assistant.model_provider == "anthropic"
        assert assistant.model_id == "claude-sonnet-4-5"
        assert assistant.prompt_tokens == 200
        assert assistant.completion_tokens == 50
        assert [p.part_type for p in assistant.parts] == [
            PartType.STEP_START,
            PartType.REASONING,
            PartType.TOOL,
            PartType.TEXT,
            PartType.STEP_FINISH,
        ]
        assert [p.text for p in assistant.parts] == ["step-start", "thinking", "Edit parser.py", "Done.", "step-finish"]
        assert [p.ordinal for p in assistant.parts] == [0, 1, 2, 3, 4]

        assert result.max_timestamp == datetime(2026, 1, 20, 12, 1, 0, tzinfo=timezone.utc)

    def test_joins_multiple_text_parts(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        add_message(opencode_root, "ses_1", "msg_1", "assistant", at(1))
        add_part(opencode_root, "msg_1", "p2", {"id": "p2", "type": "text", "text": "second", "time": {"start": at(3)}})
        add_part(opencode_root, "msg_1", "p1", {"id": "p1", "type": "text", "text": "first", "time": {"start": at(2)}})

        message = adapter.scan(opencode_root, SINCE).sessions[0].messages[0]

        assert message.content == "first\n\nsecond"

    def test_tool_part_text_fallbacks(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        """Tool text comes from state.title, then state.output, then the tool name."""
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        add_message(opencode_root, "ses_1", "msg_1", "assistant", at(1))
        add_part(opencode_root, "msg_1", "p0", {"id": "p0", "type": "text", "text": "ok", "time": {"start": at(1)}})
        add_part(opencode_root, "msg_1", "p1", {"id": "p1", "type": "tool", "state": {"output": "3 passed"}, "time": {"start": at(2)}})
        add_part(opencode_root, "msg_1", "p2", {"id": "p2", "type": "tool", "tool": "bash", "time": {"start": at(3)}})
        add_part(opencode_root, "msg_1", "p3", {"id": "p3", "type": "tool", "time": {"start": at(4)}})

        parts = adapter.scan(opencode_root, SINCE).sessions[0].messages[0].parts

        assert [p.text for p in parts[1:]] == ["3 passed", "bash", "tool call"]

    def test_part_without_id_gets_hashed_id(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        add_message(opencode_root, "ses_1", "msg_1", "user", at(1))
        add_part(opencode_root, "msg_1", "p0", {"type": "text", "text": "hello"})

        part = adapter.scan(opencode_root, SINCE).sessions[0].messages[0].parts[0]

        assert part.external_part_id == hash_value("msg_1:part:0")

    def test_summary_title_fallback(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        """A message with no text parts uses summary.title as content."""
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        add_message(opencode_root, "ses_1", "msg_1", "user", at(1), summary={"title": "Fix login bug"})

        message = adapter.scan(opencode_root, SINCE).sessions[0].messages[0]

        assert message.content == "Fix login bug"

    def test_message_without_content_is_dropped(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        add_message(opencode_root, "ses_1", "msg_1", "assistant", at(1))
        add_part(opencode_root, "msg_1", "p0", {"id": "p0", "type": "step-start"})

        assert adapter.scan(opencode_root, SINCE).sessions[0].messages == []

    def test_dropped_message_still_advances_max_timestamp(
        self, adapter: OpenCodeAdapter, opencode_root: Path
    ) -> None:
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0), "updated": at(10)})
        add_message(opencode_root, "ses_1", "msg_1", "assistant", at(500))

        result = adapter.scan(opencode_root, SINCE)

        assert result.sessions[0].messages == []
        assert result.max_timestamp == T0 + timedelta(seconds=500)

    def test_nested_model_fields(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        add_message(
            opencode_root,
            "ses_1",
            "msg_1",
            "user",
            at(1),
            model={"providerID": "openai", "modelID": "gpt-5"},
            summary={"title": "hi"},
        )

        message = adapter.scan(opencode_root, SINCE).sessions[0].messages[0]

        assert message.model_provider == "openai"
        assert message.model_id == "gpt-5"

    def test_skips_sessions_and_messages_before_since(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        since = datetime(2026, 1, 20, 12, 0, 10, tzinfo=timezone.utc)
        add_session(opencode_root, "ses_old", title="old", time={"created": at(0), "updated": at(5)})
        add_session(opencode_root, "ses_new", title="new", time={"created": at(0), "updated": at(60)})
        add_message(opencode_root, "ses_new", "msg_old", "user", at(2), summary={"title": "early"})
        add_message(opencode_root, "ses_new", "msg_new", "user", at(20), summary={"title": "late"})

        result = adapter.scan(opencode_root, since)

        assert [s.external_session_id for s in result.sessions] == ["ses_new"]
        assert [m.external_message_id for m in result.sessions[0].messages] == ["msg_new"]

    def test_untitled_session_uses_first_message(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        add_session(opencode_root, "ses_12345678", time={"created": at(0)})
        add_message(opencode_root, "ses_12345678", "msg_2", "assistant", at(2), summary={"title": "Answer"})
        add_message(opencode_root, "ses_12345678", "msg_1", "user", at(1), summary={"title": "Question"})

        session = adapter.scan(opencode_root, SINCE).sessions[0]

        assert [m.external_message_id for m in session.messages] == ["msg_1", "msg_2"]
        assert session.title == "Question"

    def test_untitled_empty_session(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        add_session(opencode_root, "ses_12345678", time={"created": at(0)})

        session = adapter.scan(opencode_root, SINCE).sessions[0]

        assert session.title == "Session ses_1234"
        assert session.messages == []

    def test_skips_malformed_json(self, adapter: OpenCodeAdapter, opencode_root: Path) -> None:
        write_json(opencode_root / "storage" / "session" / "proj-hash" / "broken.json", "{not json")
        add_session(opencode_root, "ses_1", title="t", time={"created": at(0)})
        write_json(opencode_root / "storage" / "message" / "ses_1" / "broken.json", "[1, 2")

        result = adapter.scan(opencode_root, SINCE)

        assert [s.external_session_id for s in result.sessions] == ["ses_1"]
        assert result.skipped_records == 2

    def test_missing_storage(self, adapter: OpenCodeAdapter, tmp_path: Path) -> None:
        result = adapter.scan(tmp_path / "nowhere", SINCE)

        assert result.sessions == []
        assert result.max_timestamp is None
