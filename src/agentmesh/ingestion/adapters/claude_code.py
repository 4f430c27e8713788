"""Adapter for Claude Code conversation transcripts.

Claude Code stores conversations as JSONL event logs at:
    ~/.claude/projects/<encoded-project-path>/<session-id>.jsonl

Each line is a JSON event with:
- type: "user", "assistant", "system", "progress", "summary", ...
- sessionId: UUID session identifier (a session may span several files)
- uuid: event identifier
- timestamp: ISO 8601 timestamp
- cwd: working directory (project path)
- message.content: string or array of content blocks
- message.model / message.usage: model id and token usage (assistant turns)

Lines are appended while the tool runs, so a file may end mid-record;
malformed lines are skipped.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agentmesh.dates import parse_iso
from agentmesh.ingestion.adapters.base import (
    ScanResult,
    SourceAdapter,
    hash_value,
    latest,
    list_files,
    order_messages,
    to_number,
    to_str,
)
from agentmesh.ingestion.text import fallback_session_title, sanitize_imported_text
from agentmesh.logging import get_logger
from agentmesh.models import IngestMessage, IngestPart, IngestSession, MessageRole, PartType

logger = get_logger("adapters.claude_code")

DEFAULT_PROVIDER = "anthropic"


def map_claude_role(value: str | None) -> MessageRole:
    """Map a Claude event type onto a canonical role (unknown -> user)."""
    if value == "assistant":
        return MessageRole.ASSISTANT
    if value in ("system", "progress"):
        return MessageRole.TOOL
    return MessageRole.USER


def map_claude_part_type(value: str | None) -> PartType:
    """Map a Claude content block type onto a canonical part type (unknown -> other)."""
    if value == "text":
        return PartType.TEXT
    if value == "thinking":
        return PartType.REASONING
    if value in ("tool_use", "tool_result"):
        return PartType.TOOL
    return PartType.OTHER


class ClaudeCodeAdapter(SourceAdapter):
    """Adapter for Claude Code JSONL event logs."""

    source_type = "claude"
    tool_slug = "claude-code"
    tool_name = "Claude Code"
    import_source = "claude-watcher"

    def default_root(self) -> Path:
        return Path.home() / ".claude"

    def scan(self, root: Path, since: datetime) -> ScanResult:
        """Scan ``<root>/projects`` for JSONL logs modified at or after ``since``.

        Args:
            root: Claude home directory (e.g. ~/.claude)
            since: Effective lower bound for file mtimes and event timestamps

        Returns:
            ScanResult with one session per sessionId seen
        """
        result = ScanResult()
        sessions: dict[str, IngestSession] = {}

        for file_path in list_files(root / "projects", ".jsonl"):
            try:
                mtime = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
            except OSError:
                continue
            if mtime < since:
                continue

            try:
                with open(file_path, "rb") as f:
                    lines = f.readlines()
            except OSError:
                logger.warning("Skipping unreadable transcript: path=%s", file_path)
                result.skipped_records += 1
                continue

            for raw_line in lines:
                entry = self._decode_line(raw_line)
                if entry is None:
                    if raw_line.strip():
                        result.skipped_records += 1
                    continue

                session_id = to_str(entry.get("sessionId"))
                if not session_id:
                    continue

                snapshot = entry.get("snapshot")
                timestamp = parse_iso(entry.get("timestamp")) or (
                    parse_iso(snapshot.get("timestamp")) if isinstance(snapshot, dict) else None
                )
                if timestamp is not None and timestamp < since:
                    continue

                result.max_timestamp = latest(result.max_timestamp, timestamp)

                # snapshot.timestamp only bounds the session and cursor
                message = self._build_message(entry, session_id, file_path, parse_iso(entry.get("timestamp")))
                if message is None:
                    continue

                self._add_to_session(sessions, session_id, entry, message, timestamp)

        for session in sessions.values():
            order_messages(session.messages)

        result.sessions = list(sessions.values())
        if result.skipped_records:
            logger.debug("Skipped malformed Claude records: count=%d", result.skipped_records)
        return result

    def _decode_line(self, raw_line: bytes) -> dict[str, Any] | None:
        line_text = raw_line.strip()
        if not line_text:
            return None
        try:
            entry = json.loads(line_text.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Skip malformed lines
            return None
        return entry if isinstance(entry, dict) else None

    def _add_to_session(
        self,
        sessions: dict[str, IngestSession],
        session_id: str,
        entry: dict[str, Any],
        message: IngestMessage,
        timestamp: datetime | None,
    ) -> None:
        session = sessions.get(session_id)
        if session is None:
            sessions[session_id] = IngestSession(
                external_session_id=session_id,
                source_session_path=to_str(entry.get("cwd")),
                title=fallback_session_title(message.content, session_id),
                started_at=timestamp,
                last_activity_at=timestamp,
                messages=[message],
            )
            return

        session.messages.append(message)
        if timestamp is not None:
            session.last_activity_at = latest(session.last_activity_at, timestamp)
            if session.started_at is None or timestamp < session.started_at:
                session.started_at = timestamp
        if not session.source_session_path:
            session.source_session_path = to_str(entry.get("cwd"))

    def _build_message(
        self,
        entry: dict[str, Any],
        session_id: str,
        file_path: Path,
        timestamp: datetime | None,
    ) -> IngestMessage | None:
        """Turn one event into a message, or None if it carries no content."""
        nested = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        raw_content = nested.get("content")
        if raw_content is None:
            raw_content = entry.get("content")

        event_id = to_str(entry.get("uuid"))
        parts: list[IngestPart] = []
        content = ""

        if isinstance(raw_content, str):
            content = sanitize_imported_text(raw_content)
            if not content:
                return None
            parts.append(
                IngestPart(
                    external_part_id=hash_value(f"{session_id}:{event_id or ''}:text"),
                    part_type=PartType.TEXT,
                    text=content,
                    data=raw_content,
                    source_timestamp=timestamp,
                    ordinal=0,
                )
            )
        elif isinstance(raw_content, list):
            visible_text: list[str] = []
            for index, block in enumerate(raw_content):
                if not isinstance(block, dict):
                    continue
                part_type = map_claude_part_type(to_str(block.get("type")))
                part_text = self._extract_part_text(block, part_type)
                if part_text and part_type == PartType.TEXT:
                    visible_text.append(part_text)
                parts.append(
                    IngestPart(
                        external_part_id=hash_value(f"{session_id}:{event_id or ''}:part:{index}"),
                        part_type=part_type,
                        text=part_text,
                        data=block,
                        source_timestamp=timestamp,
                        ordinal=index,
                    )
                )
            content = "\n\n".join(visible_text).strip()

        if not content:
            return None

        external_message_id = (
            event_id
            or to_str(nested.get("id"))
            or hash_value(f"{session_id}:{file_path}:{content[:100]}")
        )

        usage = nested.get("usage") if isinstance(nested.get("usage"), dict) else {}
        prompt_tokens = to_number(usage.get("input_tokens"))
        completion_tokens = to_number(usage.get("output_tokens"))

        return IngestMessage(
            external_message_id=external_message_id,
            role=map_claude_role(to_str(entry.get("type"))),
            model_provider=to_str(entry.get("provider")) or to_str(nested.get("provider")) or DEFAULT_PROVIDER,
            model_id=to_str(entry.get("model")) or to_str(nested.get("model")),
            content=content,
            metadata=entry,
            source_timestamp=timestamp,
            parts=parts,
            prompt_tokens=int(prompt_tokens) if prompt_tokens is not None else None,
            completion_tokens=int(completion_tokens) if completion_tokens is not None else None,
        )

    def _extract_part_text(self, block: dict[str, Any], part_type: PartType) -> str | None:
        if part_type == PartType.TEXT:
            text = to_str(block.get("text")) or to_str(block.get("content"))
            return sanitize_imported_text(text) if text else None

        if part_type == PartType.REASONING:
            text = to_str(block.get("thinking")) or to_str(block.get("text"))
            return sanitize_imported_text(text) if text else None

        if part_type == PartType.TOOL:
            name = to_str(block.get("name"))
            if name:
                return f"[tool] {name}"
            return to_str(block.get("type")) or "tool"

        return to_str(block.get("text"))
