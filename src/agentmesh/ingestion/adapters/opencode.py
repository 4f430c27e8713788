"""Adapter for OpenCode (SST) conversation storage.

OpenCode stores conversations in a hierarchical structure at:
    ~/.local/share/opencode/storage/

Directory layout:
    session/<projectHash>/ses_<id>.json    - Session metadata
    message/<sessionID>/msg_<id>.json      - Message metadata
    part/<messageID>/prt_<id>.json         - Content parts

Session file contains:
- id, title, directory
- time.created / time.updated: timestamps in milliseconds

Message file contains:
- id, sessionID, role
- time.created: timestamp in milliseconds
- providerID / modelID (or model.providerID / model.modelID)
- tokens.input / tokens.output
- summary.title: provider-generated title, used when there is no text part

Part file contains:
- id, type ("text", "reasoning", "tool", "step-start", "step-finish", ...)
- time.start: timestamp in milliseconds
- text (text/reasoning), tool + state.{title,output,input} (tool)
"""

from datetime import datetime
from pathlib import Path
from typing import Any

from agentmesh.dates import from_epoch_ms
from agentmesh.ingestion.adapters.base import (
    ScanResult,
    SourceAdapter,
    hash_value,
    latest,
    list_files,
    order_messages,
    safe_read_json,
    to_number,
    to_str,
)
from agentmesh.ingestion.text import fallback_session_title, sanitize_imported_text
from agentmesh.logging import get_logger
from agentmesh.models import IngestMessage, IngestPart, IngestSession, MessageRole, PartType

logger = get_logger("adapters.opencode")

_PART_TYPES = {
    "text": PartType.TEXT,
    "reasoning": PartType.REASONING,
    "tool": PartType.TOOL,
    "step-start": PartType.STEP_START,
    "step-finish": PartType.STEP_FINISH,
    "error": PartType.ERROR,
}


def map_opencode_role(value: str | None) -> MessageRole:
    """Map an OpenCode message role onto a canonical role (unknown -> user)."""
    if value == "assistant":
        return MessageRole.ASSISTANT
    if value == "tool":
        return MessageRole.TOOL
    return MessageRole.USER


def map_opencode_part_type(value: str | None) -> PartType:
    """Map an OpenCode part type onto a canonical part type (unknown -> other)."""
    if value is None:
        return PartType.OTHER
    return _PART_TYPES.get(value, PartType.OTHER)


def _nested(record: dict[str, Any], key: str) -> dict[str, Any]:
    value = record.get(key)
    return value if isinstance(value, dict) else {}


def _ms(record: dict[str, Any], key: str) -> int | float | None:
    return to_number(_nested(record, "time").get(key))


class OpenCodeAdapter(SourceAdapter):
    """Adapter for OpenCode's directory-of-JSON-files session store."""

    source_type = "opencode"
    tool_slug = "opencode"
    tool_name = "OpenCode"
    import_source = "opencode-watcher"

    def default_root(self) -> Path:
        return Path.home() / ".local" / "share" / "opencode"

    def scan(self, root: Path, since: datetime) -> ScanResult:
        """Reconstruct sessions updated at or after ``since``.

        Args:
            root: OpenCode data directory (containing ``storage/``)
            since: Effective lower bound for session and message timestamps

        Returns:
            ScanResult with one session per session file
        """
        storage = root / "storage"
        result = ScanResult()

        for session_file in list_files(storage / "session", ".json"):
            record = safe_read_json(session_file)
            if not isinstance(record, dict):
                result.skipped_records += 1
                continue

            session_id = to_str(record.get("id"))
            if not session_id:
                continue

            created = from_epoch_ms(_ms(record, "created"))
            updated_ms = _ms(record, "updated")
            last_updated = from_epoch_ms(updated_ms if updated_ms is not None else _ms(record, "created"))

            if last_updated is not None and last_updated < since:
                continue

            result.max_timestamp = latest(result.max_timestamp, last_updated)

            messages: list[IngestMessage] = []
            for message_file in list_files(storage / "message" / session_id, ".json"):
                message_record = safe_read_json(message_file)
                if not isinstance(message_record, dict):
                    result.skipped_records += 1
                    continue

                message_created = from_epoch_ms(_ms(message_record, "created"))
                if message_created is not None and message_created < since:
                    continue

                result.max_timestamp = latest(result.max_timestamp, message_created)

                message = self._build_message(storage, message_record, message_created)
                if message is None:
                    continue

                messages.append(message)

            order_messages(messages)

            title = to_str(record.get("title")) or fallback_session_title(
                messages[0].content if messages else "", session_id
            )
            result.sessions.append(
                IngestSession(
                    external_session_id=session_id,
                    source_session_path=to_str(record.get("directory")),
                    title=title,
                    started_at=created,
                    last_activity_at=last_updated,
                    messages=messages,
                )
            )

        return result

    def _build_message(
        self,
        storage: Path,
        record: dict[str, Any],
        created: datetime | None,
    ) -> IngestMessage | None:
        """Build a message from its record and part files, or None if it has no content."""
        message_id = to_str(record.get("id"))
        if not message_id:
            return None

        parts = self._load_parts(storage, message_id)

        content = "\n\n".join(
            part.text for part in parts if part.part_type == PartType.TEXT and part.text and part.text.strip()
        )
        if not content:
            content = to_str(_nested(record, "summary").get("title")) or ""
        if not content:
            return None

        model = _nested(record, "model")
        tokens = _nested(record, "tokens")
        prompt_tokens = to_number(tokens.get("input"))
        completion_tokens = to_number(tokens.get("output"))

        return IngestMessage(
            external_message_id=message_id,
            role=map_opencode_role(to_str(record.get("role"))),
            model_provider=to_str(record.get("providerID")) or to_str(model.get("providerID")),
            model_id=to_str(record.get("modelID")) or to_str(model.get("modelID")),
            content=content,
            metadata=record,
            source_timestamp=created,
            parts=parts,
            prompt_tokens=int(prompt_tokens) if prompt_tokens is not None else None,
            completion_tokens=int(completion_tokens) if completion_tokens is not None else None,
        )

    def _load_parts(self, storage: Path, message_id: str) -> list[IngestPart]:
        """Load a message's parts ordered by their start time (missing = 0)."""
        records = [
            record
            for record in (safe_read_json(path) for path in list_files(storage / "part" / message_id, ".json"))
            if isinstance(record, dict)
        ]
        records.sort(key=lambda record: _ms(record, "start") or 0)

        parts: list[IngestPart] = []
        for index, record in enumerate(records):
            part_type = map_opencode_part_type(to_str(record.get("type")))
            parts.append(
                IngestPart(
                    external_part_id=to_str(record.get("id")) or hash_value(f"{message_id}:part:{index}"),
                    part_type=part_type,
                    text=self._extract_part_text(record, part_type),
                    data=record,
                    source_timestamp=from_epoch_ms(_ms(record, "start")),
                    ordinal=index,
                )
            )
        return parts

    def _extract_part_text(self, record: dict[str, Any], part_type: PartType) -> str | None:
        if part_type in (PartType.TEXT, PartType.REASONING):
            text = to_str(record.get("text"))
            return sanitize_imported_text(text) if text else None

        if part_type == PartType.TOOL:
            state = _nested(record, "state")
            return (
                to_str(state.get("title"))
                or to_str(state.get("output"))
                or to_str(record.get("tool"))
                or "tool call"
            )

        return to_str(record.get("type"))
