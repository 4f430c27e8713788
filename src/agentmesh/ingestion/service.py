"""Canonical bundle ingestion and manual session entry."""

import re
from dataclasses import dataclass
from typing import Any

from agentmesh.dates import to_iso, utc_now
from agentmesh.ingestion.text import derive_session_summary
from agentmesh.ingestion.transcript import parse_transcript
from agentmesh.ingestion.validator import validate_bundle
from agentmesh.logging import get_logger
from agentmesh.models import CanonicalSessionBundle, TaskPriority, TaskStatus
from agentmesh.store import Store, to_json

logger = get_logger("ingestion.service")

MANUAL_IMPORT_SOURCE = "manual-entry"

_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass(frozen=True)
class IngestResult:
    session_id: str
    deduplicated: bool


class ManualEntryError(ValueError):
    """Raised when a manual submission carries no usable message."""


def tag_slug(name: str) -> str:
    """Lower-case a tag name and replace whitespace runs with "-"."""
    return _WHITESPACE_RUN.sub("-", name.strip().lower())


def ingest_canonical_bundle(
    store: Store,
    bundle: CanonicalSessionBundle | dict[str, Any],
    workspace_id: str,
    source_tool_id: str,
    import_source: str,
) -> IngestResult:
    """Validate and persist a canonical bundle as a new session.

    When the bundle carries an external session id that already exists for
    the source tool, nothing is written and the existing session is returned.

    Args:
        store: Store to write into
        bundle: Typed bundle or untyped candidate
        workspace_id: Workspace the session belongs to
        source_tool_id: Source tool the session is attributed to
        import_source: Label recorded on the session

    Returns:
        IngestResult with the session id and whether it was deduplicated

    Raises:
        BundleValidationError: If the candidate fails validation
    """
    bundle = validate_bundle(bundle)
    session = bundle.session

    with store.transaction():
        if session.external_session_id:
            existing = store.find_session_id(source_tool_id, session.external_session_id)
            if existing is not None:
                logger.info(
                    "Bundle deduplicated: external_id=%s session_id=%s",
                    session.external_session_id,
                    existing,
                )
                return IngestResult(session_id=existing, deduplicated=True)

        session_id = store.create_session(
            workspace_id,
            source_tool_id,
            external_session_id=session.external_session_id,
            title=session.title,
            summary=session.summary or derive_session_summary(bundle.messages),
            started_at=to_iso(session.started_at),
            ended_at=to_iso(session.ended_at),
            import_source=import_source,
            imported_at=to_iso(utc_now()),
        )

        message_ids: list[str] = []
        for index, message in enumerate(bundle.messages):
            message_ids.append(
                store.create_message(
                    session_id,
                    role=message.role.value,
                    content=message.content,
                    metadata=to_json(message.metadata),
                    prompt_tokens=message.prompt_tokens,
                    completion_tokens=message.completion_tokens,
                    total_tokens=message.resolved_total_tokens,
                    ordinal=index,
                )
            )

        for task in bundle.tasks or []:
            store.create_task(
                session_id,
                title=task.title,
                description=task.description,
                status=(task.status or TaskStatus.OPEN).value,
                priority=(task.priority or TaskPriority.MEDIUM).value,
            )

        for tag in bundle.tags or []:
            tag = tag.strip()
            if not tag:
                continue
            tag_id = store.ensure_tag(tag, tag_slug(tag))
            store.link_session_tag(session_id, tag_id)

        for artifact in bundle.artifacts or []:
            message_id = None
            if artifact.message_index is not None and artifact.message_index < len(message_ids):
                message_id = message_ids[artifact.message_index]
            store.create_artifact(
                session_id,
                message_id=message_id,
                type=artifact.type,
                name=artifact.name,
                content=artifact.content,
                metadata=to_json(artifact.metadata),
            )

        store.create_metric_snapshot(
            session_id,
            source_tool_id,
            sum(m.prompt_tokens or 0 for m in bundle.messages),
            sum(m.completion_tokens or 0 for m in bundle.messages),
            sum(m.resolved_total_tokens for m in bundle.messages),
        )

    logger.info(
        "Bundle ingested: session_id=%s messages=%d import_source=%s",
        session_id,
        len(message_ids),
        import_source,
    )
    return IngestResult(session_id=session_id, deduplicated=False)


def create_manual_session(
    store: Store,
    workspace_id: str,
    source_tool_id: str,
    title: str,
    summary: str | None = None,
    transcript: str | None = None,
    messages: list[dict[str, Any]] | None = None,
    external_session_id: str | None = None,
    tags: list[str] | None = None,
) -> IngestResult:
    """Create a session from a pasted transcript and/or explicit messages.

    Explicit messages come first, followed by the messages parsed from the
    transcript. Messages whose content is blank are dropped.

    Raises:
        ManualEntryError: If no non-empty message remains
        BundleValidationError: If the assembled bundle is invalid
    """
    combined: list[dict[str, Any]] = [dict(m) for m in messages or []]
    if transcript:
        combined.extend(
            {"role": parsed.role.value, "content": parsed.content} for parsed in parse_transcript(transcript)
        )

    combined = [m for m in combined if isinstance(m.get("content"), str) and m["content"].strip()]
    if not combined:
        raise ManualEntryError("At least one message is required.")

    candidate: dict[str, Any] = {
        "session": {
            "title": title,
            "summary": summary,
            "externalSessionId": external_session_id,
        },
        "messages": combined,
    }
    if tags:
        candidate["tags"] = tags

    return ingest_canonical_bundle(store, candidate, workspace_id, source_tool_id, MANUAL_IMPORT_SOURCE)
