"""Idempotent upsert of adapter-produced sessions into the store."""

from datetime import datetime

from agentmesh.dates import to_iso, utc_now
from agentmesh.ingestion.text import derive_session_summary
from agentmesh.logging import get_logger
from agentmesh.models import IngestMessage, IngestSession, SourceRunResult, resolve_total_tokens
from agentmesh.store import Store, to_json

logger = get_logger("ingestion.persist")


def _total_tokens(message: IngestMessage) -> int | None:
    if message.prompt_tokens is None and message.completion_tokens is None:
        return message.total_tokens
    return resolve_total_tokens(message.prompt_tokens, message.completion_tokens, message.total_tokens)


def persist_sessions(
    store: Store,
    source_tool_id: str,
    workspace_id: str,
    import_source: str,
    sessions: list[IngestSession],
    max_timestamp: datetime | None,
) -> SourceRunResult:
    """Upsert sessions, messages and parts by their natural keys.

    Sessions without an external id or without messages are skipped. Each
    session is written in its own transaction, so a failure leaves earlier
    sessions committed and the failing one untouched.

    Args:
        store: Store to write into
        source_tool_id: Source tool the sessions are attributed to
        workspace_id: Workspace for newly created sessions
        import_source: Label recorded on each session (e.g. "claude-watcher")
        sessions: Sessions reconstructed by an adapter
        max_timestamp: Maximum source timestamp observed by the scan

    Returns:
        SourceRunResult with scanned/upserted counts and the persisted session ids
    """
    result = SourceRunResult(scanned_sessions=len(sessions), max_timestamp=max_timestamp)

    for session in sessions:
        if not session.external_session_id or not session.messages:
            continue

        with store.transaction():
            session_id, _ = store.upsert_session(
                source_tool_id,
                session.external_session_id,
                workspace_id,
                source_session_path=session.source_session_path,
                title=session.title,
                summary=session.summary or derive_session_summary(session.messages),
                started_at=to_iso(session.started_at),
                ended_at=to_iso(session.ended_at),
                last_activity_at=to_iso(session.last_activity_at),
                import_source=import_source,
                imported_at=to_iso(utc_now()),
            )

            for message in session.messages:
                message_id, _ = store.upsert_message(
                    session_id,
                    message.external_message_id,
                    role=message.role.value,
                    model_provider=message.model_provider,
                    model_id=message.model_id,
                    content=message.content,
                    metadata=to_json(message.metadata),
                    prompt_tokens=message.prompt_tokens,
                    completion_tokens=message.completion_tokens,
                    total_tokens=_total_tokens(message),
                    source_timestamp=to_iso(message.source_timestamp),
                    ordinal=message.ordinal,
                )
                result.upserted_messages += 1

                for part in message.parts:
                    store.upsert_part(
                        session_id,
                        message_id,
                        part.external_part_id,
                        part_type=part.part_type.value,
                        text=part.text,
                        data=to_json(part.data),
                        source_timestamp=to_iso(part.source_timestamp),
                        ordinal=part.ordinal,
                    )
                    result.upserted_parts += 1

            # Incremental scans only carry new messages; keep stored ordinals dense
            store.renumber_messages(session_id)

            prompt, completion, total = store.session_token_totals(session_id)
            store.create_metric_snapshot(session_id, source_tool_id, prompt, completion, total)

        result.upserted_sessions += 1
        result.session_ids.append(session_id)
        logger.debug(
            "Upserted session: external_id=%s messages=%d",
            session.external_session_id,
            len(session.messages),
        )

    return result
