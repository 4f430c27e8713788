"""Typesense mirror of stored sessions and messages for full-text search."""

from typing import Any

import typesense
from typesense.exceptions import ObjectNotFound

from agentmesh.config import TypesenseConfig
from agentmesh.dates import parse_iso
from agentmesh.logging import get_logger
from agentmesh.store import Store

logger = get_logger("indexer")

MESSAGES_SCHEMA: dict[str, Any] = {
    "name": "messages",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "session_id", "type": "string", "facet": True},
        {"name": "source_tool", "type": "string", "facet": True},
        {"name": "role", "type": "string", "facet": True},
        {"name": "model_id", "type": "string", "facet": True, "optional": True},
        {"name": "content", "type": "string"},
        {"name": "ordinal", "type": "int32"},
        {"name": "ts", "type": "int64", "sort": True},
    ],
    "default_sorting_field": "ts",
}

SESSIONS_SCHEMA: dict[str, Any] = {
    "name": "sessions",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "workspace_id", "type": "string", "facet": True},
        {"name": "source_tool", "type": "string", "facet": True},
        {"name": "project", "type": "string", "facet": True, "optional": True},
        {"name": "title", "type": "string"},
        {"name": "summary", "type": "string", "optional": True},
        {"name": "message_count", "type": "int32"},
        {"name": "last_ts", "type": "int64", "sort": True},
    ],
    "default_sorting_field": "last_ts",
}


def _epoch_seconds(value: str | None) -> int:
    parsed = parse_iso(value)
    return int(parsed.timestamp()) if parsed else 0


def _filter_by(filters: dict[str, Any] | None, fields: tuple[str, ...]) -> str | None:
    if not filters:
        return None
    parts = [f"{name}:={filters[name]}" for name in fields if filters.get(name)]
    return " && ".join(parts) or None


class TypesenseIndexer:
    """Mirrors stored sessions into Typesense.

    Handles collection creation/verification and document upserts. The
    store stays the source of truth; documents are keyed by store ids so
    re-indexing a session overwrites its previous documents.
    """

    def __init__(self, config: TypesenseConfig) -> None:
        """Initialize indexer with Typesense configuration.

        Args:
            config: TypesenseConfig with connection details
        """
        self._config = config
        self._client = typesense.Client({
            "nodes": [{
                "host": config.host,
                "port": str(config.port),
                "protocol": config.protocol,
            }],
            "api_key": config.api_key,
            "connection_timeout_seconds": 5,
        })

    @property
    def client(self) -> typesense.Client:
        """Access the underlying Typesense client."""
        return self._client

    def ensure_collections(self) -> None:
        """Create the 'messages' and 'sessions' collections if missing."""
        self._ensure_collection(MESSAGES_SCHEMA)
        self._ensure_collection(SESSIONS_SCHEMA)

    def _ensure_collection(self, schema: dict[str, Any]) -> None:
        name = schema["name"]
        try:
            self._client.collections[name].retrieve()
            logger.debug("Collection already exists: collection=%s", name)
        except ObjectNotFound:
            self._client.collections.create(schema)
            logger.info("Created collection: collection=%s", name)

    def index_session(self, store: Store, session_id: str) -> dict[str, int]:
        """Upsert a stored session and all of its messages.

        Args:
            store: Store holding the session
            session_id: Store id of the session

        Returns:
            Dict with message counts: {"success": N, "failed": M}
        """
        session = store.get_session(session_id)
        if session is None:
            logger.warning("Cannot index missing session: session_id=%s", session_id)
            return {"success": 0, "failed": 0}

        tool = store.get_source_tool(session["source_tool_id"])
        tool_slug = tool["slug"] if tool else "unknown"
        messages = store.list_messages(session_id)

        documents = []
        for message in messages:
            doc: dict[str, Any] = {
                "id": message["id"],
                "session_id": session_id,
                "source_tool": tool_slug,
                "role": message["role"],
                "content": message["content"],
                "ordinal": message["ordinal"],
                "ts": _epoch_seconds(message["source_timestamp"]),
            }
            if message["model_id"]:
                doc["model_id"] = message["model_id"]
            documents.append(doc)

        counts = self.upsert_messages(documents)

        session_doc: dict[str, Any] = {
            "id": session_id,
            "workspace_id": session["workspace_id"],
            "source_tool": tool_slug,
            "title": session["title"],
            "message_count": len(messages),
            "last_ts": _epoch_seconds(session["last_activity_at"] or session["updated_at"]),
        }
        if session["source_session_path"]:
            session_doc["project"] = session["source_session_path"]
        if session["summary"]:
            session_doc["summary"] = session["summary"]
        self._client.collections["sessions"].documents.upsert(session_doc)

        return counts

    def upsert_messages(self, documents: list[dict[str, Any]]) -> dict[str, int]:
        """Bulk upsert message documents.

        Returns:
            Dict with counts: {"success": N, "failed": M}
        """
        if not documents:
            return {"success": 0, "failed": 0}

        results = self._client.collections["messages"].documents.import_(
            documents,
            {"action": "upsert"},
        )

        success = 0
        failed = 0
        for result in results:
            if result.get("success", False):
                success += 1
            else:
                failed += 1
                logger.debug("Failed to index message: error=%s", result.get("error", "unknown"))

        if failed > 0:
            logger.warning("Some messages failed to index: success=%d failed=%d", success, failed)

        return {"success": success, "failed": failed}

    def search_messages(
        self,
        query: str,
        page: int = 1,
        per_page: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Search for messages.

        Args:
            query: Search query string (use "*" for all)
            page: Page number (1-based)
            per_page: Number of results per page
            filters: Exact-match filters (source_tool, role, session_id)

        Returns:
            Search results from Typesense
        """
        search_params: dict[str, Any] = {
            "q": query,
            "query_by": "content",
            "page": page,
            "per_page": per_page,
            "sort_by": "ts:desc",
        }
        filter_by = _filter_by(filters, ("source_tool", "role", "session_id"))
        if filter_by:
            search_params["filter_by"] = filter_by

        return self._client.collections["messages"].documents.search(search_params)

    def search_sessions(
        self,
        query: str,
        page: int = 1,
        per_page: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Search for sessions by title and summary.

        Args:
            query: Search query string (use "*" for all)
            page: Page number (1-based)
            per_page: Number of results per page
            filters: Exact-match filters (source_tool, project, workspace_id)

        Returns:
            Search results from Typesense
        """
        search_params: dict[str, Any] = {
            "q": query,
            "query_by": "title,summary",
            "page": page,
            "per_page": per_page,
            "sort_by": "last_ts:desc",
        }
        filter_by = _filter_by(filters, ("source_tool", "project", "workspace_id"))
        if filter_by:
            search_params["filter_by"] = filter_by

        return self._client.collections["sessions"].documents.search(search_params)
