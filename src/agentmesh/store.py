"""Durable session store with SQLite persistence.

The store holds the canonical sessions/messages/parts plus the ingestion
bookkeeping (sources, runs, errors, checkpoints). Natural keys are enforced
with UNIQUE indexes and every upsert resolves to update-in-place when the key
already exists.
"""

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Self

from agentmesh.dates import to_iso, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS source_tools (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
    source_tool_id TEXT NOT NULL REFERENCES source_tools(id),
    external_session_id TEXT,
    source_session_path TEXT,
    title TEXT NOT NULL,
    summary TEXT,
    started_at TEXT,
    ended_at TEXT,
    last_activity_at TEXT,
    import_source TEXT,
    imported_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS sessions_source_external_key
    ON sessions(source_tool_id, external_session_id);
CREATE INDEX IF NOT EXISTS sessions_workspace_idx ON sessions(workspace_id);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    external_message_id TEXT,
    role TEXT NOT NULL,
    model_provider TEXT,
    model_id TEXT,
    content TEXT NOT NULL,
    metadata TEXT,
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    total_tokens INTEGER,
    source_timestamp TEXT,
    ordinal INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS messages_session_external_key
    ON messages(session_id, external_message_id);
CREATE INDEX IF NOT EXISTS messages_session_ordinal_idx ON messages(session_id, ordinal);

CREATE TABLE IF NOT EXISTS message_parts (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    external_part_id TEXT NOT NULL,
    part_type TEXT NOT NULL,
    text TEXT,
    data TEXT,
    source_timestamp TEXT,
    ordinal INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS message_parts_message_external_key
    ON message_parts(message_id, external_part_id);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    priority TEXT NOT NULL DEFAULT 'medium',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_tags (
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (session_id, tag_id)
);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    message_id TEXT REFERENCES messages(id) ON DELETE SET NULL,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metric_snapshots (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    source_tool_id TEXT REFERENCES source_tools(id) ON DELETE SET NULL,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    estimated_cost REAL NOT NULL DEFAULT 0,
    recorded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingestion_sources (
    id TEXT PRIMARY KEY,
    key TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    root_path TEXT,
    db_path TEXT,
    lookback_days INTEGER NOT NULL DEFAULT 30,
    poll_interval_sec INTEGER NOT NULL DEFAULT 30,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    last_run_at TEXT,
    last_success_at TEXT,
    last_error_at TEXT,
    status_message TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingestion_runs (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES ingestion_sources(id) ON DELETE CASCADE,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    scanned_sessions INTEGER NOT NULL DEFAULT 0,
    upserted_sessions INTEGER NOT NULL DEFAULT 0,
    upserted_messages INTEGER NOT NULL DEFAULT 0,
    upserted_parts INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    note TEXT
);

CREATE TABLE IF NOT EXISTS ingestion_errors (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES ingestion_sources(id) ON DELETE CASCADE,
    run_id TEXT REFERENCES ingestion_runs(id) ON DELETE CASCADE,
    code TEXT NOT NULL,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingestion_checkpoints (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES ingestion_sources(id) ON DELETE CASCADE,
    cursor_key TEXT NOT NULL,
    cursor_value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (source_id, cursor_key)
);
"""

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"


@dataclass
class IngestionSource:
    """A configured transcript source."""

    id: str
    key: str
    type: str
    name: str
    root_path: str | None = None
    db_path: str | None = None
    lookback_days: int = 30
    poll_interval_sec: int = 30
    is_enabled: bool = True
    last_run_at: str | None = None
    last_success_at: str | None = None
    last_error_at: str | None = None
    status_message: str | None = None
    created_at: str | None = None


@dataclass
class IngestionRun:
    """One attempt at ingesting a source."""

    id: str
    source_id: str
    mode: str
    status: str
    started_at: str
    finished_at: str | None = None
    scanned_sessions: int = 0
    upserted_sessions: int = 0
    upserted_messages: int = 0
    upserted_parts: int = 0
    error_count: int = 0
    note: str | None = None


@dataclass
class IngestionErrorRecord:
    id: str
    source_id: str
    run_id: str | None
    code: str
    message: str
    created_at: str


def new_id() -> str:
    return uuid.uuid4().hex


def to_json(value: Any) -> str | None:
    """Serialize an opaque payload for storage (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, default=str)


class Store:
    """Manages the canonical store in a SQLite database.

    Writes issued outside of ``transaction()`` are committed immediately.
    Inside ``transaction()`` they are committed together when the block exits,
    or rolled back together if it raises.
    """

    _SOURCE_ATTRS = {"last_run_at", "last_success_at", "last_error_at", "status_message", "is_enabled"}
    _RUN_ATTRS = {
        "status",
        "finished_at",
        "scanned_sessions",
        "upserted_sessions",
        "upserted_messages",
        "upserted_parts",
        "error_count",
        "note",
    }

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._tx_depth = 0
        self.ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def ensure_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def ping(self) -> bool:
        """Run a trivial query to check the database is reachable."""
        return self._conn.execute("SELECT 1").fetchone()[0] == 1

    @contextmanager
    def transaction(self) -> Iterator[Self]:
        """Group writes into one atomic unit. Nested calls join the outer unit."""
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    def _insert(self, table: str, values: dict[str, Any]) -> str:
        row = {"id": new_id(), **values}
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        self._conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(row.values()),
        )
        self._commit()
        return row["id"]

    def _update(self, table: str, row_id: str, values: dict[str, Any]) -> None:
        if not values:
            return
        set_clauses = ", ".join(f"{key} = ?" for key in values)
        self._conn.execute(
            f"UPDATE {table} SET {set_clauses} WHERE id = ?",
            [*values.values(), row_id],
        )
        self._commit()

    def _find_id(self, table: str, keys: dict[str, Any]) -> str | None:
        where = " AND ".join(f"{key} = ?" for key in keys)
        row = self._conn.execute(
            f"SELECT id FROM {table} WHERE {where}",
            list(keys.values()),
        ).fetchone()
        return row["id"] if row else None

    def _upsert(
        self,
        table: str,
        keys: dict[str, Any],
        update: dict[str, Any],
        create: dict[str, Any] | None = None,
    ) -> tuple[str, bool]:
        """Update the row matching ``keys`` or insert a new one.

        Args:
            table: Table name
            keys: Natural key columns and values
            update: Columns written on both update and create
            create: Extra columns written only on create

        Returns:
            Tuple of (row id, created)
        """
        existing = self._find_id(table, keys)
        if existing is not None:
            self._update(table, existing, update)
            return existing, False
        return self._insert(table, {**keys, **update, **(create or {})}), True

    # Workspaces and source tools

    def ensure_workspace(self, name: str = "Default", slug: str = "default") -> str:
        """Return the first workspace, creating a default one if none exists."""
        row = self._conn.execute(
            "SELECT id FROM workspaces ORDER BY created_at, rowid LIMIT 1"
        ).fetchone()
        if row is not None:
            return row["id"]
        return self._insert("workspaces", {"name": name, "slug": slug, "created_at": to_iso(utc_now())})

    def ensure_source_tool(self, slug: str, name: str) -> str:
        """Upsert a source tool by slug and return its id."""
        tool_id, _ = self._upsert(
            "source_tools",
            {"slug": slug},
            {"name": name},
            {"created_at": to_iso(utc_now())},
        )
        return tool_id

    def get_source_tool(self, source_tool_id: str) -> sqlite3.Row | None:
        return self._conn.execute("SELECT * FROM source_tools WHERE id = ?", (source_tool_id,)).fetchone()

    # Sessions, messages and parts

    def find_session_id(self, source_tool_id: str, external_session_id: str) -> str | None:
        return self._find_id(
            "sessions",
            {"source_tool_id": source_tool_id, "external_session_id": external_session_id},
        )

    def upsert_session(
        self,
        source_tool_id: str,
        external_session_id: str,
        workspace_id: str,
        **fields: Any,
    ) -> tuple[str, bool]:
        now = to_iso(utc_now())
        return self._upsert(
            "sessions",
            {"source_tool_id": source_tool_id, "external_session_id": external_session_id},
            {**fields, "updated_at": now},
            {"workspace_id": workspace_id, "created_at": now},
        )

    def create_session(self, workspace_id: str, source_tool_id: str, **fields: Any) -> str:
        now = to_iso(utc_now())
        return self._insert(
            "sessions",
            {
                "workspace_id": workspace_id,
                "source_tool_id": source_tool_id,
                **fields,
                "created_at": now,
                "updated_at": now,
            },
        )

    def upsert_message(self, session_id: str, external_message_id: str, **fields: Any) -> tuple[str, bool]:
        return self._upsert(
            "messages",
            {"session_id": session_id, "external_message_id": external_message_id},
            fields,
            {"created_at": to_iso(utc_now())},
        )

    def create_message(self, session_id: str, **fields: Any) -> str:
        return self._insert(
            "messages",
            {"session_id": session_id, **fields, "created_at": to_iso(utc_now())},
        )

    def upsert_part(
        self,
        session_id: str,
        message_id: str,
        external_part_id: str,
        **fields: Any,
    ) -> tuple[str, bool]:
        return self._upsert(
            "message_parts",
            {"message_id": message_id, "external_part_id": external_part_id},
            {**fields, "session_id": session_id},
            {"created_at": to_iso(utc_now())},
        )

    def renumber_messages(self, session_id: str) -> None:
        """Reassign dense zero-based ordinals by source timestamp (missing first)."""
        rows = self._conn.execute(
            """
            SELECT id FROM messages
            WHERE session_id = ?
            ORDER BY source_timestamp IS NOT NULL, source_timestamp, ordinal, rowid
            """,
            (session_id,),
        ).fetchall()
        self._conn.executemany(
            "UPDATE messages SET ordinal = ? WHERE id = ?",
            [(index, row["id"]) for index, row in enumerate(rows)],
        )
        self._commit()

    def session_token_totals(self, session_id: str) -> tuple[int, int, int]:
        """Sum prompt, completion and total tokens over a session's stored messages."""
        row = self._conn.execute(
            """
            SELECT
                COALESCE(SUM(prompt_tokens), 0) AS prompt,
                COALESCE(SUM(completion_tokens), 0) AS completion,
                COALESCE(SUM(COALESCE(
                    total_tokens,
                    COALESCE(prompt_tokens, 0) + COALESCE(completion_tokens, 0)
                )), 0) AS total
            FROM messages
            WHERE session_id = ?
            """,
            (session_id,),
        ).fetchone()
        return row["prompt"], row["completion"], row["total"]

    def create_metric_snapshot(
        self,
        session_id: str,
        source_tool_id: str | None,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
    ) -> str:
        return self._insert(
            "metric_snapshots",
            {
                "session_id": session_id,
                "source_tool_id": source_tool_id,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": total_tokens,
                "estimated_cost": round(total_tokens / 1_000_000, 6),
                "recorded_at": to_iso(utc_now()),
            },
        )

    def create_task(self, session_id: str, **fields: Any) -> str:
        now = to_iso(utc_now())
        return self._insert("tasks", {"session_id": session_id, **fields, "created_at": now, "updated_at": now})

    def ensure_tag(self, name: str, slug: str) -> str:
        existing = self._find_id("tags", {"slug": slug})
        if existing is not None:
            return existing
        return self._insert("tags", {"name": name, "slug": slug, "created_at": to_iso(utc_now())})

    def link_session_tag(self, session_id: str, tag_id: str) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO session_tags (session_id, tag_id) VALUES (?, ?)",
            (session_id, tag_id),
        )
        self._commit()

    def create_artifact(self, session_id: str, **fields: Any) -> str:
        return self._insert("artifacts", {"session_id": session_id, **fields, "created_at": to_iso(utc_now())})

    def get_session(self, session_id: str) -> sqlite3.Row | None:
        return self._conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()

    def list_messages(self, session_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY ordinal",
            (session_id,),
        ).fetchall()

    def list_parts(self, message_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM message_parts WHERE message_id = ? ORDER BY ordinal",
            (message_id,),
        ).fetchall()

    def count_rows(self, table: str) -> int:
        return self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # Ingestion bookkeeping

    def upsert_ingestion_source(
        self,
        key: str,
        source_type: str,
        name: str,
        root_path: str | None,
        lookback_days: int,
        poll_interval_sec: int,
        db_path: str | None = None,
    ) -> str:
        """Create a source by stable key, or refresh its paths and lookback."""
        source_id, _ = self._upsert(
            "ingestion_sources",
            {"key": key},
            {"root_path": root_path, "db_path": db_path, "lookback_days": lookback_days},
            {
                "type": source_type,
                "name": name,
                "poll_interval_sec": poll_interval_sec,
                "created_at": to_iso(utc_now()),
            },
        )
        return source_id

    def _source_from_row(self, row: sqlite3.Row) -> IngestionSource:
        return IngestionSource(
            id=row["id"],
            key=row["key"],
            type=row["type"],
            name=row["name"],
            root_path=row["root_path"],
            db_path=row["db_path"],
            lookback_days=row["lookback_days"],
            poll_interval_sec=row["poll_interval_sec"],
            is_enabled=bool(row["is_enabled"]),
            last_run_at=row["last_run_at"],
            last_success_at=row["last_success_at"],
            last_error_at=row["last_error_at"],
            status_message=row["status_message"],
            created_at=row["created_at"],
        )

    def list_sources(self, enabled_only: bool = False) -> list[IngestionSource]:
        """List sources in stable creation order."""
        query = "SELECT * FROM ingestion_sources"
        if enabled_only:
            query += " WHERE is_enabled = 1"
        query += " ORDER BY created_at, rowid"
        return [self._source_from_row(row) for row in self._conn.execute(query)]

    def get_source(self, source_id: str) -> IngestionSource | None:
        row = self._conn.execute("SELECT * FROM ingestion_sources WHERE id = ?", (source_id,)).fetchone()
        return self._source_from_row(row) if row else None

    def update_source(self, source_id: str, **attrs: Any) -> None:
        """Update source health attributes.

        Args:
            source_id: Source id
            **attrs: Attributes to update (last_run_at, last_success_at,
                     last_error_at, status_message, is_enabled)
        """
        invalid = set(attrs.keys()) - self._SOURCE_ATTRS
        if invalid:
            raise ValueError(f"Invalid attributes: {invalid}")
        self._update("ingestion_sources", source_id, attrs)

    def create_run(self, source_id: str, mode: str) -> str:
        return self._insert(
            "ingestion_runs",
            {
                "source_id": source_id,
                "mode": mode,
                "status": RUN_STATUS_RUNNING,
                "started_at": to_iso(utc_now()),
            },
        )

    def update_run(self, run_id: str, **attrs: Any) -> None:
        invalid = set(attrs.keys()) - self._RUN_ATTRS
        if invalid:
            raise ValueError(f"Invalid attributes: {invalid}")
        self._update("ingestion_runs", run_id, attrs)

    def _run_from_row(self, row: sqlite3.Row) -> IngestionRun:
        return IngestionRun(**{key: row[key] for key in row.keys()})

    def get_run(self, run_id: str) -> IngestionRun | None:
        row = self._conn.execute("SELECT * FROM ingestion_runs WHERE id = ?", (run_id,)).fetchone()
        return self._run_from_row(row) if row else None

    def latest_run(self, source_id: str) -> IngestionRun | None:
        row = self._conn.execute(
            """
            SELECT * FROM ingestion_runs
            WHERE source_id = ?
            ORDER BY started_at DESC, rowid DESC
            LIMIT 1
            """,
            (source_id,),
        ).fetchone()
        return self._run_from_row(row) if row else None

    def record_error(self, source_id: str, run_id: str | None, code: str, message: str) -> str:
        return self._insert(
            "ingestion_errors",
            {
                "source_id": source_id,
                "run_id": run_id,
                "code": code,
                "message": message,
                "created_at": to_iso(utc_now()),
            },
        )

    def list_errors(self, source_id: str) -> list[IngestionErrorRecord]:
        rows = self._conn.execute(
            "SELECT * FROM ingestion_errors WHERE source_id = ? ORDER BY created_at, rowid",
            (source_id,),
        ).fetchall()
        return [IngestionErrorRecord(**{key: row[key] for key in row.keys()}) for row in rows]

    def get_checkpoint(self, source_id: str, cursor_key: str) -> str | None:
        row = self._conn.execute(
            "SELECT cursor_value FROM ingestion_checkpoints WHERE source_id = ? AND cursor_key = ?",
            (source_id, cursor_key),
        ).fetchone()
        return row["cursor_value"] if row else None

    def set_checkpoint(self, source_id: str, cursor_key: str, cursor_value: str) -> None:
        self._upsert(
            "ingestion_checkpoints",
            {"source_id": source_id, "cursor_key": cursor_key},
            {"cursor_value": cursor_value, "updated_at": to_iso(utc_now())},
        )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
