"""Canonical data models.

Two families live here:

- the canonical session bundle (pydantic models), which is the shape accepted
  from manual entry and any other producer and validated before persistence;
- the intermediate ingest records (dataclasses) that source adapters build
  while reconstructing sessions from native transcript storage.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agentmesh.dates import ensure_utc, is_iso_datetime, parse_iso


class MessageRole(str, enum.Enum):
    """Canonical author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class PartType(str, enum.Enum):
    """Canonical type of a message part. OTHER is the fallback for unknown native types."""

    TEXT = "text"
    REASONING = "reasoning"
    TOOL = "tool"
    STEP_START = "step_start"
    STEP_FINISH = "step_finish"
    ERROR = "error"
    OTHER = "other"


class TaskStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"


class TaskPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _coerce_iso_timestamp(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not is_iso_datetime(value):
        raise ValueError("must be an ISO-8601 date-time string")
    parsed = parse_iso(value)
    if parsed is None:
        raise ValueError("must be an ISO-8601 date-time string")
    return parsed


IsoTimestamp = Annotated[datetime, BeforeValidator(_coerce_iso_timestamp)]
NonNegativeCount = Annotated[int, Field(ge=0, strict=True)]
NonEmptyStr = Annotated[str, Field(min_length=1)]


class _BundleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CanonicalSession(_BundleModel):
    title: NonEmptyStr
    summary: str | None = None
    external_session_id: str | None = None
    started_at: IsoTimestamp | None = None
    ended_at: IsoTimestamp | None = None


class CanonicalMessage(_BundleModel):
    role: MessageRole
    content: NonEmptyStr
    metadata: dict[str, Any] | None = None
    prompt_tokens: NonNegativeCount | None = None
    completion_tokens: NonNegativeCount | None = None
    total_tokens: NonNegativeCount | None = None

    @property
    def resolved_total_tokens(self) -> int:
        return resolve_total_tokens(self.prompt_tokens, self.completion_tokens, self.total_tokens)


class CanonicalTask(_BundleModel):
    title: NonEmptyStr
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None


class CanonicalArtifact(_BundleModel):
    type: NonEmptyStr
    name: NonEmptyStr
    content: str
    message_index: NonNegativeCount | None = None
    metadata: dict[str, Any] | None = None


class CanonicalSessionBundle(_BundleModel):
    """Source-agnostic session representation accepted by ingest_canonical_bundle."""

    session: CanonicalSession
    messages: list[CanonicalMessage] = Field(min_length=1)
    tasks: list[CanonicalTask] | None = None
    artifacts: list[CanonicalArtifact] | None = None
    tags: list[NonEmptyStr] | None = None


def resolve_total_tokens(
    prompt_tokens: int | None,
    completion_tokens: int | None,
    total_tokens: int | None,
) -> int:
    """Total token count, defaulting to prompt + completion when absent."""
    if total_tokens is not None:
        return total_tokens
    return (prompt_tokens or 0) + (completion_tokens or 0)


@dataclass
class IngestPart:
    """A message part reconstructed by a source adapter."""

    external_part_id: str
    part_type: PartType
    text: str | None = None
    data: Any = None  # Opaque native payload, stored as JSON
    source_timestamp: datetime | None = None
    ordinal: int = 0


@dataclass
class IngestMessage:
    """A message reconstructed by a source adapter."""

    external_message_id: str
    role: MessageRole
    content: str
    model_provider: str | None = None
    model_id: str | None = None
    metadata: Any = None  # Opaque native record, stored as JSON
    source_timestamp: datetime | None = None
    ordinal: int = 0
    parts: list[IngestPart] = field(default_factory=list)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class IngestSession:
    """A session reconstructed by a source adapter, ready for upsert."""

    external_session_id: str
    title: str
    messages: list[IngestMessage] = field(default_factory=list)
    source_session_path: str | None = None
    summary: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    last_activity_at: datetime | None = None


@dataclass
class SourceRunResult:
    """Counts and cursor produced by one source run."""

    scanned_sessions: int = 0
    upserted_sessions: int = 0
    upserted_messages: int = 0
    upserted_parts: int = 0
    max_timestamp: datetime | None = None
    note: str | None = None
    session_ids: list[str] = field(default_factory=list)
