"""Base adapter interface, registry and shared file helpers."""

import hashlib
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from agentmesh.logging import get_logger
from agentmesh.models import IngestMessage, IngestSession

__all__ = [
    "AdapterRegistry",
    "ScanResult",
    "SourceAdapter",
    "hash_value",
    "latest",
    "list_files",
    "order_messages",
    "safe_read_json",
    "to_number",
    "to_str",
]

logger = get_logger("adapters")


@dataclass
class ScanResult:
    """Sessions reconstructed from native storage during one scan."""

    sessions: list[IngestSession] = field(default_factory=list)
    max_timestamp: datetime | None = None
    skipped_records: int = 0  # Malformed lines/files skipped during the scan


class SourceAdapter(ABC):
    """Base class for source adapters.

    Subclasses set ``source_type`` (the ingestion source type they handle) and
    ``tool_slug``/``tool_name`` (the source tool sessions are attributed to),
    and implement ``scan()``. Adapters never touch the store.
    """

    source_type: str
    tool_slug: str
    tool_name: str
    import_source: str

    @abstractmethod
    def default_root(self) -> Path:
        """Root directory used when the source has no root path configured."""

    @abstractmethod
    def scan(self, root: Path, since: datetime) -> ScanResult:
        """Reconstruct sessions from native storage.

        Args:
            root: Root directory of the tool's storage
            since: Lower bound; records older than this are ignored

        Returns:
            ScanResult with sessions (messages ordered, ordinals assigned)
            and the maximum source timestamp observed
        """


class AdapterRegistry:
    """Registry of adapters by source type."""

    _adapters: dict[str, SourceAdapter] = {}

    @classmethod
    def register(cls, adapter: SourceAdapter) -> None:
        """Register an adapter."""
        cls._adapters[adapter.source_type] = adapter

    @classmethod
    def get(cls, source_type: str) -> SourceAdapter | None:
        """Get adapter by source type."""
        return cls._adapters.get(source_type)

    @classmethod
    def all_types(cls) -> list[str]:
        """List all registered source types."""
        return list(cls._adapters.keys())


def hash_value(value: str) -> str:
    """Stable SHA-1 hex digest used to derive natural ids."""
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def to_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def to_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def latest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


def list_files(directory: Path, suffix: str) -> list[Path]:
    """Recursively list files ending in ``suffix``.

    Missing or unreadable directories yield an empty list.

    Args:
        directory: Directory to walk
        suffix: File suffix to match (e.g. ".jsonl")

    Returns:
        Sorted list of matching file paths
    """
    if not directory.is_dir():
        return []

    files: list[Path] = []
    for dirpath, _dirnames, filenames in os.walk(directory, onerror=lambda e: None):
        for filename in filenames:
            if filename.endswith(suffix):
                files.append(Path(dirpath) / filename)
    return sorted(files)


def safe_read_json(path: Path) -> Any:
    """Read a JSON file, returning None if it is missing or malformed."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError):
        logger.debug("Skipping unreadable JSON file: path=%s", path)
        return None


def order_messages(messages: list[IngestMessage]) -> list[IngestMessage]:
    """Sort messages by source timestamp and reassign dense ordinals.

    Messages without a timestamp sort as earliest. The sort is stable, so
    messages with equal timestamps keep their discovery order.
    """
    messages.sort(
        key=lambda m: (m.source_timestamp is not None, m.source_timestamp.timestamp() if m.source_timestamp else 0)
    )
    for index, message in enumerate(messages):
        message.ordinal = index
    return messages
