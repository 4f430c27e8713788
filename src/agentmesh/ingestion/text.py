"""Text cleanup and derived title/summary helpers shared by all ingestion paths."""

import re
from collections.abc import Sequence
from typing import Protocol

from agentmesh.models import MessageRole

# Harness-injected markup that must never be stored as visible content
_INJECTED_BLOCK_PATTERNS = [
    re.compile(rf"<{tag}>.*?</{tag}>", re.IGNORECASE | re.DOTALL)
    for tag in ("local-command-caveat", "system-reminder", "local-command-stdout")
]

_WHITESPACE_RUN = re.compile(r"\s+")

TITLE_MAX_CHARS = 80
SUMMARY_MAX_CHARS = 180


class _HasRoleAndContent(Protocol):
    role: MessageRole
    content: str


def sanitize_imported_text(value: str) -> str:
    """Remove injected caveat/reminder/stdout blocks and trim the result.

    Args:
        value: Raw transcript text

    Returns:
        Cleaned text, possibly empty if everything was markup
    """
    for pattern in _INJECTED_BLOCK_PATTERNS:
        value = pattern.sub("", value)
    return value.strip()


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RUN.sub(" ", value).strip()


def fallback_session_title(content: str, session_id: str) -> str:
    """Build a session title from message content when the source has none.

    Args:
        content: Content of the session's first message
        session_id: External session identifier

    Returns:
        First 80 characters of the cleaned content, or "Session <id prefix>"
    """
    clean = collapse_whitespace(sanitize_imported_text(content))
    if not clean:
        return f"Session {session_id[:8]}"
    return clean[:TITLE_MAX_CHARS]


def derive_session_summary(messages: Sequence[_HasRoleAndContent]) -> str | None:
    """Derive a short summary from the most representative message.

    Picks the first assistant message, else the first user message, else the
    first message of any role.

    Args:
        messages: Ordered session messages

    Returns:
        Cleaned content capped at 180 characters (ending in "..." when cut),
        or None when there is nothing to summarize
    """
    best = (
        next((m for m in messages if m.role == MessageRole.ASSISTANT), None)
        or next((m for m in messages if m.role == MessageRole.USER), None)
        or (messages[0] if messages else None)
    )

    if best is None or not best.content:
        return None

    clean = collapse_whitespace(sanitize_imported_text(best.content))
    if not clean:
        return None

    if len(clean) > SUMMARY_MAX_CHARS:
        return f"{clean[:SUMMARY_MAX_CHARS - 3]}..."
    return clean
