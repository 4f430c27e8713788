"""Best-effort splitter for pasted conversation transcripts.

Pasted text is broken into chunks on blank lines. A chunk whose first line
starts with ``user:``, ``assistant:`` or ``tool:`` takes that role; any other
chunk is assigned alternating user/assistant roles, counted over unlabeled
chunks only. The parser never rejects input.
"""

import re
from dataclasses import dataclass

from agentmesh.models import MessageRole

_CHUNK_SEPARATOR = re.compile(r"\n{2,}")
_ROLE_PREFIX = re.compile(r"^(user|assistant|tool):\s*(.*)$", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedMessage:
    role: MessageRole
    content: str


def parse_transcript(raw: str) -> list[ParsedMessage]:
    """Split raw pasted text into role-tagged turns.

    Args:
        raw: Pasted transcript text

    Returns:
        Ordered list of parsed messages (empty chunks dropped)
    """
    chunks = [chunk.strip() for chunk in _CHUNK_SEPARATOR.split(raw.replace("\r\n", "\n"))]

    messages: list[ParsedMessage] = []
    unlabeled_count = 0

    for chunk in chunks:
        if not chunk:
            continue

        lines = chunk.split("\n")
        first_line = lines[0].strip()
        rest = "\n".join(lines[1:]).strip()

        match = _ROLE_PREFIX.match(first_line)
        if match:
            role = MessageRole(match.group(1).lower())
            content = f"{match.group(2)}\n{rest}" if rest else match.group(2)
            content = content.strip()
        else:
            role = MessageRole.USER if unlabeled_count % 2 == 0 else MessageRole.ASSISTANT
            unlabeled_count += 1
            content = chunk

        if content:
            messages.append(ParsedMessage(role=role, content=content))

    return messages
