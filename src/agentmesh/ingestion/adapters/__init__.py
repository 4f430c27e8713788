"""Adapters that reconstruct sessions from native AI coding tool storage."""

from .base import AdapterRegistry, ScanResult, SourceAdapter, hash_value, order_messages
from .claude_code import ClaudeCodeAdapter, map_claude_part_type, map_claude_role
from .opencode import OpenCodeAdapter, map_opencode_part_type, map_opencode_role

__all__ = [
    "AdapterRegistry",
    "ClaudeCodeAdapter",
    "OpenCodeAdapter",
    "ScanResult",
    "SourceAdapter",
    "hash_value",
    "map_claude_part_type",
    "map_claude_role",
    "map_opencode_part_type",
    "map_opencode_role",
    "order_messages",
]

# Register adapters
AdapterRegistry.register(ClaudeCodeAdapter())
AdapterRegistry.register(OpenCodeAdapter())
