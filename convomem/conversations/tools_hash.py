"""Fingerprint of a tool declaration set.

Used to skip resending tool declarations to the model when they have not
changed since the last turn of a conversation.
"""

import json
from collections.abc import Iterable
from typing import Any

_MASK_32 = 0xFFFFFFFF


def normalize_tool(tool: Any) -> dict[str, Any] | None:
    """Project a tool declaration onto ``{name, description, parameters}``.

    Accepts plain declarations and OpenAI-style ``{"type": "function",
    "function": {...}}`` wrappers. Returns None for anonymous tools.
    """
    if not isinstance(tool, dict):
        return None
    inner = tool.get("function")
    if isinstance(inner, dict):
        tool = inner
    name = tool.get("name")
    if not name or not isinstance(name, str):
        return None
    return {
        "name": name,
        "description": tool.get("description") or "",
        "parameters": tool.get("parameters") or tool.get("input_schema") or {},
    }


def rolling_hash(text: str) -> int:
    """Simple 32-bit rolling string hash (``h * 31 + c``)."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & _MASK_32
    return h


def generate_tools_hash(tools: Iterable[Any] | None) -> str:
    """Deterministic, order-independent hash of a tool set as 8 hex digits."""
    normalized = [n for n in (normalize_tool(t) for t in tools or []) if n is not None]
    normalized.sort(key=lambda t: t["name"])
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return f"{rolling_hash(canonical):08x}"
