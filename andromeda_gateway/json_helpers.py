"""JSON/text helpers for bounded logging output and tool arguments."""

from __future__ import annotations

import json
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging."""
    try:
        raw = json.dumps(payload, ensure_ascii=False)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Decode a tool call's raw argument payload into a dict.

    Empty, non-JSON or non-object payloads decode to an empty dict.
    """
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}
