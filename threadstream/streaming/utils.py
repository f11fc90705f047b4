"""Coercion helpers shared across the streaming modules.

Raw stream payloads arrive as plain dicts (decoded JSON) or, when the
transport runs in-process, as langchain message objects. Everything here is
total: malformed input yields an empty/neutral value instead of raising.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Optional

from langchain_core.messages import BaseMessage, BaseMessageChunk
from loguru import logger


def coerce_mapping(value: Any) -> Optional[Dict[str, Any]]:
    """Return a plain dict view of a raw message/payload, or None.

    Chunk messages drop their derived `tool_calls`: langchain rebuilds those
    from partially parsed `tool_call_chunks`, which would double-report the
    same call under its chunk key.
    """
    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, BaseMessage):
        data = value.model_dump()
        if isinstance(value, BaseMessageChunk) and data.get("tool_call_chunks"):
            data.pop("tool_calls", None)
            data.pop("invalid_tool_calls", None)
        return data
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        try:
            data = dump()
        except Exception as exc:  # pragma: no cover - foreign model types
            logger.debug("payload_model_dump_failed", error=str(exc))
            return None
        return data if isinstance(data, dict) else None
    return None


def get_path(value: Any, *path: str) -> Any:
    """Walk nested mappings; return None as soon as a step is missing."""
    current = value
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def first_string(value: Any, keys: Iterable[str]) -> Optional[str]:
    """Return the first str-typed field among *keys* (empty strings included)."""
    if not isinstance(value, Mapping):
        return None
    for key in keys:
        candidate = value.get(key)
        if isinstance(candidate, str):
            return candidate
    return None


def non_blank(value: Any) -> Optional[str]:
    """Return the stripped string when it has content, else None."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def first_present(value: Any, keys: Iterable[str]) -> Any:
    """Return the first field among *keys* that is not None."""
    if not isinstance(value, Mapping):
        return None
    for key in keys:
        candidate = value.get(key)
        if candidate is not None:
            return candidate
    return None


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    # ints are exact; math.isfinite overflows on very large ones
    return isinstance(value, int) or math.isfinite(value)


def stringify_args(args: Any) -> str:
    """Render tool-call arguments as text (pretty JSON for structured args)."""
    if args is None:
        return ""
    if isinstance(args, str):
        return args
    if isinstance(args, bool):
        return "true" if args else "false"
    if isinstance(args, (Mapping, list, tuple)):
        try:
            return json.dumps(args, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(args)
    return str(args)


def safe_json_value(value: Any) -> Any:
    """Convert a value to JSON-safe form, stringifying what cannot be encoded."""
    try:
        json.dumps(value, ensure_ascii=False)
        return value
    except (TypeError, ValueError):
        return _sanitize(value, set())


def _sanitize(value: Any, seen: set[int]) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if id(value) in seen:
        return "<cycle>"
    if not isinstance(value, (Mapping, list, tuple)):
        return str(value)
    seen.add(id(value))
    try:
        if isinstance(value, Mapping):
            return {str(key): _sanitize(item, seen) for key, item in value.items()}
        return [_sanitize(item, seen) for item in value]
    finally:
        seen.discard(id(value))
