"""Normalizers for turning raw transcript payloads into display structures.

Provides a pure, re-derivable view of the raw stream state: the message
transcript shown in the chat pane and the tool/source cards shown beside it.
Nothing here mutates its inputs, so it is safe to recompute on every
snapshot tick.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .content import resolve_content, resolve_module_text
from .event_types import NormalizedMessage
from .utils import coerce_mapping

TOOL_MESSAGE_TYPES = frozenset({"tool", "tool_calls", "tool_message", "tool_result"})

ROLE_ALIASES: Dict[str, str] = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "ai": "assistant",
    "system": "system",
    "tool": "tool",
    "tool_message": "tool",
}

# Per-message side fields that may carry module output, in display order.
MODULE_OUTPUT_FIELDS: Tuple[str, ...] = ("module", "module_output", "moduleOutput", "moduleResult")

# Snapshot fields holding a top-level module payload, in priority order.
SNAPSHOT_MODULE_FIELDS: Tuple[str, ...] = ("module", "modules")

VALUES_MODULE_SOURCE = "values-module"

_EMPTY_BRACES_RE = re.compile(r"^(?:\{\})+$")


# -----------------------------------------------------------------------------
# Roles
# -----------------------------------------------------------------------------


def message_kind(message: Mapping) -> Optional[str]:
    """Return the message's ``type`` tag, falling back to ``role``."""
    kind = message.get("type")
    if kind is None:
        kind = message.get("role")
    return kind if isinstance(kind, str) else None


def is_tool_message(message: Mapping) -> bool:
    """Tool calls/results are surfaced by the tool reconciler, never the transcript."""
    return message_kind(message) in TOOL_MESSAGE_TYPES


def resolve_role(message: Mapping, fallback: str = "assistant") -> str:
    """Map a raw role/type tag onto a display role."""
    role = message.get("role")
    if isinstance(role, str) and role:
        return ROLE_ALIASES.get(role.lower(), fallback)
    kind = message.get("type")
    if isinstance(kind, str) and kind.lower() in ("human", "user", "system", "tool", "tool_message"):
        return ROLE_ALIASES[kind.lower()]
    return fallback


# -----------------------------------------------------------------------------
# Message text
# -----------------------------------------------------------------------------

SegmentRule = Callable[[Mapping], List[str]]


def _explicit_text(message: Mapping) -> List[str]:
    text = message.get("text")
    return [text] if isinstance(text, str) and text else []


def _content_text(message: Mapping) -> List[str]:
    content = message.get("content")
    if isinstance(content, str):
        return [content]
    return [resolve_content(content)]


def _module_texts(message: Mapping) -> List[str]:
    return [resolve_module_text(message.get(name)) for name in MODULE_OUTPUT_FIELDS]


def _explicit_value(message: Mapping) -> List[str]:
    value = message.get("value")
    return [value] if isinstance(value, str) else []


# Segment sources in display order.
MESSAGE_SEGMENT_RULES: Tuple[SegmentRule, ...] = (
    _explicit_text,
    _content_text,
    _module_texts,
    _explicit_value,
)


def extract_message_text(message: Any) -> str:
    """Concatenate a message's text segments.

    Segments are trimmed, empty ones skipped, and duplicates (by trimmed
    equality) dropped. Segments are separated by a blank line.
    """
    mapping = coerce_mapping(message)
    if not mapping:
        return ""

    seen: set[str] = set()
    segments: List[str] = []
    for rule in MESSAGE_SEGMENT_RULES:
        for segment in rule(mapping):
            if not isinstance(segment, str):
                continue
            trimmed = segment.strip()
            if not trimmed or trimmed in seen:
                continue
            seen.add(trimmed)
            segments.append(trimmed)
    return "\n\n".join(segments)


# -----------------------------------------------------------------------------
# Transcript
# -----------------------------------------------------------------------------


def normalize_messages(
    raw_messages: Any,
    is_run_active: bool,
    values: Any = None,
) -> List[NormalizedMessage]:
    """Derive the display transcript from the raw transcript and latest snapshot.

    Args:
        raw_messages: The raw message list as delivered by the transport.
        is_run_active: Whether a run is currently streaming.
        values: The latest whole-state snapshot, if any.

    Returns:
        Ordered display messages. User turns are always kept (even empty);
        other turns without text are dropped. While a run is active the last
        non-user, non-system message is marked as streaming.
    """
    if not isinstance(raw_messages, (list, tuple)):
        return []

    normalized: List[NormalizedMessage] = []
    last_assistant_index = -1

    for index, raw in enumerate(raw_messages):
        message = coerce_mapping(raw)
        if not message or is_tool_message(message):
            continue

        role = resolve_role(message, "assistant")
        if role == "tool":
            continue
        text = extract_message_text(message).strip()
        if role != "user" and not text:
            continue

        raw_id = message.get("id")
        normalized.append(
            NormalizedMessage(
                id=str(raw_id) if raw_id is not None else f"{role}-{index}",
                role=role,
                text=text,
                type=message_kind(message),
                raw=raw,
            )
        )
        if role not in ("user", "system"):
            last_assistant_index = len(normalized) - 1

    if is_run_active and last_assistant_index >= 0:
        normalized[last_assistant_index] = replace(normalized[last_assistant_index], streaming=True)

    module_message = build_values_module_message(values, normalized)
    if module_message is not None:
        normalized.append(module_message)
    return normalized


def snapshot_module_payload(values: Any) -> Any:
    if not isinstance(values, Mapping):
        return None
    for name in SNAPSHOT_MODULE_FIELDS:
        payload = values.get(name)
        if payload is not None:
            return payload
    return None


def render_module_payload(payload: Any) -> str:
    """Render a snapshot module payload; non-text payloads become a fenced JSON block."""
    if isinstance(payload, str):
        return payload
    try:
        rendered = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as exc:
        logger.debug("values_module_render_failed", error=str(exc))
        return str(payload)
    if rendered.strip():
        return f"```json\n{rendered}\n```"
    return rendered


def build_values_module_message(
    values: Any,
    messages: Sequence[NormalizedMessage],
) -> Optional[NormalizedMessage]:
    """Synthesize an assistant message for a top-level snapshot module payload.

    Returns None when the snapshot has no module payload, it renders empty,
    or it is already represented in *messages*.
    """
    payload = snapshot_module_payload(values)
    if not payload:
        return None

    text = render_module_payload(payload)
    if not text.strip():
        return None

    for message in messages:
        if message.source == VALUES_MODULE_SOURCE:
            return None
        raw = coerce_mapping(message.raw) or {}
        if raw.get("module") and message.text == text:
            return None

    return NormalizedMessage(
        id=VALUES_MODULE_SOURCE,
        role="assistant",
        text=text,
        type="module",
        source=VALUES_MODULE_SOURCE,
        raw={"module": payload, "generate_module": True},
    )


# -----------------------------------------------------------------------------
# Tool and source cards
# -----------------------------------------------------------------------------


def resolve_tool_title(entry: Any, index: int) -> str:
    if not isinstance(entry, Mapping):
        return f"Tool #{index + 1}"
    for key in ("title", "name", "toolName", "tool_id"):
        value = entry.get(key)
        if value is not None:
            return str(value)
    return f"Tool #{index + 1}"


def resolve_tool_body(entry: Any) -> str:
    if not isinstance(entry, Mapping):
        return ""
    content = entry.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(str(item) for item in content if item)
    tokens = entry.get("tokens")
    if isinstance(tokens, list):
        return "".join(str(item) for item in tokens if item)
    for key in ("output", "result", "message"):
        value = entry.get(key)
        if isinstance(value, str):
            return value
    try:
        return json.dumps(entry, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(entry)


def sanitize_tool_body(body: Any) -> str:
    """Drop blank bodies and bodies made only of empty ``{}`` objects."""
    if not isinstance(body, str):
        return ""
    trimmed = body.strip()
    if not trimmed:
        return ""
    if _EMPTY_BRACES_RE.match(re.sub(r"\s+", "", trimmed)):
        return ""
    return body


def build_tool_cards(entries: Sequence[Any]) -> List[Dict[str, str]]:
    """Shape tool-output entries into cards the UI can render.

    Args:
        entries: Tool-output sink entries.

    Returns:
        List of ``{"key", "title", "body"}`` dicts; entries with no
        displayable body are skipped.
    """
    cards: List[Dict[str, str]] = []
    for index, entry in enumerate(entries or []):
        body = sanitize_tool_body(resolve_tool_body(entry))
        if not body:
            continue
        key = None
        if isinstance(entry, Mapping):
            key = entry.get("__key") or entry.get("id")
        cards.append(
            {
                "key": str(key) if key is not None else f"tool-{index}",
                "title": resolve_tool_title(entry, index),
                "body": body,
            }
        )
    return cards


def resolve_source_title(source: Any, index: int) -> str:
    if not isinstance(source, Mapping):
        return f"Source #{index + 1}"
    for key in ("title", "name", "id"):
        value = source.get(key)
        if value is not None:
            return str(value)
    return f"Source #{index + 1}"
