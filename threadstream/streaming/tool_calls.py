"""Reconcile tool calls found in the raw transcript into the tool-output sink.

The whole transcript is re-scanned on every update. Scans are idempotent:

- complete (non-chunk) calls are upserted under their key every time;
- chunk fragments are stored per (message, transcript index, position) so
  a replayed fragment replaces itself instead of being appended again, and the
  upserted content is always the ordered concatenation of fragments;
- a complete call with an empty payload never blanks content that chunks
  (or an earlier payload) already produced.

Tracking state is owned by the caller and reset only on thread change.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from loguru import logger

from .event_types import ToolCallRecord
from .upsert import Key, UpsertSink
from .utils import coerce_mapping, first_present, get_path, stringify_args

# Key resolution order: explicit id, call id, alternate call id, name.
CALL_KEY_FIELDS: Tuple[str, ...] = ("id", "tool_call_id", "call_id", "name")
CALL_TITLE_FIELDS: Tuple[str, ...] = ("name", "tool", "toolName")
CALL_ARGS_FIELDS: Tuple[str, ...] = ("args", "arguments", "input", "parameters")
TOOL_BLOCK_TYPES = frozenset({"tool_use", "tool_call", "tool"})
DEFAULT_TOOL_TITLE = "Tool Call"

FragmentId = Tuple[str, int, int]


@dataclass
class ToolTrackingState:
    """Per-thread bookkeeping for tool-call reconciliation."""

    seen_ids: Set[Key] = field(default_factory=set)
    chunk_fragments: Dict[Key, Dict[FragmentId, str]] = field(default_factory=dict)
    titles: Dict[Key, str] = field(default_factory=dict)

    def accumulated(self, key: Key) -> str:
        return "".join(self.chunk_fragments.get(key, {}).values())

    def has_chunks(self, key: Key) -> bool:
        return key in self.chunk_fragments

    def add_fragment(self, key: Key, fragment_id: FragmentId, fragment: str) -> str:
        """Record a chunk fragment and return the accumulated content."""
        self.chunk_fragments.setdefault(key, {})[fragment_id] = fragment
        return self.accumulated(key)

    def is_empty(self) -> bool:
        return not (self.seen_ids or self.chunk_fragments or self.titles)

    def reset(self) -> None:
        self.seen_ids.clear()
        self.chunk_fragments.clear()
        self.titles.clear()


def flatten_call(call: Mapping) -> Dict[str, Any]:
    """Lift OpenAI-style ``{"function": {"name", "arguments"}}`` fields to the top level."""
    flattened = dict(call)
    function = call.get("function")
    if isinstance(function, Mapping):
        if flattened.get("name") is None and function.get("name") is not None:
            flattened["name"] = function.get("name")
        if first_present(flattened, CALL_ARGS_FIELDS) is None and function.get("arguments") is not None:
            flattened["arguments"] = function.get("arguments")
    return flattened


def resolve_call_key(call: Mapping) -> Key:
    """Return the call's stable key, or a fresh synthesized one when it has none."""
    value = first_present(call, CALL_KEY_FIELDS)
    if value is not None:
        return value if isinstance(value, str) else str(value)
    return f"tool-{uuid4().hex}"


def _content_block_call(block: Any) -> Optional[Dict[str, Any]]:
    mapping = coerce_mapping(block)
    if not mapping or mapping.get("type") not in TOOL_BLOCK_TYPES:
        return None
    return {
        "id": first_present(mapping, ("id", "tool_call_id")),
        "name": first_present(mapping, ("name", "tool")),
        "args": first_present(mapping, ("input", "arguments", "args")),
        "type": mapping.get("type"),
    }


def extract_call_candidates(message: Mapping) -> List[Dict[str, Any]]:
    """Complete calls: direct list, nested ``additional_kwargs`` list, inline tool blocks."""
    candidates: List[Dict[str, Any]] = []
    for calls in (message.get("tool_calls"), get_path(message, "additional_kwargs", "tool_calls")):
        if isinstance(calls, list):
            candidates.extend(flatten_call(call) for call in calls if isinstance(call, Mapping))
    content = message.get("content")
    if isinstance(content, list):
        for block in content:
            call = _content_block_call(block)
            if call is not None:
                candidates.append(call)
    return candidates


def extract_chunk_candidates(message: Mapping) -> List[Dict[str, Any]]:
    chunks = message.get("tool_call_chunks")
    if not isinstance(chunks, list):
        return []
    return [dict(chunk) if isinstance(chunk, Mapping) else None for chunk in chunks]  # type: ignore[misc]


def _resolve_title(call: Mapping, key: Key, state: ToolTrackingState) -> str:
    explicit = first_present(call, CALL_TITLE_FIELDS)
    if explicit is not None:
        state.titles[key] = str(explicit)
        return str(explicit)
    if key in state.titles:
        return state.titles[key]
    kind = call.get("type")
    return str(kind) if kind is not None else DEFAULT_TOOL_TITLE


def _upsert(sink: UpsertSink, record: ToolCallRecord, *, keep_existing_content: bool) -> None:
    entry = record.to_entry()
    if keep_existing_content:
        entry.pop("content", None)
    sink.upsert(entry)


def process_call(
    call: Any,
    state: ToolTrackingState,
    sink: UpsertSink,
    *,
    fragment_id: Optional[FragmentId] = None,
) -> Optional[Key]:
    """Reconcile one call (or one chunk when *fragment_id* is given)."""
    if not isinstance(call, Mapping):
        return None

    key = resolve_call_key(call)
    title = _resolve_title(call, key, state)
    content = stringify_args(first_present(call, CALL_ARGS_FIELDS))

    if fragment_id is not None:
        content = state.add_fragment(key, fragment_id, content)
        _upsert(sink, ToolCallRecord(key, title, content, call), keep_existing_content=False)
        return key

    if not content and state.has_chunks(key):
        content = state.accumulated(key)
    if key not in state.seen_ids:
        state.seen_ids.add(key)
    existing = sink.get(key)
    keep_existing = not content and bool(existing and existing.get("content"))
    _upsert(sink, ToolCallRecord(key, title, content, call), keep_existing_content=keep_existing)
    return key


def message_identity(message: Mapping, index: int) -> str:
    raw_id = message.get("id")
    return str(raw_id) if raw_id is not None else f"#{index}"


def reconcile_message(
    message: Any,
    index: int,
    state: ToolTrackingState,
    sink: UpsertSink,
) -> List[Key]:
    mapping = coerce_mapping(message)
    if not mapping:
        return []

    touched: List[Key] = []
    for call in extract_call_candidates(mapping):
        key = process_call(call, state, sink)
        if key is not None:
            touched.append(key)

    identity = message_identity(mapping, index)
    for position, chunk in enumerate(extract_chunk_candidates(mapping)):
        key = process_call(chunk, state, sink, fragment_id=(identity, index, position))
        if key is not None:
            touched.append(key)
    return touched


def reconcile_tool_calls(
    raw_messages: Any,
    state: ToolTrackingState,
    sink: UpsertSink,
) -> List[Key]:
    """Scan the full raw transcript and upsert every tool call found.

    Args:
        raw_messages: The raw transcript.
        state: Tracking state for the active thread (mutated).
        sink: Tool-output sink receiving the upserts.

    Returns:
        Keys touched by this scan, in processing order.
    """
    if not isinstance(raw_messages, (list, tuple)) or not raw_messages:
        return []

    touched: List[Key] = []
    for index, message in enumerate(raw_messages):
        touched.extend(reconcile_message(message, index, state, sink))
    if touched:
        logger.debug("tool_calls_reconciled", keys=len(set(touched)), messages=len(raw_messages))
    return touched
