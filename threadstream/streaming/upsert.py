"""Keyed merge-or-append collection used for tool outputs and sources."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from loguru import logger

DEFAULT_KEY_FIELDS: Tuple[str, ...] = ("id", "tool_call_id", "toolName", "name")

Key = Union[str, int]


class UpsertSink:
    """Ordered list of entries keyed by a stable identity.

    Upserting an existing key merges the new fields over the stored entry
    (later fields win) in place; a new key is appended. Each stored entry
    carries its resolved key under ``__key``.

    Usage:
        sink = UpsertSink(name="tool_outputs")
        sink.upsert({"id": "c1", "content": "{"})
        sink.upsert({"id": "c1", "content": "{}"})
        sink.entries  # [{"id": "c1", "content": "{}", "__key": "c1"}]
    """

    def __init__(
        self,
        entries: Optional[Iterable[Mapping]] = None,
        *,
        key_fields: Sequence[str] = DEFAULT_KEY_FIELDS,
        name: str = "sink",
    ) -> None:
        self.name = name
        self.key_fields = tuple(key_fields)
        self._entries: List[Dict[str, Any]] = []
        self._index: Dict[Key, int] = {}
        if entries:
            self.replace(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    @property
    def entries(self) -> List[Dict[str, Any]]:
        """Shallow copies of the stored entries, in insertion order."""
        return [dict(entry) for entry in self._entries]

    def keys(self) -> List[Key]:
        return [entry["__key"] for entry in self._entries]

    def get(self, key: Key) -> Optional[Dict[str, Any]]:
        position = self._index.get(key)
        if position is None:
            return None
        return dict(self._entries[position])

    def resolve_key(self, entry: Mapping) -> Key:
        """Return the entry's identity, synthesizing one when it has none."""
        for field_name in ("__key",) + self.key_fields:
            value = entry.get(field_name)
            if value is not None:
                return _hashable_key(value)
        return f"event-{uuid4().hex}"

    def upsert(self, payload: Any) -> List[Key]:
        """Merge one entry or a list of entries; return the keys touched.

        Non-mapping items are ignored.
        """
        items = payload if isinstance(payload, (list, tuple)) else [payload]
        touched: List[Key] = []
        for item in items:
            if not isinstance(item, Mapping):
                continue
            key = self.resolve_key(item)
            normalized = {**item, "__key": key}
            position = self._index.get(key)
            if position is None:
                self._index[key] = len(self._entries)
                self._entries.append(normalized)
            else:
                self._entries[position] = {**self._entries[position], **normalized}
            touched.append(key)
        if touched:
            logger.debug("upsert_sink_updated", sink=self.name, keys=touched, size=len(self._entries))
        return touched

    def replace(self, entries: Iterable[Mapping]) -> None:
        """Reset the sink to *entries* (re-keyed, later duplicates merged)."""
        self.clear()
        self.upsert([entry for entry in entries if isinstance(entry, Mapping)])

    def clear(self) -> None:
        self._entries = []
        self._index = {}


def _hashable_key(value: Any) -> Key:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return value
    return str(value)
