"""Flatten arbitrarily shaped message/module payloads into display text.

Three entry points share one set of ordered extraction rules:

- ``resolve_content``: a message's ``content`` field (string, list of typed
  parts, or a single object).
- ``resolve_module_text``: "module" side payloads of arbitrary depth,
  traversed depth-first with a visited set.
- ``resolve``: either of the above, whichever yields text first.

Every rule list below is ordered; the first rule that returns a string wins.
None of these functions raise on malformed input.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from loguru import logger

from .utils import coerce_mapping, get_path

# Part types whose payload is shown as text. Any type containing "text" also qualifies.
TEXTUAL_CONTENT_TYPES = frozenset(
    {"text", "output_text", "ai", "assistant", "response", "module"}
)

# Guard against pathological nesting in module payloads.
MAX_MODULE_DEPTH = 64

Extractor = Callable[[Mapping], Optional[str]]


def string_field(name: str) -> Extractor:
    """Rule: the field is a string (empty strings count)."""

    def extract(obj: Mapping) -> Optional[str]:
        value = obj.get(name)
        return value if isinstance(value, str) else None

    extract.__name__ = f"string_field_{name}"
    return extract


def joined_list_field(name: str) -> Extractor:
    """Rule: the field is a list; truthy items are concatenated."""

    def extract(obj: Mapping) -> Optional[str]:
        value = obj.get(name)
        if not isinstance(value, list):
            return None
        return "".join(str(item) for item in value if item)

    extract.__name__ = f"joined_list_field_{name}"
    return extract


def _text_typed_data_content(obj: Mapping) -> Optional[str]:
    part_type = obj.get("type")
    nested = get_path(obj, "data", "content")
    if isinstance(nested, str) and isinstance(part_type, str) and "text" in part_type:
        return nested
    return None


OBJECT_TEXT_RULES: Tuple[Extractor, ...] = (
    string_field("text"),
    joined_list_field("text"),
    string_field("value"),
    string_field("content"),
)

PART_TEXT_RULES: Tuple[Extractor, ...] = OBJECT_TEXT_RULES + (_text_typed_data_content,)


def apply_rules(obj: Mapping, rules: Sequence[Extractor]) -> Optional[str]:
    """Return the result of the first rule that matches, else None."""
    for rule in rules:
        result = rule(obj)
        if result is not None:
            return result
    return None


def is_textual_part(part: Mapping) -> bool:
    """A part is textual when untyped, allow-listed, or its tag mentions "text"."""
    part_type = part.get("type")
    if not part_type:
        return True
    tag = str(part_type)
    return tag in TEXTUAL_CONTENT_TYPES or "text" in tag


def resolve_part(part: Any) -> str:
    if not part:
        return ""
    if isinstance(part, str):
        return part
    mapping = coerce_mapping(part)
    if mapping is None or not is_textual_part(mapping):
        return ""
    return apply_rules(mapping, PART_TEXT_RULES) or ""


def resolve_content(content: Any) -> str:
    """Resolve a message ``content`` value to text."""
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        return "".join(resolve_part(part) for part in content)
    mapping = coerce_mapping(content)
    if mapping is None:
        return ""
    return apply_rules(mapping, OBJECT_TEXT_RULES) or ""


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class _ModuleTraversal:
    """Depth-first text extraction with a visited set.

    A container is visited at most once per traversal, which also breaks
    reference cycles.
    """

    def __init__(self) -> None:
        self._visited: Dict[int, Any] = {}

    def _enter(self, value: Any) -> bool:
        if id(value) in self._visited:
            return False
        # Hold a reference so ids stay unique for the traversal's lifetime.
        self._visited[id(value)] = value
        return True

    def traverse(self, value: Any, depth: int = 0) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, (bool, int, float)):
            return _format_scalar(value)
        if depth >= MAX_MODULE_DEPTH:
            return ""
        if isinstance(value, (list, tuple)):
            if not self._enter(value):
                return ""
            return self._join_lines(self.traverse(item, depth + 1) for item in value)
        if not self._enter(value):
            return ""
        mapping = coerce_mapping(value)
        if mapping is None:
            return ""
        for rule in MODULE_RULES:
            result = rule(self, mapping, depth + 1)
            if result is not None:
                return result
        return ""

    @staticmethod
    def _join_lines(parts: Any) -> str:
        return "\n".join(part for part in parts if part)

    # -- ordered module rules ------------------------------------------------

    def _text_rule(self, obj: Mapping, depth: int) -> Optional[str]:
        return apply_rules(obj, (string_field("text"), joined_list_field("text")))

    def _content_rule(self, obj: Mapping, depth: int) -> Optional[str]:
        if "content" not in obj:
            return None
        content = obj.get("content")
        if isinstance(content, str):
            text = content
        elif isinstance(content, (list, tuple)):
            pieces = (
                item if isinstance(item, str) else self.traverse(item, depth)
                for item in content
            )
            text = "".join(piece for piece in pieces if piece)
        else:
            text = self.traverse(content, depth)
        return text or None

    def _value_rule(self, obj: Mapping, depth: int) -> Optional[str]:
        if "value" not in obj:
            return None
        return self.traverse(obj.get("value"), depth) or None

    def _messages_rule(self, obj: Mapping, depth: int) -> Optional[str]:
        messages = obj.get("messages")
        if not isinstance(messages, list):
            return None
        return self._join_lines(self._message_text(message, depth) for message in messages) or None

    def _message_text(self, message: Any, depth: int) -> str:
        if not message:
            return ""
        if isinstance(message, str):
            return message
        mapping = coerce_mapping(message)
        if mapping is None:
            return ""
        text = apply_rules(mapping, (string_field("text"), joined_list_field("text")))
        if text is not None:
            return text
        if mapping.get("content"):
            return self.traverse(mapping["content"], depth)
        return ""

    def _merged_rule(self, obj: Mapping, depth: int) -> Optional[str]:
        return self._join_lines(self.traverse(item, depth) for item in obj.values())


ModuleRule = Callable[[_ModuleTraversal, Mapping, int], Optional[str]]

MODULE_RULES: Tuple[ModuleRule, ...] = (
    _ModuleTraversal._text_rule,
    _ModuleTraversal._content_rule,
    _ModuleTraversal._value_rule,
    _ModuleTraversal._messages_rule,
    _ModuleTraversal._merged_rule,
)


def resolve_module_text(payload: Any) -> str:
    """Resolve a module-shaped payload of arbitrary depth to trimmed text."""
    if not payload:
        return ""
    try:
        return _ModuleTraversal().traverse(payload).strip()
    except RecursionError:
        logger.warning("module_text_recursion_limit", payload_type=type(payload).__name__)
        return ""


def resolve(payload: Any) -> str:
    """Resolve any payload: content rules first, module traversal as fallback."""
    text = resolve_content(payload)
    if text:
        return text
    if isinstance(payload, str):
        return payload
    return resolve_module_text(payload)


__all__ = [
    "TEXTUAL_CONTENT_TYPES",
    "OBJECT_TEXT_RULES",
    "PART_TEXT_RULES",
    "MODULE_RULES",
    "apply_rules",
    "is_textual_part",
    "joined_list_field",
    "resolve",
    "resolve_content",
    "resolve_module_text",
    "resolve_part",
    "string_field",
]
