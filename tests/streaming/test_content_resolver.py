from __future__ import annotations

from threadstream.streaming.content import (
    OBJECT_TEXT_RULES,
    apply_rules,
    is_textual_part,
    resolve,
    resolve_content,
    resolve_module_text,
)


def test_plain_string_is_returned_as_is() -> None:
    assert resolve_content("  spaced  ") == "  spaced  "
    assert resolve("hello") == "hello"


def test_part_list_keeps_only_textual_parts() -> None:
    content = [
        {"type": "text", "text": "a"},
        {"type": "image_url", "image_url": {"url": "http://x"}},
        "b",
        {"type": "output_text", "value": "c"},
        {"text": ["d", None, "e"]},
        {"type": "rich_text", "data": {"content": "f"}},
        None,
    ]

    assert resolve_content(content) == "abcdef"


def test_textual_part_allow_list_and_substring() -> None:
    assert is_textual_part({})
    assert is_textual_part({"type": "response"})
    assert is_textual_part({"type": "reasoning_text"})
    assert not is_textual_part({"type": "tool_use"})


def test_object_fields_follow_priority_order() -> None:
    assert resolve_content({"text": "t", "value": "v", "content": "c"}) == "t"
    assert resolve_content({"value": "v", "content": "c"}) == "v"
    assert resolve_content({"content": "c"}) == "c"
    assert resolve_content({"text": ["x", "", "y"]}) == "xy"


def test_rules_are_data_and_order_is_swappable() -> None:
    payload = {"text": "first", "value": "second"}

    assert apply_rules(payload, OBJECT_TEXT_RULES) == "first"
    assert apply_rules(payload, tuple(reversed(OBJECT_TEXT_RULES))) == "second"
    assert apply_rules({}, OBJECT_TEXT_RULES) is None


def test_malformed_payloads_resolve_to_empty() -> None:
    assert resolve_content(None) == ""
    assert resolve_content(42) == ""
    assert resolve_content(object()) == ""
    assert resolve_module_text(None) == ""
    assert resolve(object()) == ""


def test_module_prefers_text_then_content_then_value() -> None:
    assert resolve_module_text({"text": "t", "content": "c", "value": "v"}) == "t"
    assert resolve_module_text({"content": "c", "value": "v"}) == "c"
    assert resolve_module_text({"value": {"text": "nested"}}) == "nested"


def test_module_content_list_is_concatenated() -> None:
    payload = {"content": [{"text": "a"}, "b", 0, None]}

    assert resolve_module_text(payload) == "ab0"


def test_module_messages_are_joined_by_newline() -> None:
    payload = {"messages": [{"text": "m1"}, {"content": "m2"}, "m3", None]}

    assert resolve_module_text(payload) == "m1\nm2\nm3"


def test_module_falls_back_to_joining_fields() -> None:
    payload = {"summary": "x", "details": {"note": "y"}, "empty": None, "flag": True}

    assert resolve_module_text(payload) == "x\ny\ntrue"


def test_module_scalars_format_like_json() -> None:
    assert resolve_module_text({"value": 3.0}) == "3"
    assert resolve_module_text({"value": 2.5}) == "2.5"
    assert resolve_module_text([False, 7]) == "false\n7"


def test_module_reference_cycles_terminate() -> None:
    node: dict = {"name": "loop"}
    node["self"] = node
    items: list = ["a"]
    items.append(items)

    assert resolve_module_text(node) == "loop"
    assert resolve_module_text(items) == "a"


def test_module_result_is_trimmed() -> None:
    assert resolve_module_text({"text": "  padded \n"}) == "padded"


def test_resolve_falls_back_to_module_traversal() -> None:
    assert resolve({"data": {"text": "deep"}}) == "deep"
    assert resolve([{"type": "text", "text": "part"}]) == "part"
