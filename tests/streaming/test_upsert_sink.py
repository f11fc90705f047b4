from __future__ import annotations

from threadstream.streaming.upsert import UpsertSink


def test_existing_key_merges_in_place() -> None:
    sink = UpsertSink()
    sink.upsert({"id": "a", "title": "first", "content": "x"})
    sink.upsert({"id": "b", "title": "second"})
    sink.upsert({"id": "a", "content": "y"})

    assert sink.entries == [
        {"id": "a", "title": "first", "content": "y", "__key": "a"},
        {"id": "b", "title": "second", "__key": "b"},
    ]


def test_key_fields_are_checked_in_order() -> None:
    sink = UpsertSink()

    keys = sink.upsert(
        [
            {"tool_call_id": "t1", "toolName": "ignored"},
            {"toolName": "search", "name": "ignored"},
            {"name": "plain"},
        ]
    )

    assert keys == ["t1", "search", "plain"]


def test_entries_without_identity_get_distinct_keys() -> None:
    sink = UpsertSink()

    first = sink.upsert({"content": "a"})
    second = sink.upsert({"content": "a"})

    assert len(sink) == 2
    assert first[0].startswith("event-")
    assert first != second


def test_non_mapping_items_are_ignored() -> None:
    sink = UpsertSink()

    assert sink.upsert(["nope", None, 3, {"id": 1}]) == [1]
    assert 1 in sink


def test_stored_key_is_reused_on_replace() -> None:
    sink = UpsertSink()
    sink.upsert({"content": "anonymous"})
    snapshot = sink.entries

    restored = UpsertSink(snapshot)
    restored.upsert({"__key": snapshot[0]["__key"], "content": "updated"})

    assert len(restored) == 1
    assert restored.entries[0]["content"] == "updated"


def test_returned_entries_are_copies() -> None:
    sink = UpsertSink()
    sink.upsert({"id": "a", "content": "x"})

    sink.entries[0]["content"] = "mutated"
    sink.get("a")["content"] = "mutated"

    assert sink.get("a")["content"] == "x"


def test_clear_and_replace() -> None:
    sink = UpsertSink([{"id": "a"}, {"id": "a", "v": 2}, {"id": "b"}])
    assert sink.keys() == ["a", "b"]
    assert sink.get("a")["v"] == 2

    sink.clear()

    assert len(sink) == 0
    assert sink.get("a") is None
