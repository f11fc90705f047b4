from __future__ import annotations

import asyncio
from typing import Any

import pytest

from threadstream.cache.session_cache import SourceCache, ThreadSafeCache
from threadstream.core.settings import DEFAULT_STREAM_MODES, TRAINING_STREAM_MODES, Settings
from threadstream.streaming.event_types import (
    CancelOutcome,
    CustomEvent,
    MessageDelta,
    MetadataEvent,
    RunCreated,
    RunFinished,
    StreamError,
    ValuesSnapshot,
)
from threadstream.streaming.runs import RunSlotStore
from threadstream.streaming.session import SessionController
from threadstream.streaming.stages import LIVE_DEMO_STEPS


class _FakeTransport:
    def __init__(self, *, fail_submit: bool = False, fail_stop: bool = False) -> None:
        self.fail_submit = fail_submit
        self.fail_stop = fail_stop
        self.submitted: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self.stops = 0

    async def submit(self, payload: dict[str, Any], options: dict[str, Any]) -> None:
        if self.fail_submit:
            raise ConnectionError("offline")
        self.submitted.append((payload, options))

    async def stop(self) -> None:
        self.stops += 1
        if self.fail_stop:
            raise RuntimeError("already closed")


class _FakeCanceller:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def cancel_run(self, thread_id: str, run_id: str) -> CancelOutcome:
        self.calls.append((thread_id, run_id))
        return CancelOutcome.CANCELLED


@pytest.fixture
def canceller() -> _FakeCanceller:
    return _FakeCanceller()


def _controller(
    transport: _FakeTransport | None = None,
    canceller: _FakeCanceller | None = None,
    **kwargs: Any,
) -> SessionController:
    kwargs.setdefault("config", Settings(API_BASE_URL=""))
    return SessionController(
        transport or _FakeTransport(),
        canceller=canceller or _FakeCanceller(),
        slots=RunSlotStore(ThreadSafeCache()),
        source_cache=SourceCache(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_send_submits_message_with_new_thread_metadata() -> None:
    transport = _FakeTransport()
    controller = _controller(transport)

    assert await controller.send("  hello  ")

    payload, options = transport.submitted[0]
    assert payload == {"messages": [{"role": "user", "content": "hello"}]}
    assert options["metadata"] == {"thread_name": "hello", "graph_id": "agent"}
    assert options["stream_mode"] == DEFAULT_STREAM_MODES
    assert options["stream_resumable"] is True
    assert options["stream_subgraphs"] is True
    assert options["thread_id"] is None
    assert controller.pending_input == ""


@pytest.mark.asyncio
async def test_send_on_existing_thread_omits_metadata() -> None:
    transport = _FakeTransport()
    controller = _controller(transport, thread_id="t1")

    assert await controller.send("again")

    _, options = transport.submitted[0]
    assert options["metadata"] is None
    assert options["thread_id"] == "t1"


@pytest.mark.asyncio
async def test_send_ignores_blank_input_and_active_runs() -> None:
    transport = _FakeTransport()
    controller = _controller(transport)

    assert not await controller.send("   ")
    await controller.dispatch(RunCreated(meta={"run_id": "r1", "thread_id": "t1"}))
    assert not await controller.send("hello")
    assert transport.submitted == []


@pytest.mark.asyncio
async def test_failed_submit_restores_input() -> None:
    controller = _controller(_FakeTransport(fail_submit=True))
    controller.set_input(" draft ")

    assert not await controller.send()
    assert controller.pending_input == "draft"


@pytest.mark.asyncio
async def test_run_flow_from_creation_to_finish() -> None:
    navigated: list[str] = []
    controller = _controller(on_navigate=navigated.append)

    await controller.dispatch(RunCreated(meta={"run_id": "r1"}))
    assert controller.is_loading

    assert controller.on_thread_id("t1") == "/chat/t1"
    assert navigated == ["/chat/t1"]

    await controller.dispatch(
        MessageDelta(messages=[{"role": "user", "content": "hi"}, {"id": "a1", "type": "ai", "content": "Hel"}])
    )
    assert [(m.role, m.streaming) for m in controller.messages] == [("user", False), ("assistant", True)]
    assert not controller.is_transitioning

    await controller.dispatch(RunFinished(meta={"run_id": "r1", "thread_id": "t1"}))

    assert controller.runs.handle is None
    assert not controller.is_loading
    assert not any(m.streaming for m in controller.messages)


@pytest.mark.asyncio
async def test_finish_state_values_feed_the_transcript() -> None:
    controller = _controller(thread_id="t1")
    await controller.dispatch(RunCreated(meta={"run_id": "r1"}))
    await controller.dispatch(MessageDelta(messages=[{"role": "user", "content": "go"}]))

    await controller.dispatch(RunFinished(meta={"run_id": "r1"}, state={"values": {"module": "Module done"}}))

    assert [m.text for m in controller.messages] == ["go", "Module done"]


def test_thread_switch_discards_tools_and_restores_sources() -> None:
    controller = _controller(thread_id="t1")
    asyncio.run(
        controller.dispatch(MetadataEvent(payload={"sources": [{"id": "s1", "title": "Doc"}]}))
    )
    asyncio.run(
        controller.dispatch(MessageDelta(messages=[{"type": "ai", "tool_calls": [{"id": "c1", "name": "n", "args": "a"}]}]))
    )
    assert controller.tool_outputs

    assert controller.set_thread("t2")
    assert controller.tool_outputs == []
    assert controller.sources == []
    assert controller.stage_history == []

    controller.set_thread("t1")

    assert controller.tool_outputs == []
    assert [source["id"] for source in controller.sources] == ["s1"]


def test_setting_the_same_thread_is_a_no_op() -> None:
    controller = _controller(thread_id="t1")

    assert not controller.set_thread("t1")
    assert not controller.set_thread("  t1 ")
    assert not controller.is_transitioning


def test_transition_without_loop_waits_for_messages() -> None:
    controller = _controller(thread_id="t1")

    controller.set_thread("t2")
    assert controller.is_transitioning

    asyncio.run(controller.dispatch(MessageDelta(messages=[{"role": "user", "content": "hi"}])))
    assert not controller.is_transitioning


@pytest.mark.asyncio
async def test_transition_timer_clears_flag() -> None:
    controller = _controller(thread_id="t1", config=Settings(API_BASE_URL="", THREAD_TRANSITION_MS=10))

    controller.set_thread("t2")
    assert controller.is_transitioning

    await asyncio.sleep(0.05)
    assert not controller.is_transitioning


@pytest.mark.asyncio
async def test_stop_halts_stream_and_cancels_run(canceller: _FakeCanceller) -> None:
    transport = _FakeTransport()
    controller = _controller(transport, canceller)
    await controller.dispatch(RunCreated(meta={"run_id": "r1", "thread_id": "t1"}))

    task = await controller.stop()

    assert transport.stops == 1
    assert not controller.is_loading
    assert task is not None
    assert await task is CancelOutcome.CANCELLED
    assert canceller.calls == [("t1", "r1")]


@pytest.mark.asyncio
async def test_stop_still_cancels_when_transport_stop_fails(canceller: _FakeCanceller) -> None:
    controller = _controller(_FakeTransport(fail_stop=True), canceller)
    await controller.dispatch(RunCreated(meta={"run_id": "r1", "thread_id": "t1"}))

    await controller.stop()
    await controller.drain()

    assert canceller.calls == [("t1", "r1")]


@pytest.mark.asyncio
async def test_stop_when_idle_does_nothing(canceller: _FakeCanceller) -> None:
    transport = _FakeTransport()
    controller = _controller(transport, canceller)

    assert await controller.stop() is None
    assert transport.stops == 0


@pytest.mark.asyncio
async def test_stream_error_cancels_and_stops_loading(canceller: _FakeCanceller) -> None:
    controller = _controller(canceller=canceller)
    await controller.dispatch(RunCreated(meta={"run_id": "r1", "thread_id": "t1"}))

    await controller.dispatch(StreamError(error=RuntimeError("socket closed")))
    outcomes = await controller.drain()

    assert outcomes == [CancelOutcome.CANCELLED]
    assert not controller.is_loading


@pytest.mark.asyncio
async def test_failing_event_iterator_is_a_stream_error(canceller: _FakeCanceller) -> None:
    controller = _controller(canceller=canceller)

    async def events():
        yield RunCreated(meta={"run_id": "r1", "thread_id": "t1"})
        raise RuntimeError("boom")

    await controller.consume(events())
    await controller.drain()

    assert canceller.calls == [("t1", "r1")]
    assert not controller.is_loading


@pytest.mark.asyncio
async def test_failed_metadata_event_cancels_once(canceller: _FakeCanceller) -> None:
    controller = _controller(canceller=canceller, thread_id="t1")

    await controller.dispatch(MetadataEvent(payload={"type": "response.failed", "run_id": "r1"}))
    await controller.dispatch(MetadataEvent(payload={"type": "response.failed", "run_id": "r1"}))
    await controller.drain()

    assert canceller.calls == [("t1", "r1")]


@pytest.mark.asyncio
async def test_custom_and_metadata_events_upsert_tools_and_sources() -> None:
    controller = _controller(thread_id="t1")

    await controller.dispatch(CustomEvent(payload={"tool": {"id": "k1", "title": "search", "content": "v1"}}))
    await controller.dispatch(MetadataEvent(payload={"tools": [{"id": "k1", "content": "v2"}]}))
    await controller.dispatch(CustomEvent(payload={"source": {"id": "s1", "title": "Doc"}}))
    await controller.dispatch(MetadataEvent(payload={"source": {"id": "s1", "title": "Doc v2"}}))

    assert controller.tool_cards == [{"key": "k1", "title": "search", "body": "v2"}]
    assert [source["title"] for source in controller.sources] == ["Doc v2"]
    assert controller.source_cache.restore("t1")[0]["title"] == "Doc v2"


@pytest.mark.asyncio
async def test_streamed_tool_chunks_render_as_one_card() -> None:
    controller = _controller(thread_id="t1")
    transcript = [
        {"role": "user", "content": "hi"},
        {"type": "ai", "tool_call_chunks": [{"id": "c1", "args": '{"x":'}]},
        {"type": "ai", "tool_call_chunks": [{"id": "c1", "args": "1}"}]},
    ]

    await controller.dispatch(MessageDelta(messages=transcript))
    await controller.dispatch(MessageDelta(messages=transcript))

    assert controller.tool_cards == [{"key": "c1", "title": "Tool Call", "body": '{"x":1}'}]


@pytest.mark.asyncio
async def test_values_drive_stage_history() -> None:
    controller = _controller(section="Live Demo")
    assert controller.live_demo_steps == list(LIVE_DEMO_STEPS)

    await controller.dispatch(ValuesSnapshot(values={"stage": "Intro", "progress": 20}))
    await controller.dispatch(ValuesSnapshot(values={"stage": "Intro", "progress": 30}))

    assert controller.stage == "Intro"
    assert controller.stage_history == ["Intro"]
    assert controller.progress == 30
    assert controller.live_demo_steps == ["Intro"]
    assert controller.graph_id == "live_demo_module_graph"


@pytest.mark.asyncio
async def test_start_new_thread_returns_section_route() -> None:
    navigated: list[str] = []
    transport = _FakeTransport()
    controller = _controller(transport, thread_id="t1", on_navigate=navigated.append)
    await controller.dispatch(RunCreated(meta={"run_id": "r1", "thread_id": "t1"}))

    assert await controller.start_new_thread() == "/chat"

    assert controller.thread_id is None
    assert not controller.is_loading
    assert transport.stops == 1
    assert navigated == ["/chat"]


@pytest.mark.asyncio
async def test_training_section_uses_its_own_modes_and_route() -> None:
    transport = _FakeTransport()
    controller = _controller(transport, section="training", thread_id="t9")

    assert controller.stream_modes == TRAINING_STREAM_MODES
    assert controller.assistant_id == "training_module_graph"
    assert await controller.start_new_thread() == "/training"

    await controller.send("start")
    _, options = transport.submitted[0]
    assert options["metadata"] == {"thread_name": "start", "graph_id": "training_module_graph"}


@pytest.mark.asyncio
async def test_select_assistant_switches_target() -> None:
    controller = _controller()
    controller.set_input("/")
    assert controller.show_assistant_options

    assert controller.select_assistant("training")

    assert controller.selected_assistant is not None
    assert controller.selected_assistant.id == "Training"
    assert controller.assistant_id == "training_module_graph"
    assert controller.stream_modes == TRAINING_STREAM_MODES
    assert controller.pending_input == ""
    assert not controller.show_assistant_options


@pytest.mark.asyncio
async def test_select_assistant_refused_while_loading() -> None:
    controller = _controller()
    await controller.dispatch(RunCreated(meta={"run_id": "r1", "thread_id": "t1"}))

    assert not controller.select_assistant("training")
    assert not controller.select_assistant("   ")
    assert controller.selected_assistant is None


def test_snapshot_is_json_ready() -> None:
    controller = _controller(thread_id="t1")

    snapshot = controller.snapshot()

    assert snapshot["threadId"] == "t1"
    assert snapshot["section"] == "Chat"
    assert snapshot["stage"] == {"stage": None, "stageHistory": [], "progress": 0}
    assert snapshot["isLoading"] is False


@pytest.mark.asyncio
async def test_thread_change_forgets_settled_cancellations(canceller: _FakeCanceller) -> None:
    controller = _controller(canceller=canceller, thread_id="t1")
    await controller.dispatch(RunCreated(meta={"run_id": "r1"}))
    await controller.stop()
    await controller.drain()
    assert controller.runs.is_settled("t1", "r1")

    controller.set_thread("t2")

    assert not controller.runs.is_settled("t1", "r1")


@pytest.mark.asyncio
async def test_replayed_events_after_cancel_do_not_restore_run(canceller: _FakeCanceller) -> None:
    controller = _controller(canceller=canceller, thread_id="t1")
    await controller.dispatch(RunCreated(meta={"run_id": "r1"}))
    await controller.dispatch(MetadataEvent(payload={"type": "response.failed", "run_id": "r1"}))
    await controller.drain()

    await controller.dispatch(RunCreated(meta={"run_id": "r1"}))
    await controller.dispatch(MetadataEvent(payload={"run_id": "r1"}))

    assert controller.runs.handle is None
    assert await controller.stop() is None
    assert canceller.calls == [("t1", "r1")]
