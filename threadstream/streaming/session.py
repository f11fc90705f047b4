"""Session controller: routes stream events through the reconcilers.

One controller drives one chat pane. The stream transport pushes events in;
the UI reads the reconciled state (transcript, tool outputs, sources, stage)
and calls the imperative operations (send, stop, start a new thread).

Usage:
    controller = SessionController(transport, section="Chat")
    await controller.send("hello")
    await controller.consume(transport.events())
    controller.messages  # display transcript
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from loguru import logger

from threadstream.cache.session_cache import SourceCache
from threadstream.core.settings import Settings, settings as default_settings
from threadstream.services.thread_service import (
    LIVE_DEMO,
    AssistantOption,
    ThreadService,
    find_assistant_option,
    normalize_section,
    resolve_assistant_id,
    resolve_graph_id,
    section_base_path,
    stream_modes_for,
    wants_assistant_options,
)

from .event_types import (
    CancelOutcome,
    CustomEvent,
    MessageDelta,
    MetadataEvent,
    NormalizedMessage,
    RunCreated,
    RunFinished,
    StreamError,
    StreamEvent,
    ValuesSnapshot,
)
from .normalizers import build_tool_cards, normalize_messages
from .runs import RunCanceller, RunLifecycleTracker, RunSlotStore
from .stages import StageHistoryTracker, live_demo_steps, resolve_demo_video_url
from .tool_calls import ToolTrackingState, reconcile_tool_calls
from .upsert import UpsertSink
from .utils import coerce_mapping, first_present, non_blank


class StreamTransport(Protocol):
    """The stream collaborator: starts runs and halts local consumption.

    A transport may also expose ``cancel_run(thread_id, run_id)``; it is used
    for cancellation when no execution-service base URL is configured.
    """

    async def submit(self, payload: Dict[str, Any], options: Dict[str, Any]) -> Any:
        ...

    async def stop(self) -> Any:
        ...


class SessionController:
    """Single consumer of stream events for one chat session.

    All reconciliation state (tool tracking, sources, stage history, run
    handle) is owned here and mutated only from ``dispatch``, so no locking
    is needed. Cancellation runs detached and only touches run bookkeeping.
    """

    def __init__(
        self,
        transport: StreamTransport,
        *,
        section: str = "Chat",
        thread_id: Optional[str] = None,
        service: Optional[ThreadService] = None,
        canceller: Optional[RunCanceller] = None,
        config: Optional[Settings] = None,
        slots: Optional[RunSlotStore] = None,
        source_cache: Optional[SourceCache] = None,
        on_navigate: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.transport = transport
        self.config = config or default_settings
        self.section = normalize_section(section)
        self.on_navigate = on_navigate

        self._owns_service = service is None and self.config.has_api_base_url()
        self.service = service or (ThreadService(config=self.config) if self._owns_service else None)

        self.runs = RunLifecycleTracker(
            self._resolve_canceller(canceller),
            active_thread=lambda: self._thread_id,
            slots=slots,
        )
        self.stages = StageHistoryTracker()
        self.tool_state = ToolTrackingState()
        self.tool_sink = UpsertSink(name="tool_outputs")
        self.source_sink = UpsertSink(name="sources")
        self.source_cache = source_cache or SourceCache()

        self._thread_id: Optional[str] = non_blank(thread_id)
        self._raw_messages: List[Any] = []
        self._values: Any = None
        self._messages: List[NormalizedMessage] = []
        self._is_loading = False
        self._is_transitioning = False
        self._transition_timer: Optional[asyncio.TimerHandle] = None
        self._pending_input = ""
        self._selection: Optional[AssistantOption] = None
        self.graph_id = self._section_graph_id()

        if self._thread_id:
            self.source_sink.replace(self.source_cache.restore(self._thread_id))

    def _section_graph_id(self) -> str:
        return resolve_graph_id(section_base_path(self.section).lstrip("/"), config=self.config)

    def _resolve_canceller(self, canceller: Optional[RunCanceller]) -> Optional[RunCanceller]:
        if canceller is not None:
            return canceller
        if self.service is not None and self.service.is_configured():
            return self.service
        if callable(getattr(self.transport, "cancel_run", None)):
            return self.transport  # type: ignore[return-value]
        logger.warning("run_cancel_unavailable", reason="no_base_url_or_transport_cancel")
        return None

    # -------------------------------------------------------------------------
    # Exposed state
    # -------------------------------------------------------------------------

    @property
    def thread_id(self) -> Optional[str]:
        return self._thread_id

    @property
    def messages(self) -> List[NormalizedMessage]:
        return list(self._messages)

    @property
    def tool_outputs(self) -> List[Dict[str, Any]]:
        return self.tool_sink.entries

    @property
    def sources(self) -> List[Dict[str, Any]]:
        return self.source_sink.entries

    @property
    def tool_cards(self) -> List[Dict[str, str]]:
        return build_tool_cards(self.tool_sink.entries)

    @property
    def stage(self) -> Optional[str]:
        return self.stages.stage

    @property
    def stage_history(self) -> List[str]:
        return list(self.stages.history)

    @property
    def progress(self) -> float:
        return self.stages.progress

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_transitioning(self) -> bool:
        return self._is_transitioning

    @property
    def pending_input(self) -> str:
        return self._pending_input

    @property
    def live_demo_steps(self) -> List[str]:
        return live_demo_steps(self.stages.history, live_demo=self.section == LIVE_DEMO)

    @property
    def demo_video_url(self) -> Optional[str]:
        return resolve_demo_video_url(self._messages)

    @property
    def selected_assistant(self) -> Optional[AssistantOption]:
        return self._selection

    @property
    def assistant_id(self) -> str:
        if self._selection is not None:
            return self._selection.assistant_id
        return resolve_assistant_id(self.section, config=self.config)

    @property
    def stream_modes(self) -> List[str]:
        key = self._selection.id if self._selection is not None else self.section
        return stream_modes_for(key, config=self.config)

    @property
    def has_user_messages(self) -> bool:
        return any(message.role == "user" for message in self._messages)

    @property
    def show_assistant_options(self) -> bool:
        return wants_assistant_options(self._pending_input, bool(self._thread_id), self.has_user_messages)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe view of everything the UI renders."""
        return {
            "threadId": self._thread_id,
            "section": self.section,
            "messages": [message.to_dict() for message in self._messages],
            "toolCards": self.tool_cards,
            "sources": self.sources,
            "stage": self.stages.state().to_dict(),
            "isLoading": self._is_loading,
            "isTransitioning": self._is_transitioning,
            "liveDemoSteps": self.live_demo_steps,
            "pendingInput": self._pending_input,
            "showAssistantOptions": self.show_assistant_options,
        }

    # -------------------------------------------------------------------------
    # Event routing
    # -------------------------------------------------------------------------

    async def dispatch(self, event: StreamEvent) -> None:
        """Route one stream event to its handler."""
        handlers = {
            MessageDelta: self._on_message_delta,
            CustomEvent: self._on_custom_event,
            MetadataEvent: self._on_metadata_event,
            ValuesSnapshot: self._on_values,
            RunCreated: self._on_run_created,
            RunFinished: self._on_run_finished,
            StreamError: self._on_stream_error,
        }
        handler = handlers.get(type(event))
        if handler is None:
            logger.debug("stream_event_ignored", event_type=type(event).__name__)
            return
        logger.debug("stream_event", event_type=type(event).__name__, thread_id=self._thread_id)
        handler(event)

    async def consume(self, events: AsyncIterator[StreamEvent]) -> None:
        """Process events one at a time until the iterator ends.

        A failure of the iterator itself is treated like a stream error.
        """
        try:
            async for event in events:
                await self.dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.opt(exception=True).error("stream_consume_failed: {}", exc)
            self._on_stream_error(StreamError(error=exc))

    def _on_message_delta(self, event: MessageDelta) -> None:
        self._raw_messages = list(event.messages or [])
        reconcile_tool_calls(self._raw_messages, self.tool_state, self.tool_sink)
        self._recompute_messages()

    def _on_custom_event(self, event: CustomEvent) -> None:
        payload = coerce_mapping(event.payload)
        if not payload:
            return
        if payload.get("tool"):
            self.tool_sink.upsert(payload["tool"])
        if payload.get("source"):
            self._upsert_sources(payload["source"])

    def _on_metadata_event(self, event: MetadataEvent) -> None:
        payload = coerce_mapping(event.payload)
        if not payload:
            return
        self.runs.on_metadata(payload)
        tools = first_present(payload, ("tool", "tools"))
        if tools:
            self.tool_sink.upsert(tools)
        sources = first_present(payload, ("source", "sources"))
        if sources:
            self._upsert_sources(sources)

    def _on_values(self, event: ValuesSnapshot) -> None:
        self._values = event.values
        self.stages.observe(event.values)
        self._recompute_messages()

    def _on_run_created(self, event: RunCreated) -> None:
        handle = self.runs.on_created(event.meta)
        if handle is None and first_present(coerce_mapping(event.meta), ("run_id",)):
            return
        self._set_loading(True)
        if handle is not None:
            logger.info("run_created", run_id=handle.run_id, thread_id=handle.thread_id)

    def _on_run_finished(self, event: RunFinished) -> None:
        self.runs.on_finish(event.meta)
        if isinstance(event.state, Mapping) and "values" in event.state:
            self._values = event.state.get("values")
        self._set_loading(False)

    def _on_stream_error(self, event: StreamError) -> None:
        self.runs.on_error(event.error, event.meta)
        self._set_loading(False)

    def _set_loading(self, value: bool) -> None:
        if self._is_loading != value:
            self._is_loading = value
            self._recompute_messages()

    def _upsert_sources(self, payload: Any) -> None:
        self.source_sink.upsert(payload)
        self.source_cache.store(self._thread_id, self.source_sink.entries)

    def _recompute_messages(self) -> None:
        self._messages = normalize_messages(self._raw_messages, self._is_loading, self._values)
        if self._is_transitioning and self._messages:
            self._clear_transition()

    # -------------------------------------------------------------------------
    # Thread identity
    # -------------------------------------------------------------------------

    def set_thread(self, thread_id: Optional[str]) -> bool:
        """Switch the active thread; returns False when the identity is unchanged.

        Reconciliation state of the old thread is discarded before anything of
        the new thread is processed. In-flight cancellations keep running.
        """
        normalized = non_blank(thread_id)
        if normalized == self._thread_id:
            return False

        previous = self._thread_id
        self.source_cache.store(previous, self.source_sink.entries)
        self._raise_transition()
        self._thread_id = normalized
        self._reset_thread_state()
        logger.info("thread_changed", previous=previous, thread_id=normalized)
        return True

    def _reset_thread_state(self) -> None:
        self.tool_state.reset()
        self.runs.forget_settled()
        self.tool_sink.clear()
        self.source_sink.replace(self.source_cache.restore(self._thread_id))
        self.stages.reset()
        self._raw_messages = []
        self._values = None
        self._recompute_messages()

    def on_thread_id(self, thread_id: str) -> str:
        """Adopt the server-assigned thread id and return its route."""
        self.set_thread(thread_id)
        path = f"{section_base_path(self.section)}/{self._thread_id}" if self._thread_id else section_base_path(self.section)
        self._navigate(path)
        return path

    def _navigate(self, path: str) -> None:
        if self.on_navigate is None:
            return
        try:
            self.on_navigate(path)
        except Exception as exc:
            logger.warning("navigation_failed", path=path, error=str(exc))

    # -------------------------------------------------------------------------
    # Transition flag
    # -------------------------------------------------------------------------

    def _raise_transition(self) -> None:
        self._cancel_transition_timer()
        self._is_transitioning = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the flag is cleared by the watchdog only.
            return
        self._transition_timer = loop.call_later(
            self.config.thread_transition_ms / 1000,
            self._clear_transition,
        )

    def _clear_transition(self) -> None:
        self._cancel_transition_timer()
        self._is_transitioning = False

    def _cancel_transition_timer(self) -> None:
        if self._transition_timer is not None:
            self._transition_timer.cancel()
            self._transition_timer = None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def set_input(self, text: str) -> None:
        self._pending_input = text if isinstance(text, str) else ""

    async def send(self, text: Optional[str] = None) -> bool:
        """Submit a user message; returns False when nothing was submitted."""
        raw = self._pending_input if text is None else text
        trimmed = raw.strip() if isinstance(raw, str) else ""
        if not trimmed or self._is_loading or not self.assistant_id:
            return False

        is_existing_thread = bool(self._thread_id)
        self._pending_input = ""
        self.source_sink.clear()
        self.source_cache.store(self._thread_id, [])
        self.tool_sink.clear()

        payload = {"messages": [{"role": "user", "content": trimmed}]}
        options: Dict[str, Any] = {
            "metadata": None if is_existing_thread else {"thread_name": trimmed, "graph_id": self.graph_id},
            "stream_mode": self.stream_modes,
            "stream_resumable": True,
            "stream_subgraphs": True,
            "thread_id": self._thread_id,
            "config": {},
        }
        try:
            await self.transport.submit(payload, options)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("message_submit_failed", thread_id=self._thread_id, error=str(exc))
            self._pending_input = trimmed
            return False
        logger.info("message_submitted", thread_id=self._thread_id, assistant_id=self.assistant_id)
        return True

    async def _stop_transport(self, event: str) -> None:
        try:
            await self.transport.stop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(event, error=str(exc))

    async def stop(self) -> Optional["asyncio.Task[CancelOutcome]"]:
        """Stop the active run locally and cancel it on the service (detached)."""
        if not self._is_loading:
            return None
        await self._stop_transport("stream_stop_failed")
        task = self.runs.schedule_cancel()
        self._set_loading(False)
        return task

    async def start_new_thread(self) -> str:
        """Reset to an empty thread and return the section's base route."""
        if self._is_loading:
            await self._stop_transport("stream_stop_before_reset_failed")
            self._set_loading(False)
        self._raise_transition()
        previous = self._thread_id
        self.source_cache.store(previous, self.source_sink.entries)
        self._thread_id = None
        self._pending_input = ""
        self._selection = None
        self.graph_id = self._section_graph_id()
        self._reset_thread_state()

        path = section_base_path(self.section)
        logger.info("thread_reset", previous=previous, section=self.section)
        self._navigate(path)
        return path

    def select_assistant(self, option_id: Optional[str]) -> bool:
        """Pick an assistant quick option for the next (new) thread."""
        if self._is_loading or not non_blank(option_id):
            return False
        self._selection = find_assistant_option(option_id, config=self.config)
        self._pending_input = ""
        self.set_thread(None)
        self._reset_thread_state()
        if self._selection is not None:
            self.graph_id = self._selection.assistant_id
        else:
            self.graph_id = self._section_graph_id()
        return True

    async def drain(self) -> List[CancelOutcome]:
        """Wait for detached cancellations to settle."""
        return await self.runs.drain()

    async def aclose(self) -> None:
        outcomes = await self.drain()
        if outcomes:
            logger.debug("session_drained", cancellations=[outcome.value for outcome in outcomes])
        self._cancel_transition_timer()
        if self._owns_service and self.service is not None:
            await self.service.close()
