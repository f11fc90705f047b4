"""Run lifecycle tracking and best-effort cancellation.

The tracker owns the single active run handle, mirrors it into a per-thread
run slot so a rebuilt session can still cancel the run, and drives cancel
requests against the execution service.

Cancellation never raises into the event path. ``schedule_cancel`` runs it
as a detached task; ``drain`` awaits whatever is still in flight.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from loguru import logger

from threadstream.cache.session_cache import ThreadSafeCache, get_run_slot_cache
from threadstream.core.settings import settings

from .event_types import CancelOutcome, RunHandle
from .utils import coerce_mapping, get_path, non_blank

FAILED_EVENT_TYPES = frozenset({"response.failed"})


class RunCanceller(Protocol):
    """Execution-control collaborator able to cancel a run."""

    async def cancel_run(self, thread_id: str, run_id: str) -> Optional[CancelOutcome]:
        ...


class RunHandleCell:
    """Single-writer cell for the active run handle.

    ``clear_if`` only clears when the stored run id still matches, so a late
    finish or cancel for an older run cannot drop a newer handle.
    """

    def __init__(self) -> None:
        self._handle: Optional[RunHandle] = None

    def get(self) -> Optional[RunHandle]:
        return self._handle

    def set(self, handle: RunHandle) -> None:
        self._handle = handle

    def clear_if(self, run_id: Optional[str]) -> bool:
        if run_id is None or self._handle is None or self._handle.run_id != run_id:
            return False
        self._handle = None
        return True

    def clear(self) -> None:
        self._handle = None


class RunSlotStore:
    """Thread id -> last known run id, stored under ``<prefix><thread_id>``."""

    def __init__(
        self,
        cache: Optional[ThreadSafeCache[str]] = None,
        *,
        prefix: Optional[str] = None,
    ) -> None:
        self._cache = cache if cache is not None else get_run_slot_cache()
        self.prefix = prefix if prefix is not None else settings.run_slot_prefix

    def slot_key(self, thread_id: str) -> str:
        return f"{self.prefix}{thread_id}"

    def save(self, thread_id: Optional[str], run_id: str) -> None:
        if not thread_id:
            return
        try:
            self._cache.set(self.slot_key(thread_id), run_id)
        except Exception as exc:
            logger.warning("run_slot_persist_failed", thread_id=thread_id, error=str(exc))

    def load(self, thread_id: Optional[str]) -> Optional[str]:
        if not thread_id:
            return None
        try:
            return self._cache.get(self.slot_key(thread_id))
        except Exception as exc:
            logger.warning("run_slot_read_failed", thread_id=thread_id, error=str(exc))
            return None

    def remove(self, thread_id: Optional[str]) -> None:
        if not thread_id:
            return
        try:
            self._cache.delete(self.slot_key(thread_id))
        except Exception as exc:
            logger.warning("run_slot_clear_failed", thread_id=thread_id, error=str(exc))

    def remove_if(self, thread_id: Optional[str], run_id: str) -> bool:
        """Remove the slot only while it still holds *run_id* (or is already gone)."""
        stored = self.load(thread_id)
        if stored is not None and stored != run_id:
            return False
        self.remove(thread_id)
        return True


def _string_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def extract_run_meta(meta: Any) -> Optional[Dict[str, Optional[str]]]:
    """Pull ``{run_id, thread_id}`` from metadata; the run may be nested under ``run``."""
    payload = coerce_mapping(meta)
    if not payload:
        return None
    run_id = _string_or_none(payload.get("run_id")) or _string_or_none(get_path(payload, "run", "run_id"))
    if not run_id:
        return None
    thread_id = _string_or_none(payload.get("thread_id")) or _string_or_none(get_path(payload, "run", "thread_id"))
    return {"run_id": run_id, "thread_id": thread_id}


def metadata_event_type(meta: Any) -> Optional[str]:
    if not isinstance(meta, Mapping):
        return None
    return _string_or_none(meta.get("type")) or _string_or_none(meta.get("event"))


class RunLifecycleTracker:
    """Tracks the active run and cancels it on request or failure.

    Args:
        canceller: Collaborator issuing the cancel request.
        active_thread: Returns the session's currently selected thread id.
        slots: Run-slot store; defaults to the shared process-wide one.
    """

    def __init__(
        self,
        canceller: Optional[RunCanceller],
        *,
        active_thread: Callable[[], Optional[str]] = lambda: None,
        slots: Optional[RunSlotStore] = None,
    ) -> None:
        self.canceller = canceller
        self._active_thread = active_thread
        self.slots = slots or RunSlotStore()
        self.cell = RunHandleCell()
        self._inflight: Dict[Tuple[str, str], "asyncio.Task[CancelOutcome]"] = {}
        self._settled: Set[Tuple[str, str]] = set()

    @property
    def handle(self) -> Optional[RunHandle]:
        return self.cell.get()

    def _fallback_thread(self) -> Optional[str]:
        return non_blank(self._active_thread())

    # -- event hooks ------------------------------------------------------

    def on_created(self, meta: Any) -> Optional[RunHandle]:
        payload = coerce_mapping(meta) or {}
        run_id = _string_or_none(payload.get("run_id"))
        if not run_id:
            return None
        return self._store(run_id, _string_or_none(payload.get("thread_id")))

    def is_settled(self, thread_id: Optional[str], run_id: str) -> bool:
        return (thread_id or "", run_id) in self._settled

    def forget_settled(self) -> None:
        """Drop the record of finished cancellations (on thread change)."""
        self._settled.clear()

    def on_metadata(self, meta: Any) -> Optional[RunHandle]:
        """Adopt a run id carried by metadata; auto-cancel on a failure event."""
        run_meta = extract_run_meta(meta)
        if run_meta is None:
            return None
        handle = self._store(run_meta["run_id"], run_meta["thread_id"])
        if handle is None:
            return None
        event_type = metadata_event_type(coerce_mapping(meta))
        if event_type in FAILED_EVENT_TYPES:
            logger.warning("run_failed_event", run_id=handle.run_id, thread_id=handle.thread_id)
            self.schedule_cancel(run_meta)
        return handle

    def on_finish(self, meta: Any) -> None:
        payload = coerce_mapping(meta) or {}
        run_id = _string_or_none(payload.get("run_id"))
        if run_id and self.cell.clear_if(run_id):
            logger.debug("run_finished", run_id=run_id)
        thread_id = _string_or_none(payload.get("thread_id")) or self._fallback_thread()
        if run_id:
            self.slots.remove_if(thread_id, run_id)
        else:
            self.slots.remove(thread_id)

    def on_error(self, error: Any, meta: Any = None) -> Optional["asyncio.Task[CancelOutcome]"]:
        logger.error("stream_error", error=str(error))
        return self.schedule_cancel(meta)

    def _store(self, run_id: str, thread_id: Optional[str]) -> Optional[RunHandle]:
        handle = RunHandle(run_id=run_id, thread_id=thread_id or self._fallback_thread())
        if self.is_settled(handle.thread_id, run_id):
            # Redelivered event for a run whose cancellation already completed.
            logger.debug("run_event_ignored_settled", run_id=run_id, thread_id=handle.thread_id)
            return None
        self.cell.set(handle)
        self.slots.save(handle.thread_id, handle.run_id)
        return handle

    # -- cancellation -----------------------------------------------------

    def resolve_target(self, meta: Any = None) -> Optional[RunHandle]:
        """Resolve which (thread, run) a cancel should address, or None."""
        explicit = coerce_mapping(meta) or {}
        effective: Dict[str, Any] = explicit if explicit else (self.handle.to_dict() if self.handle else {})
        thread_id = _string_or_none(effective.get("thread_id")) or self._fallback_thread()
        if not thread_id:
            return None
        run_id = _string_or_none(effective.get("run_id")) or self.slots.load(thread_id)
        if not run_id:
            return None
        return RunHandle(run_id=run_id, thread_id=thread_id)

    async def cancel(self, meta: Any = None) -> CancelOutcome:
        """Cancel the best-known run and wait for the outcome; never raises.

        Concurrent calls for the same run share one request, and a run that
        was already cancelled (or found gone) is not requested again.
        """
        task = self._cancel_task(meta)
        if task is None:
            return CancelOutcome.SKIPPED
        return await asyncio.shield(task)

    def schedule_cancel(self, meta: Any = None) -> Optional["asyncio.Task[CancelOutcome]"]:
        """Start a detached cancellation; returns None when nothing can be cancelled."""
        return self._cancel_task(meta)

    def _cancel_task(self, meta: Any) -> Optional["asyncio.Task[CancelOutcome]"]:
        target = self.resolve_target(meta)
        if target is None or self.canceller is None:
            return None
        key = (target.thread_id or "", target.run_id)
        if key in self._settled:
            return None
        existing = self._inflight.get(key)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.get_running_loop().create_task(self._issue(self.canceller, target))
        self._inflight[key] = task

        def _forget(done: "asyncio.Task[CancelOutcome]") -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_forget)
        return task

    async def _issue(self, canceller: RunCanceller, target: RunHandle) -> CancelOutcome:
        """Send the cancel request; bookkeeping is cleared whatever happens."""
        outcome = CancelOutcome.FAILED
        try:
            result = await canceller.cancel_run(target.thread_id, target.run_id)
            outcome = result if isinstance(result, CancelOutcome) else CancelOutcome.CANCELLED
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "run_cancel_failed",
                thread_id=target.thread_id,
                run_id=target.run_id,
                error=str(exc),
            )
        finally:
            self.slots.remove_if(target.thread_id, target.run_id)
            self.cell.clear_if(target.run_id)

        if outcome in (CancelOutcome.CANCELLED, CancelOutcome.NOT_FOUND):
            self._settled.add((target.thread_id or "", target.run_id))
        logger.info(
            "run_cancel_settled",
            thread_id=target.thread_id,
            run_id=target.run_id,
            outcome=outcome.value,
        )
        return outcome

    @property
    def pending(self) -> int:
        return sum(1 for task in self._inflight.values() if not task.done())

    async def drain(self) -> List[CancelOutcome]:
        """Await every in-flight cancellation and return their outcomes."""
        outcomes: List[CancelOutcome] = []
        while self._inflight:
            batch = list(self._inflight.values())
            results = await asyncio.gather(*batch, return_exceptions=True)
            for result in results:
                outcomes.append(result if isinstance(result, CancelOutcome) else CancelOutcome.FAILED)
            for task in batch:
                for key, value in list(self._inflight.items()):
                    if value is task:
                        del self._inflight[key]
        return outcomes
