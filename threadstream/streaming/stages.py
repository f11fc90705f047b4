"""Workflow-stage tracking from whole-state snapshots."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, List, Optional, Sequence, Tuple

from loguru import logger

from .event_types import NormalizedMessage, StageState
from .utils import coerce_mapping, first_string, get_path, is_finite_number

STAGE_FIELDS: Tuple[str, ...] = ("stage", "stageName", "current_stage")
PROGRESS_FIELDS: Tuple[str, ...] = ("stageProgress", "stage_progress", "progress")

LIVE_DEMO_STEPS: Tuple[str, ...] = (
    "Load interactive preview",
    "Demonstrate the core workflow",
    "Highlight captured insights",
    "Outline follow-up actions",
)


def clamp_progress(value: float) -> float:
    return min(max(value, 0), 100)


def extract_stage(values: Any) -> Optional[str]:
    return first_string(values, STAGE_FIELDS)


def extract_progress(values: Any) -> Optional[float]:
    """First finite numeric progress field, clamped to [0, 100]."""
    if not isinstance(values, Mapping):
        return None
    for name in PROGRESS_FIELDS:
        candidate = values.get(name)
        if isinstance(candidate, bool) or not isinstance(candidate, (int, float)):
            continue
        return clamp_progress(candidate) if is_finite_number(candidate) else None
    return None


def fallback_progress(history_length: int) -> int:
    if history_length <= 0:
        return 0
    return round((history_length - 1) / history_length * 100)


class StageHistoryTracker:
    """Accumulates an ordered, duplicate-free stage history for one thread.

    A label is appended only when it is non-blank, differs from the last
    entry, and has not been seen earlier in the history. The history is
    append-only until ``reset()`` (thread transition).
    """

    def __init__(self) -> None:
        self._history: List[str] = []
        self._stage: Optional[str] = None
        self._progress: float = 0

    @property
    def history(self) -> Tuple[str, ...]:
        return tuple(self._history)

    @property
    def stage(self) -> Optional[str]:
        return self._stage

    @property
    def progress(self) -> float:
        return self._progress

    def observe(self, snapshot: Any) -> StageState:
        values = coerce_mapping(snapshot) or {}
        stage = extract_stage(values)
        self._stage = stage

        label = stage.strip() if stage else ""
        if label and label not in self._history:
            self._history.append(label)
            logger.debug("stage_entered", stage=label, position=len(self._history))

        explicit = extract_progress(values)
        if explicit is not None:
            self._progress = int(explicit) if float(explicit).is_integer() else explicit
        else:
            self._progress = fallback_progress(len(self._history))
        return self.state()

    def state(self) -> StageState:
        return StageState(stage=self._stage, stage_history=self.history, progress=self._progress)

    def reset(self) -> None:
        self._history = []
        self._stage = None
        self._progress = 0


def live_demo_steps(history: Sequence[str], *, live_demo: bool = True) -> List[str]:
    """Steps shown in the live-demo panel: the stage history once it has entries."""
    if live_demo and history:
        return list(history)
    return list(LIVE_DEMO_STEPS)


def resolve_demo_video_url(messages: Sequence[NormalizedMessage]) -> Optional[str]:
    """Newest ``metadata.demo_video_url`` among the transcript's messages."""
    for message in reversed(list(messages)):
        raw = coerce_mapping(message.raw) or {}
        for path in (("metadata", "demo_video_url"), ("response_metadata", "demo_video_url")):
            url = get_path(raw, *path)
            if isinstance(url, str) and url.strip():
                return url.strip()
    return None
