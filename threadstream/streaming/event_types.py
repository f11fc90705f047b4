"""Typed stream events and reconciled record dataclasses.

These types define the contract between the stream transport, which delivers
raw protocol events, and the UI layer, which reads the reconciled state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from .utils import safe_json_value


# -----------------------------------------------------------------------------
# Stream events (delivered by the transport, consumed once each)
# -----------------------------------------------------------------------------


@dataclass
class MessageDelta:
    """Transcript snapshot: the full raw message list as currently known."""

    messages: List[Any] = field(default_factory=list)


@dataclass
class CustomEvent:
    """Free-form payload, typically carrying a `tool` and/or `source` entry."""

    payload: Any = None


@dataclass
class MetadataEvent:
    """Run/thread identifiers and an optional event-type tag."""

    payload: Any = None


@dataclass
class ValuesSnapshot:
    """Whole-state snapshot including stage, progress and module output."""

    values: Any = None


@dataclass
class RunCreated:
    """The transport reports that a run was created."""

    meta: Any = None


@dataclass
class RunFinished:
    """The transport reports that a run completed."""

    meta: Any = None
    state: Any = None


@dataclass
class StreamError:
    """Transport-level stream failure."""

    error: Any = None
    meta: Any = None


StreamEvent = Union[
    MessageDelta,
    CustomEvent,
    MetadataEvent,
    ValuesSnapshot,
    RunCreated,
    RunFinished,
    StreamError,
]


# -----------------------------------------------------------------------------
# Reconciled records
# -----------------------------------------------------------------------------

Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class NormalizedMessage:
    """A display-ready transcript entry."""

    id: str
    role: str
    text: str
    type: Optional[str] = None
    streaming: bool = False
    source: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-safe dictionary with camelCase keys."""
        result: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "isStreaming": self.streaming,
        }
        if self.type is not None:
            result["type"] = self.type
        if self.source is not None:
            result["source"] = self.source
        return result


@dataclass
class ToolCallRecord:
    """One tool invocation as surfaced in the tool-output list.

    `content` grows while chunks arrive and is never shortened by a replay.
    """

    key: str
    title: str
    content: str
    raw: Any = None

    def to_entry(self) -> Dict[str, Any]:
        """Return the upsert payload for the tool-output sink."""
        return {
            "id": self.key,
            "title": self.title,
            "content": self.content,
            "raw": safe_json_value(self.raw),
        }


@dataclass(frozen=True)
class RunHandle:
    """Identity of one run on the execution service."""

    run_id: str
    thread_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"run_id": self.run_id, "thread_id": self.thread_id}


@dataclass(frozen=True)
class StageState:
    """Result of observing one values snapshot."""

    stage: Optional[str]
    stage_history: Tuple[str, ...]
    progress: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "stageHistory": list(self.stage_history),
            "progress": self.progress,
        }


class CancelOutcome(str, Enum):
    """How a cancellation attempt ended. Every outcome is terminal locally."""

    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    SKIPPED = "skipped"
