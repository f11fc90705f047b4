"""Stream reconciliation: transcript, tool outputs, run handle and stage history.

The session controller lives in `threadstream.streaming.session`; it depends on
`threadstream.services`, which itself imports from this package.
"""

from .event_types import (
    CancelOutcome,
    CustomEvent,
    MessageDelta,
    MetadataEvent,
    NormalizedMessage,
    RunCreated,
    RunFinished,
    RunHandle,
    StageState,
    StreamError,
    StreamEvent,
    ToolCallRecord,
    ValuesSnapshot,
)
from .content import resolve, resolve_content, resolve_module_text
from .normalizers import build_tool_cards, normalize_messages
from .runs import RunHandleCell, RunLifecycleTracker, RunSlotStore
from .stages import LIVE_DEMO_STEPS, StageHistoryTracker
from .tool_calls import ToolTrackingState, reconcile_tool_calls
from .upsert import UpsertSink

__all__ = [
    # Event types
    "StreamEvent",
    "MessageDelta",
    "CustomEvent",
    "MetadataEvent",
    "ValuesSnapshot",
    "RunCreated",
    "RunFinished",
    "StreamError",
    # Records
    "NormalizedMessage",
    "ToolCallRecord",
    "RunHandle",
    "StageState",
    "CancelOutcome",
    # Classes
    "RunLifecycleTracker",
    "RunHandleCell",
    "RunSlotStore",
    "StageHistoryTracker",
    "ToolTrackingState",
    "UpsertSink",
    # Utilities
    "LIVE_DEMO_STEPS",
    "build_tool_cards",
    "normalize_messages",
    "reconcile_tool_calls",
    "resolve",
    "resolve_content",
    "resolve_module_text",
]
