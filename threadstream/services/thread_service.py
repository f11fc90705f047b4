"""Execution-service client: thread listing, run cancellation, section routing."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from loguru import logger

from threadstream.core.settings import Settings, settings as default_settings
from threadstream.streaming.event_types import CancelOutcome
from threadstream.streaming.utils import first_present, get_path, non_blank

CHAT = "Chat"
TRAINING = "Training"
LIVE_DEMO = "Live Demo"
SECTIONS: Tuple[str, ...] = (CHAT, TRAINING, LIVE_DEMO)

SECTION_BASE_PATHS: Dict[str, str] = {
    CHAT: "/chat",
    TRAINING: "/training",
    LIVE_DEMO: "/livedemo",
}

UNTITLED_THREAD = "Untitled Thread"

_TRAILING_SLASH_RE = re.compile(r"\s/$")


class ThreadServiceError(RuntimeError):
    """Base error for execution-service failures."""


class CancelRunError(ThreadServiceError):
    """Raised when the service rejects a cancel request with an unexpected status."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Cancel request failed with status {status_code}")


# -----------------------------------------------------------------------------
# Sections and assistants
# -----------------------------------------------------------------------------


def normalize_section(value: Optional[str]) -> str:
    """Map a section label or path segment onto a canonical section name."""
    if not isinstance(value, str):
        return CHAT
    compact = value.strip().lower().replace(" ", "").replace("_", "").replace("-", "")
    if compact == "training":
        return TRAINING
    if compact == "livedemo":
        return LIVE_DEMO
    return CHAT


def section_base_path(section: Optional[str]) -> str:
    return SECTION_BASE_PATHS[normalize_section(section)]


def resolve_assistant_id(
    section: Optional[str],
    override: Optional[str] = None,
    *,
    config: Optional[Settings] = None,
) -> str:
    """Return the assistant id for a section; a non-blank override wins."""
    config = config or default_settings
    explicit = non_blank(override)
    if explicit:
        return explicit
    if isinstance(section, str) and section.strip().lower() == "training":
        return config.training_assistant_id
    return config.assistant_id


def resolve_graph_id(segment: Optional[str], *, config: Optional[Settings] = None) -> str:
    """Return the graph id for a section or URL path segment (unknown -> chat)."""
    config = config or default_settings
    graphs = {
        "chat": config.assistant_id,
        "training": config.training_assistant_id,
        "livedemo": config.live_demo_graph_id,
    }
    key = segment.strip().lower() if isinstance(segment, str) else "chat"
    if key not in graphs and normalize_section(key) == LIVE_DEMO:
        key = "livedemo"
    return graphs.get(key, graphs["chat"])


def graph_id_for_path(path: Optional[str], *, config: Optional[Settings] = None) -> str:
    """Resolve the graph id from the first segment of a route path."""
    segments = [part for part in (path or "").split("/") if part]
    return resolve_graph_id(segments[0] if segments else "chat", config=config)


def stream_modes_for(section: Optional[str], *, config: Optional[Settings] = None) -> List[str]:
    config = config or default_settings
    if section == TRAINING:
        return list(config.training_stream_modes)
    return list(config.stream_modes)


@dataclass(frozen=True)
class AssistantOption:
    """One assistant quick option offered before the first message of a thread."""

    id: str
    label: str
    description: str
    assistant_id: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "assistantId": self.assistant_id,
        }


def assistant_quick_options(*, config: Optional[Settings] = None) -> List[AssistantOption]:
    descriptions = {
        CHAT: "General workspace assistant",
        TRAINING: "Training module assistant",
        LIVE_DEMO: "Live demo assistant",
    }
    return [
        AssistantOption(
            id=section,
            label=section,
            description=descriptions[section],
            assistant_id=resolve_assistant_id(section, config=config),
        )
        for section in SECTIONS
    ]


def find_assistant_option(
    option_id: Optional[str],
    *,
    config: Optional[Settings] = None,
) -> Optional[AssistantOption]:
    """Case-insensitive lookup of a quick option by id."""
    key = non_blank(option_id)
    if not key:
        return None
    for option in assistant_quick_options(config=config):
        if option.id.lower() == key.lower():
            return option
    return None


def wants_assistant_options(text: Optional[str], has_thread: bool, has_user_messages: bool) -> bool:
    """True when a fresh thread's input asks for the assistant picker with ``/``."""
    if has_thread or has_user_messages or not isinstance(text, str) or not text:
        return False
    if text.lstrip().startswith("/"):
        return True
    trimmed = text.strip()
    return bool(trimmed) and _TRAILING_SLASH_RE.search(trimmed) is not None


# -----------------------------------------------------------------------------
# Thread payloads
# -----------------------------------------------------------------------------


def resolve_thread_id(thread: Any) -> Optional[str]:
    if not isinstance(thread, Mapping):
        return None
    value = first_present(thread, ("id", "thread_id"))
    if value is None:
        value = first_present(thread.get("metadata"), ("thread_id", "id"))
    return str(value) if value is not None else None


def resolve_thread_label(thread: Any) -> str:
    if not isinstance(thread, Mapping):
        return UNTITLED_THREAD
    for value in (
        thread.get("name"),
        thread.get("title"),
        get_path(thread, "metadata", "thread_name"),
        get_path(thread, "metadata", "name"),
    ):
        label = non_blank(value)
        if label:
            return label
    return UNTITLED_THREAD


def unwrap_threads(payload: Any) -> List[Dict[str, Any]]:
    """Accept either a bare list or ``{"threads": [...]}``."""
    if isinstance(payload, Mapping):
        payload = payload.get("threads")
    if not isinstance(payload, list):
        return []
    return [dict(item) for item in payload if isinstance(item, Mapping)]


# -----------------------------------------------------------------------------
# HTTP client
# -----------------------------------------------------------------------------


class ThreadService:
    """Async client for the execution service's thread and run endpoints."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or default_settings
        raw_base = base_url if base_url is not None else self.config.api_base_url
        self.base_url = (raw_base or "").strip().rstrip("/")
        self.timeout = timeout or self.config.cancel_request_timeout_sec
        self._client = client
        self._owns_client = client is None

    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def fetch_threads(self) -> List[Dict[str, Any]]:
        """Return every thread known to the service ([] when no base URL is set)."""
        if not self.is_configured():
            logger.warning("thread_fetch_skipped", reason="api_base_url_not_configured")
            return []

        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/threads")
        except httpx.HTTPError as exc:
            raise ThreadServiceError(f"Failed to fetch threads: {exc}") from exc
        if response.is_error:
            raise ThreadServiceError(
                f"Failed to fetch threads: {response.status_code} {response.reason_phrase}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ThreadServiceError("Thread list response was not JSON") from exc
        return unwrap_threads(payload)

    async def list_threads(self, graph_id: Optional[str]) -> List[Dict[str, Any]]:
        """Threads whose ``metadata.graph_id`` equals *graph_id*."""
        threads = await self.fetch_threads()
        return [thread for thread in threads if get_path(thread, "metadata", "graph_id") == graph_id]

    def cancel_url(self, thread_id: str, run_id: str) -> str:
        return (
            f"{self.base_url}/threads/{quote(str(thread_id), safe='')}"
            f"/runs/{quote(str(run_id), safe='')}/cancel"
        )

    async def cancel_run(self, thread_id: str, run_id: str) -> CancelOutcome:
        """Ask the service to cancel a run without waiting for it to stop.

        Returns:
            CANCELLED on 2xx, NOT_FOUND on 404 (the run already ended).

        Raises:
            CancelRunError: any other HTTP status.
            ThreadServiceError: transport failure or missing base URL.
        """
        if not self.is_configured():
            raise ThreadServiceError("API_BASE_URL is not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                self.cancel_url(thread_id, run_id),
                params={"wait": "0", "action": "cancel"},
            )
        except httpx.HTTPError as exc:
            raise ThreadServiceError(f"Cancel request failed: {exc}") from exc

        if response.status_code == 404:
            logger.info("run_cancel_not_found", thread_id=thread_id, run_id=run_id)
            return CancelOutcome.NOT_FOUND
        if response.is_error:
            raise CancelRunError(response.status_code)
        logger.info("run_cancelled", thread_id=thread_id, run_id=run_id)
        return CancelOutcome.CANCELLED
