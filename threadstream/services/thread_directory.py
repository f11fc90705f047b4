"""Route matching and thread-existence checks for section URLs.

A route is ``/<section>`` or ``/<section>/<thread_id>``. When a route names a
thread the service does not know about, the caller is sent back to the
section's base path instead of opening an empty session.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Set

from loguru import logger

from .thread_service import (
    SECTION_BASE_PATHS,
    ThreadService,
    ThreadServiceError,
    resolve_thread_id,
)

_SECTION_BY_SEGMENT = {path.lstrip("/"): section for section, path in SECTION_BASE_PATHS.items()}


@dataclass(frozen=True)
class RouteMatch:
    section: str
    base_path: str
    thread_id: Optional[str] = None


def normalize_path(value: Optional[str]) -> str:
    """Collapse repeated slashes, force a leading slash, drop trailing ones."""
    if not value or not value.strip():
        return "/"
    normalized = value.strip()
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    normalized = re.sub(r"/{2,}", "/", normalized)
    if len(normalized) > 1:
        normalized = normalized.rstrip("/") or "/"
    return normalized


def match_route(path: Optional[str]) -> Optional[RouteMatch]:
    normalized = normalize_path(path)
    if normalized == "/":
        normalized = SECTION_BASE_PATHS["Chat"]
    segments = normalized.strip("/").split("/")
    section = _SECTION_BY_SEGMENT.get(segments[0])
    if section is None or len(segments) > 2:
        return None
    thread_id = segments[1] if len(segments) == 2 else None
    return RouteMatch(section=section, base_path=SECTION_BASE_PATHS[section], thread_id=thread_id)


def base_route_for_path(path: Optional[str]) -> str:
    normalized = normalize_path(path)
    for base_path in (SECTION_BASE_PATHS["Training"], SECTION_BASE_PATHS["Live Demo"]):
        if normalized.startswith(base_path):
            return base_path
    return SECTION_BASE_PATHS["Chat"]


class ThreadDirectory:
    """Cached set of thread ids known to the execution service."""

    def __init__(self, service: ThreadService) -> None:
        self.service = service
        self._known_ids: Set[str] = set()

    @property
    def known_ids(self) -> Set[str]:
        return set(self._known_ids)

    def remember(self, thread_ids: Iterable[str]) -> None:
        self._known_ids.update(str(thread_id) for thread_id in thread_ids if thread_id)

    async def refresh(self) -> Set[str]:
        """Reload the known ids; raises ThreadServiceError on failure."""
        threads = await self.service.fetch_threads()
        ids = {resolve_thread_id(thread) for thread in threads}
        self._known_ids = {thread_id for thread_id in ids if thread_id is not None}
        logger.debug("thread_directory_refreshed", threads=len(self._known_ids))
        return self.known_ids

    async def prime(self) -> None:
        """Initial load; failures are logged and leave the directory empty."""
        try:
            await self.refresh()
        except ThreadServiceError as exc:
            logger.warning("thread_directory_load_failed", error=str(exc))

    async def resolve(self, path: Optional[str]) -> Optional[str]:
        """Return a redirect target for *path*, or None when no redirect is needed.

        A known thread id needs no network call. An unknown one triggers a
        refresh; if it is still unknown the section base path is returned.
        A refresh failure is logged and no redirect happens.
        """
        route = match_route(path)
        if route is None or route.thread_id is None:
            return None
        if route.thread_id in self._known_ids:
            return None

        try:
            await self.refresh()
        except ThreadServiceError as exc:
            logger.warning("thread_validation_failed", thread_id=route.thread_id, error=str(exc))
            return None

        if route.thread_id in self._known_ids:
            return None
        logger.info("thread_not_found_redirect", thread_id=route.thread_id, target=route.base_path)
        return route.base_path
