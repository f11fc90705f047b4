"""Execution-service collaborators: thread listing, run cancellation, routing."""

from .thread_directory import ThreadDirectory
from .thread_service import CancelRunError, ThreadService, ThreadServiceError

__all__ = [
    "CancelRunError",
    "ThreadDirectory",
    "ThreadService",
    "ThreadServiceError",
]
