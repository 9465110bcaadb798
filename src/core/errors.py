"""Error taxonomy for the task service entry points.

Every error carries a stable ``code`` that UI adapters can switch on. Internal
failures are wrapped into InternalError so callers never see store details.
"""

from __future__ import annotations


class TaskServiceError(Exception):
    """Base class for errors surfaced to callers."""

    code = "unknown"


class Unauthenticated(TaskServiceError):
    code = "unauthenticated"


class PermissionDenied(TaskServiceError):
    code = "permission-denied"


class NotFound(TaskServiceError):
    code = "not-found"


class InvalidArgument(TaskServiceError):
    code = "invalid-argument"


class InternalError(TaskServiceError):
    code = "internal"


class PartialFanOutError(InternalError):
    """A chunked write failed after earlier chunks were committed.

    Earlier chunks stay committed. Retrying the whole operation is safe.
    """

    def __init__(self, message: str, committed_chunks: int, total_chunks: int) -> None:
        super().__init__(message)
        self.committed_chunks = committed_chunks
        self.total_chunks = total_chunks
