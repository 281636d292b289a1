"""Exception taxonomy shared by the reader, writer, resolver and pipeline."""

from __future__ import annotations


class BulkEditorError(Exception):
    """Base class for every error raised by the bulk editor."""


class DocumentAccessError(BulkEditorError):
    """File is missing, locked, empty, oversized or has a disallowed extension."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason


class DocumentFormatError(BulkEditorError):
    """The document package or its body cannot be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason


class NetworkError(BulkEditorError):
    """A resolution call failed (transport error, non-2xx, malformed body)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResolutionTimeoutError(NetworkError):
    """A resolution call exceeded its timeout."""


class ValidationError(BulkEditorError):
    """A rule or record is malformed; callers skip it with a warning."""


class ProcessingCancelled(BulkEditorError):
    """Raised at a checkpoint once cancellation has been requested.

    Not a failure: the pipeline turns it into the ``cancelled`` terminal state.
    """
