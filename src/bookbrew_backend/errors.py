"""
Error taxonomy shared by the scheduler, the storage layers and the API.

Every failure a caller can observe is a ``BuildError`` subclass carrying an
``ErrorKind`` tag, so the HTTP layer can map it to a status code without
inspecting messages:

- InvalidRequest: caller error, raised synchronously by ``submit``
- QueueSaturated: backpressure, the caller should retry later
- TransientRenderError / PermanentRenderError: classified by the renderer
- BuildTimeout: the caller's wait expired, the build keeps running
- BuildCanceled: the build was canceled before it produced a PDF
- HandleNotFound / ArtifactNotFound: unknown or expired identifiers
- ArtifactInUse: deletion blocked by live references
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    QUEUE_SATURATED = "queue_saturated"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    NOT_FOUND = "not_found"
    IN_USE = "in_use"


class BuildError(Exception):
    """Base class for every typed outcome other than a successful artifact."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "detail": self.message}


class InvalidRequest(BuildError):
    kind = ErrorKind.INVALID_REQUEST


class QueueSaturated(BuildError):
    kind = ErrorKind.QUEUE_SATURATED


class BuildTimeout(BuildError):
    kind = ErrorKind.TIMEOUT


class BuildCanceled(BuildError):
    kind = ErrorKind.CANCELED


class NotFound(BuildError):
    kind = ErrorKind.NOT_FOUND


class HandleNotFound(NotFound):
    pass


class ArtifactNotFound(NotFound):
    pass


class ArtifactInUse(BuildError):
    kind = ErrorKind.IN_USE


class RenderError(BuildError):
    """Failure reported by a renderer; subclasses decide whether it is retryable."""

    retryable = False


class TransientRenderError(RenderError):
    kind = ErrorKind.TRANSIENT
    retryable = True


class PermanentRenderError(RenderError):
    kind = ErrorKind.PERMANENT


class RenderCanceled(RenderError):
    """Raised by a renderer that honoured a cooperative cancellation request."""

    kind = ErrorKind.CANCELED
