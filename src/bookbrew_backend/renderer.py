"""
Contract between the scheduler and whatever turns Markdown into a PDF.

The scheduler only ever talks to a ``RendererAdapter``. An adapter receives
the immutable build request and a scratch directory that belongs to this one
invocation, blocks until the PDF is ready and returns its bytes. Failures must
be raised as ``TransientRenderError`` (worth retrying: timeouts, resource
exhaustion) or ``PermanentRenderError`` (retrying cannot help: broken
template, missing tool). Anything else escaping ``render`` is treated as
permanent by the scheduler.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from threading import Event
from typing import Optional

from .models import BuildRequest


class RendererAdapter(ABC):
    """
    Abstract renderer.

    Implementations must be safe to call from several worker threads at once
    as long as every call gets its own ``work_dir``.

    Attributes:
        supports_cancellation: True when ``render`` watches ``cancel_event``
            and raises ``RenderCanceled`` once it is set
    """

    supports_cancellation: bool = False

    @abstractmethod
    def render(
        self,
        request: BuildRequest,
        work_dir: Path,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[Event] = None,
    ) -> bytes:
        """
        Produce the PDF for a request.

        Args:
            request: What to build
            work_dir: Empty directory owned by this call
            timeout: Hard limit in seconds for the whole render, if any
            cancel_event: Set by the scheduler when cancellation is requested

        Returns:
            The PDF bytes

        Raises:
            TransientRenderError: Retryable failure (includes hitting ``timeout``)
            PermanentRenderError: Non-retryable failure
            RenderCanceled: ``cancel_event`` was honoured
        """
