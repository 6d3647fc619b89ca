"""
Facade between the HTTP layer and the build core.

``BuildService`` owns the scheduler, the optional job ledger and the optional
S3 publisher, and translates plain inputs (build kind, Markdown text, template
selection) into scheduler calls and response models.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .configuration import Settings, build_config_metadata
from .database import JobLedger
from .errors import HandleNotFound
from .job_scheduler import Handle, JobScheduler
from .latex_renderer import LatexRenderer
from .models import (
    Artifact,
    BuildKind,
    BuildRequest,
    CacheClearResult,
    CacheEntryInfo,
    CancelResponse,
    ConfigMetadata,
    DownloadLink,
    JobDetail,
    JobSummary,
    StatusResponse,
    SubmitResponse,
    TemplateDescriptor,
    TemplateSelection,
)
from .renderer import RendererAdapter
from .s3_service import S3Publisher
from .templates import extract_markdown_metadata, generate_document_filename, parse_template_descriptor

logger = logging.getLogger(__name__)

# Cover templates carry their own text; pandoc still needs a source document.
COVER_PLACEHOLDER = b"# Cover\n\nCover page\n"


@dataclass(frozen=True)
class FetchResult:
    artifact: Artifact
    content: bytes
    filename: str


class BuildService:
    """
    Entry point used by the API routes.

    Attributes:
        scheduler: The build scheduler
        settings: Full application settings
        publisher: S3 publisher, unused when no bucket is configured
        ledger: SQLite job history, None when disabled
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        settings: Settings,
        publisher: S3Publisher | None = None,
        ledger: JobLedger | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.settings = settings
        self.publisher = publisher or S3Publisher(settings.s3)
        self.ledger = ledger
        self._config_metadata: ConfigMetadata | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        renderer: RendererAdapter | None = None,
        s3_client: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> "BuildService":
        ledger = JobLedger(Path(settings.storage.ledger_path)) if settings.storage.ledger_path else None
        scheduler = JobScheduler.from_settings(
            settings,
            renderer or LatexRenderer(settings.renderer),
            ledger=ledger,
            clock=clock,
        )
        return cls(scheduler, settings, publisher=S3Publisher(settings.s3, client=s3_client), ledger=ledger)

    # Builds

    def submit(
        self,
        kind: BuildKind,
        content: str | bytes,
        template: TemplateSelection | None = None,
        requester_id: Optional[str] = None,
    ) -> SubmitResponse:
        data = content.encode("utf-8") if isinstance(content, str) else content
        if kind == BuildKind.COMPILE_COVER and not data.strip():
            data = COVER_PLACEHOLDER
        request = BuildRequest(
            kind=kind,
            source_content=data,
            template=template or TemplateSelection(),
            requester_id=requester_id,
        )
        handle = self.scheduler.submit(request)
        return SubmitResponse(
            handle=handle.id,
            fingerprint=handle.fingerprint,
            state=self.scheduler.status(handle),
            cached=handle.cached,
        )

    def status(self, handle: Handle | str) -> StatusResponse:
        return self.scheduler.describe(handle)

    def fetch(self, handle: Handle | str, timeout_ms: Optional[int] = None) -> FetchResult:
        """
        Wait for a build and return its PDF.

        Args:
            handle: Handle returned by ``submit``
            timeout_ms: How long to wait; defaults to ``api.fetch_timeout_ms``

        Raises:
            BuildTimeout: The build did not finish in time (it keeps running)
            HandleNotFound: Unknown or expired handle
            BuildError: The build failed or was canceled
        """
        if timeout_ms is None:
            timeout_ms = self.settings.api.fetch_timeout_ms
        artifact = self.scheduler.wait(handle, timeout=max(timeout_ms, 0) / 1000)
        content = self.scheduler.store.retrieve(artifact.ref)
        return FetchResult(artifact=artifact, content=content, filename=self._filename(handle, artifact))

    def _filename(self, handle: Handle | str, artifact: Artifact) -> str:
        request = self.scheduler.request_for(handle)
        if request is None:
            raise HandleNotFound(f"Handle {handle} not found")
        metadata: Dict[str, object] = dict(request.template.metadata)
        if not metadata.get("titre"):
            metadata.update(extract_markdown_metadata(request.source_content.decode("utf-8", errors="replace")))
        return generate_document_filename(metadata, request.kind, artifact.created_at)

    def cancel(self, handle: Handle | str) -> CancelResponse:
        handle_id = handle.id if isinstance(handle, Handle) else handle
        return CancelResponse(handle=handle_id, applied=self.scheduler.cancel(handle))

    def download_url(self, handle: Handle | str, timeout_ms: int = 0) -> Optional[DownloadLink]:
        """
        Publish a finished PDF to S3 and return a presigned URL.

        Returns:
            The link, or None when S3 is not configured or publishing failed
        """
        if not self.publisher.is_configured():
            return None
        result = self.fetch(handle, timeout_ms=timeout_ms)
        key = self.publisher.publish(result.artifact, result.content, result.filename)
        if key is None:
            return None
        url = self.publisher.generate_presigned_url(key)
        if url is None:
            return None
        handle_id = handle.id if isinstance(handle, Handle) else handle
        return DownloadLink(handle=handle_id, url=url, expires_in=self.publisher.expiration)

    # Jobs

    def list_jobs(self) -> List[JobSummary]:
        return self.scheduler.list_jobs()

    def get_job(self, job_id: str) -> Optional[JobDetail]:
        job = self.scheduler.job_detail(job_id)
        if job is None and self.ledger is not None:
            job = self.ledger.get_job(job_id)
        return job

    def job_history(self, limit: int = 100) -> List[JobDetail]:
        """Jobs from the ledger (including previous runs), or the in-memory table when it is disabled."""
        if self.ledger is not None:
            return self.ledger.list_jobs(limit=limit)
        details = [self.scheduler.job_detail(summary.id) for summary in self.scheduler.list_jobs()[:limit]]
        return [detail for detail in details if detail is not None]

    # Maintenance

    def cache_entries(self) -> List[CacheEntryInfo]:
        return [
            CacheEntryInfo(
                fingerprint=entry.fingerprint,
                artifact_ref=entry.artifact.ref,
                size_bytes=entry.artifact.size_bytes,
                created_at=datetime.fromtimestamp(entry.created_at, tz=timezone.utc),
                last_accessed_at=datetime.fromtimestamp(entry.last_accessed_at, tz=timezone.utc),
            )
            for entry in self.scheduler.cache.entries()
        ]

    def clear_cache(self) -> CacheClearResult:
        result = CacheClearResult(**self.scheduler.clear_cache())
        logger.info(f"Cache cleared: {result.evicted_entries} entries, {result.deleted_artifacts} artifacts")
        return result

    def cleanup(self) -> Dict[str, int]:
        return self.scheduler.cleanup()

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    # Templates and configuration

    def describe_template(self, data: bytes) -> TemplateDescriptor:
        return parse_template_descriptor(data)

    def get_config_metadata(self) -> ConfigMetadata:
        if self._config_metadata is None:
            self._config_metadata = build_config_metadata()
        return self._config_metadata
