from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .build_service import BuildService
from .configuration import load_settings
from .errors import BuildError, ErrorKind
from .models import (
    BuildKind,
    BuildPayload,
    CacheClearResult,
    CacheEntryInfo,
    CancelResponse,
    ConfigMetadata,
    DownloadLink,
    JobDetail,
    JobState,
    JobSummary,
    StatusResponse,
    SubmitPayload,
    SubmitResponse,
    TemplateDescriptor,
)
from .utils import allowed_template_extensions

STATUS_CODES = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.QUEUE_SATURATED: 429,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.PERMANENT: 422,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CANCELED: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.IN_USE: 409,
}
RETRY_AFTER_SECONDS = "5"
# Covers the ledger write between a build turning terminal and its waiters waking up.
SETTLE_TIMEOUT_MS = 1000

settings = load_settings()
logging.getLogger("bookbrew_backend").setLevel(settings.logging.level.upper())

build_service = BuildService.from_settings(settings)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    build_service.shutdown()


app = FastAPI(title="BookBrew API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_build_service() -> BuildService:
    return build_service


def _http_error(exc: BuildError) -> HTTPException:
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if exc.kind == ErrorKind.QUEUE_SATURATED else None
    return HTTPException(status_code=STATUS_CODES[exc.kind], detail=exc.to_dict(), headers=headers)


def _submit(service: BuildService, kind: BuildKind, payload: SubmitPayload) -> SubmitResponse:
    try:
        return service.submit(kind, payload.content, payload.template, payload.requester_id)
    except BuildError as exc:
        raise _http_error(exc) from exc


async def _await_build(service: BuildService, handle: str, timeout_ms: Optional[int]) -> int:
    """
    Wait on the event loop until the build leaves the queue or ``timeout_ms`` elapses.

    Returns:
        The timeout to hand to the blocking fetch, so no worker thread is held
        while a build is still rendering
    """
    if timeout_ms is None:
        timeout_ms = service.settings.api.fetch_timeout_ms
    deadline = time.monotonic() + timeout_ms / 1000
    poll_seconds = service.settings.api.fetch_poll_ms / 1000
    while service.status(handle).state in (JobState.QUEUED, JobState.RUNNING):
        if time.monotonic() >= deadline:
            return 0
        await asyncio.sleep(poll_seconds)
    return SETTLE_TIMEOUT_MS


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config/defaults", response_model=ConfigMetadata)
def get_config_defaults(service: BuildService = Depends(get_build_service)) -> ConfigMetadata:
    return service.get_config_metadata()


@app.post("/convert", response_model=SubmitResponse, status_code=202)
def convert(payload: SubmitPayload, service: BuildService = Depends(get_build_service)) -> SubmitResponse:
    return _submit(service, BuildKind.CONVERT, payload)


@app.post("/compile-cover", response_model=SubmitResponse, status_code=202)
def compile_cover(payload: SubmitPayload, service: BuildService = Depends(get_build_service)) -> SubmitResponse:
    return _submit(service, BuildKind.COMPILE_COVER, payload)


@app.post("/impose", response_model=SubmitResponse, status_code=202)
def impose(payload: SubmitPayload, service: BuildService = Depends(get_build_service)) -> SubmitResponse:
    return _submit(service, BuildKind.IMPOSE, payload)


@app.post("/builds", response_model=SubmitResponse, status_code=202)
def create_build(payload: BuildPayload, service: BuildService = Depends(get_build_service)) -> SubmitResponse:
    return _submit(service, payload.kind, payload)


@app.get("/builds/{handle}", response_model=StatusResponse)
def build_status(handle: str, service: BuildService = Depends(get_build_service)) -> StatusResponse:
    return service.status(handle)


@app.delete("/builds/{handle}", response_model=CancelResponse)
def cancel_build(handle: str, service: BuildService = Depends(get_build_service)) -> CancelResponse:
    return service.cancel(handle)


@app.get("/pdf/{handle}")
async def download_pdf(
    handle: str,
    timeout_ms: Optional[int] = Query(None, ge=0),
    service: BuildService = Depends(get_build_service),
) -> Response:
    settle_ms = await _await_build(service, handle, timeout_ms)
    try:
        result = await run_in_threadpool(service.fetch, handle, timeout_ms=settle_ms)
    except BuildError as exc:
        raise _http_error(exc) from exc
    return Response(
        content=result.content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(result.filename)}",
            "X-Artifact-Ref": result.artifact.ref,
        },
    )


@app.get("/pdf/{handle}/url", response_model=DownloadLink)
async def download_url(
    handle: str,
    timeout_ms: int = Query(0, ge=0),
    service: BuildService = Depends(get_build_service),
) -> DownloadLink:
    if not service.publisher.is_configured():
        raise HTTPException(status_code=501, detail="S3 publishing is not configured")
    settle_ms = await _await_build(service, handle, timeout_ms)
    try:
        link = await run_in_threadpool(service.download_url, handle, timeout_ms=settle_ms)
    except BuildError as exc:
        raise _http_error(exc) from exc
    if link is None:
        raise HTTPException(status_code=502, detail="Could not publish the PDF")
    return link


@app.get("/jobs", response_model=list[JobSummary])
def list_jobs(service: BuildService = Depends(get_build_service)) -> list[JobSummary]:
    return service.list_jobs()


@app.get("/jobs/history", response_model=List[JobDetail])
def job_history(
    limit: int = Query(100, ge=1, le=1000),
    service: BuildService = Depends(get_build_service),
) -> List[JobDetail]:
    return service.job_history(limit=limit)


@app.get("/jobs/{job_id}", response_model=JobDetail)
def get_job(job_id: str, service: BuildService = Depends(get_build_service)) -> JobDetail:
    job = service.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/admin/cache", response_model=List[CacheEntryInfo])
def cache_entries(service: BuildService = Depends(get_build_service)) -> List[CacheEntryInfo]:
    return service.cache_entries()


@app.post("/admin/cache/clear", response_model=CacheClearResult)
def clear_cache(service: BuildService = Depends(get_build_service)) -> CacheClearResult:
    return service.clear_cache()


@app.post("/admin/cleanup")
def cleanup(service: BuildService = Depends(get_build_service)) -> Dict[str, int]:
    return service.cleanup()


@app.post("/templates/parse", response_model=TemplateDescriptor)
async def parse_template(
    file: UploadFile = File(...),
    service: BuildService = Depends(get_build_service),
) -> TemplateDescriptor:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Template file must have a filename")
    if Path(file.filename).suffix.lower() not in allowed_template_extensions():
        raise HTTPException(status_code=400, detail="Only .tex templates are supported")

    data = await file.read()
    await file.close()
    return service.describe_template(data)
