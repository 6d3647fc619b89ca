from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BuildKind(str, Enum):
    CONVERT = "convert"
    COMPILE_COVER = "compile_cover"
    IMPOSE = "impose"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)


class ConversionMethod(str, Enum):
    PANDOC_DIRECT = "pandoc_direct"
    OBSIDIAN_EXPORT = "obsidian_export"


class TemplateSelection(BaseModel):
    """Templates and values chosen for one build; camelCase aliases match the web client."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    layout: str = ""
    cover: str = ""
    impose: str = ""
    boolean_options: Dict[str, bool] = Field(default_factory=dict, alias="booleanOptions")
    metadata: Dict[str, str] = Field(default_factory=dict)
    paper_thickness: float = Field(0.0, ge=0, alias="paperThickness")
    layout_is_user_template: bool = Field(False, alias="isUserTemplate")
    cover_is_user_template: bool = Field(False, alias="coverIsUserTemplate")
    impose_is_user_template: bool = Field(False, alias="imposeIsUserTemplate")
    user_id: Optional[str] = Field(None, alias="userId")
    conversion_method: ConversionMethod = Field(ConversionMethod.PANDOC_DIRECT, alias="conversionMethod")


class BuildRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: BuildKind
    source_content: bytes
    template: TemplateSelection = Field(default_factory=TemplateSelection)
    requester_id: Optional[str] = None


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref: str
    size_bytes: int
    produced_by_job_id: str
    created_at: datetime


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class JobSummary(BaseModel):
    id: str
    fingerprint: str
    kind: BuildKind
    state: JobState
    attempt: int
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    requester_id: Optional[str] = None
    waiters: int = 0
    artifact_ref: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class JobDetail(JobSummary):
    template: TemplateSelection
    events: List[JobEvent]
    retried_by: Optional[str] = None


class SubmitPayload(BaseModel):
    content: str = ""
    template: TemplateSelection = Field(default_factory=TemplateSelection)
    requester_id: Optional[str] = None


class BuildPayload(SubmitPayload):
    kind: BuildKind


class SubmitResponse(BaseModel):
    handle: str
    fingerprint: str
    state: JobState
    cached: bool = False


class StatusResponse(BaseModel):
    handle: str
    state: JobState
    progress: JobState
    job_id: Optional[str] = None
    attempt: Optional[int] = None
    artifact_ref: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class CancelResponse(BaseModel):
    handle: str
    applied: bool


class DownloadLink(BaseModel):
    handle: str
    url: str
    expires_in: int


class CacheEntryInfo(BaseModel):
    fingerprint: str
    artifact_ref: str
    size_bytes: int
    created_at: datetime
    last_accessed_at: datetime


class CacheClearResult(BaseModel):
    evicted_entries: int
    deleted_artifacts: int


class TemplateOption(BaseModel):
    name: str
    type: str
    default: Optional[bool] = None


class TemplateDescriptor(BaseModel):
    title: str = ""
    description: str = ""
    version: str = ""
    author: str = ""
    booleans: List[TemplateOption] = Field(default_factory=list)
    variables: List[TemplateOption] = Field(default_factory=list)


class ConfigMetadata(BaseModel):
    defaults: Dict[str, Any]
    build_kinds: List[str]
    metadata_fields: List[str]
    notes: Dict[str, str]
