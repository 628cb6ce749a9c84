from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.models import JobStatus


class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --------- Requests ---------

class LimitOverrides(_Camel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    cpu_ms: Optional[int] = Field(None, alias="cpuMs")
    memory_mb: Optional[int] = Field(None, alias="memoryMb")
    wall_ms: Optional[int] = Field(None, alias="wallMs")


class SubmitReq(_Camel):
    language: str
    source: str
    stdin: Optional[str] = None
    limits: Optional[LimitOverrides] = None
    callback_url: Optional[str] = Field(None, alias="callbackUrl")


# --------- Responses ---------

class SubmitRes(_Camel):
    job_id: str = Field(alias="jobId")
    state: str


class JobRes(_Camel):
    job_id: str = Field(alias="jobId")
    language: str
    state: str
    phase: str
    classification: Optional[str] = None
    exit_code: Optional[int] = Field(None, alias="exitCode")
    signal: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    duration_ms: Optional[float] = Field(None, alias="durationMs")
    peak_memory_bytes: Optional[int] = Field(None, alias="peakMemoryBytes")
    cpu_ms: Optional[float] = Field(None, alias="cpuMs")
    error: Optional[str] = None
    worker: Optional[int] = None
    submitted_at: Optional[str] = Field(None, alias="submittedAt")
    started_at: Optional[str] = Field(None, alias="startedAt")
    finished_at: Optional[str] = Field(None, alias="finishedAt")

    @classmethod
    def from_status(cls, st: JobStatus) -> "JobRes":
        return cls.model_validate(st.as_dict())


class CancelRes(_Camel):
    job_id: str = Field(alias="jobId")
    cancelled: bool


class LanguageRes(BaseModel):
    name: str
    aliases: List[str]
    compiled: bool
    source_file: str


class HealthRes(BaseModel):
    ok: bool
    stats: Dict[str, object]
    capabilities: Dict[str, object]


class ErrorRes(BaseModel):
    error: str
    detail: str
    retryable: bool = False
