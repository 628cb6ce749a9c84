from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from ..core.models import RESULTLESS_STATES, ExecutionResult, Job, JobState, JobStatus


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    language: str
    state: JobState
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    worker: Optional[int] = None
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_ms: Optional[float] = None
    peak_memory_bytes: Optional[int] = None
    cpu_ms: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        rec = cls(
            id=job.job_id,
            language=job.language,
            state=job.state,
            submitted_at=job.submitted_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            worker=job.worker,
            error=job.error,
        )
        r = job.result
        if r is not None:
            rec.exit_code = r.exit_code
            rec.signal = r.signal
            rec.stdout = r.stdout
            rec.stderr = r.stderr
            rec.stdout_truncated = r.stdout_truncated
            rec.stderr_truncated = r.stderr_truncated
            rec.duration_ms = r.duration_ms
            rec.peak_memory_bytes = r.peak_memory_bytes
            rec.cpu_ms = r.cpu_ms
        return rec

    def to_status(self) -> JobStatus:
        result = None
        state = JobState(self.state)
        if state.terminal and state not in RESULTLESS_STATES:
            result = ExecutionResult(
                job_id=self.id,
                classification=state,
                exit_code=self.exit_code,
                signal=self.signal,
                stdout=self.stdout,
                stderr=self.stderr,
                stdout_truncated=self.stdout_truncated,
                stderr_truncated=self.stderr_truncated,
                duration_ms=self.duration_ms or 0.0,
                peak_memory_bytes=self.peak_memory_bytes,
                cpu_ms=self.cpu_ms,
            )
        return JobStatus(
            job_id=self.id,
            language=self.language,
            state=state,
            submitted_at=_aware(self.submitted_at),
            started_at=_aware(self.started_at),
            finished_at=_aware(self.finished_at),
            worker=self.worker,
            result=result,
            error=self.error,
        )


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything is stored in UTC
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class JobStore:
    """Durable ledger of admitted jobs and their final outcome."""

    def __init__(self, url="sqlite:///./sandbox.db"):
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        SQLModel.metadata.create_all(self.engine)
        # Session factory with expire_on_commit=False so records stay readable
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def save(self, job: Job) -> None:
        with self.SessionLocal() as s:
            s.merge(JobRecord.from_job(job))
            s.commit()

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self.SessionLocal() as s:
            return s.get(JobRecord, job_id)

    def status(self, job_id: str) -> Optional[JobStatus]:
        rec = self.get(job_id)
        return rec.to_status() if rec else None

    def close(self) -> None:
        self.engine.dispose()
