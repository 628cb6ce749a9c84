from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse

from ..core.errors import (
    DispatcherClosed, InvalidInput, JobNotFound, QueueSaturated, SandboxError, UnsupportedLanguage,
)
from ..services.dispatcher import Dispatcher
from .schemas import CancelRes, ErrorRes, HealthRes, JobRes, LanguageRes, SubmitReq, SubmitRes

_STATUS = {
    UnsupportedLanguage: 400,
    InvalidInput: 422,
    QueueSaturated: 429,
    JobNotFound: 404,
    DispatcherClosed: 503,
}


_ERRORS = {code: {"model": ErrorRes} for code in (400, 404, 422, 429, 500, 503)}


def _http_status(exc: SandboxError) -> int:
    for cls, code in _STATUS.items():
        if isinstance(exc, cls):
            return code
    return 500


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    dsp = dispatcher or Dispatcher()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        dsp.start()
        yield
        dsp.shutdown(wait=True, timeout=30)

    app = FastAPI(title="Sandbox API", lifespan=lifespan)
    app.state.dispatcher = dsp

    @app.exception_handler(SandboxError)
    async def _sandbox_error(request: Request, exc: SandboxError):
        headers = {"Retry-After": "1"} if exc.retryable and isinstance(exc, QueueSaturated) else None
        return JSONResponse(
            status_code=_http_status(exc),
            content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
            headers=headers,
        )

    # --------- Endpoints ---------

    @app.get("/")
    def root():
        return {"message": "Welcome to the sandbox API"}

    @app.get("/health", response_model=HealthRes)
    def health():
        return HealthRes(ok=True, stats=dsp.stats(), capabilities=dsp.capabilities())

    @app.get("/languages", response_model=List[LanguageRes])
    def languages():
        return [
            LanguageRes(name=a.name, aliases=list(a.aliases), compiled=a.compiled, source_file=a.source_file)
            for a in dsp.languages()
        ]

    @app.post("/jobs", response_model=Union[JobRes, SubmitRes], status_code=202, responses=_ERRORS)
    def submit(req: SubmitReq, response: Response,
               wait: bool = Query(False, description="block until the job is terminal"),
               timeout: Optional[float] = Query(None, gt=0)):
        limits = req.limits.model_dump(exclude_none=True) if req.limits else None
        job_id = dsp.submit(req.language, req.source, stdin=req.stdin, limits=limits,
                            callback_url=req.callback_url)
        if wait:
            st = dsp.wait(job_id, timeout)
            if st.terminal:
                response.status_code = 200
            return JobRes.from_status(st)
        return SubmitRes(job_id=job_id, state="QUEUED")

    @app.get("/jobs/{job_id}", response_model=JobRes, responses=_ERRORS)
    def get_job(job_id: str):
        return JobRes.from_status(dsp.status(job_id))

    @app.post("/jobs/{job_id}/cancel", response_model=CancelRes, responses=_ERRORS)
    def cancel_job(job_id: str):
        return CancelRes(job_id=job_id, cancelled=dsp.cancel(job_id))

    return app
