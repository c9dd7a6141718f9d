from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from ..core.errors import Classification, InvalidRequest, JobNotFound, Throttled, format_error
from ..core.models import TestCase
from ..core.settings import Settings, load_settings
from ..isolation.isolation import probe_capabilities
from ..logging import setup_logging
from ..services.assembler import failed_result
from ..services.job_service import JobService
from .schemas import (CancelOut, ExecuteRequest, ExecuteResponse, JobAccepted,
                      JobStatusOut, LanguageOut)

log = structlog.get_logger(__name__)

_STATUS = {
    Classification.INVALID_REQUEST: 400,
    Classification.THROTTLED: 429,
}


def _failure(test_cases: List[TestCase], kind: Classification, message: Optional[str] = None,
             status_code: Optional[int] = None) -> JSONResponse:
    body = ExecuteResponse.from_result(failed_result(test_cases, kind, message))
    return JSONResponse(status_code=status_code or _STATUS.get(kind, 200),
                        content=body.model_dump(by_alias=True, exclude_none=True))


def _raw_test_cases(body: Any) -> List[TestCase]:
    """Best-effort test list from a body that failed validation."""
    if not isinstance(body, dict):
        return []
    raw = body.get("testCases", body.get("test_cases"))
    if not isinstance(raw, list):
        return []
    out = []
    for item in raw:
        desc = item.get("description") if isinstance(item, dict) else None
        out.append(TestCase(description=desc if isinstance(desc, str) else ""))
    return out


def create_app(settings: Optional[Settings] = None, service: Optional[JobService] = None) -> FastAPI:
    s = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        svc = service or JobService(s)
        app.state.service = svc
        log.info("service_started", pool_size=s.pool_size, queue_size=s.queue_size,
                 languages=[lang.value for lang in s.supported_languages()])
        try:
            yield
        finally:
            svc.shutdown()
            log.info("service_stopped")

    app = FastAPI(title="labrunner", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def svc_of(request: Request) -> JobService:
        return request.app.state.service

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg', 'invalid request')}" if where else first.get("msg")
        log.info("request_invalid", path=request.url.path, errors=len(errors))
        return _failure(_raw_test_cases(exc.body), Classification.INVALID_REQUEST, message,
                        status_code=422)

    @app.get("/")
    async def root():
        return {"message": "labrunner execution service"}

    @app.get("/health")
    def health(request: Request):
        return {"ok": True, "scheduler": svc_of(request).scheduler.stats()}

    @app.get("/api/languages", response_model=List[LanguageOut])
    def languages(request: Request):
        return svc_of(request).languages()

    @app.get("/debug/isolation")
    def debug_isolation(request: Request):
        return probe_capabilities(svc_of(request).engine.runner.pipeline)

    @app.post("/api/execute", response_model=ExecuteResponse, response_model_exclude_none=True)
    async def execute(req: ExecuteRequest, request: Request):
        svc = svc_of(request)
        test_cases = [tc.to_domain() for tc in req.test_cases]
        try:
            # submit validates and writes the job record synchronously
            handle = await run_in_threadpool(svc.submit, req.to_domain())
        except (InvalidRequest, Throttled) as e:
            return _failure(test_cases, e.classification, e.message)
        try:
            result = await asyncio.wrap_future(handle.future)
        except asyncio.CancelledError:
            # client went away; stop the sandbox too
            handle.cancel()
            raise
        return ExecuteResponse.from_result(result)

    @app.post("/api/jobs", status_code=202, response_model=JobAccepted)
    def submit_job(req: ExecuteRequest, request: Request):
        test_cases = [tc.to_domain() for tc in req.test_cases]
        try:
            handle = svc_of(request).submit(req.to_domain())
        except (InvalidRequest, Throttled) as e:
            return _failure(test_cases, e.classification, e.message)
        return JobAccepted(job_id=handle.job_id, state=handle.state.value)

    @app.get("/api/jobs/{job_id}", response_model=JobStatusOut, response_model_exclude_none=True)
    def job_status(job_id: str, request: Request):
        try:
            state, result = svc_of(request).status(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=format_error(Classification.INVALID_REQUEST,
                                                                     "job not found"))
        return JobStatusOut(job_id=job_id, state=state.value,
                            result=ExecuteResponse.from_result(result) if result else None)

    @app.delete("/api/jobs/{job_id}", response_model=CancelOut)
    def cancel_job(job_id: str, request: Request):
        try:
            cancelled = svc_of(request).cancel(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=format_error(Classification.INVALID_REQUEST,
                                                                     "job not found"))
        return CancelOut(job_id=job_id, cancelled=cancelled)

    return app


def serve() -> None:
    import uvicorn

    s = load_settings()
    uvicorn.run(create_app(s), host=s.host, port=s.port)


app = create_app()
