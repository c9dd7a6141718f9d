from __future__ import annotations
import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import structlog

from ..core.errors import JobNotFound, Throttled
from ..core.models import ExecutionRequest, ExecutionResult, ExecutionState
from ..core.settings import Settings
from ..core.utils import new_job_id
from .engine import ExecutionEngine
from .job_store import JobRecord, JobStatus, JobStore
from .scheduler import ExecutionScheduler, JobHandle

log = structlog.get_logger(__name__)

# finished handles kept in memory for polling; older ones fall back to the job record
MAX_TRACKED_HANDLES = 1024

_RECORD_STATES = {
    JobStatus.QUEUED: ExecutionState.IDLE,
    JobStatus.RUNNING: ExecutionState.RUNNING,
    JobStatus.COMPLETE: ExecutionState.COMPLETE,
    JobStatus.ERROR: ExecutionState.ERROR,
    JobStatus.THROTTLED: ExecutionState.ERROR,
}


class JobService:
    """
    Facade the API talks to: validation, job records, scheduling, and the
    handle registry used for polling and cancellation.
    """

    def __init__(self, settings: Settings, engine: Optional[ExecutionEngine] = None,
                 store: Optional[JobStore] = None):
        self.s = settings
        self.engine = engine or ExecutionEngine(settings)
        self.store = store or JobStore(settings.db_url)
        self.scheduler = ExecutionScheduler(
            settings, self.engine.execute,
            on_start=self._on_start, on_done=self._on_done,
        )
        self._handles: "OrderedDict[str, JobHandle]" = OrderedDict()
        self._lock = threading.Lock()

    # ---------- submit ----------

    def submit(self, request: ExecutionRequest) -> JobHandle:
        self.engine.validate(request)
        job = self.engine.new_job(new_job_id(), request)
        rec = JobRecord(id=job.job_id, language=request.language.value,
                        tests_total=len(request.test_cases))
        self.store.add(rec)
        try:
            handle = self.scheduler.submit(job)
        except Throttled:
            rec.status = JobStatus.THROTTLED
            rec.classification = Throttled.classification.value
            self.store.update(rec)
            raise
        self._track(handle)
        log.info("job_submitted", job_id=job.job_id, language=request.language.value,
                 tests=len(request.test_cases))
        return handle

    def run(self, request: ExecutionRequest, timeout: Optional[float] = None) -> ExecutionResult:
        return self.submit(request).result(timeout)

    # ---------- query / cancel ----------

    def handle(self, job_id: str) -> Optional[JobHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def status(self, job_id: str) -> Tuple[ExecutionState, Optional[ExecutionResult]]:
        handle = self.handle(job_id)
        if handle is not None:
            return handle.state, (handle.result() if handle.done() else None)
        rec = self.store.get(job_id)
        if rec is None:
            raise JobNotFound(f"unknown job: {job_id}")
        return _RECORD_STATES[JobStatus(rec.status)], None

    def cancel(self, job_id: str) -> bool:
        handle = self.handle(job_id)
        if handle is not None:
            return handle.cancel()
        if self.store.get(job_id) is None:
            raise JobNotFound(f"unknown job: {job_id}")
        return False

    def languages(self) -> List[Dict]:
        out = []
        for lang in self.engine.registry.languages():
            limits = self.s.limits_for(lang)
            out.append({
                "id": lang.value,
                "compiled": self.engine.registry.get(lang).compiled,
                "timeout_seconds": limits.wall_timeout_seconds,
                "memory_bytes": limits.memory_bytes,
                "cpu_seconds": limits.cpu_seconds,
            })
        return out

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    # ---------- internals ----------

    def _track(self, handle: JobHandle) -> None:
        with self._lock:
            self._handles[handle.job_id] = handle
            while len(self._handles) > MAX_TRACKED_HANDLES:
                oldest_id, oldest = next(iter(self._handles.items()))
                if not oldest.done():
                    break
                del self._handles[oldest_id]

    def _on_start(self, handle: JobHandle) -> None:
        self.store.mark_running(handle.job_id)

    def _on_done(self, handle: JobHandle, result: ExecutionResult) -> None:
        self.store.finalize(
            handle.job_id,
            classification=result.classification.value if result.classification else None,
            tests_total=len(result.test_results),
            tests_passed=sum(1 for t in result.test_results if t.passed),
        )
