from __future__ import annotations
import threading
from collections import deque
from concurrent.futures import Future
from typing import Callable, Deque, List, Optional

import structlog

from ..core.errors import Classification, InternalError, Throttled
from ..core.models import ExecutionResult, ExecutionState, SandboxJob
from ..core.settings import Settings
from .assembler import failed_result

log = structlog.get_logger(__name__)

ExecuteFn = Callable[[SandboxJob], ExecutionResult]


class JobHandle:
    """Caller's side of one submitted job. Resolves exactly once."""

    def __init__(self, job: SandboxJob, scheduler: "ExecutionScheduler"):
        self.job = job
        self.future: Future = Future()
        # running from the Future's point of view: only the scheduler may resolve it
        self.future.set_running_or_notify_cancel()
        self.state = ExecutionState.IDLE
        self._scheduler = scheduler
        self._lock = threading.Lock()

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def cancel(self) -> bool:
        return self._scheduler.cancel(self)

    def result(self, timeout: Optional[float] = None) -> ExecutionResult:
        return self.future.result(timeout)

    def done(self) -> bool:
        return self.future.done()

    def _resolve(self, result: ExecutionResult) -> bool:
        with self._lock:
            if self.future.done():
                return False
            self.state = ExecutionState.ERROR if result.classification else ExecutionState.COMPLETE
            self.future.set_result(result)
            return True


class ExecutionScheduler:
    """
    Fixed pool of worker threads fed from a bounded FIFO queue.
    submit() never blocks: when every worker is busy and the queue is full
    it raises Throttled.
    """

    def __init__(self, settings: Settings, execute_fn: ExecuteFn,
                 on_start: Optional[Callable[[JobHandle], None]] = None,
                 on_done: Optional[Callable[[JobHandle, ExecutionResult], None]] = None):
        self.pool_size = settings.pool_size
        self.queue_size = settings.queue_size
        self._execute = execute_fn
        self._on_start = on_start
        self._on_done = on_done
        self._queue: Deque[JobHandle] = deque()
        self._running = 0
        self._closed = False
        self._cv = threading.Condition()
        self._workers: List[threading.Thread] = []
        for i in range(self.pool_size):
            t = threading.Thread(target=self._worker, name=f"labrunner-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)

    @property
    def capacity(self) -> int:
        return self.pool_size + self.queue_size

    def stats(self) -> dict:
        with self._cv:
            return {"running": self._running, "queued": len(self._queue),
                    "pool_size": self.pool_size, "queue_size": self.queue_size}

    def submit(self, job: SandboxJob) -> JobHandle:
        with self._cv:
            if self._closed:
                raise InternalError("scheduler is shut down")
            if self._running + len(self._queue) >= self.capacity:
                log.warning("job_throttled", job_id=job.job_id,
                            running=self._running, queued=len(self._queue))
                raise Throttled("execution capacity exhausted")
            handle = JobHandle(job, self)
            self._queue.append(handle)
            self._cv.notify()
        log.debug("job_queued", job_id=job.job_id)
        return handle

    def cancel(self, handle: JobHandle) -> bool:
        with self._cv:
            if handle in self._queue:
                self._queue.remove(handle)
                queued = True
            else:
                queued = False
        if queued:
            self._finish(handle, failed_result(handle.job.request.test_cases, Classification.CANCELLED))
            log.info("job_cancelled", job_id=handle.job_id, where="queue")
            return True
        if handle.done():
            return False
        handle.job.cancel_event.set()
        log.info("job_cancelled", job_id=handle.job_id, where="running")
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._cv:
            self._closed = True
            pending = list(self._queue)
            self._queue.clear()
            self._cv.notify_all()
        for handle in pending:
            self._finish(handle, failed_result(handle.job.request.test_cases, Classification.CANCELLED))
        if wait:
            for t in self._workers:
                t.join()

    # ---------- worker ----------

    def _next(self) -> Optional[JobHandle]:
        with self._cv:
            while not self._queue and not self._closed:
                self._cv.wait()
            if not self._queue:
                return None
            self._running += 1
            return self._queue.popleft()

    def _worker(self) -> None:
        while True:
            handle = self._next()
            if handle is None:
                return
            try:
                self._run_one(handle)
            finally:
                with self._cv:
                    self._running -= 1

    def _run_one(self, handle: JobHandle) -> None:
        handle.state = ExecutionState.RUNNING
        try:
            if self._on_start:
                self._on_start(handle)
            result = self._execute(handle.job)
        except Exception:
            log.exception("worker_execute_failed", job_id=handle.job_id)
            result = failed_result(handle.job.request.test_cases, Classification.INTERNAL_ERROR)
        self._finish(handle, result)

    def _finish(self, handle: JobHandle, result: ExecutionResult) -> None:
        if not handle._resolve(result):
            return
        if self._on_done:
            try:
                self._on_done(handle, result)
            except Exception:
                log.exception("job_done_callback_failed", job_id=handle.job_id)
