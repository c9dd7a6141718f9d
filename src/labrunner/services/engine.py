from __future__ import annotations
from typing import Optional

import structlog

from ..adapters.registry import AdapterRegistry
from ..core.errors import Classification, InvalidRequest
from ..core.models import ExecutionRequest, ExecutionResult, SandboxJob
from ..core.settings import Settings
from ..core.utils import new_nonce
from ..isolation.isolation import HIDDEN_PATHS, IsolationPipeline
from ..runner.sandbox_runner import SandboxRunner
from .assembler import ResultAssembler, failed_result
from .storage import LocalFSStorage

log = structlog.get_logger(__name__)


class ExecutionEngine:
    """adapter.build -> runner.run -> adapter.parse -> assembler, for one job."""

    def __init__(self, settings: Settings, runner: Optional[SandboxRunner] = None,
                 registry: Optional[AdapterRegistry] = None):
        self.s = settings
        self.registry = registry or AdapterRegistry(settings)
        storage = LocalFSStorage(settings.jobs_dir)
        self.runner = runner or SandboxRunner(
            storage,
            IsolationPipeline(settings.iso_strategy, settings.allow_network,
                              settings.require_isolation, settings.python_bin,
                              hidden_paths=(*HIDDEN_PATHS, str(storage.jobs_dir))),
            poll_interval_s=settings.poll_interval_s,
            kill_grace_s=settings.kill_grace_s,
        )
        self.assembler = ResultAssembler(settings)

    def validate(self, request: ExecutionRequest) -> None:
        """Reject a request before any process is spawned."""
        self.registry.get(request.language)
        if len(request.test_cases) > self.s.max_test_cases:
            raise InvalidRequest(f"at most {self.s.max_test_cases} test cases are allowed")
        if len(request.code.encode("utf-8")) > self.s.max_code_bytes:
            raise InvalidRequest(f"code exceeds {self.s.max_code_bytes} bytes")
        for tc in request.test_cases:
            if not tc.description or not tc.description.strip():
                raise InvalidRequest("every test case needs a description")

    def new_job(self, job_id: str, request: ExecutionRequest) -> SandboxJob:
        return SandboxJob(job_id=job_id, request=request,
                          limits=self.s.limits_for(request.language))

    def execute(self, job: SandboxJob) -> ExecutionResult:
        req = job.request
        log_ = log.bind(job_id=job.job_id, language=req.language.value)
        try:
            adapter = self.registry.get(req.language)
            program = adapter.build(req.code, req.test_cases, new_nonce())
            raw = self.runner.run(job, program, adapter)
            parsed = adapter.parse(raw.stdout, raw.stderr, raw.exit_code, program, req.test_cases)
            result = self.assembler.assemble(adapter, raw, program, req.test_cases, parsed,
                                             workspace=job.workspace)
        except InvalidRequest as e:
            log_.info("job_rejected", error=e.message)
            return failed_result(req.test_cases, e.classification, e.message)
        except Exception:
            log_.exception("job_internal_error")
            return failed_result(req.test_cases, Classification.INTERNAL_ERROR)

        log_.info(
            "job_finished",
            classification=result.classification.value if result.classification else None,
            success=result.success,
            tests_passed=sum(1 for t in result.test_results if t.passed),
            tests_total=len(result.test_results),
            duration_s=round(raw.duration_s, 3),
        )
        return result
