from __future__ import annotations
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from ..adapters import markers
from ..adapters.base import NOT_RUN, LanguageAdapter
from ..core.errors import Classification, PUBLIC_MESSAGES, format_error
from ..core.models import ExecutionResult, HarnessProgram, RawResult, TestCase, TestResult
from ..core.settings import Settings
from ..core.utils import scrub_paths, truncate

log = structlog.get_logger(__name__)


def failed_result(test_cases: Sequence[TestCase], kind: Classification,
                  message: Optional[str] = None, output: str = "") -> ExecutionResult:
    """Every test failed with one shared error."""
    error = format_error(kind, message)
    return ExecutionResult(
        success=False,
        output=output,
        error=error,
        classification=kind,
        test_results=[TestResult(tc.description, passed=False, error=error) for tc in test_cases],
    )


class ResultAssembler:
    """
    Turns a RawResult plus the parsed markers into the ExecutionResult
    callers see: classification, cleaned output, one TestResult per test.
    Raw stderr never leaves this class except as a scrubbed one-line summary
    or compiler diagnostics.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def classify(self, adapter: LanguageAdapter, raw: RawResult) -> Optional[Classification]:
        if raw.spawn_failed or adapter.is_unavailable(raw):
            return Classification.INTERNAL_ERROR
        if raw.cancelled:
            return Classification.CANCELLED
        if raw.timed_out:
            return Classification.TIMEOUT_ERROR
        if raw.violated or adapter.is_violation(raw):
            return Classification.SANDBOX_VIOLATION
        if adapter.is_compile_error(raw):
            return Classification.COMPILE_ERROR
        if raw.exit_code != 0:
            return Classification.RUNTIME_ERROR
        return None

    def clean_output(self, stdout: str, nonce: str) -> str:
        return truncate(markers.strip(stdout, nonce), self.settings.max_output_chars)

    def assemble(self, adapter: LanguageAdapter, raw: RawResult, program: HarnessProgram,
                 test_cases: Sequence[TestCase], parsed: List[TestResult],
                 workspace: Optional[Path] = None) -> ExecutionResult:
        kind = self.classify(adapter, raw)
        output = self.clean_output(raw.stdout, program.nonce)
        scrub = (workspace / "work", workspace) if workspace else ()

        if kind is Classification.COMPILE_ERROR:
            diag = truncate(scrub_paths(adapter.compile_diagnostics(raw), *scrub),
                            self.settings.max_diagnostic_chars)
            return failed_result(test_cases, kind, diag or None, output=output)

        if kind in (Classification.INTERNAL_ERROR, Classification.CANCELLED):
            log.warning("job_not_executed", classification=kind.value, reason=raw.reason)
            return failed_result(test_cases, kind, output=output)

        if kind is None:
            results = self._check_output(test_cases, parsed, output)
            return ExecutionResult(success=True, output=output, test_results=results)

        # the program ran but ended badly: keep the verdicts it reported
        if kind is Classification.RUNTIME_ERROR:
            summary = scrub_paths(adapter.summarize_error(raw.stderr), *scrub)
            error = format_error(kind, truncate(summary, self.settings.max_diagnostic_chars, "...")
                                 if summary else f"process exited with code {raw.exit_code}")
        else:
            error = format_error(kind, PUBLIC_MESSAGES[kind])

        results = []
        for tc, res in zip(test_cases, parsed):
            if res.passed and not tc.expected_output:
                results.append(res)
            elif not res.passed and res.error not in (NOT_RUN, None):
                # the harness reported this test's own failure
                results.append(res)
            else:
                results.append(TestResult(tc.description, passed=False, error=error))
        return ExecutionResult(success=False, output=output, error=error,
                               classification=kind, test_results=results)

    @staticmethod
    def _check_output(test_cases: Sequence[TestCase], parsed: List[TestResult],
                      output: str) -> List[TestResult]:
        results = []
        for tc, res in zip(test_cases, parsed):
            if res.passed and tc.expected_output and tc.expected_output.strip() not in output:
                res = TestResult(tc.description, passed=False,
                                 error=f"Expected output to contain: {tc.expected_output.strip()}")
            results.append(res)
        return results
