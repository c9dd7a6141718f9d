from __future__ import annotations
import json
import re
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from ..core.models import Command, HarnessProgram, LanguageId, RawResult, TestCase, TestResult
from ..core.settings import LanguageProfile
from . import markers

NOT_RUN = "execution terminated before this test ran"
NO_ASSERTION = "No assertion defined"

Check = Tuple[int, str]   # (test index, assertion source)


class LanguageAdapter:
    """
    One supported language: wraps learner code in a harness, says how to
    compile/run it, and reads the harness markers back.
    """

    language: LanguageId
    source_name: str
    compiled: bool = False
    # stderr lines that mean a resource ceiling was hit
    violation_patterns: Sequence[str] = ()
    # stderr lines that mean the toolchain itself cannot run this language
    unavailable_patterns: Sequence[str] = ()
    # first stderr line matching this is the short runtime error message
    error_line_pattern: str = r"^\S*(Error|Exception)\b.*$"
    # harness lines placed before the learner code
    line_offset: int = 0

    def __init__(self, profile: LanguageProfile):
        self.profile = profile

    # ---------- build ----------

    def build(self, code: str, test_cases: Sequence[TestCase], nonce: str) -> HarnessProgram:
        checks: List[Check] = []
        for idx, tc in enumerate(test_cases):
            assertion = self.resolve_assertion(code, tc)
            if assertion:
                checks.append((idx, assertion))
        source = self.render(code, checks, nonce)
        return HarnessProgram(
            source=source,
            filename=self.source_name,
            nonce=nonce,
            asserted=tuple(idx for idx, _ in checks),
        )

    def resolve_assertion(self, code: str, tc: TestCase) -> str:
        if tc.assertion and tc.assertion.strip():
            return tc.assertion.strip()
        if tc.input is not None and tc.expected is not None:
            return self.generate_assertion(code, tc.input, tc.expected) or ""
        return ""

    def generate_assertion(self, code: str, args: dict, expected: Any) -> Optional[str]:
        return None

    def render(self, code: str, checks: List[Check], nonce: str) -> str:
        raise NotImplementedError

    # ---------- invoke ----------

    def invoke(self, workspace: Path) -> Command:
        raise NotImplementedError

    # ---------- parse ----------

    def parse(self, stdout: str, stderr: str, exit_code: Optional[int],
              program: HarnessProgram, test_cases: Sequence[TestCase]) -> List[TestResult]:
        found = markers.collect(stdout, program.nonce)
        asserted = set(program.asserted)
        results: List[TestResult] = []
        for idx, tc in enumerate(test_cases):
            if idx not in asserted:
                # output-only tests hold vacuously here; the assembler checks their output
                if tc.expected_output:
                    results.append(TestResult(tc.description, passed=True))
                else:
                    results.append(TestResult(tc.description, passed=False, error=NO_ASSERTION))
                continue
            marker = found.get(idx)
            if marker is None:
                results.append(TestResult(tc.description, passed=False, error=NOT_RUN))
            elif marker.passed:
                results.append(TestResult(tc.description, passed=True))
            else:
                results.append(TestResult(tc.description, passed=False,
                                          error=marker.message or "assertion failed"))
        return results

    # ---------- classification ----------

    def is_compile_error(self, raw: RawResult) -> bool:
        return raw.reason == "compile_failed"

    def is_violation(self, raw: RawResult) -> bool:
        if raw.exit_code == 0:
            return False
        return any(re.search(p, raw.stderr, re.MULTILINE) for p in self.violation_patterns)

    def is_unavailable(self, raw: RawResult) -> bool:
        return any(re.search(p, raw.stderr, re.MULTILINE) for p in self.unavailable_patterns)

    def summarize_error(self, stderr: str) -> str:
        m = re.search(self.error_line_pattern, stderr, re.MULTILINE)
        if m:
            return m.group(0).strip()
        lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
        return lines[-1] if lines else ""

    def compile_diagnostics(self, raw: RawResult) -> str:
        text = (raw.stderr or raw.stdout).strip()
        if not self.line_offset:
            return text
        # report learner line numbers, not harness ones
        pattern = re.compile(re.escape(self.source_name) + r":(\d+)")
        return pattern.sub(
            lambda m: f"{self.source_name}:{max(1, int(m.group(1)) - self.line_offset)}", text)


def js_literal(value: Any) -> str:
    """JSON literal usable as JavaScript and TypeScript source."""
    return json.dumps(value)


def first_function(code: str, pattern: str) -> Optional[str]:
    m = re.search(pattern, code, re.MULTILINE)
    if not m:
        return None
    return next((g for g in m.groups() if g), None)
