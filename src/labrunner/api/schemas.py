from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.errors import UnsupportedLanguage
from ..core.models import ExecutionRequest, ExecutionResult, LanguageId, TestCase


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --------- requests ---------

class TestCaseIn(CamelModel):
    description: str
    assertion: str = ""
    expected_output: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    expected: Any = None

    __test__ = False

    def to_domain(self) -> TestCase:
        return TestCase(
            description=self.description,
            assertion=self.assertion,
            expected_output=self.expected_output,
            input=self.input,
            expected=self.expected,
        )


class ExecuteRequest(CamelModel):
    code: str
    language: str
    test_cases: List[TestCaseIn] = Field(default_factory=list)

    def to_domain(self) -> ExecutionRequest:
        try:
            language = LanguageId(self.language.strip().lower())
        except ValueError:
            raise UnsupportedLanguage(f"unsupported language: {self.language}") from None
        return ExecutionRequest(
            code=self.code,
            language=language,
            test_cases=tuple(tc.to_domain() for tc in self.test_cases),
        )


# --------- responses ---------

class TestResultOut(CamelModel):
    description: str
    passed: bool
    error: Optional[str] = None

    __test__ = False


class ExecuteResponse(CamelModel):
    success: bool
    output: str = ""
    error: Optional[str] = None
    classification: Optional[str] = None
    test_results: List[TestResultOut] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        return cls(
            success=result.success,
            output=result.output,
            error=result.error,
            classification=result.classification.value if result.classification else None,
            test_results=[TestResultOut(description=t.description, passed=t.passed, error=t.error)
                          for t in result.test_results],
        )


class JobAccepted(CamelModel):
    job_id: str
    state: str


class JobStatusOut(CamelModel):
    job_id: str
    state: str
    result: Optional[ExecuteResponse] = None


class CancelOut(CamelModel):
    job_id: str
    cancelled: bool


class LanguageOut(CamelModel):
    id: str
    compiled: bool
    timeout_seconds: float
    memory_bytes: int
    cpu_seconds: int
