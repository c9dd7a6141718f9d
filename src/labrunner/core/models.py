from __future__ import annotations
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import Classification, InternalError


class LanguageId(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    RUST = "rust"
    SWIFT = "swift"


class ExecutionState(str, Enum):
    """Caller-side view of a job; queued jobs are still idle."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class SandboxState(str, Enum):
    CREATED = "created"
    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    VIOLATED = "violated"
    SPAWN_FAILED = "spawn_failed"
    CLEANED = "cleaned"


@dataclass(frozen=True)
class TestCase:
    description: str
    assertion: str = ""
    expected_output: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    expected: Any = None

    __test__ = False  # not a pytest class


@dataclass(frozen=True)
class ExecutionRequest:
    code: str
    language: LanguageId
    test_cases: tuple[TestCase, ...] = ()


@dataclass
class TestResult:
    description: str
    passed: bool
    error: Optional[str] = None

    __test__ = False


@dataclass
class ExecutionResult:
    success: bool
    output: str
    error: Optional[str] = None
    classification: Optional[Classification] = None
    test_results: List[TestResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return bool(self.test_results) and all(t.passed for t in self.test_results)


@dataclass(frozen=True)
class Limits:
    cpu_seconds: int
    memory_bytes: int
    wall_timeout_seconds: float
    nofile: int
    nproc: int
    fsize_bytes: int
    memory_rlimit: str = "as"   # "as" | "data"


@dataclass(frozen=True)
class HarnessProgram:
    """Harness source plus what the parser needs to read its output back."""
    source: str
    filename: str
    nonce: str
    asserted: tuple[int, ...]       # indices that emit markers


@dataclass(frozen=True)
class Command:
    run: List[str]
    compile: Optional[List[str]] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class SandboxJob:
    job_id: str
    request: ExecutionRequest
    limits: Limits
    cancel_event: threading.Event = field(default_factory=threading.Event)
    workspace: Optional[Path] = None   # job root; learner cwd is workspace/"work"
    state: SandboxState = SandboxState.CREATED

    @property
    def workdir(self) -> Path:
        if self.workspace is None:
            raise InternalError(f"workspace not provisioned for job {self.job_id}")
        return self.workspace / "work"


@dataclass
class RawResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False
    violated: bool = False
    spawn_failed: bool = False
    cancelled: bool = False
    duration_s: float = 0.0
    reason: Optional[str] = None
