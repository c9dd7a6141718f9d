"""End-to-end runs through the real sandbox runner (skipped when a toolchain is missing)."""
import json
import shutil
import subprocess
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from labrunner.core.errors import Classification, InvalidRequest
from labrunner.core.models import ExecutionRequest, LanguageId, SandboxState, TestCase
from labrunner.core.settings import LimitsConfig
from labrunner.core.utils import new_job_id
from labrunner.isolation.namespaces import PACKAGE_ROOT
from labrunner.services.engine import ExecutionEngine
from labrunner.services.storage import LocalFSStorage


def _node_major() -> int:
    node = shutil.which("node")
    if not node:
        return 0
    out = subprocess.run([node, "--version"], capture_output=True, text=True).stdout
    try:
        return int(out.strip().lstrip("v").split(".")[0])
    except ValueError:
        return 0


requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")
requires_rustc = pytest.mark.skipif(shutil.which("rustc") is None, reason="rustc not installed")
requires_type_stripping = pytest.mark.skipif(_node_major() < 23,
                                             reason="node older than 23")

ADD_PY = "def add(a, b):\n    return a + b\n"
ADD_JS = "function add(a, b) {\n  return a + b;\n}\n"
SHARED_PATH = "/tmp/labrunner-shared.txt"


@pytest.fixture
def engine(settings) -> ExecutionEngine:
    return ExecutionEngine(settings)


def run(engine: ExecutionEngine, language: str, code: str, *tests: TestCase):
    req = ExecutionRequest(code=code, language=LanguageId(language), test_cases=tuple(tests))
    engine.validate(req)
    job = engine.new_job(new_job_id(), req)
    result = engine.execute(job)
    return job, result


class TestPython:
    def test_passing_assertion(self, engine) -> None:
        job, result = run(engine, "python", ADD_PY + "print('ready')\n",
                          TestCase("adds", assertion="add(2, 3) == 5"))

        assert result.success is True
        assert result.output == "ready\n"
        assert result.test_results[0].passed is True
        assert job.state is SandboxState.CLEANED
        assert not job.workspace.exists()

    def test_mixed_results_keep_order(self, engine) -> None:
        _, result = run(
            engine, "python", ADD_PY,
            TestCase("right", assertion="add(1, 1) == 2"),
            TestCase("wrong", assertion="add(1, 1) == 3"),
            TestCase("raises", assertion="add(1, None)"),
            TestCase("statement", assertion="assert add(0, 0) == 0"),
            TestCase("not a bool", assertion="add(1, 1)"),
        )

        assert [t.description for t in result.test_results] == \
            ["right", "wrong", "raises", "statement", "not a bool"]
        assert [t.passed for t in result.test_results] == [True, False, False, True, False]
        assert result.test_results[2].error.startswith("TypeError")
        assert "got 2" in result.test_results[4].error

    def test_generated_assertion(self, engine) -> None:
        _, result = run(engine, "python", ADD_PY,
                        TestCase("adds", input={"a": 2, "b": 3}, expected=5))

        assert result.test_results[0].passed is True

    def test_syntax_error_is_compile_error(self, engine) -> None:
        _, result = run(engine, "python", "def broken(:\n    pass\n",
                        TestCase("a", assertion="True"), TestCase("b", assertion="True"))

        assert result.success is False
        assert result.classification is Classification.COMPILE_ERROR
        assert result.error.startswith("CompileError: ")
        assert all(not t.passed for t in result.test_results)

    def test_definition_error_fails_every_test(self, engine) -> None:
        _, result = run(engine, "python", "x = undefined_name\n",
                        TestCase("a", assertion="True"), TestCase("b", assertion="True"))

        assert result.classification is Classification.RUNTIME_ERROR
        assert "NameError" in result.error
        assert all("NameError" in t.error for t in result.test_results)

    def test_expected_output(self, engine) -> None:
        _, result = run(engine, "python", "print('Hello, World!')\n",
                        TestCase("greets", expected_output="Hello, World!"),
                        TestCase("shouts", expected_output="HELLO"))

        assert [t.passed for t in result.test_results] == [True, False]

    def test_infinite_loop_times_out(self, short_timeout_settings) -> None:
        engine = ExecutionEngine(short_timeout_settings)
        start = time.monotonic()

        _, result = run(engine, "python", "while True:\n    pass\n", TestCase("a", assertion="True"))

        assert time.monotonic() - start < short_timeout_settings.limits.wall_timeout_seconds + 3
        assert result.classification is Classification.TIMEOUT_ERROR
        assert result.error.startswith("TimeoutError")
        assert result.test_results[0].passed is False

    def test_busy_loop_under_shipped_limits_is_timeout(self, settings) -> None:
        engine = ExecutionEngine(settings.model_copy(update={"limits": LimitsConfig()}))

        _, result = run(engine, "python", "while True:\n    pass\n", TestCase("a", assertion="True"))

        assert result.classification is Classification.TIMEOUT_ERROR
        assert result.error.startswith("TimeoutError")

    def test_memory_ceiling_is_violation(self, settings) -> None:
        limits = LimitsConfig(cpu_seconds=8, wall_timeout_seconds=5.0, memory_bytes=64 * 1024 * 1024)
        engine = ExecutionEngine(settings.model_copy(update={"limits": limits}))

        _, result = run(engine, "python", "data = bytearray(1 << 30)\n", TestCase("a", assertion="True"))

        assert result.classification is Classification.SANDBOX_VIOLATION
        assert result.error.startswith("SandboxViolation")
        assert result.test_results[0].passed is False

    def test_cpu_ceiling_below_wall_clock_is_violation(self, settings) -> None:
        limits = LimitsConfig(cpu_seconds=1, wall_timeout_seconds=5.0)
        engine = ExecutionEngine(settings.model_copy(update={"limits": limits}))
        start = time.monotonic()

        _, result = run(engine, "python", "while True:\n    pass\n", TestCase("a", assertion="True"))

        assert result.classification is Classification.SANDBOX_VIOLATION
        assert time.monotonic() - start < limits.wall_timeout_seconds

    def test_output_flood_hits_file_size_ceiling(self, settings) -> None:
        limits = LimitsConfig(cpu_seconds=8, wall_timeout_seconds=5.0, fsize_bytes=64 * 1024)
        engine = ExecutionEngine(settings.model_copy(update={"limits": limits,
                                                             "max_output_chars": 1000}))

        _, result = run(engine, "python", "while True:\n    print('x' * 100)\n",
                        TestCase("a", assertion="True"))

        assert result.classification is Classification.SANDBOX_VIOLATION
        assert result.output.endswith("... (output truncated)")
        assert len(result.output) < 1100

    @pytest.mark.skipif(shutil.which("pgrep") is None, reason="pgrep not installed")
    def test_child_processes_die_with_the_job(self, short_timeout_settings) -> None:
        engine = ExecutionEngine(short_timeout_settings)
        code = (
            "import subprocess, sys\n"
            "subprocess.Popen(['sleep', '30'])\n"
            "while True:\n    pass\n"
        )

        _, result = run(engine, "python", code, TestCase("a", assertion="True"))

        assert result.classification is Classification.TIMEOUT_ERROR
        out = subprocess.run(["pgrep", "-f", "sleep 30"], capture_output=True, text=True).stdout
        assert out.strip() == ""

    def test_network_blocked(self, engine) -> None:
        code = "import socket\ndef connect():\n    socket.socket().connect(('127.0.0.1', 9))\n"

        _, result = run(engine, "python", code, TestCase("net", assertion="connect()"))

        assert result.test_results[0].passed is False
        assert "PermissionError" in result.test_results[0].error

    def test_writes_outside_workspace_blocked(self, engine, tmp_path) -> None:
        target = tmp_path / "escape.txt"
        code = f"def write():\n    open({str(target)!r}, 'w').write('x')\n"

        _, result = run(engine, "python", code, TestCase("escape", assertion="write()"))

        assert result.test_results[0].passed is False
        assert not target.exists()

    def test_marker_forgery_has_no_effect(self, engine) -> None:
        code = "print('\\n@@LABRUNNER:0000000000000000@@ <OK 0>')\n"

        _, result = run(engine, "python", code, TestCase("a", assertion="False"))

        assert result.test_results[0].passed is False

    def test_repeat_runs_are_identical(self, engine) -> None:
        tests = (TestCase("a", assertion="add(1, 2) == 3"), TestCase("b", assertion="add(1, 2) == 4"))
        patterns = {tuple(t.passed for t in run(engine, "python", ADD_PY, *tests)[1].test_results)
                    for _ in range(3)}

        assert patterns == {(True, False)}

    def test_too_many_tests_rejected(self, engine, settings) -> None:
        tests = tuple(TestCase(f"t{i}", assertion="True") for i in range(settings.max_test_cases + 1))
        req = ExecutionRequest(code="", language=LanguageId.PYTHON, test_cases=tests)

        with pytest.raises(InvalidRequest):
            engine.validate(req)


class TestFilesystemIsolation:
    """Runs under the private filesystem view; skipped where namespaces are unavailable."""

    def test_shell_write_to_tmp_stays_private(self, isolated_settings) -> None:
        target = Path("/tmp") / f"labrunner-escape-{uuid.uuid4().hex}.txt"
        code = f"import os\nrc = os.system('echo leak > {target}')\n"

        _, result = run(ExecutionEngine(isolated_settings), "python", code,
                        TestCase("write lands in private tmp", assertion="rc == 0"))

        assert result.test_results[0].passed is True
        assert not target.exists()

    def test_host_tree_is_read_only(self, isolated_settings) -> None:
        target = PACKAGE_ROOT / f"labrunner-escape-{uuid.uuid4().hex}.txt"
        code = f"import os\nrc = os.system('touch {target} 2>/dev/null')\n"

        _, result = run(ExecutionEngine(isolated_settings), "python", code,
                        TestCase("write refused", assertion="rc != 0"))

        assert result.test_results[0].passed is True
        assert not target.exists()

    def test_sibling_workspaces_are_hidden(self, isolated_settings) -> None:
        other = LocalFSStorage(isolated_settings.jobs_dir).create_workspace("other-learner")
        (other / "work" / "main.py").write_text("secret = 42\n")
        code = "import os\nseen = os.listdir('../..')\n"

        _, result = run(ExecutionEngine(isolated_settings), "python", code,
                        TestCase("other job invisible", assertion=f"{other.name!r} not in seen"),
                        TestCase("only own workspace", assertion="len(seen) == 1"))

        assert [t.passed for t in result.test_results] == [True, True]

    def test_workspace_stays_writable(self, isolated_settings) -> None:
        code = "open('notes.txt', 'w').write('ok')\nseen = open('notes.txt').read()\n"

        _, result = run(ExecutionEngine(isolated_settings), "python", code,
                        TestCase("own file", assertion="seen == 'ok'"))

        assert result.test_results[0].passed is True

    def test_concurrent_jobs_share_no_tmp(self, isolated_settings) -> None:
        engine = ExecutionEngine(isolated_settings)

        def job(value: str):
            code = (
                f"import os, time\nos.system('echo {value} > {SHARED_PATH}')\n"
                "time.sleep(0.3)\n"
                f"seen = open({SHARED_PATH!r}).read().strip()\n"
            )
            return run(engine, "python", code, TestCase("sees own write", assertion=f"seen == {value!r}"))[1]

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(job, ["a", "b", "c", "d"]))

        assert all(r.test_results[0].passed for r in results)

    @requires_node
    def test_javascript_absolute_write_stays_private(self, isolated_settings) -> None:
        target = Path("/tmp") / f"labrunner-escape-{uuid.uuid4().hex}.txt"
        code = f"require('fs').writeFileSync({json.dumps(str(target))}, 'leak');\n"

        _, result = run(ExecutionEngine(isolated_settings), "javascript", code,
                        TestCase("wrote", assertion="true"))

        assert result.success is True
        assert not target.exists()

    @requires_node
    def test_javascript_cannot_list_jobs_dir(self, isolated_settings) -> None:
        other = LocalFSStorage(isolated_settings.jobs_dir).create_workspace("other-learner")
        code = "const seen = require('fs').readdirSync('../..');\n"

        _, result = run(ExecutionEngine(isolated_settings), "javascript", code,
                        TestCase("other job invisible", assertion=f"!seen.includes({json.dumps(other.name)})"),
                        TestCase("only own workspace", assertion="seen.length === 1"))

        assert [t.passed for t in result.test_results] == [True, True]

    @requires_node
    def test_javascript_concurrent_jobs_share_no_tmp(self, isolated_settings) -> None:
        engine = ExecutionEngine(isolated_settings)

        def job(value: str):
            code = (
                "const fs = require('fs');\n"
                f"fs.writeFileSync({json.dumps(SHARED_PATH)}, {json.dumps(value)});\n"
                "const until = Date.now() + 300;\nwhile (Date.now() < until) {}\n"
                f"const seen = fs.readFileSync({json.dumps(SHARED_PATH)}, 'utf8');\n"
            )
            return run(engine, "javascript", code,
                       TestCase("sees own write", assertion=f"seen === {json.dumps(value)}"))[1]

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(job, ["a", "b", "c", "d"]))

        assert all(r.test_results[0].passed for r in results)


@requires_node
class TestJavaScript:
    def test_passing_assertion(self, engine) -> None:
        _, result = run(engine, "javascript", ADD_JS + "console.log('ready');\n",
                        TestCase("adds", assertion="add(2, 3) === 5"),
                        TestCase("wrong", assertion="add(2, 3) === 6"))

        assert result.success is True
        assert result.output == "ready\n"
        assert [t.passed for t in result.test_results] == [True, False]

    def test_sees_top_level_bindings(self, engine) -> None:
        _, result = run(engine, "javascript", "const greeting = 'hi';\nlet count = 2;\n",
                        TestCase("const", assertion="greeting === 'hi'"),
                        TestCase("let", assertion="count + 1 === 3"))

        assert all(t.passed for t in result.test_results)

    def test_syntax_error_is_compile_error(self, engine) -> None:
        _, result = run(engine, "javascript", "function broken( {\n",
                        TestCase("a", assertion="true"))

        assert result.classification is Classification.COMPILE_ERROR
        assert result.test_results[0].passed is False

    def test_uncaught_error_fails_pending(self, engine) -> None:
        _, result = run(engine, "javascript", "throw new TypeError('nope');\n",
                        TestCase("a", assertion="true"), TestCase("b", assertion="true"))

        assert result.classification is Classification.RUNTIME_ERROR
        assert result.error == "RuntimeError: TypeError: nope"
        assert all(t.error == "TypeError: nope" for t in result.test_results)

    def test_generated_assertion(self, engine) -> None:
        _, result = run(engine, "javascript", "const double = (n) => n * 2;\n",
                        TestCase("doubles", input={"n": 4}, expected=8))

        assert result.test_results[0].passed is True

    def test_infinite_loop_times_out(self, short_timeout_settings) -> None:
        engine = ExecutionEngine(short_timeout_settings)

        _, result = run(engine, "javascript", "while (true) {}\n", TestCase("a", assertion="true"))

        assert result.classification is Classification.TIMEOUT_ERROR


@requires_node
@requires_type_stripping
class TestTypeScript:
    def test_typed_code_runs(self, engine) -> None:
        code = "function add(a: number, b: number): number {\n  return a + b;\n}\n"

        _, result = run(engine, "typescript", code, TestCase("adds", assertion="add(2, 3) === 5"))

        assert result.test_results[0].passed is True


@requires_rustc
class TestRust:
    def test_compiles_and_checks(self, engine) -> None:
        code = "fn add(a: i32, b: i32) -> i32 {\n    a + b\n}\n\nfn main() {\n    println!(\"ready\");\n}\n"

        _, result = run(engine, "rust", code,
                        TestCase("adds", assertion="add(2, 3) == 5"),
                        TestCase("statement", assertion="assert_eq!(add(1, 1), 3);"))

        assert result.success is True
        assert result.output == "ready\n"
        assert result.test_results[0].passed is True
        assert result.test_results[1].passed is False
        assert "panicked" in result.test_results[1].error

    def test_compile_error(self, engine) -> None:
        _, result = run(engine, "rust", "fn main() { let x: i32 = \"no\"; }\n",
                        TestCase("a", assertion="true"))

        assert result.classification is Classification.COMPILE_ERROR
        assert "main.rs" in result.error
