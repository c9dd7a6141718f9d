from __future__ import annotations
from pathlib import Path
from string import Template
from typing import Any, List, Optional

from ..core.models import Command, LanguageId, RawResult
from .base import Check, LanguageAdapter, first_function

# harness exit code for a learner SyntaxError
COMPILE_EXIT = 65

HARNESS = Template('''\
import os as _lr_os
import sys as _lr_sys
import json as _lr_json
import traceback as _lr_tb
import linecache as _lr_linecache

_LR_NONCE = $nonce
_LR_SOURCE = $source
_LR_CHECKS = $checks
_LR_WORKDIR = _lr_os.path.realpath(_lr_os.getcwd())
_LR_WRITE_FLAGS = _lr_os.O_WRONLY | _lr_os.O_RDWR | _lr_os.O_APPEND | _lr_os.O_CREAT | _lr_os.O_TRUNC


def _lr_emit(kind, idx, msg=None):
    line = "\\n@@LABRUNNER:%s@@ <%s %d>" % (_LR_NONCE, kind, idx)
    if msg is not None:
        line += " " + _lr_json.dumps(str(msg))
    try:
        _lr_sys.stdout.flush()
    except Exception:
        pass
    _lr_sys.__stdout__.write(line + "\\n")
    _lr_sys.__stdout__.flush()


def _lr_describe(exc):
    text = str(exc)
    return "%s: %s" % (type(exc).__name__, text) if text else type(exc).__name__


def _lr_inside(path):
    real = _lr_os.path.realpath(path)
    return real == _LR_WORKDIR or real.startswith(_LR_WORKDIR + _lr_os.sep)


def _lr_audit(event, args):
    if event.startswith("socket."):
        raise PermissionError("network access is disabled in the sandbox")
    if event == "open":
        path, mode, flags = (tuple(args) + (None, None, None))[:3]
        if isinstance(path, int) or path is None:
            return
        writing = (isinstance(mode, str) and any(c in mode for c in "wax+")) or (
            isinstance(flags, int) and flags & _LR_WRITE_FLAGS)
        if writing and not _lr_inside(_lr_os.fsdecode(path)):
            raise PermissionError("writing outside the sandbox workspace is not allowed")


def _lr_fail_all(msg):
    for idx, _ in _LR_CHECKS:
        _lr_emit("FAIL", idx, msg)


# tracebacks show learner lines, not harness lines
_lr_linecache.cache["main.py"] = (len(_LR_SOURCE), None, _LR_SOURCE.splitlines(True), "main.py")

try:
    _lr_code = compile(_LR_SOURCE, "main.py", "exec")
except SyntaxError as e:
    _lr_fail_all("SyntaxError: %s (line %s)" % (e.msg, e.lineno))
    _lr_tb.print_exception(type(e), e, None)
    _lr_sys.stderr.flush()
    _lr_os._exit($compile_exit)

_lr_sys.addaudithook(_lr_audit)
_lr_ns = {"__name__": "__main__", "__builtins__": __builtins__}

try:
    exec(_lr_code, _lr_ns)
except SystemExit as e:
    if e.code not in (None, 0):
        _lr_fail_all("SystemExit: %s" % e.code)
        _lr_sys.stderr.write("SystemExit: %s\\n" % e.code)
        _lr_sys.stderr.flush()
        _lr_os._exit(1)
except BaseException as e:
    _lr_fail_all(_lr_describe(e))
    _lr_tb.print_exc()
    _lr_sys.stderr.flush()
    _lr_os._exit(1)

for _lr_idx, _lr_src in _LR_CHECKS:
    try:
        try:
            _lr_expr = compile(_lr_src, "<test %d>" % _lr_idx, "eval")
        except SyntaxError:
            exec(compile(_lr_src, "<test %d>" % _lr_idx, "exec"), _lr_ns)
            _lr_emit("OK", _lr_idx)
        else:
            _lr_value = eval(_lr_expr, _lr_ns)
            if _lr_value is True or _lr_value is None:
                _lr_emit("OK", _lr_idx)
            elif _lr_value is False:
                _lr_emit("FAIL", _lr_idx, "assertion evaluated to False")
            else:
                _lr_emit("FAIL", _lr_idx, "assertion must evaluate to True, got %r" % (_lr_value,))
    except MemoryError as e:
        _lr_emit("FAIL", _lr_idx, "MemoryError")
        raise
    except AssertionError as e:
        _lr_emit("FAIL", _lr_idx, str(e) or "assertion failed")
    except (Exception, SystemExit) as e:
        _lr_emit("FAIL", _lr_idx, _lr_describe(e))

try:
    _lr_sys.stdout.flush()
except Exception:
    pass
_lr_os._exit(0)
''')


class PythonAdapter(LanguageAdapter):
    language = LanguageId.PYTHON
    source_name = "main.py"
    violation_patterns = (r"^MemoryError\b", r"\[Errno 27\] File too large")

    def render(self, code: str, checks: List[Check], nonce: str) -> str:
        return HARNESS.substitute(
            nonce=repr(nonce),
            source=repr(code),
            checks=repr([(idx, src) for idx, src in checks]),
            compile_exit=COMPILE_EXIT,
        )

    def invoke(self, workspace: Path) -> Command:
        # -I: ignore PYTHON* env and user site; -u: markers reach the file immediately
        return Command(run=[*self.profile.runtime, "-I", "-u", "-B", self.source_name])

    def is_compile_error(self, raw: RawResult) -> bool:
        return raw.exit_code == COMPILE_EXIT and "SyntaxError" in raw.stderr

    def summarize_error(self, stderr: str) -> str:
        # the exception line is the last match in a traceback
        lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
        for ln in reversed(lines):
            if not ln.startswith(("File ", "Traceback", "^", "~")) and ":" in ln:
                return ln
        return lines[-1] if lines else ""

    def generate_assertion(self, code: str, args: dict, expected: Any) -> Optional[str]:
        name = first_function(code, r"^def\s+(\w+)\s*\(")
        if not name:
            return None
        call_args = ", ".join(repr(v) for v in args.values())
        return f"{name}({call_args}) == {expected!r}"
