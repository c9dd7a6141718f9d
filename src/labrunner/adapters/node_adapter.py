from __future__ import annotations
import re
from pathlib import Path
from string import Template
from typing import Any, List, Optional

from ..core.models import Command, LanguageId, RawResult
from . import markers
from .base import Check, LanguageAdapter, first_function, js_literal

# Kept on one line so learner code starts on line 2.
PRELUDE = Template(
    'const __lrNonce = $nonce; const __lrPending = new Set($pending); '
    'function __lrEmit(kind, idx, msg) { __lrPending.delete(idx); '
    'let line = "\\n@@LABRUNNER:" + __lrNonce + "@@ <" + kind + " " + idx + ">"; '
    'if (msg !== undefined) line += " " + JSON.stringify(String(msg)); '
    'process.stdout.write(line + "\\n"); } '
    'function __lrDescribe(e) { return (e instanceof Error) ? e.name + ": " + e.message : String(e); } '
    'function __lrFatal(e) { for (const i of Array.from(__lrPending)) __lrEmit("FAIL", i, __lrDescribe(e)); '
    'process.stderr.write("Uncaught " + ((e && e.stack) || String(e)) + "\\n"); process.exit(1); } '
    'process.on("uncaughtException", __lrFatal); process.on("unhandledRejection", __lrFatal);\n'
)

EPILOGUE = Template('''
;
function __lrShow(v) { try { return JSON.stringify(v) ?? String(v); } catch (e) { return String(v); } }
async function __lrCheck(idx, fn) {
  try {
    let v = fn();
    if (v && typeof v.then === "function") v = await v;
    if (v === true || v === undefined) __lrEmit("OK", idx);
    else if (v === false) __lrEmit("FAIL", idx, "assertion evaluated to false");
    else __lrEmit("FAIL", idx, "assertion must evaluate to true, got " + __lrShow(v));
  } catch (e) {
    __lrEmit("FAIL", idx, __lrDescribe(e));
  }
}
(async () => {
$checks
  process.exit(0);
})();
''')

FUNCTION_RE = (
    r"^(?:export\s+)?(?:async\s+)?function\s*\*?\s*(\w+)\s*[(<]"
    r"|^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s*)?(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|\w+\s*=>)"
)


class JavaScriptAdapter(LanguageAdapter):
    language = LanguageId.JAVASCRIPT
    source_name = "main.js"
    line_offset = 1
    violation_patterns = (
        r"JavaScript heap out of memory",
        r"Allocation failed",
        r"\bEFBIG\b",
    )
    error_line_pattern = r"^Uncaught (?:\S*(?:Error|Exception)\b.*|.+)$"

    def render(self, code: str, checks: List[Check], nonce: str) -> str:
        prelude = PRELUDE.substitute(
            nonce=js_literal(nonce),
            pending="[" + ", ".join(str(idx) for idx, _ in checks) + "]",
        )
        lines = [f"  await __lrCheck({idx}, () => eval({js_literal(src)}));" for idx, src in checks]
        return prelude + code + EPILOGUE.substitute(checks="\n".join(lines))

    def invoke(self, workspace: Path) -> Command:
        return Command(run=[*self.profile.runtime, self.source_name])

    def is_compile_error(self, raw: RawResult) -> bool:
        # a parse error stops node before the prelude runs, so no marker and no "Uncaught"
        if raw.exit_code in (0, None) or markers.PREFIX in raw.stdout:
            return False
        return bool(re.search(r"^SyntaxError\b", raw.stderr, re.MULTILINE))

    def summarize_error(self, stderr: str) -> str:
        m = re.search(self.error_line_pattern, stderr, re.MULTILINE)
        if m:
            return m.group(0)[len("Uncaught "):].strip()
        return super().summarize_error(stderr)

    def generate_assertion(self, code: str, args: dict, expected: Any) -> Optional[str]:
        name = first_function(code, FUNCTION_RE)
        if not name:
            return None
        call_args = ", ".join(js_literal(v) for v in args.values())
        return f"JSON.stringify({name}({call_args})) === JSON.stringify({js_literal(expected)})"


class TypeScriptAdapter(JavaScriptAdapter):
    """Runs through node's built-in type stripping (node 22.6 or newer)."""

    language = LanguageId.TYPESCRIPT
    source_name = "main.ts"
    unavailable_patterns = (
        r"bad option: --experimental-strip-types",
        r"ERR_UNKNOWN_FILE_EXTENSION",
    )
