from __future__ import annotations
from pathlib import Path
from string import Template
from typing import Any, List, Optional

from ..core.models import Command, LanguageId
from .base import Check, LanguageAdapter, first_function

PRELUDE = '''\
#if canImport(Glibc)
import Glibc
#elseif canImport(Darwin)
import Darwin
#endif
'''

SUPPORT = Template('''
func __lrEscape(_ s: String) -> String {
    var out = "\\""
    for scalar in s.unicodeScalars {
        switch scalar {
        case "\\"": out += "\\\\\\""
        case "\\\\": out += "\\\\\\\\"
        case "\\n": out += "\\\\n"
        case "\\r": out += "\\\\r"
        case "\\t": out += "\\\\t"
        default:
            if scalar.value < 0x20 {
                let hex = String(scalar.value, radix: 16)
                out += "\\\\u" + String(repeating: "0", count: 4 - hex.count) + hex
            } else {
                out.unicodeScalars.append(scalar)
            }
        }
    }
    return out + "\\""
}

func __lrEmit(_ kind: String, _ idx: Int, _ msg: String? = nil) {
    fflush(stdout)
    var line = "\\n@@LABRUNNER:$nonce@@ <\\(kind) \\(idx)>"
    if let m = msg {
        line += " " + __lrEscape(m)
    }
    print(line)
    fflush(stdout)
}

func __lrCheck(_ idx: Int, _ body: () throws -> Any) {
    do {
        let value = try body()
        if let flag = value as? Bool {
            if flag {
                __lrEmit("OK", idx)
            } else {
                __lrEmit("FAIL", idx, "assertion evaluated to false")
            }
        } else if value is Void {
            __lrEmit("OK", idx)
        } else {
            __lrEmit("FAIL", idx, "assertion must evaluate to true, got \\(value)")
        }
    } catch {
        __lrEmit("FAIL", idx, "\\(error)")
    }
}

$checks
fflush(stdout)
''')


def swift_literal(value: str) -> str:
    """Swift string literal; JSON escapes such as \\uXXXX are not valid Swift."""
    out = []
    for c in value:
        if c == "\\":
            out.append("\\\\")
        elif c == '"':
            out.append('\\"')
        elif c == "\n":
            out.append("\\n")
        elif c == "\r":
            out.append("\\r")
        elif c == "\t":
            out.append("\\t")
        elif ord(c) < 0x20:
            out.append(f"\\u{{{ord(c):x}}}")
        else:
            out.append(c)
    return '"' + "".join(out) + '"'


def swift_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return swift_literal(value)
    if isinstance(value, list):
        items = [swift_value(v) for v in value]
        if any(i is None for i in items):
            return None
        return "[" + ", ".join(items) + "]"
    return None


class SwiftAdapter(LanguageAdapter):
    language = LanguageId.SWIFT
    source_name = "main.swift"
    binary_name = "main"
    compiled = True
    line_offset = PRELUDE.count("\n")
    violation_patterns = (r"Fatal error: .*out of memory", r"File size limit exceeded")
    error_line_pattern = r"^(?:\S+: )?Fatal error:.*$"

    def render(self, code: str, checks: List[Check], nonce: str) -> str:
        lines = [f"__lrCheck({idx}) {{ try ({src}) as Any }}" for idx, src in checks]
        return PRELUDE + code + "\n" + SUPPORT.substitute(nonce=nonce, checks="\n".join(lines))

    def invoke(self, workspace: Path) -> Command:
        return Command(
            compile=[*self.profile.compiler, "-o", self.binary_name, self.source_name],
            run=[*self.profile.runtime, f"./{self.binary_name}"],
        )

    def generate_assertion(self, code: str, args: dict, expected: Any) -> Optional[str]:
        name = first_function(code, r"^\s*func\s+(\w+)\s*[(<]")
        want = swift_value(expected)
        if not name or want is None:
            return None
        # swift call sites need argument labels
        parts = []
        for label, v in args.items():
            literal = swift_value(v)
            if literal is None:
                return None
            parts.append(f"{label}: {literal}")
        return f"{name}({', '.join(parts)}) == {want}"
