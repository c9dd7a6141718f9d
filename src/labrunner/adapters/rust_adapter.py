from __future__ import annotations
import os
import re
from pathlib import Path
from string import Template
from typing import Any, List, Optional

from ..core.models import Command, LanguageId
from .base import Check, LanguageAdapter, first_function

LEARNER_MAIN = "__labrunner_learner_main"
_MAIN_RE = re.compile(r"\bfn\s+main\s*\(")

SUPPORT = Template('''
mod __labrunner {
    use std::io::Write;

    pub const NONCE: &str = "$nonce";

    pub fn escape(s: &str) -> String {
        let mut out = String::with_capacity(s.len() + 2);
        out.push('"');
        for c in s.chars() {
            match c {
                '"' => out.push_str("\\\\\\""),
                '\\\\' => out.push_str("\\\\\\\\"),
                '\\n' => out.push_str("\\\\n"),
                '\\r' => out.push_str("\\\\r"),
                '\\t' => out.push_str("\\\\t"),
                c if (c as u32) < 0x20 => out.push_str(&format!("\\\\u{:04x}", c as u32)),
                c => out.push(c),
            }
        }
        out.push('"');
        out
    }

    pub fn emit(kind: &str, idx: usize, msg: Option<&str>) {
        let _ = std::io::stdout().flush();
        let mut line = format!("\\n@@LABRUNNER:{}@@ <{} {}>", NONCE, kind, idx);
        if let Some(m) = msg {
            line.push(' ');
            line.push_str(&escape(m));
        }
        line.push('\\n');
        let mut out = std::io::stdout().lock();
        let _ = out.write_all(line.as_bytes());
        let _ = out.flush();
    }

    pub trait Outcome {
        fn failure(self) -> Option<String>;
    }

    impl Outcome for () {
        fn failure(self) -> Option<String> {
            None
        }
    }

    impl Outcome for bool {
        fn failure(self) -> Option<String> {
            if self { None } else { Some("assertion evaluated to false".to_string()) }
        }
    }

    pub fn panic_message(p: &(dyn std::any::Any + Send)) -> String {
        if let Some(s) = p.downcast_ref::<&str>() {
            s.to_string()
        } else if let Some(s) = p.downcast_ref::<String>() {
            s.clone()
        } else {
            "panic".to_string()
        }
    }

    pub fn check<F: FnOnce() -> Option<String>>(idx: usize, f: F) {
        match std::panic::catch_unwind(std::panic::AssertUnwindSafe(f)) {
            Ok(None) => emit("OK", idx, None),
            Ok(Some(m)) => emit("FAIL", idx, Some(&m)),
            Err(p) => emit("FAIL", idx, Some(&format!("panicked: {}", panic_message(&*p)))),
        }
    }
}

fn main() {
    std::panic::set_hook(Box::new(|_| {}));
$run_learner
$checks
    let _ = std::io::Write::flush(&mut std::io::stdout());
}
''')

RUN_LEARNER = Template('''\
    let pending: &[usize] = &[$pending];
    if let Err(p) = std::panic::catch_unwind(|| {
        let _ = $learner_main();
    }) {
        let msg = format!("panicked: {}", __labrunner::panic_message(&*p));
        for i in pending {
            __labrunner::emit("FAIL", *i, Some(&msg));
        }
        eprintln!("thread 'main' {}", msg);
        std::process::exit(101);
    }''')


def rust_value(value: Any) -> Optional[str]:
    """Rust source for a JSON value, or None when there is no obvious literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = "".join(
            f"\\u{{{ord(c):x}}}" if ord(c) < 0x20 or c in '"\\' else c for c in value
        )
        return f'"{escaped}"'
    if isinstance(value, list):
        items = [rust_value(v) for v in value]
        if any(i is None for i in items):
            return None
        return "vec![" + ", ".join(items) + "]"
    return None


class RustAdapter(LanguageAdapter):
    language = LanguageId.RUST
    source_name = "main.rs"
    binary_name = "main"
    compiled = True
    line_offset = 1
    violation_patterns = (r"memory allocation of \d+ bytes failed",)
    error_line_pattern = r"^thread '[^']*' (?:panicked|has overflowed).*$"

    def render(self, code: str, checks: List[Check], nonce: str) -> str:
        has_main = bool(_MAIN_RE.search(code))
        body = _MAIN_RE.sub(f"fn {LEARNER_MAIN}(", code, count=1)
        run_learner = ""
        if has_main:
            run_learner = RUN_LEARNER.substitute(
                pending=", ".join(str(idx) for idx, _ in checks),
                learner_main=LEARNER_MAIN,
            )
        lines = [
            f"    __labrunner::check({idx}, || __labrunner::Outcome::failure({{ {src} }}));"
            for idx, src in checks
        ]
        return "#![allow(warnings)]\n" + body + SUPPORT.substitute(
            nonce=nonce, run_learner=run_learner, checks="\n".join(lines))

    def invoke(self, workspace: Path) -> Command:
        home = Path.home()
        env = {
            # rustup proxies look for their toolchains here; HOME points into the workspace
            "RUSTUP_HOME": os.environ.get("RUSTUP_HOME", str(home / ".rustup")),
            "CARGO_HOME": os.environ.get("CARGO_HOME", str(home / ".cargo")),
        }
        return Command(
            compile=[*self.profile.compiler, "-o", self.binary_name, self.source_name],
            run=[*self.profile.runtime, f"./{self.binary_name}"],
            env=env,
        )

    def generate_assertion(self, code: str, args: dict, expected: Any) -> Optional[str]:
        name = first_function(code, r"^\s*(?:pub\s+)?fn\s+(?!main\b)(\w+)\s*[(<]")
        values = [rust_value(v) for v in args.values()]
        want = rust_value(expected)
        if not name or want is None or any(v is None for v in values):
            return None
        return f"{name}({', '.join(values)}) == {want}"
