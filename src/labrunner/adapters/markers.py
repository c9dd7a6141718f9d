"""
Marker lines written by every harness, one per assertion:

    @@LABRUNNER:<nonce>@@ <OK 3>
    @@LABRUNNER:<nonce>@@ <FAIL 3> "json-encoded message"

Harnesses write a newline before each marker so the marker always starts
a line, even after learner output printed without one. The nonce is random
per job, so learner output cannot pass for a marker by accident.
"""
from __future__ import annotations
import json
import re
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

PREFIX = "@@LABRUNNER:"
MAX_MESSAGE_CHARS = 500


@dataclass(frozen=True)
class Marker:
    passed: bool
    index: int
    message: Optional[str] = None


def _line_re(nonce: str) -> re.Pattern:
    return re.compile(
        r"^" + re.escape(f"{PREFIX}{nonce}@@")
        + r" <(?P<kind>OK|FAIL) (?P<idx>\d{1,6})>(?: (?P<msg>.*))?$",
        re.MULTILINE,
    )


def marker_line(nonce: str, kind: str, idx: int) -> str:
    return f"{PREFIX}{nonce}@@ <{kind} {idx}>"


def _decode(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    raw = raw.rstrip("\r")
    try:
        msg = json.loads(raw)
    except ValueError:
        msg = raw
    msg = str(msg)
    if len(msg) > MAX_MESSAGE_CHARS:
        msg = msg[:MAX_MESSAGE_CHARS] + "..."
    return msg


def iter_markers(stdout: str, nonce: str) -> Iterator[Marker]:
    for m in _line_re(nonce).finditer(stdout):
        passed = m.group("kind") == "OK"
        yield Marker(passed=passed, index=int(m.group("idx")),
                     message=None if passed else _decode(m.group("msg")))


def collect(stdout: str, nonce: str) -> Dict[int, Marker]:
    """First marker per index wins, except that a FAIL overrides an OK."""
    seen: Dict[int, Marker] = {}
    for marker in iter_markers(stdout, nonce):
        prev = seen.get(marker.index)
        if prev is None or (prev.passed and not marker.passed):
            seen[marker.index] = marker
    return seen


def strip(stdout: str, nonce: str) -> str:
    """Remove marker lines together with the newline the harness put before them."""
    pattern = re.compile(
        r"\n?^" + re.escape(f"{PREFIX}{nonce}@@") + r" <(?:OK|FAIL) \d{1,6}>[^\n]*(?:\n|\Z)",
        re.MULTILINE,
    )
    return pattern.sub("", stdout)
