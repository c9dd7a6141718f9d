from __future__ import annotations
import secrets, time, uuid


def new_job_id() -> str:
    return f"{int(time.time())}-{uuid.uuid4().hex[:12]}"


def new_nonce() -> str:
    return secrets.token_hex(8)


def truncate(text: str, limit: int, marker: str = "\n... (output truncated)") -> str:
    if len(text) > limit:
        return text[:limit] + marker
    return text


def scrub_paths(text: str, *paths) -> str:
    """Replace host paths (workspace, job root) with relative placeholders."""
    for p in paths:
        if p:
            text = text.replace(str(p), ".")
    return text
