from __future__ import annotations
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator
import os
import shutil
import sys
import tempfile

import structlog

log = structlog.get_logger(__name__)


class LocalFSStorage:
    """
    Per-job scratch space on the local filesystem:
      <jobs_dir>/<job_id>-XXXX/
        ├─ work/                 (learner cwd: harness source, build outputs)
        ├─ <stage>.stdout.log    (stage is "compile" or "run")
        └─ <stage>.stderr.log
    The whole tree is removed when the job ends, whatever the outcome.
    """

    def __init__(self, jobs_dir: Path):
        # always absolute
        self.jobs_dir = jobs_dir if jobs_dir.is_absolute() else jobs_dir.resolve()
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def create_workspace(self, job_id: str) -> Path:
        # mkdtemp guarantees a fresh, private (0700) directory per job
        p = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.jobs_dir))
        (p / "work").mkdir()
        return p

    def destroy_workspace(self, path: Path) -> None:
        def _retry(func, failed, exc):
            # learner code may have chmod-ed its own files; restore and retry once
            try:
                os.chmod(os.path.dirname(failed), 0o700)
                if os.path.lexists(failed) and not os.path.islink(failed):
                    os.chmod(failed, 0o700)
                func(failed)
            except OSError as e:
                log.warning("workspace_cleanup_error", path=str(failed), error=str(e))

        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_retry)
        else:
            shutil.rmtree(path, onerror=lambda func, failed, info: _retry(func, failed, info[1]))

    @contextmanager
    def workspace(self, job_id: str) -> Iterator[Path]:
        path = self.create_workspace(job_id)
        try:
            yield path
        finally:
            self.destroy_workspace(path)

    @staticmethod
    def read_bounded(path: Path, limit: int) -> str:
        """Read at most `limit` characters (plus one, so callers can detect overflow)."""
        if not path.exists():
            return ""
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read(limit + 1)
