from __future__ import annotations
import os
import signal
import subprocess
import time
from typing import Dict, List, Optional

import structlog

from ..adapters.base import LanguageAdapter
from ..core.models import HarnessProgram, RawResult, SandboxJob, SandboxState
from ..isolation.isolation import IsolationPipeline
from ..isolation.launcher import LAUNCH_FAILED, LAUNCH_TAG
from ..services.storage import LocalFSStorage

log = structlog.get_logger(__name__)

# Host variables a toolchain may need; everything else is dropped.
PASSTHROUGH_ENV = ("PATH", "RUSTUP_HOME", "CARGO_HOME", "RUSTUP_TOOLCHAIN", "DEVELOPER_DIR")

_VIOLATION_SIGNALS = {signal.SIGXCPU, signal.SIGXFSZ}


class SandboxRunner:
    """
    Runs one harness program end to end: private workspace, optional compile
    step, run step, all under the isolation pipeline and one shared wall-clock
    deadline. The workspace and the process group are released on every path.
    """

    def __init__(self, storage: LocalFSStorage, pipeline: IsolationPipeline,
                 poll_interval_s: float = 0.05, kill_grace_s: float = 2.0,
                 output_limit: Optional[int] = None):
        self.storage = storage
        self.pipeline = pipeline
        self.poll_interval_s = poll_interval_s
        self.kill_grace_s = kill_grace_s
        self.output_limit = output_limit

    def run(self, job: SandboxJob, program: HarnessProgram, adapter: LanguageAdapter) -> RawResult:
        deadline = time.monotonic() + job.limits.wall_timeout_seconds
        try:
            with self.storage.workspace(job.job_id) as ws:
                job.workspace = ws
                (job.workdir / program.filename).write_text(program.source, encoding="utf-8")
                command = adapter.invoke(job.workdir)
                composer = self.pipeline.build(job.limits)
                env = self._env(job, command.env)

                if command.compile:
                    res = self._step(job, composer(command.compile), env, "compile", deadline)
                    if res.timed_out or res.violated or res.spawn_failed or res.cancelled:
                        return res
                    if res.exit_code != 0:
                        res.reason = "compile_failed"
                        return res
                return self._step(job, composer(command.run), env, "run", deadline)
        finally:
            job.state = SandboxState.CLEANED
            log.debug("job_cleaned", job_id=job.job_id)

    # ---------- helpers ----------

    def _env(self, job: SandboxJob, extra: Dict[str, str]) -> Dict[str, str]:
        env = {k: os.environ[k] for k in PASSTHROUGH_ENV if k in os.environ}
        env.setdefault("PATH", "/usr/local/bin:/usr/bin:/bin")
        env.update({
            "HOME": str(job.workdir),
            "TMPDIR": str(job.workdir),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
        })
        env.update(self.pipeline.launcher_env())
        env.update(extra)
        return env

    def _limit(self, job: SandboxJob) -> int:
        return self.output_limit or job.limits.fsize_bytes

    @staticmethod
    def _kill_group(pgid: int) -> None:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            log.error("killpg_denied", pgid=pgid, error=str(e))

    def _exited(self, pid: int) -> bool:
        # WNOWAIT leaves the leader as a zombie so its pid, and therefore the
        # process-group id, cannot be recycled before the group is killed.
        info = os.waitid(os.P_PID, pid, os.WEXITED | os.WNOHANG | os.WNOWAIT)
        return info is not None

    def _step(self, job: SandboxJob, argv: List[str], env: Dict[str, str],
              stage: str, deadline: float) -> RawResult:
        ws = job.workspace
        out_path = ws / f"{stage}.stdout.log"
        err_path = ws / f"{stage}.stderr.log"
        start = time.monotonic()
        timed_out = cancelled = False

        with open(out_path, "wb") as fo, open(err_path, "wb") as fe:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=fo,
                    stderr=fe,
                    cwd=str(job.workdir),
                    env=env,
                    start_new_session=True,   # own session => own process group
                    close_fds=True,
                )
            except OSError as e:
                job.state = SandboxState.SPAWN_FAILED
                log.error("spawn_failed", job_id=job.job_id, stage=stage, argv0=argv[0], error=str(e))
                return RawResult(stdout="", stderr="", exit_code=None, spawn_failed=True,
                                 reason=f"spawn_failed:{e.strerror or e}",
                                 duration_s=time.monotonic() - start)

            job.state = SandboxState.SPAWNED
            pgid = proc.pid
            try:
                job.state = SandboxState.RUNNING
                while not self._exited(proc.pid):
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        timed_out = True
                        break
                    if job.cancel_event.wait(min(self.poll_interval_s, remaining)):
                        cancelled = True
                        break
            finally:
                # stray children die with the group on every exit path
                self._kill_group(pgid)
                try:
                    proc.wait(timeout=self.kill_grace_s)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()

        duration = time.monotonic() - start
        limit = self._limit(job)
        stdout = self.storage.read_bounded(out_path, limit)
        stderr = self.storage.read_bounded(err_path, limit)
        rc = proc.returncode

        res = RawResult(stdout=stdout, stderr=stderr, exit_code=rc,
                        timed_out=timed_out, cancelled=cancelled, duration_s=duration)

        if timed_out:
            job.state = SandboxState.TIMED_OUT
            res.reason = f"timeout_{job.limits.wall_timeout_seconds}s"
        elif cancelled:
            job.state = SandboxState.TIMED_OUT
            res.reason = "cancelled"
        elif rc == LAUNCH_FAILED and stderr.startswith(LAUNCH_TAG):
            job.state = SandboxState.SPAWN_FAILED
            res.spawn_failed = True
            res.reason = stderr.strip()
            log.error("launch_failed", job_id=job.job_id, stage=stage, detail=res.reason)
        elif rc is not None and rc < 0 and (-rc in _VIOLATION_SIGNALS or -rc == signal.SIGKILL):
            # SIGKILL without our timeout: CPU hard limit or the OOM killer
            job.state = SandboxState.VIOLATED
            res.violated = True
            res.reason = f"signal_{signal.Signals(-rc).name}"
        else:
            job.state = SandboxState.COMPLETED
            res.reason = None if rc == 0 else f"exit_{rc}"

        log.info("step_finished", job_id=job.job_id, stage=stage, rc=rc,
                 state=job.state.value, duration_s=round(duration, 3))
        return res

