from __future__ import annotations
from typing import List
import shutil

from ..core.models import Limits


def wrap_with_cgroups(cmd: List[str], limits: Limits, cpu_quota: str = "100%") -> List[str]:
    """
    Prefer systemd-run --scope to apply MemoryMax/CPUQuota/TasksMax to the whole group.
    Without systemd-run (minimal containers, WSL...) the command is returned as is.
    """
    sdrun = shutil.which("systemd-run")
    if not sdrun:
        return cmd

    return [
        sdrun, "--scope", "--quiet", "--collect",
        "-p", f"MemoryMax={limits.memory_bytes}",
        "-p", f"CPUQuota={cpu_quota}",
        "-p", f"TasksMax={limits.nproc or 'infinity'}",
        "--",
    ] + cmd
