from __future__ import annotations
from functools import lru_cache
from pathlib import Path
from typing import Tuple
import os, shutil, subprocess, tempfile

# Directory holding the labrunner package; the launcher is started with -m.
PACKAGE_ROOT = Path(__file__).resolve().parents[2]

# Host paths every step sees as empty scratch tmpfs; the jobs dir is added per engine.
HIDDEN_PATHS = ("/tmp", "/var/tmp", "/dev/shm")


@lru_cache(maxsize=None)
def netns_available(python_bin: str) -> bool:
    """
    Best-effort probe: can this host create an unprivileged user+network
    namespace? Most desktop kernels allow it; hardened or containerised
    hosts often do not.
    """
    if hasattr(os, "unshare"):
        probe = [python_bin, "-I", "-c",
                 "import os; os.unshare(os.CLONE_NEWUSER | os.CLONE_NEWNET)"]
    else:
        unshare = shutil.which("unshare")
        if not unshare:
            return False
        probe = [unshare, "--user", "--net", "true"]
    try:
        proc = subprocess.run(probe, capture_output=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


@lru_cache(maxsize=None)
def private_fs_available(python_bin: str, hidden_paths: Tuple[str, ...] = HIDDEN_PATHS) -> bool:
    """Runs the launcher's private filesystem setup once against a throwaway directory."""
    if not hasattr(os, "unshare"):
        return False
    with tempfile.TemporaryDirectory(prefix="labrunner-probe-") as root:
        work = os.path.join(root, "work")
        os.mkdir(work)
        argv = [python_bin, "-P", "-m", "labrunner.isolation.launcher",
                "--cpu", "5", "--mem", str(1 << 30), "--private-fs", "--hide", root]
        for path in hidden_paths:
            argv += ["--hide", path]
        argv += ["--", python_bin, "-I", "-c", "pass"]
        env = {"PYTHONPATH": str(PACKAGE_ROOT), "PATH": os.environ.get("PATH", "/usr/bin:/bin")}
        try:
            proc = subprocess.run(argv, cwd=work, env=env, capture_output=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            return False
    return proc.returncode == 0
