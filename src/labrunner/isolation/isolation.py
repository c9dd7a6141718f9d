from __future__ import annotations
from typing import Callable, Dict, List, Sequence
import os, shutil, sys

import structlog

from ..core.errors import InternalError
from ..core.models import Limits
from .cgroups import wrap_with_cgroups
from .namespaces import HIDDEN_PATHS, PACKAGE_ROOT, netns_available, private_fs_available

log = structlog.get_logger(__name__)


class IsolationPipeline:
    """
    Composes the argv every sandboxed step runs under:
    [systemd-run scope] -> launcher (rlimits, namespaces, private fs) -> target.
    """

    def __init__(self, strategy: str, allow_network: bool,
                 require_isolation: bool = False, python_bin: str | None = None,
                 hidden_paths: Sequence[str] = HIDDEN_PATHS):
        self.strategy = (strategy or "none").lower()
        self.allow_network = allow_network
        self.require_isolation = require_isolation
        self.python_bin = python_bin or sys.executable
        self.hidden_paths = list(hidden_paths)
        self._checked: Dict[str, bool] = {}

    def _uses_ns(self) -> bool:
        return "ns" in self.strategy.split("+")

    def _available(self, feature: str, wanted: bool, probe: Callable[[str], bool]) -> bool:
        if feature not in self._checked:
            self._checked[feature] = wanted and probe(self.python_bin)
            if wanted and not self._checked[feature]:
                log.warning(f"{feature}_unavailable", strategy=self.strategy,
                            require_isolation=self.require_isolation)
        if wanted and not self._checked[feature] and self.require_isolation:
            raise InternalError(f"{feature} isolation is required but unavailable")
        return self._checked[feature]

    def use_netns(self) -> bool:
        return self._available("netns", self._uses_ns() and not self.allow_network, netns_available)

    def use_private_fs(self) -> bool:
        return self._available("private_fs", self._uses_ns(), private_fs_available)

    def launcher_env(self) -> Dict[str, str]:
        return {"PYTHONPATH": str(PACKAGE_ROOT)}

    def build(self, limits: Limits) -> Callable[[List[str]], List[str]]:
        netns = self.use_netns()
        private_fs = self.use_private_fs()

        def composer(cmd: List[str]) -> List[str]:
            out = [
                self.python_bin, "-P", "-m", "labrunner.isolation.launcher",
                "--cpu", str(limits.cpu_seconds),
                "--mem", str(limits.memory_bytes),
                "--mem-kind", limits.memory_rlimit,
                "--nofile", str(limits.nofile),
                "--nproc", str(limits.nproc),
                "--fsize", str(limits.fsize_bytes),
            ]
            if netns:
                out.append("--unshare-net")
            if private_fs:
                out.append("--private-fs")
                for path in self.hidden_paths:
                    out += ["--hide", path]
            out += ["--"] + list(cmd)
            if "cgroups" in self.strategy:
                out = wrap_with_cgroups(out, limits)
            return out

        return composer


def probe_capabilities(pipeline: IsolationPipeline) -> dict:
    """Environment facts for operators debugging isolation."""
    return {
        "strategy": pipeline.strategy,
        "allow_network": pipeline.allow_network,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_os_unshare": hasattr(os, "unshare"),
        "has_unshare": bool(shutil.which("unshare")),
        "has_systemd_run": bool(shutil.which("systemd-run")),
        "netns": netns_available(pipeline.python_bin),
        "private_fs": private_fs_available(pipeline.python_bin),
        "hidden_paths": pipeline.hidden_paths,
    }
