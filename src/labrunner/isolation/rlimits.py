from __future__ import annotations
import resource


def _set(kind: int, value: int) -> None:
    # An unprivileged process may lower but never raise its hard limit.
    _, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, value))


def apply_rlimits(cpu_seconds: int, memory_bytes: int, nofile: int,
                  nproc: int = 0, fsize_bytes: int = 0, memory_kind: str = "as") -> None:
    """
    Per-process ceilings: CPU time, memory, open files, processes, file size.
    The CPU hard limit sits one second above the soft one so the kernel
    sends SIGXCPU first and SIGKILL only if the process ignores it.
    """
    _, cpu_hard = resource.getrlimit(resource.RLIMIT_CPU)
    soft = cpu_seconds
    hard = cpu_seconds + 1
    if cpu_hard != resource.RLIM_INFINITY:
        soft, hard = min(soft, cpu_hard), min(hard, cpu_hard)
    resource.setrlimit(resource.RLIMIT_CPU, (soft, hard))

    mem_kind = resource.RLIMIT_DATA if memory_kind == "data" else resource.RLIMIT_AS
    _set(mem_kind, memory_bytes)
    _set(resource.RLIMIT_NOFILE, nofile)
    _set(resource.RLIMIT_CORE, 0)
    if fsize_bytes:
        _set(resource.RLIMIT_FSIZE, fsize_bytes)
    if nproc and hasattr(resource, "RLIMIT_NPROC"):
        _set(resource.RLIMIT_NPROC, nproc)
