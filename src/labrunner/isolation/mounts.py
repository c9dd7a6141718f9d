"""
Private filesystem view for one sandboxed step (Linux, unprivileged user
and mount namespaces).

Inside the view the host tree is read-only, the hidden paths (/tmp, the
jobs directory, ...) are covered by small empty tmpfs mounts, and the
step's work directory is bind-mounted back at its own path as the only
writable host directory. A second user namespace maps the caller back to
its own uid, which drops the namespace-root capabilities and locks the
mounts so the step cannot undo them.
"""
from __future__ import annotations
import ctypes
import errno
import os
import re
from typing import Iterable, List

MS_RDONLY = 0x1
MS_NOSUID = 0x2
MS_NODEV = 0x4
MS_NOEXEC = 0x8
MS_REMOUNT = 0x20
MS_NOATIME = 0x400
MS_NODIRATIME = 0x800
MS_BIND = 0x1000
MS_REC = 0x4000
MS_PRIVATE = 0x40000
MS_RELATIME = 0x200000
MS_STRICTATIME = 0x1000000

# statvfs bits that a remount inside a user namespace must keep
_KEPT_FLAGS = (
    (os.ST_NOSUID, MS_NOSUID),
    (os.ST_NODEV, MS_NODEV),
    (os.ST_NOEXEC, MS_NOEXEC),
    (os.ST_NOATIME, MS_NOATIME),
    (os.ST_NODIRATIME, MS_NODIRATIME),
    (os.ST_RELATIME, MS_RELATIME),
)

# kernel-managed trees; writes there are already refused to non-root
PSEUDO_ROOTS = ("/proc", "/sys", "/dev")

TMPFS_OPTIONS = "size=16m,mode=1777"
NOBODY = 65534

_libc = ctypes.CDLL(None, use_errno=True)
_libc.mount.argtypes = (ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p,
                        ctypes.c_ulong, ctypes.c_char_p)


def _b(value):
    return None if value is None else os.fsencode(value)


def mount(source, target, fstype, flags, data=None) -> None:
    if _libc.mount(_b(source), _b(target), _b(fstype), flags, _b(data)) != 0:
        err = ctypes.get_errno()
        raise OSError(err, os.strerror(err), target)


def _write(path: str, text: str) -> None:
    with open(path, "w") as f:
        f.write(text)


def enter_user_namespace(inside_uid: int, outside_uid: int, inside_gid: int, outside_gid: int,
                         extra_flags: int = 0) -> None:
    """unshare a user + mount namespace and map exactly one uid and gid into it."""
    os.unshare(os.CLONE_NEWUSER | os.CLONE_NEWNS | extra_flags)
    try:
        _write("/proc/self/setgroups", "deny")
    except FileNotFoundError:
        pass
    _write("/proc/self/uid_map", f"{inside_uid} {outside_uid} 1\n")
    _write("/proc/self/gid_map", f"{inside_gid} {outside_gid} 1\n")


def under(path: str, roots: Iterable[str]) -> bool:
    return any(path == r or path.startswith(r.rstrip("/") + "/") for r in roots)


def mount_points() -> List[str]:
    points = []
    with open("/proc/self/mountinfo", "r", encoding="utf-8", errors="surrogateescape") as f:
        for line in f:
            fields = line.split()
            if len(fields) > 4:
                points.append(re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), fields[4]))
    return points


def remount(point: str, readonly: bool) -> None:
    flags = os.statvfs(point).f_flag
    new = MS_REMOUNT | MS_BIND | (MS_RDONLY if readonly else 0)
    for st, ms in _KEPT_FLAGS:
        if flags & st:
            new |= ms
    if not flags & (os.ST_NOATIME | os.ST_RELATIME):
        new |= MS_STRICTATIME
    mount(None, point, None, new)


def remount_readonly(points: Iterable[str]) -> None:
    for point in points:
        if under(point, PSEUDO_ROOTS):
            continue
        try:
            if os.statvfs(point).f_flag & os.ST_RDONLY:
                continue
            remount(point, readonly=True)
        except OSError as e:
            # a mount point the service cannot reach is unreachable from the step too
            if e.errno not in (errno.EACCES, errno.ENOENT, errno.ENOTDIR):
                raise


def enter_private_view(workdir: str, hidden: Iterable[str], unshare_net: bool = False) -> None:
    """Must run in the single-threaded process that is about to exec the step."""
    uid, gid = os.getuid(), os.getgid()
    enter_user_namespace(0, uid, 0, gid, os.CLONE_NEWNET if unshare_net else 0)
    mount(None, "/", None, MS_REC | MS_PRIVATE)
    remount_readonly(mount_points())

    covered: List[str] = []
    for path in sorted({os.path.realpath(p) for p in hidden}, key=len):
        if under(path, covered) or not os.path.isdir(path):
            continue
        mount("tmpfs", path, "tmpfs", MS_NOSUID | MS_NODEV, TMPFS_OPTIONS)
        covered.append(path)

    # the cwd still refers to the original directory underneath the tmpfs
    os.makedirs(workdir, exist_ok=True)
    mount(".", workdir, None, MS_BIND | MS_REC)
    remount(workdir, readonly=False)
    os.chdir(workdir)

    # a service running as root must not hand the step namespace-root capabilities
    enter_user_namespace(uid or NOBODY, 0, gid or NOBODY, 0)
