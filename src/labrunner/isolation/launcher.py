"""
Exec wrapper for sandboxed steps:

    python -m labrunner.isolation.launcher [limits] -- <argv...>

Applies rlimits (and, when asked, a private filesystem view and/or a
fresh network namespace) to its own process, then execs the target so
everything carries over. Runs as the leader of the job's process group.
"""
from __future__ import annotations
import argparse
import os
import shutil
import sys

from .rlimits import apply_rlimits

LAUNCH_FAILED = 121
LAUNCH_TAG = "labrunner-launch:"


def _fail(msg: str) -> None:
    sys.stderr.write(f"{LAUNCH_TAG} {msg}\n")
    sys.stderr.flush()
    os._exit(LAUNCH_FAILED)


def parse_args(argv):
    ap = argparse.ArgumentParser(prog="labrunner.isolation.launcher")
    ap.add_argument("--cpu", type=int, required=True)
    ap.add_argument("--mem", type=int, required=True)
    ap.add_argument("--mem-kind", choices=("as", "data"), default="as")
    ap.add_argument("--nofile", type=int, default=64)
    ap.add_argument("--nproc", type=int, default=0)
    ap.add_argument("--fsize", type=int, default=0)
    ap.add_argument("--unshare-net", action="store_true")
    ap.add_argument("--private-fs", action="store_true")
    ap.add_argument("--hide", action="append", default=[], metavar="PATH")
    ap.add_argument("cmd", nargs=argparse.REMAINDER)
    args = ap.parse_args(argv)
    if args.cmd and args.cmd[0] == "--":
        args.cmd = args.cmd[1:]
    if not args.cmd:
        ap.error("missing command")
    return args


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)
    cmd = list(args.cmd)

    if args.private_fs:
        if not hasattr(os, "unshare"):
            _fail("private filesystem needs os.unshare")
        from .mounts import enter_private_view
        try:
            enter_private_view(os.path.realpath(os.getcwd()), args.hide,
                               unshare_net=args.unshare_net)
        except OSError as e:
            _fail(f"private filesystem failed: {e}")
    elif args.unshare_net:
        if hasattr(os, "unshare"):
            try:
                os.unshare(os.CLONE_NEWUSER | os.CLONE_NEWNET)
            except OSError as e:
                _fail(f"unshare failed: {e.strerror}")
        else:
            unshare = shutil.which("unshare")
            if not unshare:
                _fail("unshare unavailable")
            cmd = [unshare, "--user", "--net", "--"] + cmd

    try:
        apply_rlimits(args.cpu, args.mem, args.nofile,
                      nproc=args.nproc, fsize_bytes=args.fsize, memory_kind=args.mem_kind)
    except (OSError, ValueError) as e:
        _fail(f"rlimit failed: {e}")

    env = dict(os.environ)
    env.pop("PYTHONPATH", None)
    try:
        os.execvpe(cmd[0], cmd, env)
    except OSError as e:
        _fail(f"exec {os.path.basename(cmd[0])} failed: {e.strerror}")


if __name__ == "__main__":
    main()
