"""
Process diagnostics for busy mounts and chroot shutdown.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import psutil

from imagechroot.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProcessInfo:
    """A process holding a path open or rooted inside a chroot."""

    pid: int
    name: str
    reason: str

    def describe(self) -> str:
        return f"{self.pid} ({self.name}): {self.reason}"


def _is_within(path: str | None, prefix: str) -> bool:
    if not path:
        return False
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def find_blocking_processes(mount_point: Path) -> list[ProcessInfo]:
    """List processes whose cwd, root, or open files lie under a mount point."""
    prefix = os.path.realpath(str(mount_point))
    found: list[ProcessInfo] = []

    for proc in psutil.process_iter(["pid", "name"]):
        try:
            name = proc.info.get("name") or "?"
            reason = None

            if _is_within(proc.cwd(), prefix):
                reason = "cwd"
            elif _is_within(_process_root(proc.pid), prefix):
                reason = "root"
            else:
                for open_file in proc.open_files():
                    if _is_within(open_file.path, prefix):
                        reason = f"open file {open_file.path}"
                        break

            if reason:
                found.append(ProcessInfo(pid=proc.pid, name=name, reason=reason))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return found


def _process_root(pid: int) -> str | None:
    try:
        return os.readlink(f"/proc/{pid}/root")
    except OSError:
        return None


def find_chroot_processes(root: Path) -> list[psutil.Process]:
    """Processes whose root directory lies inside the chroot."""
    prefix = os.path.realpath(str(root))
    own_pid = os.getpid()
    procs: list[psutil.Process] = []

    for proc in psutil.process_iter(["pid"]):
        if proc.pid == own_pid:
            continue
        if _is_within(_process_root(proc.pid), prefix):
            procs.append(proc)

    return procs


def terminate_chroot_processes(root: Path, grace_seconds: float = 3.0) -> list[int]:
    """
    Terminate processes running inside the chroot.

    Sends SIGTERM, waits up to ``grace_seconds``, then SIGKILLs whatever is
    left. Returns the pids that were signalled.
    """
    procs = find_chroot_processes(root)
    if not procs:
        return []

    signalled: list[int] = []
    for proc in procs:
        try:
            proc.terminate()
            signalled.append(proc.pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.warning("Could not terminate process", pid=proc.pid, error=str(e))

    _, alive = psutil.wait_procs(procs, timeout=grace_seconds)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.warning("Could not kill process", pid=proc.pid, error=str(e))

    logger.info(
        "Terminated chroot processes",
        root=str(root),
        pids=signalled,
        killed=[p.pid for p in alive],
    )
    return signalled
