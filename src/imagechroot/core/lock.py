"""
Single-instance lock.

A PID-stamped lock file keeps two sessions from sharing one configuration.
A lock left behind by a dead process is reclaimed.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import psutil

from imagechroot.core.errors import SessionLockedError
from imagechroot.core.logging import get_logger

logger = get_logger(__name__)


class SessionLock:
    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self.held = False

    def _read_pid(self) -> int | None:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid = self._read_pid()
                if pid is not None and pid != os.getpid() and psutil.pid_exists(pid):
                    raise SessionLockedError(str(self.path), pid)
                logger.warning("Reclaiming stale lock", lock=str(self.path), pid=pid)
                self.path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n")
            self.held = True
            logger.debug("Lock acquired", lock=str(self.path))
            return

        raise SessionLockedError(str(self.path), self._read_pid() or -1)

    def release(self) -> None:
        if not self.held:
            return
        if self._read_pid() == os.getpid():
            self.path.unlink(missing_ok=True)
        self.held = False
        logger.debug("Lock released", lock=str(self.path))

    def __enter__(self) -> SessionLock:
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()
