"""
imagechroot error hierarchy.

Fatal setup errors abort the pipeline; the session tears down whatever was
acquired and exposes ``exit_code`` as the process exit status.
"""

from __future__ import annotations

import signal


class ImageChrootError(Exception):
    """Base class for all imagechroot errors."""

    exit_code = 1


class FatalSetupError(ImageChrootError):
    """An error that stops the mount pipeline."""


class ImageNotFoundError(FatalSetupError):
    exit_code = 2

    def __init__(self, path: str) -> None:
        super().__init__(f"Image file not found: {path}")
        self.path = path


class NoFreeDeviceError(FatalSetupError):
    exit_code = 3

    def __init__(self, scanned: int) -> None:
        super().__init__(
            f"No available NBD device found among {scanned} slots. "
            "Disconnect unused devices with: qemu-nbd -d /dev/nbdN"
        )
        self.scanned = scanned


class ImageConnectError(FatalSetupError):
    exit_code = 4

    def __init__(self, image: str, attempts: int, detail: str = "") -> None:
        message = f"Failed to connect {image} after {attempts} attempts"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.image = image
        self.attempts = attempts


class NoRootFoundError(FatalSetupError):
    exit_code = 5

    def __init__(self, image: str | None = None) -> None:
        where = f" in {image}" if image else ""
        super().__init__(f"No Linux partition found{where}")


class RootSanityError(FatalSetupError):
    exit_code = 6

    def __init__(self, tried: list[str]) -> None:
        super().__init__(
            "Does not appear to be a valid Linux system (missing /etc or /bin); "
            f"tried: {', '.join(tried) or 'nothing'}"
        )
        self.tried = tried


class SessionLockedError(FatalSetupError):
    exit_code = 7

    def __init__(self, lock_path: str, pid: int) -> None:
        super().__init__(f"Another session (pid {pid}) holds the lock {lock_path}")
        self.lock_path = lock_path
        self.pid = pid


class SessionInterrupted(ImageChrootError):
    """Raised from the signal handler so the session unwinds through teardown."""

    def __init__(self, signum: int) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Interrupted by {name}")
        self.signum = signum
        self.exit_code = 128 + signum
