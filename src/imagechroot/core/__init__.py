"""
imagechroot Core - session, resources, and configuration.

Contains the resource ledger and teardown, the mount session that drives
the pipeline, configuration, errors, and logging.
"""

from imagechroot.core.config import ImageChrootConfig
from imagechroot.core.errors import (
    FatalSetupError,
    ImageChrootError,
    ImageConnectError,
    ImageNotFoundError,
    NoFreeDeviceError,
    NoRootFoundError,
    RootSanityError,
    SessionInterrupted,
    SessionLockedError,
)
from imagechroot.core.ledger import ResourceLedger, TeardownManager, TeardownReport
from imagechroot.core.lock import SessionLock
from imagechroot.core.logging import get_logger, setup_logging
from imagechroot.core.session import MountSession, SessionReport

__all__ = [
    "ImageChrootConfig",
    "ImageChrootError",
    "FatalSetupError",
    "ImageNotFoundError",
    "NoFreeDeviceError",
    "ImageConnectError",
    "NoRootFoundError",
    "RootSanityError",
    "SessionLockedError",
    "SessionInterrupted",
    "ResourceLedger",
    "TeardownManager",
    "TeardownReport",
    "SessionLock",
    "MountSession",
    "SessionReport",
    "get_logger",
    "setup_logging",
]
