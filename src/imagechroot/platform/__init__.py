"""
imagechroot Platform Abstraction Layer.

Provides the OS backend used by the mount pipeline. Network block devices
and device-mapper only exist on Linux, so that is the only backend.
"""

from __future__ import annotations

import platform

from imagechroot.core.errors import ImageChrootError
from imagechroot.platform.base import CommandResult, PlatformBackend


def get_platform_backend() -> PlatformBackend:
    """Get the backend for the running OS."""
    system = platform.system().lower()
    if system != "linux":
        raise ImageChrootError(f"Unsupported platform: {system} (qemu-nbd and device-mapper need Linux)")

    from imagechroot.platform.linux import LinuxBackend

    return LinuxBackend()


__all__ = [
    "CommandResult",
    "PlatformBackend",
    "get_platform_backend",
]
