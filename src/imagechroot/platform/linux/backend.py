"""
Linux Platform Backend Implementation.

Runs the external tools the mount pipeline depends on.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path

from imagechroot.core.logging import get_logger
from imagechroot.platform.base import CommandResult, PlatformBackend

logger = get_logger(__name__)


class LinuxBackend(PlatformBackend):
    """Linux implementation of the session's OS operations."""

    # Tool paths (can be overridden for testing)
    QEMU_NBD = "qemu-nbd"
    MODPROBE = "modprobe"
    PARTPROBE = "partprobe"
    UDEVADM = "udevadm"
    LSBLK = "lsblk"
    BLKID = "blkid"
    FILE = "file"
    MOUNT = "mount"
    UMOUNT = "umount"
    MOUNTPOINT = "mountpoint"
    CRYPTSETUP = "cryptsetup"
    PVSCAN = "pvscan"
    VGS = "vgs"
    LVS = "lvs"
    VGCHANGE = "vgchange"
    BTRFS = "btrfs"

    @property
    def name(self) -> str:
        return "linux"

    def is_admin(self) -> bool:
        return os.geteuid() == 0

    def _check_tool(self, tool: str) -> bool:
        """Check if a tool is available."""
        return shutil.which(tool) is not None

    def get_required_tools(self, with_luks: bool = True, with_lvm: bool = True) -> list[str]:
        """Get list of required tools."""
        tools = [
            self.QEMU_NBD,
            self.PARTPROBE,
            self.LSBLK,
            self.BLKID,
            self.MOUNT,
            self.UMOUNT,
            self.MOUNTPOINT,
        ]
        if with_luks:
            tools.append(self.CRYPTSETUP)
        if with_lvm:
            tools.extend([self.PVSCAN, self.VGS, self.LVS, self.VGCHANGE])
        return tools

    def missing_tools(self, tools: list[str]) -> list[str]:
        return [tool for tool in tools if not self._check_tool(tool)]

    def run_command(
        self,
        command: list[str],
        timeout: float | None = 300,
        check: bool = True,
        input_text: str | None = None,
        capture_output: bool = True,
    ) -> CommandResult:
        """Run a system command."""
        logger.debug("Running command", command=command)
        start_time = time.time()

        try:
            result = subprocess.run(
                command,
                capture_output=capture_output,
                text=True,
                timeout=timeout,
                input=input_text,
            )
            duration = time.time() - start_time

            cmd_result = CommandResult(
                returncode=result.returncode,
                stdout=result.stdout if capture_output else "",
                stderr=result.stderr if capture_output else "",
                command=command,
                duration_seconds=duration,
            )

            if check and result.returncode != 0:
                logger.warning(
                    "Command failed",
                    command=command,
                    returncode=result.returncode,
                    stderr=result.stderr[:500] if result.stderr else "",
                )

            return cmd_result

        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                command=command,
                duration_seconds=timeout or 0.0,
            )
        except OSError as e:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

    def device_exists(self, device_path: str) -> bool:
        return os.path.exists(device_path)

    def read_sysfs(self, path: Path) -> str | None:
        try:
            return path.read_text().strip()
        except OSError:
            return None

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
