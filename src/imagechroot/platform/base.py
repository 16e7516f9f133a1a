"""
imagechroot platform backend base.

Defines the interface every pipeline stage uses to reach the operating
system, so the stages can be exercised against a scripted backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return (self.stderr or self.stdout or "").strip()

    def __repr__(self) -> str:
        cmd = self.command if isinstance(self.command, str) else " ".join(self.command)
        return f"CommandResult(rc={self.returncode}, cmd='{cmd[:50]}...')"


class PlatformBackend(ABC):
    """Abstract base class for the OS operations a session performs."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name (e.g., 'linux')."""

    @abstractmethod
    def is_admin(self) -> bool:
        """Check if running with admin privileges."""

    @abstractmethod
    def run_command(
        self,
        command: list[str],
        timeout: float | None = 300,
        check: bool = True,
        input_text: str | None = None,
        capture_output: bool = True,
    ) -> CommandResult:
        """
        Run a system command.
        Never raises for a non-zero exit; callers inspect the result.
        """

    @abstractmethod
    def device_exists(self, device_path: str) -> bool:
        """Whether a device node exists."""

    @abstractmethod
    def read_sysfs(self, path: Path) -> str | None:
        """Read a sysfs attribute, or None when it does not exist."""

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Wait between polls and retries."""
