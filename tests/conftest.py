"""
Pytest configuration and fixtures for imagechroot tests.
"""

import json
import shutil
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from imagechroot.core.config import (  # noqa: E402
    ChrootConfig,
    ConnectorConfig,
    ImageChrootConfig,
    LoggingConfig,
    MountConfig,
    TeardownConfig,
)
from imagechroot.platform.base import CommandResult  # noqa: E402
from imagechroot.platform.linux.backend import LinuxBackend  # noqa: E402
from imagechroot.pipeline.surveyor import LSBLK_COLUMNS  # noqa: E402

CONNECTED_SECTORS = "41943040"

Handler = Callable[[list[str], Optional[str]], CommandResult]


class FakeBackend(LinuxBackend):
    """
    Scripted backend that records every command.

    Commands matching a registered prefix get the scripted answer. The rest
    fall through to a small simulation of qemu-nbd, mount/umount, cryptsetup
    and blkid so a full session can run against temporary directories.
    """

    def __init__(self, sys_block_root: Path, slots: int = 4) -> None:
        self.sys_block_root = sys_block_root
        self.calls: list[list[str]] = []
        self.inputs: list[Optional[str]] = []
        self.handlers: list[tuple[list[str], Handler]] = []
        self.sysfs: dict[Path, str] = {}
        self.devices: set[str] = set()
        self.missing_devices: set[str] = set()
        self.blkid: dict[str, dict[str, str]] = {}
        self.sizes: dict[str, int] = {}
        self.layouts: dict[str, list[Any]] = {}
        self.mounted: dict[str, bool] = {}
        self.busy: set[str] = set()
        self.failing_mounts: set[str] = set()
        self.connect_failures = 0
        self.luks_passphrase: Optional[str] = None
        self.sleeps: list[float] = []
        self.absent_tools: set[str] = set()
        self.admin = True

        for index in range(slots):
            self.sysfs[sys_block_root / f"nbd{index}" / "size"] = "0"

    # ==================== Scripting ====================

    def on(
        self,
        prefix: list[str],
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        handler: Optional[Handler] = None,
    ) -> None:
        if handler is None:

            def handler(command: list[str], input_text: Optional[str]) -> CommandResult:
                return CommandResult(returncode, stdout, stderr, command)

        self.handlers.insert(0, (list(prefix), handler))

    def set_partitions(self, device: str, partitions: list[dict[str, Any]], pttype: str = "gpt") -> None:
        children = []
        for part in partitions:
            children.append(
                {
                    "name": Path(part["path"]).name,
                    "path": part["path"],
                    "size": part.get("size", 0),
                    "type": "part",
                    "fstype": part.get("fstype"),
                    "label": part.get("label"),
                    "uuid": part.get("uuid"),
                    "pttype": pttype,
                    "parttype": part.get("parttype"),
                }
            )
        tree = {
            "blockdevices": [
                {
                    "name": Path(device).name,
                    "path": device,
                    "size": sum(p.get("size", 0) for p in partitions),
                    "type": "disk",
                    "fstype": None,
                    "label": None,
                    "uuid": None,
                    "pttype": pttype,
                    "parttype": None,
                    "children": children,
                }
            ]
        }
        self.on([self.LSBLK, "-J", "-b", "-o", LSBLK_COLUMNS, device], stdout=json.dumps(tree))

    def add_filesystem(self, source: str, layout: list[Any], subvolume: Optional[str] = None) -> None:
        """Directories (str) and files ((path, content)) that appear when mounted."""
        key = f"{source}#{subvolume}" if subvolume else source
        self.layouts[key] = layout

    def calls_matching(self, prefix: list[str]) -> list[list[str]]:
        return [c for c in self.calls if c[: len(prefix)] == prefix]

    def index_of(self, prefix: list[str]) -> int:
        for index, command in enumerate(self.calls):
            if command[: len(prefix)] == prefix:
                return index
        raise AssertionError(f"{prefix} was never run")

    # ==================== Backend interface ====================

    def is_admin(self) -> bool:
        return self.admin

    def missing_tools(self, tools: list[str]) -> list[str]:
        return [tool for tool in tools if tool in self.absent_tools]

    def run_command(
        self,
        command: list[str],
        timeout: Optional[float] = 300,
        check: bool = True,
        input_text: Optional[str] = None,
        capture_output: bool = True,
    ) -> CommandResult:
        self.calls.append(list(command))
        self.inputs.append(input_text)
        for prefix, handler in self.handlers:
            if command[: len(prefix)] == prefix:
                return handler(command, input_text)
        return self._simulate(command, input_text)

    def device_exists(self, device_path: str) -> bool:
        if device_path in self.missing_devices:
            return False
        if device_path.startswith("/dev/mapper/"):
            return device_path in self.devices
        return True

    def read_sysfs(self, path: Path) -> Optional[str]:
        return self.sysfs.get(path)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    # ==================== Simulation ====================

    def _result(self, command: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
        return CommandResult(returncode, stdout, stderr, command)

    def _simulate(self, command: list[str], input_text: Optional[str]) -> CommandResult:
        tool = command[0]
        if tool == self.QEMU_NBD:
            return self._qemu_nbd(command)
        if tool == self.MOUNT:
            return self._mount(command)
        if tool == self.UMOUNT:
            return self._umount(command)
        if tool == self.MOUNTPOINT:
            return self._result(command, 0 if command[-1] in self.mounted else 1)
        if tool == self.CRYPTSETUP:
            return self._cryptsetup(command, input_text)
        if tool == self.BLKID:
            attrs = self.blkid.get(command[-1])
            if attrs is None:
                return self._result(command, 2)
            return self._result(command, stdout="\n".join(f"{k}={v}" for k, v in attrs.items()))
        if tool == self.LSBLK and "-d" in command:
            return self._result(command, stdout=f"{self.sizes.get(command[-1], 0)}\n")
        return self._result(command)

    def _qemu_nbd(self, command: list[str]) -> CommandResult:
        if command[1] == "-c":
            if self.connect_failures > 0:
                self.connect_failures -= 1
                return self._result(command, 1, stderr="Failed to set NBD socket")
            slot = command[2].replace("/dev/nbd", "")
            self.sysfs[self.sys_block_root / f"nbd{slot}" / "size"] = CONNECTED_SECTORS
            self.sysfs[self.sys_block_root / f"nbd{slot}" / "pid"] = "4242"
            return self._result(command)
        if command[1] == "-d":
            slot = command[2].replace("/dev/nbd", "")
            self.sysfs[self.sys_block_root / f"nbd{slot}" / "size"] = "0"
            self.sysfs.pop(self.sys_block_root / f"nbd{slot}" / "pid", None)
        return self._result(command)

    def _mount(self, command: list[str]) -> CommandResult:
        args = command[1:]
        source, target = args[-2], args[-1]
        bind = "--bind" in args
        fstype = args[args.index("-t") + 1] if "-t" in args else None
        options = args[args.index("-o") + 1].split(",") if "-o" in args else []

        if source in self.failing_mounts:
            return self._result(command, 32, stderr=f"mount: {target}: wrong fs type, bad option")
        if target in self.mounted:
            return self._result(command, 32, stderr=f"mount: {target}: already mounted")

        pseudo = bind or fstype in ("proc", "sysfs")
        if not pseudo:
            subvolume = next((o.split("=", 1)[1] for o in options if o.startswith("subvol=")), None)
            key = f"{source}#{subvolume}" if subvolume else source
            self._materialize(Path(target), self.layouts.get(key, []))
        self.mounted[target] = pseudo
        return self._result(command)

    def _materialize(self, target: Path, layout: list[Any]) -> None:
        for entry in layout:
            if isinstance(entry, tuple):
                relative, content = entry
                path = target / relative
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)
                path.chmod(0o755)
            else:
                (target / entry).mkdir(parents=True, exist_ok=True)

    def _umount(self, command: list[str]) -> CommandResult:
        target = command[-1]
        flags = command[1:-1]
        if target not in self.mounted:
            return self._result(command, 32, stderr=f"umount: {target}: not mounted.")
        if target in self.busy and "-l" not in flags:
            return self._result(command, 32, stderr=f"umount: {target}: target is busy.")

        pseudo = self.mounted.pop(target)
        if not pseudo:
            for child in Path(target).iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        return self._result(command)

    def _cryptsetup(self, command: list[str], input_text: Optional[str]) -> CommandResult:
        if command[1] == "open":
            name = command[5]
            if self.luks_passphrase is not None and "-" in command and input_text != self.luks_passphrase:
                return self._result(command, 2, stderr="No key available with this passphrase.")
            self.devices.add(f"/dev/mapper/{name}")
            return self._result(command)
        if command[1] == "close":
            self.devices.discard(f"/dev/mapper/{command[2]}")
        return self._result(command)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Temporary directory for tests."""
    return tmp_path


@pytest.fixture
def sample_config(tmp_path: Path) -> ImageChrootConfig:
    """Configuration confined to a temporary directory, with no delays."""
    module_root = tmp_path / "sys" / "module"
    (module_root / "nbd").mkdir(parents=True)
    host_resolv = tmp_path / "host" / "resolv.conf"
    host_resolv.parent.mkdir(parents=True)
    host_resolv.write_text("nameserver 192.0.2.53\n")

    config = ImageChrootConfig(
        logging=LoggingConfig(
            file_enabled=False,
            console_enabled=False,
            log_directory=tmp_path / "logs",
        ),
        connector=ConnectorConfig(
            sys_block_root=tmp_path / "sys" / "block",
            sys_module_root=module_root,
            retry_backoff_seconds=0.0,
            ready_poll_interval_seconds=0.0,
            ready_timeout_seconds=0.0,
        ),
        mount=MountConfig(
            temp_root=tmp_path / "mnt",
            mount_retries=1,
            mount_retry_delay_seconds=0.0,
        ),
        chroot=ChrootConfig(host_resolv_conf=host_resolv),
        teardown=TeardownConfig(umount_retries=1, umount_retry_delay_seconds=0.0),
        session_directory=tmp_path / "sessions",
    )
    config.ensure_directories()
    return config


@pytest.fixture
def backend(sample_config: ImageChrootConfig) -> FakeBackend:
    """Scripted backend sharing the sample configuration's sysfs root."""
    return FakeBackend(sample_config.connector.sys_block_root)


@pytest.fixture
def image_file(tmp_path: Path) -> Path:
    """A small qcow2-named image file."""
    path = tmp_path / "images" / "disk.qcow2"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"QFI\xfb" + b"\0" * 508)
    return path


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
