"""
Image connector.

Attaches a disk image to a free network block device with qemu-nbd and waits
until the kernel exposes it.

The free-slot scan reads sysfs and is not atomic: a concurrent session may
claim the same slot between the scan and ``qemu-nbd -c``. Each connect
attempt therefore re-scans, so a slot lost to another session is skipped on
the next attempt.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Callable

from imagechroot.core.errors import ImageConnectError, ImageNotFoundError, NoFreeDeviceError
from imagechroot.core.logging import OperationLogger, get_logger
from imagechroot.core.models import BlockDeviceHandle, ImageFormat
from imagechroot.platform.linux.parsers import parse_file_description, parse_image_header

if TYPE_CHECKING:
    from imagechroot.core.config import ConnectorConfig
    from imagechroot.core.ledger import ResourceLedger
    from imagechroot.platform.linux.backend import LinuxBackend

logger = get_logger(__name__)

EXTENSION_FORMATS: dict[str, ImageFormat] = {
    ".vhd": ImageFormat.VPC,
    ".vtoy": ImageFormat.VPC,
    ".qcow2": ImageFormat.QCOW2,
    ".vmdk": ImageFormat.VMDK,
    ".vdi": ImageFormat.VDI,
    ".img": ImageFormat.RAW,
    ".raw": ImageFormat.RAW,
}

LISTED_EXTENSIONS = (".img", ".raw", ".vhd", ".vtoy", ".qcow2", ".vmdk")

HEADER_BYTES = 512


def _read_header(path: Path) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read(HEADER_BYTES)
    except OSError:
        return b""


def detect_image_format(
    path: str | Path,
    describe: Callable[[Path], str | None] | None = None,
) -> ImageFormat:
    """
    Detect the qemu-nbd format of an image.

    The extension decides when it is recognised. Otherwise the ``file``
    description (via ``describe``) and then the header bytes are inspected.
    Anything unmatched is treated as raw.
    """
    path = Path(path)
    by_extension = EXTENSION_FORMATS.get(path.suffix.lower())
    if by_extension is not None:
        return by_extension

    if describe is not None:
        description = describe(path)
        if description:
            by_description = parse_file_description(description)
            if by_description is not None:
                return by_description

    by_header = parse_image_header(_read_header(path))
    if by_header is not None:
        return by_header

    return ImageFormat.RAW


def find_image_files(directory: str | Path, show_hidden: bool = False) -> list[Path]:
    """List image files in a directory, sorted by name."""
    directory = Path(directory)
    if not directory.is_dir():
        return []

    images = [
        entry
        for entry in directory.iterdir()
        if entry.is_file()
        and entry.suffix.lower() in LISTED_EXTENSIONS
        and (show_hidden or not entry.name.startswith("."))
    ]
    return sorted(images)


class ImageConnector:
    """Attaches images to /dev/nbdN devices."""

    def __init__(self, backend: LinuxBackend, config: ConnectorConfig) -> None:
        self.backend = backend
        self.config = config

    def describe_file(self, path: Path) -> str | None:
        result = self.backend.run_command([self.backend.FILE, "-b", str(path)], check=False)
        return result.stdout.strip() if result.success else None

    def ensure_module(self) -> None:
        """Load the nbd kernel module when it is not loaded yet."""
        if not self.config.load_module:
            return
        if (self.config.sys_module_root / "nbd").exists():
            return

        result = self.backend.run_command(
            [
                self.backend.MODPROBE,
                "nbd",
                f"max_part={self.config.max_partitions}",
                f"nbds_max={self.config.max_slots}",
            ]
        )
        if not result.success:
            logger.warning("Could not load nbd module", error=result.error_text)

    def slot_is_free(self, index: int) -> bool:
        base = self.config.sys_block_root / f"nbd{index}"
        size = self.backend.read_sysfs(base / "size")
        if size is None:
            return False
        pid = self.backend.read_sysfs(base / "pid")
        return size.strip() == "0" and not pid

    def find_free_slot(self) -> int:
        """Return the first free nbd slot index."""
        for index in range(self.config.max_slots):
            if self.slot_is_free(index):
                return index
        raise NoFreeDeviceError(self.config.max_slots)

    def connect(
        self,
        image_path: str | Path,
        ledger: ResourceLedger,
        image_format: ImageFormat | None = None,
    ) -> BlockDeviceHandle:
        """Attach ``image_path`` and push the handle onto the ledger."""
        path = Path(image_path)
        if not path.is_file():
            raise ImageNotFoundError(str(path))

        fmt = image_format or detect_image_format(path, self.describe_file)
        attempts = self.config.connect_attempts
        last_error = ""
        tried_raw_fallback = False

        with OperationLogger("connect image", logger, image=str(path), format=fmt.value) as op:
            self.ensure_module()

            attempt = 0
            while attempt < attempts:
                slot = self.find_free_slot()
                device = f"/dev/nbd{slot}"
                result = self.backend.run_command(
                    [self.backend.QEMU_NBD, "-c", device, "-f", fmt.value, str(path)]
                )

                if result.success:
                    handle = BlockDeviceHandle(
                        device_path=device,
                        image_path=path,
                        image_format=fmt,
                        slot=slot,
                    )
                    ledger.push(handle)
                    op.update(device=device, format=fmt.value)
                    self.wait_ready(handle)
                    return handle

                last_error = result.error_text
                if fmt == ImageFormat.VPC and not tried_raw_fallback:
                    logger.warning("VHD connect failed, retrying as raw", device=device)
                    fmt = ImageFormat.RAW
                    tried_raw_fallback = True
                    continue

                attempt += 1
                if attempt < attempts:
                    delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "Connect attempt failed",
                        attempt=attempt,
                        device=device,
                        retry_in=delay,
                        error=last_error,
                    )
                    self.backend.sleep(delay)

        raise ImageConnectError(str(path), attempts, last_error)

    def device_size_sectors(self, handle: BlockDeviceHandle) -> int:
        value = self.backend.read_sysfs(self.config.sys_block_root / f"nbd{handle.slot}" / "size")
        try:
            return int(value) if value else 0
        except ValueError:
            return 0

    def rescan(self, device_path: str) -> None:
        """Ask the kernel and udev to pick up partition changes."""
        self.backend.run_command([self.backend.PARTPROBE, device_path], check=False)
        self.backend.run_command([self.backend.UDEVADM, "settle"], check=False)

    def wait_ready(self, handle: BlockDeviceHandle) -> None:
        """Poll until the device reports a non-zero size."""
        self.rescan(handle.device_path)

        interval = self.config.ready_poll_interval_seconds
        waited = 0.0
        while True:
            if self.device_size_sectors(handle) > 0:
                logger.debug("Device ready", device=handle.device_path, waited=waited)
                return
            if waited >= self.config.ready_timeout_seconds:
                break
            self.backend.sleep(interval)
            waited += interval if interval > 0 else self.config.ready_timeout_seconds

        raise ImageConnectError(
            str(handle.image_path),
            1,
            f"{handle.device_path} reported no size after {self.config.ready_timeout_seconds}s",
        )
