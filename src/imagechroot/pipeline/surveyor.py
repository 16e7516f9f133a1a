"""
Partition surveyor.

Lists the partitions of an attached device with their filesystem signatures.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import humanize

from imagechroot.core.logging import get_logger
from imagechroot.core.models import BlockDeviceHandle, FileSystem, PartitionInfo, PartitionStyle
from imagechroot.platform.linux.parsers import (
    build_partition_from_lsblk,
    parse_blkid_export,
    parse_device_size,
    parse_lsblk_json,
    parse_partition_style,
)

if TYPE_CHECKING:
    from imagechroot.platform.linux.backend import LinuxBackend

logger = get_logger(__name__)

LSBLK_COLUMNS = "NAME,PATH,SIZE,TYPE,FSTYPE,LABEL,UUID,PTTYPE,PARTTYPE"


class PartitionSurveyor:
    """Enumerates partitions of an attached block device."""

    def __init__(self, backend: LinuxBackend, max_partitions: int = 16) -> None:
        self.backend = backend
        self.max_partitions = max_partitions

    def _lsblk(self, device: str) -> dict[str, Any] | None:
        result = self.backend.run_command(
            [self.backend.LSBLK, "-J", "-b", "-o", LSBLK_COLUMNS, device], check=False
        )
        if not result.success:
            logger.warning("lsblk failed", device=device, error=result.error_text)
            return None
        blocks = parse_lsblk_json(result.stdout)
        return blocks[0] if blocks else None

    def _blkid(self, device: str) -> dict[str, str]:
        result = self.backend.run_command(
            [self.backend.BLKID, "-o", "export", device], check=False
        )
        if not result.success:
            return {}
        return parse_blkid_export(result.stdout)

    def _size_of(self, device: str) -> int:
        result = self.backend.run_command(
            [self.backend.LSBLK, "-b", "-d", "-n", "-o", "SIZE", device], check=False
        )
        return parse_device_size(result.stdout) if result.success else 0

    def _fill_from_blkid(self, partition: PartitionInfo) -> PartitionInfo:
        attrs = self._blkid(partition.device_path)
        if not attrs:
            return partition
        return PartitionInfo(
            device_path=partition.device_path,
            filesystem=FileSystem.from_string(attrs.get("TYPE")),
            size_bytes=partition.size_bytes,
            label=partition.label or attrs.get("LABEL"),
            uuid=partition.uuid or attrs.get("UUID"),
            partition_type_uuid=partition.partition_type_uuid or attrs.get("PART_ENTRY_TYPE"),
            number=partition.number,
        )

    def survey(self, handle: BlockDeviceHandle) -> list[PartitionInfo]:
        """List the partitions of ``handle``; unreadable ones are skipped."""
        tree = self._lsblk(handle.device_path)
        if tree is None:
            return self._survey_by_probing(handle)

        partitions: list[PartitionInfo] = []
        for child in tree.get("children", []) or []:
            partition = build_partition_from_lsblk(child)
            if partition is None:
                continue
            if not self.backend.device_exists(partition.device_path):
                logger.debug("Skipping missing partition", device=partition.device_path)
                continue
            if partition.filesystem == FileSystem.UNKNOWN:
                partition = self._fill_from_blkid(partition)
            partitions.append(partition)

        return partitions

    def _survey_by_probing(self, handle: BlockDeviceHandle) -> list[PartitionInfo]:
        partitions: list[PartitionInfo] = []
        for number in range(1, self.max_partitions + 1):
            device = f"{handle.device_path}p{number}"
            partition = self.probe(device)
            if partition is not None:
                partitions.append(partition)
        return partitions

    def partition_style(self, handle: BlockDeviceHandle) -> PartitionStyle:
        """Partition table style of the whole device."""
        tree = self._lsblk(handle.device_path)
        pttype = tree.get("pttype") if tree else None
        if not pttype:
            pttype = self._blkid(handle.device_path).get("PTTYPE")
        return parse_partition_style(pttype)

    def probe(self, device: str) -> PartitionInfo | None:
        """Probe a single device node such as a LUKS mapping or logical volume."""
        if not self.backend.device_exists(device):
            return None

        attrs = self._blkid(device)
        number = device.rsplit("p", 1)[-1] if "nbd" in device else ""
        return PartitionInfo(
            device_path=device,
            filesystem=FileSystem.from_string(attrs.get("TYPE")),
            size_bytes=self._size_of(device),
            label=attrs.get("LABEL"),
            uuid=attrs.get("UUID"),
            partition_type_uuid=attrs.get("PART_ENTRY_TYPE"),
            number=int(number) if number.isdigit() else 0,
        )

    def describe(self, partitions: list[PartitionInfo]) -> str:
        """Log and return a human-readable partition table."""
        lines = [f"{'DEVICE':<22} {'FSTYPE':<12} {'SIZE':>10}  LABEL"]
        for p in partitions:
            size = humanize.naturalsize(p.size_bytes, binary=True)
            lines.append(
                f"{p.device_path:<22} {p.filesystem.value:<12} {size:>10}  {p.label or ''}"
            )
        table = "\n".join(lines)
        logger.info("Partitions found", count=len(partitions), table="\n" + table)
        return table

