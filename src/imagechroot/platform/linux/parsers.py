"""
Linux output parsers.

Parsers for lsblk, blkid, file, btrfs, and the LVM reporting tools.
"""

from __future__ import annotations

import json
import re
from typing import Any

from imagechroot.core.models import FileSystem, ImageFormat, PartitionInfo, PartitionStyle


def parse_lsblk_json(output: str) -> list[dict[str, Any]]:
    """Parse JSON output from lsblk."""
    try:
        data = json.loads(output)
        return data.get("blockdevices", [])
    except json.JSONDecodeError:
        return []


def parse_blkid_export(output: str) -> dict[str, str]:
    """
    Parse ``blkid -o export`` output for a single device.

    Example input:
    DEVNAME=/dev/nbd0p1
    TYPE=ext4
    """
    attrs: dict[str, str] = {}
    for line in output.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        attrs[key.strip().upper()] = value.strip()
    return attrs


def parse_partition_style(pttype: str | None) -> PartitionStyle:
    """Parse partition table type."""
    if not pttype:
        return PartitionStyle.UNKNOWN

    pttype_lower = pttype.lower()
    if pttype_lower == "gpt":
        return PartitionStyle.GPT
    elif pttype_lower in ("dos", "mbr", "msdos"):
        return PartitionStyle.MBR

    return PartitionStyle.UNKNOWN


def _parse_size(value: Any) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def build_partition_from_lsblk(block: dict[str, Any]) -> PartitionInfo | None:
    """Build a PartitionInfo from an lsblk child device entry."""
    device_path = block.get("path") or block.get("name") or ""
    if not device_path:
        return None
    if not device_path.startswith("/dev/"):
        device_path = f"/dev/{device_path}"

    block_type = block.get("type", "")
    if block_type not in ("part", "partition", ""):
        return None

    part_num_match = re.search(r"(\d+)$", device_path)

    return PartitionInfo(
        device_path=device_path,
        filesystem=FileSystem.from_string(block.get("fstype")),
        size_bytes=_parse_size(block.get("size", 0)),
        label=block.get("label") or None,
        uuid=block.get("uuid") or None,
        partition_type_uuid=(block.get("parttype") or None),
        number=int(part_num_match.group(1)) if part_num_match else 0,
    )


def parse_file_description(description: str) -> ImageFormat | None:
    """Map ``file -b`` output to an image format."""
    if "QEMU QCOW" in description:
        return ImageFormat.QCOW2
    if "VDI disk image" in description:
        return ImageFormat.VDI
    if "Microsoft Disk Image" in description or "VHD" in description:
        return ImageFormat.VPC
    if "VMware" in description and "disk image" in description:
        return ImageFormat.VMDK
    return None


def parse_image_header(header: bytes) -> ImageFormat | None:
    """Map the leading bytes of an image file to a format."""
    if header.startswith(b"QFI\xfb"):
        return ImageFormat.QCOW2
    if header.startswith(b"KDMV") or header.startswith(b"# Disk DescriptorFile"):
        return ImageFormat.VMDK
    if header.startswith(b"conectix"):
        return ImageFormat.VPC
    if header.startswith(b"<<< ") or header[64:68] == b"\x7f\x10\xda\xbe":
        return ImageFormat.VDI
    return None


def parse_btrfs_subvolume_list(output: str) -> list[str]:
    """
    Parse ``btrfs subvolume list`` output into subvolume paths.

    Example input:
    ID 256 gen 35 top level 5 path @
    ID 257 gen 30 top level 5 path @home
    """
    subvolumes: list[str] = []
    for line in output.splitlines():
        match = re.search(r"\bpath\s+(.+?)\s*$", line)
        if match:
            subvolumes.append(match.group(1))
    return subvolumes


def parse_lvm_columns(output: str, separator: str = "|") -> list[list[str]]:
    """Parse ``--noheadings --separator`` output from vgs/lvs."""
    rows: list[list[str]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        rows.append([col.strip() for col in line.split(separator)])
    return rows


def parse_vgs_names(output: str) -> list[str]:
    """Parse ``vgs --noheadings -o vg_name`` output."""
    names: list[str] = []
    for row in parse_lvm_columns(output):
        if row and row[0] and row[0] not in names:
            names.append(row[0])
    return names


def parse_active_groups(output: str) -> set[str]:
    """Parse ``lvs --noheadings --separator | -o vg_name,lv_active`` output."""
    active: set[str] = set()
    for row in parse_lvm_columns(output):
        if len(row) >= 2 and row[1].lower() == "active":
            active.add(row[0])
    return active


def parse_device_size(output: str) -> int:
    """Parse a byte count from ``lsblk -bno SIZE`` or a sysfs sector count."""
    first = output.strip().split("\n", 1)[0].strip() if output.strip() else ""
    return _parse_size(first)
