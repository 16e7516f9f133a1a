"""
imagechroot data models.

Defines the core data structures for attached images, surveyed partitions,
and every resource a mount session acquires.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, auto
from pathlib import Path
from typing import Any, Union

ESP_TYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"

MIB = 1024 * 1024


class ImageFormat(Enum):
    """Container formats understood by qemu-nbd."""

    RAW = "raw"
    QCOW2 = "qcow2"
    VDI = "vdi"
    VMDK = "vmdk"
    VPC = "vpc"


class FileSystem(Enum):
    """File system and container signatures reported by blkid/lsblk."""

    EXT4 = "ext4"
    EXT3 = "ext3"
    EXT2 = "ext2"
    XFS = "xfs"
    BTRFS = "btrfs"
    VFAT = "vfat"
    LUKS = "crypto_LUKS"
    LVM_MEMBER = "LVM2_member"
    SWAP = "swap"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str | None) -> FileSystem:
        """Create FileSystem from string value."""
        if not value:
            return cls.UNKNOWN
        value_lower = value.lower().strip()
        for fs in cls:
            if fs.value.lower() == value_lower or fs.name.lower() == value_lower:
                return fs
        aliases = {
            "fat": cls.VFAT,
            "fat32": cls.VFAT,
            "fat16": cls.VFAT,
            "luks": cls.LUKS,
            "crypto_luks": cls.LUKS,
            "lvm2_member": cls.LVM_MEMBER,
        }
        return aliases.get(value_lower, cls.UNKNOWN)

    @property
    def is_linux_root(self) -> bool:
        return self in (FileSystem.EXT4, FileSystem.EXT3, FileSystem.EXT2, FileSystem.XFS, FileSystem.BTRFS)

    @property
    def is_boot_capable(self) -> bool:
        return self in (FileSystem.EXT4, FileSystem.EXT3, FileSystem.EXT2, FileSystem.XFS)


class PartitionStyle(Enum):
    """Partition table style."""

    GPT = auto()
    MBR = auto()
    UNKNOWN = auto()


class PartitionRole(Enum):
    """Role assigned to a partition by the classifier."""

    UNASSIGNED = auto()
    ROOT_CANDIDATE = auto()
    BOOT = auto()
    EFI = auto()
    LUKS_MEMBER = auto()
    LVM_MEMBER = auto()


class RootOrigin(Enum):
    """Where a root candidate came from."""

    OVERRIDE = "override"
    PARTITION = "partition"
    LUKS = "luks"
    LVM = "lvm"


@dataclass(frozen=True)
class PartitionInfo:
    """A surveyed partition (or probed device-mapper node)."""

    device_path: str
    filesystem: FileSystem
    size_bytes: int
    label: str | None = None
    uuid: str | None = None
    partition_type_uuid: str | None = None
    number: int = 0
    role: PartitionRole = PartitionRole.UNASSIGNED

    @property
    def size_mb(self) -> int:
        """Size in MiB, rounded down."""
        return self.size_bytes // MIB

    @property
    def is_esp_type(self) -> bool:
        return (self.partition_type_uuid or "").lower() == ESP_TYPE_GUID

    def with_role(self, role: PartitionRole) -> PartitionInfo:
        return replace(self, role=role)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_path": self.device_path,
            "filesystem": self.filesystem.value,
            "size_bytes": self.size_bytes,
            "label": self.label,
            "uuid": self.uuid,
            "partition_type_uuid": self.partition_type_uuid,
            "number": self.number,
            "role": self.role.name,
        }


@dataclass
class ClassificationResult:
    """Roles assigned to the surveyed partitions."""

    style: PartitionStyle = PartitionStyle.UNKNOWN
    root: PartitionInfo | None = None
    root_candidates: list[PartitionInfo] = field(default_factory=list)
    efi: PartitionInfo | None = None
    boot: PartitionInfo | None = None
    luks_members: list[PartitionInfo] = field(default_factory=list)
    lvm_members: list[PartitionInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "style": self.style.name,
            "root": self.root.device_path if self.root else None,
            "root_candidates": [p.device_path for p in self.root_candidates],
            "efi": self.efi.device_path if self.efi else None,
            "boot": self.boot.device_path if self.boot else None,
            "luks_members": [p.device_path for p in self.luks_members],
            "lvm_members": [p.device_path for p in self.lvm_members],
        }


@dataclass
class LogicalVolume:
    """An LVM logical volume visible after activation."""

    name: str
    vg_name: str
    device_path: str
    filesystem: FileSystem = FileSystem.UNKNOWN


@dataclass
class RootCandidate:
    """A device that may hold the root filesystem, in preference order."""

    device_path: str
    filesystem: FileSystem
    origin: RootOrigin
    lv_name: str | None = None


# ==================== Ledger resources ====================


@dataclass
class BlockDeviceHandle:
    """An image attached to a network block device."""

    device_path: str
    image_path: Path
    image_format: ImageFormat
    slot: int
    connected: bool = True

    def describe(self) -> str:
        return f"nbd {self.device_path} <- {self.image_path} ({self.image_format.value})"


@dataclass
class LuksMapping:
    """An opened LUKS container."""

    source_path: str
    name: str
    is_open: bool = True

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.name}"

    def describe(self) -> str:
        return f"luks {self.source_path} -> {self.mapper_path}"


@dataclass
class VolumeGroup:
    """An LVM volume group seen by this session."""

    name: str
    activated_by_session: bool = True
    active: bool = True

    def describe(self) -> str:
        owner = "session" if self.activated_by_session else "pre-existing"
        return f"vg {self.name} ({owner})"


@dataclass
class MountRecord:
    """A filesystem or bind mount established by this session."""

    target: Path
    source: str
    fstype: FileSystem | str
    is_bind: bool = False
    options: list[str] = field(default_factory=list)
    subvolume: str | None = None
    ordinal: int = -1
    mounted: bool = True

    @property
    def is_btrfs(self) -> bool:
        return self.fstype == FileSystem.BTRFS

    @property
    def fstype_name(self) -> str:
        return self.fstype.value if isinstance(self.fstype, FileSystem) else str(self.fstype)

    def describe(self) -> str:
        kind = "bind" if self.is_bind else "mount"
        extra = f" subvol={self.subvolume}" if self.subvolume else ""
        return f"{kind} {self.source} -> {self.target} ({self.fstype_name}{extra})"


@dataclass
class TempDirectory:
    """An ephemeral directory created under the temporary root."""

    path: Path

    def describe(self) -> str:
        return f"tempdir {self.path}"


@dataclass
class ResolvConfBackup:
    """State needed to put a replaced file in the target (resolv.conf, hosts) back."""

    target: Path
    backup_path: Path | None = None
    symlink_destination: str | None = None

    def describe(self) -> str:
        return f"replaced file {self.target}"


LedgerResource = Union[
    BlockDeviceHandle,
    LuksMapping,
    VolumeGroup,
    MountRecord,
    TempDirectory,
    ResolvConfBackup,
]
