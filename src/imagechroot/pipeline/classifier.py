"""
Partition classifier.

Assigns root, EFI, boot, LUKS, and LVM roles to surveyed partitions. The
rules are heuristic; explicit device overrides in the configuration win.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from imagechroot.core.logging import get_logger
from imagechroot.core.models import (
    ClassificationResult,
    FileSystem,
    PartitionInfo,
    PartitionRole,
    PartitionStyle,
)

if TYPE_CHECKING:
    from imagechroot.core.config import ClassifierConfig

logger = get_logger(__name__)


class PartitionClassifier:
    """Heuristic partition role assignment."""

    def __init__(self, config: ClassifierConfig) -> None:
        self.config = config

    def classify(
        self,
        partitions: list[PartitionInfo],
        style: PartitionStyle = PartitionStyle.UNKNOWN,
    ) -> ClassificationResult:
        result = ClassificationResult(style=style)

        result.root_candidates = self.root_candidates(partitions)
        result.efi = self.efi_candidate(partitions, style)
        result.luks_members = [
            p.with_role(PartitionRole.LUKS_MEMBER)
            for p in partitions
            if p.filesystem == FileSystem.LUKS
        ]
        result.lvm_members = [
            p.with_role(PartitionRole.LVM_MEMBER)
            for p in partitions
            if p.filesystem == FileSystem.LVM_MEMBER
        ]

        if self.config.root_device:
            override = _find(partitions, self.config.root_device)
            if override is not None:
                override = override.with_role(PartitionRole.ROOT_CANDIDATE)
                result.root_candidates = [override] + [
                    p for p in result.root_candidates if p.device_path != override.device_path
                ]

        result.root = result.root_candidates[0] if result.root_candidates else None

        exclude = {p.device_path for p in (result.root, result.efi) if p is not None}
        result.boot = self.boot_candidate(partitions, exclude)

        logger.info(
            "Partitions classified",
            root=result.root.device_path if result.root else None,
            efi=result.efi.device_path if result.efi else None,
            boot=result.boot.device_path if result.boot else None,
            luks=len(result.luks_members),
            lvm=len(result.lvm_members),
        )
        return result

    def root_candidates(self, partitions: list[PartitionInfo]) -> list[PartitionInfo]:
        """Linux filesystems, largest first; small ones after all larger ones."""
        candidates = [
            p.with_role(PartitionRole.ROOT_CANDIDATE)
            for p in partitions
            if p.filesystem.is_linux_root and p.device_path != self.config.efi_device
        ]
        # sorted() is stable, so equal sizes keep survey order
        return sorted(
            candidates,
            key=lambda p: (p.size_mb < self.config.root_min_size_mb, -p.size_bytes),
        )

    def efi_candidate(
        self, partitions: list[PartitionInfo], style: PartitionStyle
    ) -> PartitionInfo | None:
        if self.config.efi_device:
            override = _find(partitions, self.config.efi_device)
            if override is None:
                override = PartitionInfo(
                    device_path=self.config.efi_device,
                    filesystem=FileSystem.VFAT,
                    size_bytes=0,
                )
            return override.with_role(PartitionRole.EFI)

        for p in partitions:
            if p.filesystem != FileSystem.VFAT or p.size_mb >= self.config.efi_max_size_mb:
                continue
            if style == PartitionStyle.GPT and p.partition_type_uuid and not p.is_esp_type:
                continue
            return p.with_role(PartitionRole.EFI)
        return None

    def boot_candidate(
        self, partitions: Iterable[PartitionInfo], exclude: Iterable[str] = ()
    ) -> PartitionInfo | None:
        """A separate /boot: ext-family or xfs within the boot size range."""
        excluded = set(exclude)

        if self.config.boot_device:
            if self.config.boot_device in excluded:
                return None
            override = _find(list(partitions), self.config.boot_device)
            if override is None:
                override = PartitionInfo(
                    device_path=self.config.boot_device,
                    filesystem=FileSystem.UNKNOWN,
                    size_bytes=0,
                )
            return override.with_role(PartitionRole.BOOT)

        for p in partitions:
            if p.device_path in excluded or not p.filesystem.is_boot_capable:
                continue
            if self.config.boot_min_size_mb <= p.size_mb <= self.config.boot_max_size_mb:
                return p.with_role(PartitionRole.BOOT)
        return None


def _find(partitions: list[PartitionInfo], device_path: str) -> PartitionInfo | None:
    for p in partitions:
        if p.device_path == device_path:
            return p
    return None
