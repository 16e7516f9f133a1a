"""
imagechroot Linux Platform Backend.

Attaches and inspects images using standard Linux tools:
- qemu-nbd, partprobe, udevadm for attaching images
- lsblk, blkid, file for inventory
- cryptsetup, pvscan/vgs/lvs/vgchange for layered storage
- mount, umount, btrfs for assembling the root
"""

from imagechroot.platform.linux.backend import LinuxBackend
from imagechroot.platform.linux.parsers import (
    parse_btrfs_subvolume_list,
    parse_lsblk_json,
)

__all__ = [
    "LinuxBackend",
    "parse_lsblk_json",
    "parse_btrfs_subvolume_list",
]
