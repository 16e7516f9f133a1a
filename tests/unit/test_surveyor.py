"""
Tests for imagechroot.pipeline.surveyor module.
"""

from pathlib import Path

import pytest

from imagechroot.core.models import MIB, BlockDeviceHandle, FileSystem, ImageFormat, PartitionStyle
from imagechroot.pipeline.surveyor import PartitionSurveyor


@pytest.fixture
def handle() -> BlockDeviceHandle:
    return BlockDeviceHandle("/dev/nbd0", Path("/img/disk.qcow2"), ImageFormat.QCOW2, slot=0)


@pytest.fixture
def surveyor(backend) -> PartitionSurveyor:
    return PartitionSurveyor(backend, max_partitions=4)


class TestPartitionSurveyor:
    def test_survey_reads_lsblk(self, surveyor, backend, handle) -> None:
        backend.set_partitions(
            "/dev/nbd0",
            [
                {"path": "/dev/nbd0p1", "size": 512 * MIB, "fstype": "vfat", "label": "EFI"},
                {"path": "/dev/nbd0p2", "size": 4096 * MIB, "fstype": "ext4", "uuid": "u2"},
            ],
        )
        partitions = surveyor.survey(handle)

        assert [p.device_path for p in partitions] == ["/dev/nbd0p1", "/dev/nbd0p2"]
        assert partitions[0].filesystem == FileSystem.VFAT
        assert partitions[1].size_mb == 4096
        assert partitions[1].number == 2
        assert backend.calls_matching(["blkid"]) == []

    def test_blkid_fallback_for_unknown_type(self, surveyor, backend, handle) -> None:
        backend.set_partitions("/dev/nbd0", [{"path": "/dev/nbd0p1", "size": 10 * MIB}])
        backend.blkid["/dev/nbd0p1"] = {"TYPE": "crypto_LUKS", "UUID": "lu"}

        partitions = surveyor.survey(handle)

        assert partitions[0].filesystem == FileSystem.LUKS
        assert partitions[0].uuid == "lu"
        assert partitions[0].size_mb == 10

    def test_missing_partition_skipped(self, surveyor, backend, handle) -> None:
        backend.set_partitions(
            "/dev/nbd0",
            [
                {"path": "/dev/nbd0p1", "size": MIB, "fstype": "ext4"},
                {"path": "/dev/nbd0p2", "size": MIB, "fstype": "ext4"},
            ],
        )
        backend.missing_devices.add("/dev/nbd0p1")
        assert [p.device_path for p in surveyor.survey(handle)] == ["/dev/nbd0p2"]

    def test_probe_fallback_when_lsblk_fails(self, surveyor, backend, handle) -> None:
        backend.on(["lsblk", "-J"], returncode=1, stderr="lsblk: not a block device")
        backend.missing_devices.update({"/dev/nbd0p2", "/dev/nbd0p3", "/dev/nbd0p4"})
        backend.blkid["/dev/nbd0p1"] = {"TYPE": "xfs"}
        backend.sizes["/dev/nbd0p1"] = 8192 * MIB

        partitions = surveyor.survey(handle)

        assert len(partitions) == 1
        assert partitions[0].filesystem == FileSystem.XFS
        assert partitions[0].size_mb == 8192
        assert partitions[0].number == 1

    def test_partition_style(self, surveyor, backend, handle) -> None:
        backend.set_partitions("/dev/nbd0", [], pttype="dos")
        assert surveyor.partition_style(handle) == PartitionStyle.MBR

    def test_probe_missing_device(self, surveyor) -> None:
        assert surveyor.probe("/dev/mapper/absent") is None

    def test_probe_mapper(self, surveyor, backend) -> None:
        backend.devices.add("/dev/mapper/crypt0")
        backend.blkid["/dev/mapper/crypt0"] = {"TYPE": "LVM2_member"}
        probed = surveyor.probe("/dev/mapper/crypt0")
        assert probed is not None
        assert probed.filesystem == FileSystem.LVM_MEMBER
        assert probed.number == 0

    def test_describe_uses_human_sizes(self, surveyor, backend, handle) -> None:
        backend.set_partitions("/dev/nbd0", [{"path": "/dev/nbd0p1", "size": 4096 * MIB, "fstype": "ext4"}])
        table = surveyor.describe(surveyor.survey(handle))
        assert "/dev/nbd0p1" in table
        assert "4.0 GiB" in table
