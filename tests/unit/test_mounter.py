"""
Tests for imagechroot.pipeline.mounter module.
"""

from pathlib import Path

import pytest

from imagechroot.core.config import ClassifierConfig
from imagechroot.core.errors import RootSanityError
from imagechroot.core.ledger import ResourceLedger, TeardownManager
from imagechroot.core.models import (
    MIB,
    ClassificationResult,
    FileSystem,
    MountRecord,
    PartitionInfo,
    RootCandidate,
    RootOrigin,
    TempDirectory,
)
from imagechroot.pipeline.classifier import PartitionClassifier
from imagechroot.pipeline.mounter import FilesystemMounter, looks_like_root

LINUX_TREE = ["etc", "bin", "boot"]
BTRFS_LIST = ["btrfs", "subvolume", "list"]


def candidate(device: str, fs: FileSystem = FileSystem.EXT4) -> RootCandidate:
    return RootCandidate(device, fs, RootOrigin.PARTITION)


@pytest.fixture
def mounter(backend, sample_config) -> FilesystemMounter:
    return FilesystemMounter(
        backend,
        sample_config,
        TeardownManager(backend, sample_config),
        PartitionClassifier(ClassifierConfig()),
    )


class TestLooksLikeRoot:
    def test_etc_and_bin(self, temp_dir: Path) -> None:
        (temp_dir / "etc").mkdir()
        (temp_dir / "bin").mkdir()
        assert looks_like_root(temp_dir)

    def test_usr_bin_only(self, temp_dir: Path) -> None:
        (temp_dir / "etc").mkdir()
        (temp_dir / "usr" / "bin").mkdir(parents=True)
        assert looks_like_root(temp_dir)

    def test_dangling_bin_symlink_counts(self, temp_dir: Path) -> None:
        (temp_dir / "etc").mkdir()
        (temp_dir / "bin").symlink_to("/nonexistent/usr/bin")
        assert looks_like_root(temp_dir)

    def test_missing_etc(self, temp_dir: Path) -> None:
        (temp_dir / "bin").mkdir()
        assert not looks_like_root(temp_dir)


class TestMountRoot:
    def test_mounts_first_sane_candidate(self, mounter, backend, sample_config) -> None:
        backend.add_filesystem("/dev/nbd0p2", LINUX_TREE)
        ledger = ResourceLedger()

        record = mounter.mount_root([candidate("/dev/nbd0p2")], ledger)

        assert record.target.parent == sample_config.mount.temp_root
        assert record.target.name.startswith("disk_mount_")
        assert ["mount", "-t", "ext4", "/dev/nbd0p2", str(record.target)] in backend.calls
        assert [type(r) for r in ledger.entries] == [TempDirectory, MountRecord]

    def test_insane_root_discarded_and_next_tried(self, mounter, backend) -> None:
        backend.add_filesystem("/dev/nbd0p1", ["grub"])
        backend.add_filesystem("/dev/vg/root", LINUX_TREE)
        ledger = ResourceLedger()

        record = mounter.mount_root([candidate("/dev/nbd0p1"), candidate("/dev/vg/root")], ledger)

        assert record.source == "/dev/vg/root"
        assert mounter.rejected == ["/dev/nbd0p1"]
        assert ["umount", str(record.target)] in backend.calls
        sources = [r.source for r in ledger.entries if isinstance(r, MountRecord)]
        assert sources == ["/dev/vg/root"]

    def test_mount_failure_moves_on(self, mounter, backend) -> None:
        backend.failing_mounts.add("/dev/nbd0p1")
        backend.add_filesystem("/dev/nbd0p2", LINUX_TREE)
        record = mounter.mount_root([candidate("/dev/nbd0p1"), candidate("/dev/nbd0p2")], ResourceLedger())
        assert record.source == "/dev/nbd0p2"
        assert any("/dev/nbd0p1" in w for w in mounter.warnings)

    def test_no_sane_root(self, mounter, backend) -> None:
        backend.add_filesystem("/dev/nbd0p1", ["lost+found"])
        ledger = ResourceLedger()

        with pytest.raises(RootSanityError) as exc_info:
            mounter.mount_root([candidate("/dev/nbd0p1")], ledger)

        assert exc_info.value.tried == ["/dev/nbd0p1"]
        assert exc_info.value.exit_code == 6
        assert [type(r) for r in ledger.entries] == [TempDirectory]

    def test_mount_retries(self, mounter, backend, sample_config) -> None:
        sample_config.mount.mount_retries = 3
        sample_config.mount.mount_retry_delay_seconds = 0.25
        backend.failing_mounts.add("/dev/nbd0p1")

        with pytest.raises(RootSanityError):
            mounter.mount_root([candidate("/dev/nbd0p1")], ResourceLedger())

        assert len(backend.calls_matching(["mount", "-t", "ext4", "/dev/nbd0p1"])) == 3
        assert backend.sleeps == [0.25, 0.25]

    def test_already_mounted_target_reported(self, mounter, backend, temp_dir) -> None:
        target = temp_dir / "busy"
        target.mkdir()
        backend.mounted[str(target)] = False

        assert mounter.mount("/dev/nbd0p1", target, ResourceLedger(), FileSystem.EXT4) is None
        assert any("already mounted" in w for w in mounter.warnings)


class TestBtrfs:
    def test_root_subvolume_and_home(self, mounter, backend) -> None:
        device = "/dev/nbd0p2"
        backend.add_filesystem(device, ["@/etc", "@/bin", "home/user"])
        backend.add_filesystem(device, ["etc", "bin", "home"], subvolume="@")
        backend.add_filesystem(device, ["user"], subvolume="home")
        backend.on(BTRFS_LIST, stdout="ID 256 gen 9 top level 5 path @\nID 257 gen 9 top level 5 path home\n")
        ledger = ResourceLedger()

        record = mounter.mount_root([candidate(device, FileSystem.BTRFS)], ledger)

        assert record.subvolume == "@"
        mounts = [r for r in ledger.entries if isinstance(r, MountRecord)]
        assert [(r.target, r.subvolume) for r in mounts] == [
            (record.target, "@"),
            (record.target / "home", "home"),
        ]
        # scratch mount and its directory are gone
        assert len([r for r in ledger.entries if isinstance(r, TempDirectory)]) == 1
        scratch_mount = backend.calls_matching(["mount", "-t", "btrfs", "-o", "ro", device])[0]
        assert not Path(scratch_mount[-1]).exists()
        assert ["mount", "-t", "btrfs", "-o", "subvol=@", device, str(record.target)] in backend.calls

    def test_home_directory_unavailable_is_warning(self, mounter, backend) -> None:
        device = "/dev/nbd0p2"
        backend.add_filesystem(device, ["@/etc", "@/bin", "home/user"])
        backend.add_filesystem(device, ["etc", "bin", ("home", "not a directory\n")], subvolume="@")
        backend.on(BTRFS_LIST, stdout="ID 256 gen 9 top level 5 path @\nID 257 gen 9 top level 5 path home\n")
        ledger = ResourceLedger()

        record = mounter.mount_root([candidate(device, FileSystem.BTRFS)], ledger)

        assert record.subvolume == "@"
        assert [r.subvolume for r in ledger.entries if isinstance(r, MountRecord)] == ["@"]
        assert any("/home not mounted" in w for w in mounter.warnings)

    def test_unknown_subvolumes_fall_back_to_plain_mount(self, mounter, backend) -> None:
        device = "/dev/nbd0p2"
        backend.add_filesystem(device, ["data/files", "etc", "bin"])
        backend.on(BTRFS_LIST, stdout="ID 256 gen 9 top level 5 path data\n")
        ledger = ResourceLedger()

        record = mounter.mount_root([candidate(device, FileSystem.BTRFS)], ledger)

        assert record.subvolume is None
        assert ["mount", "-t", "btrfs", device, str(record.target)] in backend.calls
        assert len([r for r in ledger.entries if isinstance(r, MountRecord)]) == 1

    def test_subvolume_without_root_tree_rejected(self, mounter, backend) -> None:
        device = "/dev/nbd0p2"
        backend.add_filesystem(device, ["@/var", "@root/etc", "@root/usr/bin"])
        backend.add_filesystem(device, ["etc", "usr/bin"], subvolume="@root")
        backend.on(BTRFS_LIST, stdout="ID 256 gen 9 top level 5 path @\nID 258 gen 9 top level 5 path @root\n")

        record = mounter.mount_root([candidate(device, FileSystem.BTRFS)], ResourceLedger())

        assert record.subvolume == "@root"


class TestMountAuxiliary:
    def _root(self, mounter, backend, device: str = "/dev/vg/root") -> tuple[MountRecord, ResourceLedger]:
        backend.add_filesystem(device, ["etc", "bin", "boot"])
        ledger = ResourceLedger()
        return mounter.mount_root([candidate(device)], ledger), ledger

    def test_boot_then_efi(self, mounter, backend) -> None:
        root, ledger = self._root(mounter, backend)
        boot = PartitionInfo("/dev/nbd0p2", FileSystem.EXT4, 1024 * MIB)
        efi = PartitionInfo("/dev/nbd0p1", FileSystem.VFAT, 512 * MIB)
        classification = ClassificationResult(root_candidates=[boot], efi=efi)

        mounted = mounter.mount_auxiliary(root, classification, ledger, rejected=["/dev/nbd0p2"])

        assert [r.target for r in mounted] == [root.target / "boot", root.target / "boot" / "efi"]
        assert ["mount", "-t", "vfat", "/dev/nbd0p1", str(root.target / "boot" / "efi")] in backend.calls

    def test_failures_are_warnings(self, mounter, backend) -> None:
        root, ledger = self._root(mounter, backend)
        backend.failing_mounts.update({"/dev/nbd0p1", "/dev/nbd0p2"})
        classification = ClassificationResult(
            root_candidates=[PartitionInfo("/dev/nbd0p2", FileSystem.EXT4, 1024 * MIB)],
            efi=PartitionInfo("/dev/nbd0p1", FileSystem.VFAT, 512 * MIB),
        )

        assert mounter.mount_auxiliary(root, classification, ledger) == []
        assert len(mounter.warnings) == 2

    def test_root_with_kernel_in_boot_skips_boot_mount(self, mounter, backend) -> None:
        backend.add_filesystem("/dev/vg/root", ["etc", "bin", ("boot/vmlinuz", "kernel")])
        ledger = ResourceLedger()
        root = mounter.mount_root([candidate("/dev/vg/root")], ledger)
        classification = ClassificationResult(
            root_candidates=[PartitionInfo("/dev/nbd0p2", FileSystem.EXT4, 1024 * MIB)]
        )

        assert mounter.mount_auxiliary(root, classification, ledger) == []
        assert backend.calls_matching(["mount", "-t", "ext4", "/dev/nbd0p2"]) == []

    def test_root_itself_never_mounted_as_boot(self, mounter, backend) -> None:
        root, ledger = self._root(mounter, backend, device="/dev/nbd0p2")
        classification = ClassificationResult(
            root_candidates=[PartitionInfo("/dev/nbd0p2", FileSystem.EXT4, 1024 * MIB)]
        )
        assert mounter.mount_auxiliary(root, classification, ledger) == []
