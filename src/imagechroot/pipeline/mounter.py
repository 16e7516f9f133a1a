"""
Filesystem mounter.

Mounts the resolved root (resolving Btrfs subvolumes), checks that it looks
like a Linux system, and adds /boot and the EFI partition when present.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from imagechroot.core.errors import RootSanityError
from imagechroot.core.logging import OperationLogger, get_logger
from imagechroot.core.models import (
    ClassificationResult,
    FileSystem,
    MountRecord,
    RootCandidate,
    TempDirectory,
)
from imagechroot.platform.linux.parsers import parse_btrfs_subvolume_list

if TYPE_CHECKING:
    from imagechroot.core.config import ImageChrootConfig
    from imagechroot.core.ledger import ResourceLedger, TeardownManager
    from imagechroot.pipeline.classifier import PartitionClassifier
    from imagechroot.platform.linux.backend import LinuxBackend

logger = get_logger(__name__)


def looks_like_root(path: Path) -> bool:
    """True when ``path`` has /etc and /bin or /usr/bin."""

    def present(p: Path) -> bool:
        # /bin is often an absolute symlink that must not resolve on the host
        return p.is_symlink() or p.is_dir()

    return (path / "etc").is_dir() and (present(path / "bin") or present(path / "usr" / "bin"))


class FilesystemMounter:
    """Mounts the root filesystem and its auxiliary partitions."""

    def __init__(
        self,
        backend: LinuxBackend,
        config: ImageChrootConfig,
        teardown: TeardownManager,
        classifier: PartitionClassifier,
    ) -> None:
        self.backend = backend
        self.config = config
        self.teardown = teardown
        self.classifier = classifier
        self.warnings: list[str] = []
        self.rejected: list[str] = []

    def _warn(self, message: str, **context: object) -> None:
        self.warnings.append(message)
        logger.warning(message, **context)

    # ==================== Primitives ====================

    def make_directory(self, name: str, ledger: ResourceLedger) -> Path:
        """Create an ephemeral directory under the temp root and record it."""
        temp_root = self.config.mount.temp_root
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = temp_root / f"{name}{timestamp}"
        suffix = 1
        while path.exists():
            path = temp_root / f"{name}{timestamp}_{suffix}"
            suffix += 1
        path.mkdir(parents=True)
        ledger.push(TempDirectory(path=path))
        return path

    def is_mounted(self, target: Path) -> bool:
        result = self.backend.run_command([self.backend.MOUNTPOINT, "-q", str(target)], check=False)
        return result.success

    def mount(
        self,
        source: str,
        target: Path,
        ledger: ResourceLedger,
        fstype: FileSystem | str | None = None,
        options: list[str] | None = None,
        bind: bool = False,
        subvolume: str | None = None,
    ) -> MountRecord | None:
        """
        Mount ``source`` on ``target`` with retries.

        Returns the pushed record, or None when the mount did not succeed or
        the target was already a mount point.
        """
        if self.is_mounted(target):
            self._warn(f"{target} is already mounted", target=str(target))
            return None

        options = list(options or [])
        if subvolume:
            options.append(f"subvol={subvolume}")

        command = [self.backend.MOUNT]
        if bind:
            command.append("--bind")
        elif fstype is not None:
            name = fstype.value if isinstance(fstype, FileSystem) else fstype
            if name and name != FileSystem.UNKNOWN.value:
                command.extend(["-t", name])
        if options:
            command.extend(["-o", ",".join(options)])
        command.extend([source, str(target)])

        settings = self.config.mount
        last_error = ""
        for attempt in range(settings.mount_retries):
            result = self.backend.run_command(command, timeout=None, check=False)
            if result.success:
                record = MountRecord(
                    target=target,
                    source=source,
                    fstype=fstype if fstype is not None else FileSystem.UNKNOWN,
                    is_bind=bind,
                    options=options,
                    subvolume=subvolume,
                )
                ledger.push(record)
                return record
            last_error = result.error_text
            if attempt < settings.mount_retries - 1:
                self.backend.sleep(settings.mount_retry_delay_seconds)

        logger.warning("Mount failed", source=source, target=str(target), error=last_error)
        return None

    def release(self, record: MountRecord, ledger: ResourceLedger) -> bool:
        """Unmount a record acquired during setup and drop it from the ledger."""
        ok, error = self.teardown.unmount(record)
        if not ok:
            self._warn(f"Could not unmount {record.target}", error=error)
            return False
        ledger.discard(record)
        return True

    def _remove_directory(self, path: Path, ledger: ResourceLedger) -> None:
        for temp in ledger.of_type(TempDirectory):
            if temp.path == path:
                try:
                    path.rmdir()
                except OSError as e:
                    self._warn(f"Could not remove {path}", error=str(e))
                    return
                ledger.discard(temp)
                return

    # ==================== Btrfs ====================

    def inspect_btrfs(
        self, device: str, ledger: ResourceLedger
    ) -> tuple[list[str], str | None, str | None]:
        """
        List the subvolumes of a Btrfs device through a read-only scratch mount.

        Returns (subvolumes, root subvolume, home subvolume).
        """
        scratch = self.make_directory(f"{self.config.mount.mount_dir_prefix}btrfs_", ledger)
        record = self.mount(device, scratch, ledger, FileSystem.BTRFS, options=["ro"])
        if record is None:
            self._remove_directory(scratch, ledger)
            return [], None, None

        subvolumes: list[str] = []
        root_subvolume = None
        home_subvolume = None
        try:
            result = self.backend.run_command(
                [self.backend.BTRFS, "subvolume", "list", str(scratch)], check=False
            )
            if result.success:
                subvolumes = parse_btrfs_subvolume_list(result.stdout)

            candidates = list(
                dict.fromkeys(list(self.config.mount.btrfs_root_subvolumes) + subvolumes)
            )
            for name in candidates:
                if name in subvolumes and looks_like_root(scratch / name):
                    root_subvolume = name
                    break
                if name in subvolumes:
                    logger.info("Btrfs subvolume rejected", device=device, subvolume=name)

            for name in self.config.mount.btrfs_home_subvolumes:
                if name in subvolumes:
                    home_subvolume = name
                    break
        finally:
            if self.release(record, ledger):
                self._remove_directory(scratch, ledger)

        logger.info(
            "Btrfs layout",
            device=device,
            subvolumes=subvolumes,
            root=root_subvolume,
            home=home_subvolume,
        )
        return subvolumes, root_subvolume, home_subvolume

    # ==================== Root ====================

    def mount_root(self, candidates: list[RootCandidate], ledger: ResourceLedger) -> MountRecord:
        """Mount the first candidate that passes the sanity check."""
        root_dir = self.make_directory(self.config.mount.mount_dir_prefix, ledger)
        tried: list[str] = []

        with OperationLogger("mount root", logger, root=str(root_dir)) as op:
            for candidate in candidates:
                tried.append(candidate.device_path)
                home_subvolume = None

                if candidate.filesystem == FileSystem.BTRFS:
                    _, subvolume, home_subvolume = self.inspect_btrfs(candidate.device_path, ledger)
                    record = self.mount(
                        candidate.device_path,
                        root_dir,
                        ledger,
                        FileSystem.BTRFS,
                        subvolume=subvolume,
                    )
                else:
                    record = self.mount(candidate.device_path, root_dir, ledger, candidate.filesystem)

                if record is None:
                    self._warn(f"Could not mount {candidate.device_path}", device=candidate.device_path)
                    continue

                if looks_like_root(root_dir):
                    op.update(device=candidate.device_path, origin=candidate.origin.value)
                    if home_subvolume and self.config.mount.mount_home_subvolume:
                        self._mount_home(candidate.device_path, root_dir, home_subvolume, ledger)
                    return record

                self._warn(
                    f"{candidate.device_path} does not look like a Linux root",
                    device=candidate.device_path,
                )
                self.rejected.append(candidate.device_path)
                if not self.release(record, ledger):
                    break

            raise RootSanityError(tried)

    def _mount_home(self, device: str, root_dir: Path, subvolume: str, ledger: ResourceLedger) -> None:
        home = root_dir / "home"
        try:
            home.mkdir(exist_ok=True)
        except OSError as e:
            self._warn(f"Could not create {home}, /home not mounted", error=str(e))
            return
        if self.mount(device, home, ledger, FileSystem.BTRFS, subvolume=subvolume) is None:
            self._warn(f"Could not mount Btrfs subvolume {subvolume} at /home", subvolume=subvolume)

    # ==================== /boot and EFI ====================

    def mount_auxiliary(
        self,
        root: MountRecord,
        classification: ClassificationResult,
        ledger: ResourceLedger,
        rejected: Iterable[str] = (),
    ) -> list[MountRecord]:
        """Mount /boot and the EFI partition when present. Failures are warnings."""
        mounted: list[MountRecord] = []
        root_dir = root.target
        efi = classification.efi

        if self.config.mount.mount_boot:
            exclude = {root.source}
            if efi is not None:
                exclude.add(efi.device_path)
            rejected_first = [p for p in classification.root_candidates if p.device_path in set(rejected)]
            others = [p for p in classification.root_candidates if p not in rejected_first]
            boot = self.classifier.boot_candidate(rejected_first + others, exclude)

            boot_dir = root_dir / "boot"
            if boot is not None:
                if boot_dir.is_dir() and any(e.name != "efi" for e in boot_dir.iterdir()):
                    logger.info("Root already has /boot content, not mounting", device=boot.device_path)
                else:
                    boot_dir.mkdir(exist_ok=True)
                    record = self.mount(boot.device_path, boot_dir, ledger, boot.filesystem)
                    if record is None:
                        self._warn(f"Could not mount {boot.device_path} at /boot", device=boot.device_path)
                    else:
                        mounted.append(record)

        if self.config.mount.mount_efi and efi is not None:
            efi_dir = root_dir / "boot" / "efi"
            try:
                efi_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._warn(f"Could not create {efi_dir}", error=str(e))
            else:
                record = self.mount(efi.device_path, efi_dir, ledger, efi.filesystem)
                if record is None:
                    self._warn(f"Could not mount EFI partition {efi.device_path}", device=efi.device_path)
                else:
                    mounted.append(record)

        return mounted
