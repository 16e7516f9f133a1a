"""
Chroot assembler.

Binds the kernel pseudo-filesystems and any configured extra mounts into the
mounted root, and puts the host resolver configuration (optionally also
/etc/hosts) in place so tools inside the chroot have DNS.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from imagechroot.core.logging import get_logger
from imagechroot.core.models import MountRecord, ResolvConfBackup

if TYPE_CHECKING:
    from imagechroot.core.config import ChrootConfig
    from imagechroot.core.ledger import ResourceLedger
    from imagechroot.pipeline.mounter import FilesystemMounter

logger = get_logger(__name__)


class ChrootAssembler:
    """Prepares a mounted root for ``chroot``."""

    def __init__(self, config: ChrootConfig, mounter: FilesystemMounter) -> None:
        self.config = config
        self.mounter = mounter
        self.warnings: list[str] = []

    def _warn(self, message: str, **context: object) -> None:
        self.warnings.append(message)
        logger.warning(message, **context)

    def _bind(
        self,
        source: str,
        target: Path,
        ledger: ResourceLedger,
        fstype: str | None = None,
    ) -> MountRecord | None:
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._warn(f"Could not create {target}", error=str(e))
            return None

        if fstype is None:
            record = self.mounter.mount(source, target, ledger, bind=True)
        else:
            record = self.mounter.mount(source, target, ledger, fstype)
            if record is not None:
                record.is_bind = True

        if record is None:
            self._warn(f"Could not bind {source} at {target}", source=source)
        return record

    def mount_additional(self, root: Path, ledger: ResourceLedger) -> list[MountRecord]:
        """Mount each configured ``source:destination[:options]`` entry into ``root``."""
        mounted: list[MountRecord] = []

        for spec in self.config.additional_mounts:
            target = root / spec.destination.lstrip("/")
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._warn(f"Could not create {target}", error=str(e))
                continue

            options = [o for o in spec.options if o != "bind"]
            record = self.mounter.mount(spec.source, target, ledger, options=options, bind=spec.is_bind)
            if record is None:
                self._warn(f"Could not mount {spec.source} at {target}", source=spec.source)
                continue
            mounted.append(record)

        return mounted

    def assemble(self, root: Path, ledger: ResourceLedger) -> list[MountRecord]:
        """Mount extra entries, then bind /proc, /sys, /dev, /dev/pts and extra paths into ``root``."""
        binds = self.mount_additional(root, ledger)

        plan: list[tuple[str, str, str | None]] = [
            ("proc", "proc", "proc"),
            ("sysfs", "sys", "sysfs"),
            ("/dev", "dev", None),
            ("/dev/pts", "dev/pts", None),
        ]
        for path in self.config.extra_bind_paths:
            plan.append((path, path.lstrip("/"), None))

        for source, relative, fstype in plan:
            record = self._bind(source, root / relative, ledger, fstype)
            if record is not None:
                binds.append(record)

        if self.config.manage_hosts:
            self.replace_hosts(root, ledger)
        if self.config.manage_resolv_conf:
            self.replace_resolv_conf(root, ledger)

        logger.info("Chroot assembled", root=str(root), binds=len(binds))
        return binds

    def replace_resolv_conf(self, root: Path, ledger: ResourceLedger) -> ResolvConfBackup | None:
        """Copy the host resolv.conf into the root, keeping what was there."""
        host = self.config.host_resolv_conf
        if not host.exists():
            self._warn(f"Host {host} not found, DNS may not work in the chroot")
            return None
        return self._replace_file(root, "resolv.conf", host, ledger)

    def replace_hosts(self, root: Path, ledger: ResourceLedger) -> ResolvConfBackup | None:
        """Copy the host /etc/hosts into the root, keeping what was there."""
        host = self.config.host_hosts_file
        if not host.exists():
            self._warn(f"Host {host} not found, hosts left alone")
            return None
        return self._replace_file(root, "hosts", host, ledger)

    def _replace_file(self, root: Path, name: str, host: Path, ledger: ResourceLedger) -> ResolvConfBackup | None:
        etc = root / "etc"
        if not etc.is_dir():
            self._warn(f"{etc} missing, {name} left alone")
            return None

        target = etc / name
        backup = ResolvConfBackup(target=target)
        backup_path = target.with_name(target.name + self.config.resolv_backup_suffix)

        try:
            if backup_path.exists():
                # An earlier session never restored; its backup holds the image's own file.
                self._warn(f"Keeping existing backup {backup_path}", target=str(target))
                backup.backup_path = backup_path
                ledger.push(backup)
                if target.is_symlink() or target.exists():
                    target.unlink()
            elif target.is_symlink():
                backup.symlink_destination = os.readlink(target)
                ledger.push(backup)
                target.unlink()
            elif target.exists():
                backup.backup_path = backup_path
                shutil.copy2(target, backup_path)
                ledger.push(backup)
                target.unlink()
            else:
                ledger.push(backup)

            shutil.copyfile(host, target)
        except OSError as e:
            self._warn(f"Could not replace {target}", error=str(e))
            return None

        logger.info(
            f"{name} replaced",
            target=str(target),
            backup=str(backup.backup_path) if backup.backup_path else None,
            symlink=backup.symlink_destination,
        )
        return backup

    def find_shell(self, root: Path, preferred: str | None = None) -> str | None:
        """First usable shell inside the root, as a path within the chroot."""
        for shell in (preferred or self.config.shell, self.config.fallback_shell):
            candidate = root / shell.lstrip("/")
            if candidate.is_symlink():
                return shell
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return shell
        return None
