"""
imagechroot resource ledger and teardown.

Every OS resource a session acquires is pushed onto one ResourceLedger.
Teardown pops and releases in strict reverse acquisition order, never
raising, so a partially built session unwinds exactly as far as it got.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from imagechroot.core.logging import get_logger
from imagechroot.core.models import (
    BlockDeviceHandle,
    LedgerResource,
    LuksMapping,
    MountRecord,
    ResolvConfBackup,
    TempDirectory,
    VolumeGroup,
)
from imagechroot.platform.linux.processes import (
    find_blocking_processes,
    terminate_chroot_processes,
)

if TYPE_CHECKING:
    from imagechroot.core.config import ImageChrootConfig
    from imagechroot.platform.linux.backend import LinuxBackend

logger = get_logger(__name__)


@dataclass
class LedgerEntry:
    ordinal: int
    resource: LedgerResource
    acquired_at: datetime = field(default_factory=datetime.now)


class ResourceLedger:
    """Ordered stack of the resources acquired by one session."""

    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []
        self._next_ordinal = 0

    def push(self, resource: LedgerResource) -> LedgerResource:
        """Record a newly acquired resource and assign its ordinal."""
        ordinal = self._next_ordinal
        self._next_ordinal += 1
        if isinstance(resource, MountRecord):
            resource.ordinal = ordinal
        self._entries.append(LedgerEntry(ordinal=ordinal, resource=resource))
        logger.debug("Resource acquired", ordinal=ordinal, resource=resource.describe())
        return resource

    def discard(self, resource: LedgerResource) -> bool:
        """
        Remove a resource that its stage has already released.

        Only used during setup, for scratch mounts and rejected roots.
        """
        for index in range(len(self._entries) - 1, -1, -1):
            if self._entries[index].resource is resource:
                del self._entries[index]
                logger.debug("Resource discarded", resource=resource.describe())
                return True
        return False

    def pop(self) -> LedgerResource | None:
        """Remove and return the most recently acquired resource."""
        if not self._entries:
            return None
        return self._entries.pop().resource

    @property
    def entries(self) -> list[LedgerResource]:
        return [entry.resource for entry in self._entries]

    def of_type(self, resource_type: type) -> list[Any]:
        return [r for r in self.entries if isinstance(r, resource_type)]

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "ordinal": entry.ordinal,
                "kind": type(entry.resource).__name__,
                "description": entry.resource.describe(),
                "acquired_at": entry.acquired_at.isoformat(),
            }
            for entry in self._entries
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self.entries)


@dataclass
class TeardownFailure:
    resource: str
    error: str


@dataclass
class TeardownReport:
    """Outcome of one teardown pass."""

    released: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[TeardownFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    terminated_pids: list[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    def record_failure(self, resource: LedgerResource, error: str) -> None:
        self.failures.append(TeardownFailure(resource=resource.describe(), error=error))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "released": self.released,
            "skipped": self.skipped,
            "failures": [{"resource": f.resource, "error": f.error} for f in self.failures],
            "warnings": self.warnings,
            "terminated_pids": self.terminated_pids,
        }


class TeardownManager:
    """Releases ledger resources in reverse acquisition order."""

    def __init__(self, backend: LinuxBackend, config: ImageChrootConfig) -> None:
        self.backend = backend
        self.config = config

    def teardown(self, ledger: ResourceLedger) -> TeardownReport:
        """Pop and release every resource. Never raises; safe to call twice."""
        report = TeardownReport()
        if not len(ledger):
            return report

        logger.info("Starting teardown", resources=len(ledger))

        if self.config.teardown.terminate_chroot_processes:
            root = self._chroot_root(ledger)
            if root is not None:
                try:
                    report.terminated_pids = terminate_chroot_processes(
                        root, self.config.teardown.terminate_grace_seconds
                    )
                except Exception as e:
                    report.warnings.append(f"Could not terminate chroot processes: {e}")
                    logger.warning("Process termination failed", error=str(e))

        while len(ledger):
            resource = ledger.pop()
            if resource is None:
                break
            try:
                self.release(resource, report)
            except Exception as e:
                report.record_failure(resource, str(e))
                logger.error("Release raised", resource=resource.describe(), error=str(e))

        logger.info(
            "Teardown complete",
            released=len(report.released),
            failures=len(report.failures),
        )
        return report

    def release(self, resource: LedgerResource, report: TeardownReport | None = None) -> bool:
        """Release a single resource, recording the outcome on ``report``."""
        report = report if report is not None else TeardownReport()

        if isinstance(resource, ResolvConfBackup):
            ok, error = self._restore_resolv_conf(resource)
        elif isinstance(resource, MountRecord):
            ok, error = self._unmount(resource, report)
        elif isinstance(resource, TempDirectory):
            ok, error = self._remove_temp_directory(resource)
        elif isinstance(resource, VolumeGroup):
            if not (resource.activated_by_session or self.config.lvm.deactivate_preexisting_groups):
                report.skipped.append(resource.describe())
                logger.info("Leaving pre-existing volume group active", vg=resource.name)
                return True
            ok, error = self._deactivate_group(resource)
        elif isinstance(resource, LuksMapping):
            ok, error = self._close_luks(resource)
        elif isinstance(resource, BlockDeviceHandle):
            ok, error = self._disconnect(resource)
        else:
            ok, error = False, f"Unknown resource type {type(resource).__name__}"

        if ok:
            report.released.append(resource.describe())
            logger.info("Released", resource=resource.describe())
        else:
            report.record_failure(resource, error)
            logger.warning("Release failed", resource=resource.describe(), error=error)
        return ok

    # ==================== Release operations ====================

    def _restore_resolv_conf(self, backup: ResolvConfBackup) -> tuple[bool, str]:
        target = backup.target
        try:
            if target.is_symlink() or target.exists():
                target.unlink()
            if backup.symlink_destination is not None:
                os.symlink(backup.symlink_destination, target)
            elif backup.backup_path is not None and backup.backup_path.exists():
                shutil.move(str(backup.backup_path), str(target))
        except OSError as e:
            return False, str(e)
        return True, ""

    def unmount(self, record: MountRecord) -> tuple[bool, str]:
        """Unmount a record outside of a teardown pass."""
        return self._unmount(record, TeardownReport())

    def _unmount(self, record: MountRecord, report: TeardownReport) -> tuple[bool, str]:
        if not record.mounted:
            return True, ""

        target = str(record.target)
        settings = self.config.teardown
        last_error = ""

        for attempt in range(settings.umount_retries):
            result = self.backend.run_command([self.backend.UMOUNT, target], check=False)
            if result.success or "not mounted" in result.error_text:
                record.mounted = False
                return True, ""
            last_error = result.error_text
            if attempt < settings.umount_retries - 1:
                self.backend.sleep(settings.umount_retry_delay_seconds)

        blocking = find_blocking_processes(record.target)
        if blocking:
            message = f"{target} busy: " + "; ".join(p.describe() for p in blocking)
            report.warnings.append(message)
            logger.warning("Mount point busy", target=target, processes=[p.describe() for p in blocking])

        if record.is_btrfs:
            result = self.backend.run_command([self.backend.UMOUNT, "-R", target], check=False)
            if result.success:
                record.mounted = False
                return True, ""
            last_error = result.error_text

        if settings.lazy_unmount_fallback:
            result = self.backend.run_command([self.backend.UMOUNT, "-l", target], check=False)
            if result.success:
                record.mounted = False
                report.warnings.append(f"Lazily unmounted {target}")
                return True, ""
            last_error = result.error_text

        return False, last_error or f"Could not unmount {target}"

    def _remove_temp_directory(self, temp: TempDirectory) -> tuple[bool, str]:
        if not temp.path.exists():
            return True, ""
        try:
            temp.path.rmdir()
        except OSError as e:
            return False, str(e)
        return True, ""

    def _deactivate_group(self, group: VolumeGroup) -> tuple[bool, str]:
        result = self.backend.run_command([self.backend.VGCHANGE, "-an", group.name], check=False)
        if result.success:
            group.active = False
            return True, ""
        return False, result.error_text or f"vgchange -an {group.name} failed"

    def _close_luks(self, mapping: LuksMapping) -> tuple[bool, str]:
        result = self.backend.run_command(
            [self.backend.CRYPTSETUP, "close", mapping.name], check=False
        )
        if result.success:
            mapping.is_open = False
            return True, ""
        return False, result.error_text or f"cryptsetup close {mapping.name} failed"

    def _disconnect(self, handle: BlockDeviceHandle) -> tuple[bool, str]:
        result = self.backend.run_command(
            [self.backend.QEMU_NBD, "-d", handle.device_path], check=False
        )
        if result.success:
            handle.connected = False
            return True, ""
        return False, result.error_text or f"qemu-nbd -d {handle.device_path} failed"

    @staticmethod
    def _chroot_root(ledger: ResourceLedger) -> Path | None:
        for resource in ledger.entries:
            if isinstance(resource, MountRecord) and not resource.is_bind:
                return resource.target
        return None
