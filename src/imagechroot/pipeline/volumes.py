"""
Encryption and volume manager.

Unlocks LUKS containers, activates LVM volume groups, and resolves the
ordered list of devices that may hold the root filesystem.
"""

from __future__ import annotations

import fnmatch
import os
from typing import TYPE_CHECKING, Callable

from rich.prompt import Prompt

from imagechroot.core.errors import NoRootFoundError
from imagechroot.core.logging import OperationLogger, get_logger
from imagechroot.core.models import (
    ClassificationResult,
    FileSystem,
    LogicalVolume,
    LuksMapping,
    PartitionInfo,
    RootCandidate,
    RootOrigin,
    VolumeGroup,
)
from imagechroot.platform.linux.parsers import (
    parse_active_groups,
    parse_lvm_columns,
    parse_vgs_names,
)

if TYPE_CHECKING:
    from imagechroot.core.config import ImageChrootConfig
    from imagechroot.core.ledger import ResourceLedger
    from imagechroot.pipeline.surveyor import PartitionSurveyor
    from imagechroot.platform.linux.backend import LinuxBackend

logger = get_logger(__name__)

PassphraseProvider = Callable[[PartitionInfo], "str | None"]


def prompt_passphrase(member: PartitionInfo) -> str | None:
    """Ask on the terminal for the passphrase of a LUKS container."""
    passphrase = Prompt.ask(f"Passphrase for {member.device_path}", password=True)
    return passphrase or None


class VolumeManager:
    """Layered storage handling: LUKS first, then LVM."""

    def __init__(
        self,
        backend: LinuxBackend,
        config: ImageChrootConfig,
        surveyor: PartitionSurveyor,
        session_id: str,
        passphrase_provider: PassphraseProvider | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.surveyor = surveyor
        self.session_id = session_id
        self.passphrase_provider = passphrase_provider or prompt_passphrase
        self.warnings: list[str] = []
        self.luks_mappings: list[LuksMapping] = []
        self.luks_contents: list[PartitionInfo] = []
        self.volume_groups: list[VolumeGroup] = []
        self._sequence = 0

    def _warn(self, message: str, **context: object) -> None:
        self.warnings.append(message)
        logger.warning(message, **context)

    # ==================== LUKS ====================

    def next_mapper_name(self) -> str:
        """A device-mapper name not used by this or any other session."""
        prefix = self.config.luks.mapper_prefix
        while True:
            name = f"{prefix}_{self.session_id[:8]}_{self._sequence}"
            self._sequence += 1
            if not self.backend.device_exists(f"/dev/mapper/{name}"):
                return name

    def _open_command(self, member: PartitionInfo, name: str) -> tuple[list[str], str | None] | None:
        command = [self.backend.CRYPTSETUP, "open", "--type", "luks", member.device_path, name]
        keyfile = self.config.luks.keyfile
        if keyfile is not None:
            return command + ["--key-file", str(keyfile)], None

        env_name = self.config.luks.passphrase_env
        if env_name and os.environ.get(env_name):
            return command + ["--key-file", "-"], os.environ[env_name]

        passphrase = self.passphrase_provider(member)
        if passphrase is None:
            return None
        return command + ["--key-file", "-"], passphrase

    def unlock_luks(
        self, members: list[PartitionInfo], ledger: ResourceLedger
    ) -> list[LuksMapping]:
        """Open every LUKS member; a member that fails to open is skipped."""
        opened: list[LuksMapping] = []

        for member in members:
            name = self.next_mapper_name()
            prepared = self._open_command(member, name)
            if prepared is None:
                self._warn(f"No passphrase for {member.device_path}, skipping", device=member.device_path)
                continue

            command, secret = prepared
            result = self.backend.run_command(command, timeout=None, input_text=secret, check=False)
            if not result.success:
                self._warn(
                    f"Could not unlock {member.device_path}",
                    device=member.device_path,
                    error=result.error_text,
                )
                continue

            mapping = LuksMapping(source_path=member.device_path, name=name)
            ledger.push(mapping)
            opened.append(mapping)
            logger.info("LUKS container opened", device=member.device_path, mapper=mapping.mapper_path)

        if opened:
            self.backend.run_command([self.backend.PARTPROBE], check=False)
            self.backend.run_command([self.backend.UDEVADM, "settle"], check=False)

        for mapping in opened:
            content = self.surveyor.probe(mapping.mapper_path)
            if content is not None:
                self.luks_contents.append(content)

        self.luks_mappings.extend(opened)
        return opened

    # ==================== LVM ====================

    def _active_groups(self) -> set[str]:
        result = self.backend.run_command(
            [self.backend.LVS, "--noheadings", "--separator", "|", "-o", "vg_name,lv_active"],
            check=False,
        )
        return parse_active_groups(result.stdout) if result.success else set()

    def activate_lvm(self, ledger: ResourceLedger) -> list[VolumeGroup]:
        """Activate every volume group, remembering which were already active."""
        self.backend.run_command([self.backend.PVSCAN, "--cache"], check=False)
        already_active = self._active_groups()

        result = self.backend.run_command(
            [self.backend.VGS, "--noheadings", "-o", "vg_name"], check=False
        )
        names = parse_vgs_names(result.stdout) if result.success else []

        groups: list[VolumeGroup] = []
        for name in names:
            preexisting = name in already_active
            activated = self.backend.run_command([self.backend.VGCHANGE, "-ay", name])
            if not activated.success and not preexisting:
                self._warn(f"Could not activate volume group {name}", vg=name, error=activated.error_text)
                continue

            group = VolumeGroup(name=name, activated_by_session=not preexisting)
            ledger.push(group)
            groups.append(group)

        if groups:
            self.backend.run_command([self.backend.UDEVADM, "settle"], check=False)

        self.volume_groups.extend(groups)
        logger.info(
            "Volume groups active",
            groups=[g.name for g in groups],
            preexisting=sorted(already_active),
        )
        return groups

    def list_logical_volumes(self, group_names: list[str] | None = None) -> list[LogicalVolume]:
        result = self.backend.run_command(
            [
                self.backend.LVS,
                "--noheadings",
                "--separator",
                "|",
                "-o",
                "vg_name,lv_name,lv_path",
            ],
            check=False,
        )
        if not result.success:
            return []

        volumes: list[LogicalVolume] = []
        for row in parse_lvm_columns(result.stdout):
            if len(row) < 2:
                continue
            vg_name, lv_name = row[0], row[1]
            if group_names is not None and vg_name not in group_names:
                continue
            path = row[2] if len(row) > 2 and row[2] else f"/dev/{vg_name}/{lv_name}"
            probed = self.surveyor.probe(path)
            volumes.append(
                LogicalVolume(
                    name=lv_name,
                    vg_name=vg_name,
                    device_path=path,
                    filesystem=probed.filesystem if probed else FileSystem.UNKNOWN,
                )
            )
        return volumes

    def _matches_root_name(self, lv: LogicalVolume) -> bool:
        name = lv.name.lower()
        return any(fnmatch.fnmatchcase(name, pattern.lower()) for pattern in self.config.lvm.root_name_patterns)

    def select_root_volumes(self, volumes: list[LogicalVolume]) -> list[LogicalVolume]:
        """Order LVs: root-like names, then recognised root filesystems, then the rest."""
        by_name = [lv for lv in volumes if self._matches_root_name(lv)]
        by_fs = [lv for lv in volumes if lv not in by_name and lv.filesystem.is_linux_root]
        rest = [lv for lv in volumes if lv not in by_name and lv not in by_fs]
        return by_name + by_fs + rest

    def rank_by_ownership(self, volumes: list[LogicalVolume]) -> list[LogicalVolume]:
        """
        Put LVs of groups this session activated ahead of pre-existing ones.

        A group that was already active belongs to the host (or another
        session), so its volumes are only a last resort. Order within each
        half is kept.
        """
        owned = {g.name for g in self.volume_groups if g.activated_by_session}
        return [lv for lv in volumes if lv.vg_name in owned] + [
            lv for lv in volumes if lv.vg_name not in owned
        ]

    # ==================== Root resolution ====================

    def resolve_root(
        self,
        classification: ClassificationResult,
        ledger: ResourceLedger,
        image: str | None = None,
    ) -> list[RootCandidate]:
        """
        Ordered list of devices that may hold the root filesystem.

        Unlocks LUKS members and activates LVM as needed. Raises
        NoRootFoundError when nothing usable is found.
        """
        candidates: list[RootCandidate] = []

        def add(candidate: RootCandidate) -> None:
            if all(c.device_path != candidate.device_path for c in candidates):
                candidates.append(candidate)

        with OperationLogger("resolve root", logger) as op:
            override = self.config.classifier.root_device
            if override:
                probed = self.surveyor.probe(override)
                if probed is None:
                    self._warn(f"Root override {override} does not exist", device=override)
                else:
                    add(RootCandidate(override, probed.filesystem, RootOrigin.OVERRIDE))

            for p in classification.root_candidates:
                add(RootCandidate(p.device_path, p.filesystem, RootOrigin.PARTITION))

            has_lvm = bool(classification.lvm_members)
            if self.config.luks.enabled and classification.luks_members:
                self.unlock_luks(classification.luks_members, ledger)
                for content in self.luks_contents:
                    if content.filesystem.is_linux_root:
                        add(RootCandidate(content.device_path, content.filesystem, RootOrigin.LUKS))
                    elif content.filesystem == FileSystem.LVM_MEMBER:
                        has_lvm = True

            if self.config.lvm.enabled and has_lvm:
                groups = self.activate_lvm(ledger)
                volumes = self.list_logical_volumes([g.name for g in groups])
                for lv in self.rank_by_ownership(self.select_root_volumes(volumes)):
                    add(RootCandidate(lv.device_path, lv.filesystem, RootOrigin.LVM, lv_name=lv.name))

            op.update(candidates=[c.device_path for c in candidates])

            if not candidates:
                raise NoRootFoundError(image)

        return candidates
