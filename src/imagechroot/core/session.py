"""
imagechroot Session Management.

A MountSession runs the mount pipeline for one image, owns the resource
ledger, and guarantees a single teardown on normal exit, error, or signal.
"""

from __future__ import annotations

import json
import signal
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

from imagechroot.core.config import ImageChrootConfig, load_config
from imagechroot.core.errors import ImageChrootError, SessionInterrupted
from imagechroot.core.ledger import ResourceLedger, TeardownManager, TeardownReport
from imagechroot.core.lock import SessionLock
from imagechroot.core.logging import (
    OperationLogger,
    bind_session,
    clear_session,
    get_logger,
    setup_logging,
)
from imagechroot.core.models import (
    BlockDeviceHandle,
    ClassificationResult,
    MountRecord,
    PartitionInfo,
    RootCandidate,
)
from imagechroot.pipeline.chroot import ChrootAssembler
from imagechroot.pipeline.classifier import PartitionClassifier
from imagechroot.pipeline.connector import ImageConnector
from imagechroot.pipeline.mounter import FilesystemMounter
from imagechroot.pipeline.surveyor import PartitionSurveyor
from imagechroot.pipeline.volumes import PassphraseProvider, VolumeManager

if TYPE_CHECKING:
    from imagechroot.platform.linux.backend import LinuxBackend

logger = get_logger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


@dataclass
class SessionReport:
    """Complete session report for audit and review."""

    session_id: str
    image_path: str
    started_at: datetime
    ended_at: datetime | None = None
    root_path: str | None = None
    shell: str | None = None
    stages: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resources: list[dict[str, Any]] = field(default_factory=list)
    teardown: dict[str, Any] | None = None
    exit_status: int | None = None
    config_snapshot: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "image_path": self.image_path,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": (
                (self.ended_at - self.started_at).total_seconds()
                if self.ended_at
                else None
            ),
            "root_path": self.root_path,
            "shell": self.shell,
            "stages": self.stages,
            "errors": self.errors,
            "warnings": self.warnings,
            "resources": self.resources,
            "teardown": self.teardown,
            "exit_status": self.exit_status,
            "config_snapshot": self.config_snapshot,
            "summary": {
                "total_stages": len(self.stages),
                "failed_stages": sum(1 for s in self.stages if not s.get("success", True)),
                "total_errors": len(self.errors),
                "total_warnings": len(self.warnings),
            },
        }

    def save(self, path: Path) -> None:
        """Save report to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


class MountSession:
    """
    Mounts a disk image and prepares it for chroot.

    Use as a context manager: entering runs the whole pipeline and exposes
    ``root_path``; leaving (or any error or SIGINT/SIGTERM/SIGHUP while
    inside) releases every acquired resource exactly once.

        with MountSession("disk.qcow2") as session:
            launch_shell(session.root_path, session.shell)
    """

    def __init__(
        self,
        image_path: str | Path,
        config: ImageChrootConfig | None = None,
        backend: LinuxBackend | None = None,
        passphrase_provider: PassphraseProvider | None = None,
        session_id: str | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.image_path = Path(image_path)
        self.config = config or load_config()
        self.started_at = datetime.now()

        setup_logging(self.config.logging)

        if backend is None:
            from imagechroot.platform import get_platform_backend

            backend = get_platform_backend()  # type: ignore[assignment]
        self.backend: LinuxBackend = backend  # type: ignore[assignment]

        self.ledger = ResourceLedger()
        self.teardown_manager = TeardownManager(self.backend, self.config)
        self.connector = ImageConnector(self.backend, self.config.connector)
        self.surveyor = PartitionSurveyor(self.backend, self.config.connector.max_partitions)
        self.classifier = PartitionClassifier(self.config.classifier)
        self.volumes = VolumeManager(
            self.backend,
            self.config,
            self.surveyor,
            self.id,
            passphrase_provider,
        )
        self.mounter = FilesystemMounter(
            self.backend, self.config, self.teardown_manager, self.classifier
        )
        self.assembler = ChrootAssembler(self.config.chroot, self.mounter)

        self.lock = SessionLock(self.config.session_lock_file) if self.config.session_lock_file else None
        self.install_signal_handlers = install_signal_handlers
        self._previous_handlers: dict[int, Any] = {}

        self.handle: BlockDeviceHandle | None = None
        self.partitions: list[PartitionInfo] = []
        self.classification: ClassificationResult | None = None
        self.root_candidates: list[RootCandidate] = []
        self.root_record: MountRecord | None = None
        self.shell: str | None = None
        self.teardown_report: TeardownReport | None = None
        self.exit_status: int | None = None
        self.report_path: Path | None = None

        self._tearing_down = False
        self._torn_down = False
        self._closed = False

        self._report = SessionReport(
            session_id=self.id,
            image_path=str(self.image_path),
            started_at=self.started_at,
            config_snapshot=self.config.model_dump(mode="json"),
        )

        logger.info("Session started", session_id=self.id, image=str(self.image_path))

    @property
    def root_path(self) -> Path | None:
        return self.root_record.target if self.root_record else None

    # ==================== Signals ====================

    def _handle_signal(self, signum: int, frame: Any) -> None:
        if self._tearing_down or self._torn_down:
            return
        logger.warning("Signal received, tearing down", signal=signum)
        raise SessionInterrupted(signum)

    def _can_handle_signals(self) -> bool:
        return self.install_signal_handlers and threading.current_thread() is threading.main_thread()

    def _install_signal_handlers(self) -> None:
        if not self._can_handle_signals() or self._previous_handlers:
            return
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    @contextmanager
    def _signals_ignored(self) -> Iterator[None]:
        if not self._can_handle_signals():
            yield
            return
        saved = {signum: signal.signal(signum, signal.SIG_IGN) for signum in HANDLED_SIGNALS}
        try:
            yield
        finally:
            for signum, handler in saved.items():
                signal.signal(signum, handler)

    # ==================== Pipeline ====================

    @contextmanager
    def _stage(self, name: str) -> Iterator[OperationLogger]:
        with OperationLogger(name, logger) as op:
            try:
                yield op
            except BaseException as e:
                self._report.stages.append(
                    {
                        "name": name,
                        "success": False,
                        "duration_seconds": op.duration_seconds,
                        "error": str(e),
                    }
                )
                raise
            self._report.stages.append(
                {
                    "name": name,
                    "success": True,
                    "duration_seconds": op.duration_seconds,
                    **op.context,
                }
            )

    def preflight(self) -> list[str]:
        """Warn about missing privileges or tools before touching any device."""
        problems: list[str] = []
        if not self.backend.is_admin():
            problems.append("Not running as root; attaching and mounting will likely fail")

        required = self.backend.get_required_tools(
            with_luks=self.config.luks.enabled,
            with_lvm=self.config.lvm.enabled,
        )
        missing = self.backend.missing_tools(required)
        if missing:
            problems.append(f"Missing tools: {', '.join(missing)}")

        for problem in problems:
            logger.warning(problem)
            self._report.warnings.append(problem)
        return problems

    def mount(self) -> Path:
        """Run every pipeline stage and return the chroot-ready root path."""
        self.preflight()

        with self._stage("connect") as op:
            self.handle = self.connector.connect(self.image_path, self.ledger)
            op.update(device=self.handle.device_path, format=self.handle.image_format.value)

        with self._stage("survey") as op:
            self.partitions = self.surveyor.survey(self.handle)
            style = self.surveyor.partition_style(self.handle)
            self.surveyor.describe(self.partitions)
            op.update(partitions=len(self.partitions), style=style.name)

        with self._stage("classify") as op:
            self.classification = self.classifier.classify(self.partitions, style)
            op.update(**self.classification.to_dict())

        with self._stage("resolve root") as op:
            self.root_candidates = self.volumes.resolve_root(
                self.classification, self.ledger, image=str(self.image_path)
            )
            op.update(candidates=[c.device_path for c in self.root_candidates])

        with self._stage("mount root") as op:
            self.root_record = self.mounter.mount_root(self.root_candidates, self.ledger)
            op.update(root=str(self.root_record.target), device=self.root_record.source)

        with self._stage("mount auxiliary") as op:
            extra = self.mounter.mount_auxiliary(
                self.root_record,
                self.classification,
                self.ledger,
                rejected=self.mounter.rejected,
            )
            op.update(mounted=[str(r.target) for r in extra])

        with self._stage("assemble chroot") as op:
            binds = self.assembler.assemble(self.root_record.target, self.ledger)
            self.shell = self.assembler.find_shell(self.root_record.target)
            op.update(binds=len(binds), shell=self.shell)

        self._report.root_path = str(self.root_record.target)
        self._report.shell = self.shell
        self._report.resources = self.ledger.snapshot()

        logger.info(
            "Image ready for chroot",
            root=str(self.root_record.target),
            shell=self.shell,
            resources=len(self.ledger),
        )
        return self.root_record.target

    # ==================== Teardown ====================

    def teardown(self) -> TeardownReport:
        """Release every acquired resource. Runs once; later calls return the first report."""
        if self._torn_down and self.teardown_report is not None:
            return self.teardown_report

        self._tearing_down = True
        try:
            with self._signals_ignored():
                self.teardown_report = self.teardown_manager.teardown(self.ledger)
        finally:
            self._tearing_down = False
            self._torn_down = True

        self._report.teardown = self.teardown_report.to_dict()
        return self.teardown_report

    def _collect_warnings(self) -> None:
        for source in (self.volumes, self.mounter, self.assembler):
            for warning in source.warnings:
                if warning not in self._report.warnings:
                    self._report.warnings.append(warning)
        if self.teardown_report is not None:
            self._report.warnings.extend(self.teardown_report.warnings)

    def close(self, error: BaseException | None = None) -> Path | None:
        """Tear down, save the session report, and release the lock."""
        if self._closed:
            return self.report_path
        self._closed = True
        # Signals arriving from here on must not skip teardown.
        self._tearing_down = True

        try:
            try:
                if not self._report.resources:
                    self._report.resources = self.ledger.snapshot()
            finally:
                self.teardown()

            if error is None:
                self.exit_status = 0
            elif isinstance(error, ImageChrootError):
                self.exit_status = error.exit_code
            else:
                self.exit_status = 1

            if error is not None:
                self._report.errors.append(
                    {
                        "timestamp": datetime.now().isoformat(),
                        "error_type": type(error).__name__,
                        "error": str(error),
                        "exit_code": self.exit_status,
                    }
                )

            self._collect_warnings()
            self._report.exit_status = self.exit_status
            self._report.ended_at = datetime.now()

            try:
                self.report_path = self.config.get_session_file(self.id)
                self._report.save(self.report_path)
            except OSError as e:
                logger.warning("Could not save session report", error=str(e))
                self.report_path = None
        finally:
            if self.lock is not None:
                self.lock.release()
            self._restore_signal_handlers()
            clear_session()

        logger.info(
            "Session closed",
            session_id=self.id,
            exit_status=self.exit_status,
            duration_seconds=(self._report.ended_at - self.started_at).total_seconds(),
            report_path=str(self.report_path) if self.report_path else None,
        )
        return self.report_path

    def get_report(self) -> SessionReport:
        """Get the current session report."""
        return self._report

    def __enter__(self) -> MountSession:
        try:
            bind_session(self.id)
            if self.lock is not None:
                self.lock.acquire()
            self._install_signal_handlers()
            self.mount()
        except BaseException as e:
            self.close(e)
            raise
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close(exc_val)
