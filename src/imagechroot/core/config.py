"""
imagechroot configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: Path.home() / ".imagechroot" / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class ConnectorConfig(BaseModel):
    """Configuration for attaching images to network block devices."""

    max_slots: int = Field(default=32, ge=1, le=256)
    max_partitions: int = Field(default=16, ge=1, le=256)
    connect_attempts: int = Field(default=5, ge=1, le=20)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0)
    ready_timeout_seconds: float = Field(default=5.0, ge=0.0)
    ready_poll_interval_seconds: float = Field(default=0.25, ge=0.0)
    load_module: bool = True
    sys_block_root: Path = Path("/sys/block")
    sys_module_root: Path = Path("/sys/module")


class ClassifierConfig(BaseModel):
    """
    Thresholds and explicit overrides for partition classification.

    Sizes are in MiB. The /boot lower bound sits below 200 so that a
    partition sold as 200 MB (about 190 MiB) still qualifies.
    """

    root_min_size_mb: int = Field(default=500, ge=0)
    efi_max_size_mb: int = Field(default=1000, ge=1)
    boot_min_size_mb: int = Field(default=180, ge=0)
    boot_max_size_mb: int = Field(default=2048, ge=1)
    root_device: str | None = None
    efi_device: str | None = None
    boot_device: str | None = None


class LuksConfig(BaseModel):
    """Configuration for unlocking LUKS containers."""

    enabled: bool = True
    mapper_prefix: str = "imgchroot"
    keyfile: Path | None = None
    passphrase_env: str | None = None

    @field_validator("mapper_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v or "/" in v or " " in v:
            raise ValueError("mapper_prefix must be a non-empty name without '/' or spaces")
        return v


class LvmConfig(BaseModel):
    """Configuration for LVM activation and root volume selection."""

    enabled: bool = True
    deactivate_preexisting_groups: bool = False
    root_name_patterns: list[str] = Field(
        default_factory=lambda: [
            "root",
            "rootlv",
            "lv_root",
            "lvol0",
            "system",
            "sysroot",
            "*-root",
            "*_root",
        ]
    )


class MountConfig(BaseModel):
    """Configuration for mounting the resolved filesystems."""

    temp_root: Path = Path("/tmp")
    mount_dir_prefix: str = "disk_mount_"
    mount_retries: int = Field(default=3, ge=1, le=10)
    mount_retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    btrfs_root_subvolumes: list[str] = Field(default_factory=lambda: ["@", "@root", "root"])
    btrfs_home_subvolumes: list[str] = Field(default_factory=lambda: ["home", "@home"])
    mount_home_subvolume: bool = True
    mount_boot: bool = True
    mount_efi: bool = True


class AdditionalMount(BaseModel):
    """A mount into the root, given as ``source:destination[:options]``."""

    source: str
    destination: str
    options: list[str] = Field(default_factory=list)

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if not v.startswith("/") or ".." in v.split("/"):
            raise ValueError("destination must be an absolute path inside the root")
        return v

    @classmethod
    def parse(cls, value: str) -> AdditionalMount:
        parts = value.split(":", 2)
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid mount specification: {value}")
        options = [o for o in parts[2].split(",") if o] if len(parts) == 3 else []
        return cls(source=parts[0], destination=parts[1], options=options)

    @property
    def is_bind(self) -> bool:
        return "bind" in self.options


class ChrootConfig(BaseModel):
    """Configuration for pseudo-filesystem binds and DNS inside the target."""

    extra_bind_paths: list[str] = Field(default_factory=list)
    additional_mounts: list[AdditionalMount] = Field(default_factory=list)
    manage_resolv_conf: bool = True
    host_resolv_conf: Path = Path("/etc/resolv.conf")
    manage_hosts: bool = False
    host_hosts_file: Path = Path("/etc/hosts")
    resolv_backup_suffix: str = ".imagechroot-backup"
    shell: str = "/bin/bash"
    fallback_shell: str = "/bin/sh"

    @field_validator("additional_mounts", mode="before")
    @classmethod
    def parse_mount_specs(cls, v: list[str | dict | AdditionalMount]) -> list[dict | AdditionalMount]:
        return [AdditionalMount.parse(item) if isinstance(item, str) else item for item in v]


class TeardownConfig(BaseModel):
    """Configuration for releasing session resources."""

    umount_retries: int = Field(default=3, ge=1, le=10)
    umount_retry_delay_seconds: float = Field(default=2.0, ge=0.0)
    lazy_unmount_fallback: bool = True
    terminate_chroot_processes: bool = False
    terminate_grace_seconds: float = Field(default=3.0, ge=0.0)


class ImageChrootConfig(BaseModel):
    """Main imagechroot configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    connector: ConnectorConfig = Field(default_factory=ConnectorConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    luks: LuksConfig = Field(default_factory=LuksConfig)
    lvm: LvmConfig = Field(default_factory=LvmConfig)
    mount: MountConfig = Field(default_factory=MountConfig)
    chroot: ChrootConfig = Field(default_factory=ChrootConfig)
    teardown: TeardownConfig = Field(default_factory=TeardownConfig)
    session_directory: Path = Field(default_factory=lambda: Path.home() / ".imagechroot" / "sessions")
    session_lock_file: Path | None = None

    @field_validator("session_directory", mode="before")
    @classmethod
    def expand_session_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @classmethod
    def load(cls, config_path: Path | None = None) -> ImageChrootConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = Path.home() / ".imagechroot" / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = Path.home() / ".imagechroot" / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.session_directory.mkdir(parents=True, exist_ok=True)

    def get_session_file(self, session_id: str) -> Path:
        """Get path for a new session report file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.session_directory / f"session_{timestamp}_{session_id[:8]}.json"


def load_config(config_path: Path | None = None) -> ImageChrootConfig:
    """Load or create configuration."""
    config = ImageChrootConfig.load(config_path)
    config.ensure_directories()
    return config
