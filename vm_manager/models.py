"""Data models for vm-manager."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class VmSpec:
    name: str
    memory_mb: int
    vcpus: int
    template: str


@dataclass(frozen=True)
class StorageLayout:
    disk_path: Path
    firmware_state_path: Optional[Path] = None
    backing_image_path: Optional[Path] = None
    seed_iso_path: Optional[Path] = None
    install_media_path: Optional[Path] = None
    disk_reused: bool = False


@dataclass(frozen=True)
class MachineTemplate:
    name: str
    storage_policy: str  # "fresh" or "overlay"
    firmware: Optional[str]  # None (BIOS), "uefi", "secure"
    machine: str
    disk_bus: str
    graphics: str  # "spice" or "vnc"
    cloud_init: bool = False
    install_media: bool = False
    hyperv: bool = False
    tpm: bool = False
    description: str = ""


class VmState(enum.Enum):
    UNDEFINED = "undefined"
    DEFINED = "defined"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass(frozen=True)
class Command:
    verb: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Response:
    status: str
    message: str

    @classmethod
    def success(cls, message: str) -> "Response":
        return cls("success", message)

    @classmethod
    def error(cls, message: str) -> "Response":
        return cls("error", message)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status, "message": self.message}


@dataclass
class Settings:
    images_dir: Path
    nvram_dir: Path
    seed_dir: Path
    golden_image: Path
    install_iso: Path
    default_template: str
    fresh_disk_size_gb: int
    overlay_disk_size_gb: int
    preserve_firmware_state: bool
    socket_path: Path
    libvirt_uri: str
    viewer_uri: str
    tool_timeout: int
    gateway_timeout: int
    viewer_timeout: int
    slot_timeout: int
    guest_user: str
    guest_password: str
