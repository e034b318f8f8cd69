"""Shared test fixtures: settings rooted in tmp_path and in-memory collaborators."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import patch
from xml.etree.ElementTree import fromstring

import pytest

from vm_manager.constants import FIRMWARE
from vm_manager.dispatcher import CommandDispatcher
from vm_manager.exceptions import NotFound
from vm_manager.lifecycle import LifecycleController, SlotRegistry
from vm_manager.models import Settings, VmState
from vm_manager.storage import StorageProvisioner

# Every environment variable load_settings() reads; cleared for a clean slate.
_SETTINGS_ENV_VARS = [
    "VM_MANAGER_CONFIG",
    "VM_IMAGES_DIR",
    "NVRAM_DIR",
    "SEED_DIR",
    "GOLDEN_IMAGE",
    "INSTALL_ISO",
    "VM_TEMPLATE",
    "FRESH_DISK_SIZE_GB",
    "OVERLAY_DISK_SIZE_GB",
    "PRESERVE_FIRMWARE_STATE",
    "VM_MANAGER_SOCKET",
    "LIBVIRT_URI",
    "VIEWER_URI",
    "TOOL_TIMEOUT",
    "GATEWAY_TIMEOUT",
    "VIEWER_TIMEOUT",
    "SLOT_TIMEOUT",
    "GUEST_USER",
    "GUEST_PASSWORD",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings whose directories all exist under tmp_path."""
    images = tmp_path / "images"
    nvram = tmp_path / "nvram"
    seeds = tmp_path / "seeds"
    for directory in (images, nvram, seeds):
        directory.mkdir()
    golden = images / "golden.qcow2"
    golden.write_bytes(b"golden-image")
    installer = images / "installer.iso"
    installer.write_bytes(b"installer")
    return Settings(
        images_dir=images,
        nvram_dir=nvram,
        seed_dir=seeds,
        golden_image=golden,
        install_iso=installer,
        default_template="secure-uefi",
        fresh_disk_size_gb=60,
        overlay_disk_size_gb=20,
        preserve_firmware_state=False,
        socket_path=tmp_path / "vm.sock",
        libvirt_uri="test:///default",
        viewer_uri="spice://localhost:5900",
        tool_timeout=30,
        gateway_timeout=30,
        viewer_timeout=1,
        slot_timeout=30,
        guest_user="ubuntu",
        guest_password="ubuntu",
    )


@pytest.fixture
def firmware_templates(tmp_path):
    """Point the OVMF variable templates at files under tmp_path."""
    fw_dir = tmp_path / "ovmf"
    fw_dir.mkdir()
    vars_file = fw_dir / "OVMF_VARS_4M.fd"
    vars_file.write_bytes(b"clean-uefi-vars")
    overrides = {
        "uefi": {"loader": fw_dir / "OVMF_CODE_4M.fd", "vars_template": vars_file},
        "secure": {"loader": fw_dir / "OVMF_CODE_4M.secboot.fd", "vars_template": vars_file},
    }
    with patch.dict(FIRMWARE, overrides):
        yield vars_file


class RecordingImageTool:
    """Writes small marker files instead of running qemu-img."""

    def __init__(self, delay: Optional[threading.Event] = None) -> None:
        self.calls: List[tuple] = []
        self.delay = delay
        self.started = threading.Event()

    def create_blank(self, path: Path, size_gb: int) -> None:
        self.calls.append(("blank", path, size_gb))
        self._wait()
        path.write_bytes(f"blank:{size_gb}G".encode())

    def create_overlay(self, path: Path, backing_path: Path, size_gb: int) -> None:
        self.calls.append(("overlay", path, backing_path, size_gb))
        self._wait()
        path.write_bytes(f"overlay:{backing_path}:{size_gb}G".encode())

    def _wait(self) -> None:
        self.started.set()
        if self.delay is not None:
            self.delay.wait(timeout=10)


class RecordingSeedBuilder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def build(self, vm_name: str, destination: Path) -> None:
        self.calls.append((vm_name, destination))
        destination.write_bytes(b"seed")


class RecordingViewer:
    def __init__(self) -> None:
        self.launched: List[str] = []

    def launch(self, vm_name: str) -> None:
        self.launched.append(vm_name)


class FakeGateway:
    """In-memory stand-in for the hypervisor gateway."""

    def __init__(self) -> None:
        self.states: Dict[str, VmState] = {}
        self.definitions: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self._lock = threading.Lock()

    def _record(self, op: str, name: str) -> None:
        with self._lock:
            self.calls.append((op, name))
        if op in self.fail_on:
            raise self.fail_on[op]

    def _require(self, name: str) -> None:
        if name not in self.states:
            raise NotFound(f"VM {name} not found")

    def lookup(self, name: str) -> VmState:
        self._record("lookup", name)
        return self.states.get(name, VmState.UNDEFINED)

    def define(self, xml: str) -> str:
        name = fromstring(xml).findtext("name")
        self._record("define", name)
        with self._lock:
            self.definitions[name] = xml
            self.states[name] = VmState.DEFINED
        return name

    def power_on(self, handle: str) -> None:
        self._record("power_on", handle)
        self.states[handle] = VmState.RUNNING

    def start(self, name: str) -> None:
        self._record("start", name)
        self._require(name)
        self.states[name] = VmState.RUNNING

    def suspend(self, name: str) -> None:
        self._record("suspend", name)
        self._require(name)
        self.states[name] = VmState.PAUSED

    def resume(self, name: str) -> None:
        self._record("resume", name)
        self._require(name)
        self.states[name] = VmState.RUNNING

    def ops(self, op: str) -> List[str]:
        return [name for called, name in self.calls if called == op]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def image_tool() -> RecordingImageTool:
    return RecordingImageTool()


@pytest.fixture
def seed_builder() -> RecordingSeedBuilder:
    return RecordingSeedBuilder()


@pytest.fixture
def viewer() -> RecordingViewer:
    return RecordingViewer()


@pytest.fixture
def provisioner(settings, image_tool, seed_builder, firmware_templates) -> StorageProvisioner:
    return StorageProvisioner(settings, image_tool=image_tool, seed_builder=seed_builder)


@pytest.fixture
def controller(gateway, provisioner, viewer) -> LifecycleController:
    return LifecycleController(gateway, provisioner, viewer, SlotRegistry(timeout=10))


@pytest.fixture
def dispatcher(controller, settings) -> CommandDispatcher:
    return CommandDispatcher(controller, settings.default_template)


