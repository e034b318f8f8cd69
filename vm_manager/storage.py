"""Disk image and firmware-state provisioning for vm-manager."""

from __future__ import annotations

import shutil
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from vm_manager.constants import DISK_SUFFIX, FIRMWARE, FIRMWARE_STATE_SUFFIX, SEED_ISO_SUFFIX
from vm_manager.descriptor import get_template
from vm_manager.exceptions import (
    AlreadyProvisioned,
    MissingPrerequisite,
    MissingPrerequisiteDirectory,
    ProvisioningFailure,
)
from vm_manager.models import MachineTemplate, Settings, StorageLayout, VmSpec
from vm_manager.tools import ImageTool, SeedBuilder
from vm_manager.utils import log, remove_quietly, validate_vm_name


def derive_layout(name: str, template: MachineTemplate, settings: Settings) -> StorageLayout:
    """Compute every per-VM path from the VM name alone."""
    validate_vm_name(name)
    return StorageLayout(
        disk_path=settings.images_dir / f"{name}{DISK_SUFFIX}",
        firmware_state_path=settings.nvram_dir / f"{name}{FIRMWARE_STATE_SUFFIX}" if template.firmware else None,
        backing_image_path=settings.golden_image if template.storage_policy == "overlay" else None,
        seed_iso_path=settings.seed_dir / f"{name}{SEED_ISO_SUFFIX}" if template.cloud_init else None,
        install_media_path=settings.install_iso if template.install_media else None,
    )


class StorageProvisioner:
    def __init__(
        self,
        settings: Settings,
        image_tool: Optional[ImageTool] = None,
        seed_builder: Optional[SeedBuilder] = None,
    ) -> None:
        self.settings = settings
        self.image_tool = image_tool or ImageTool(timeout=settings.tool_timeout)
        self.seed_builder = seed_builder or SeedBuilder(
            settings.guest_user, settings.guest_password, timeout=settings.tool_timeout
        )

    def prepare(self, spec: VmSpec) -> StorageLayout:
        template = get_template(spec.template)
        layout = derive_layout(spec.name, template, self.settings)
        self._check_prerequisites(template, layout)

        created: List[Path] = []
        try:
            disk_reused = self._prepare_disk(spec, template, layout, created)
            if layout.firmware_state_path is not None:
                self._prepare_firmware(template, layout.firmware_state_path, disk_reused, created)
            if layout.seed_iso_path is not None:
                self.seed_builder.build(spec.name, layout.seed_iso_path)
        except Exception:
            self._unwind(spec.name, created)
            raise

        return replace(layout, disk_reused=disk_reused)

    def _check_prerequisites(self, template: MachineTemplate, layout: StorageLayout) -> None:
        required_dirs = [layout.disk_path.parent]
        if layout.firmware_state_path is not None:
            required_dirs.append(layout.firmware_state_path.parent)
        if layout.seed_iso_path is not None:
            required_dirs.append(layout.seed_iso_path.parent)
        for directory in required_dirs:
            if not directory.is_dir():
                raise MissingPrerequisiteDirectory(
                    f"Directory {directory} does not exist. Please create it before running vm-manager."
                )
        if template.firmware:
            vars_template = FIRMWARE[template.firmware]["vars_template"]
            if not vars_template.exists():
                raise MissingPrerequisite(
                    f"OVMF variable template not found at {vars_template}. Ensure the 'ovmf' package is installed."
                )
        if layout.backing_image_path is not None and not layout.disk_path.exists():
            if not layout.backing_image_path.is_file():
                raise MissingPrerequisite(f"Golden image not found at {layout.backing_image_path}")
        if layout.install_media_path is not None and not layout.install_media_path.is_file():
            raise MissingPrerequisite(f"Install media not found at {layout.install_media_path}")

    def _prepare_disk(
        self,
        spec: VmSpec,
        template: MachineTemplate,
        layout: StorageLayout,
        created: List[Path],
    ) -> bool:
        disk = layout.disk_path
        if disk.exists():
            if template.storage_policy == "fresh":
                raise AlreadyProvisioned(
                    f"Disk image {disk} already exists for VM {spec.name}; refusing to overwrite it"
                )
            log("INFO", f"Reusing persistent disk {disk}")
            return True

        if template.storage_policy == "overlay":
            assert layout.backing_image_path is not None
            self.image_tool.create_overlay(disk, layout.backing_image_path, self.settings.overlay_disk_size_gb)
        else:
            self.image_tool.create_blank(disk, self.settings.fresh_disk_size_gb)
        created.append(disk)
        return False

    def _prepare_firmware(
        self,
        template: MachineTemplate,
        destination: Path,
        disk_reused: bool,
        created: List[Path],
    ) -> None:
        if self.settings.preserve_firmware_state and disk_reused and destination.exists():
            log("INFO", f"Keeping firmware state {destination}")
            return
        assert template.firmware is not None
        source = FIRMWARE[template.firmware]["vars_template"]
        existed = destination.exists()
        try:
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise ProvisioningFailure(f"Failed to prepare the OVMF NVRAM file {destination}: {exc}") from exc
        if not existed:
            created.append(destination)
        log("INFO", f"Firmware state written to {destination}")

    @staticmethod
    def _unwind(vm_name: str, created: List[Path]) -> None:
        if not created:
            return
        log("WARN", f"Provisioning for {vm_name} failed; removing files created by this attempt")
        for path in created:
            remove_quietly(path)

    def discard(self, layout: StorageLayout) -> None:
        """Remove the per-VM files of a layout that was never defined.

        A reattached disk is left alone; it predates this create.
        """
        if layout.disk_reused:
            return
        paths = [layout.disk_path, layout.firmware_state_path, layout.seed_iso_path]
        self._unwind(layout.disk_path.stem, [p for p in paths if p is not None and p.exists()])
