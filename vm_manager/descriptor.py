"""Machine templates and libvirt domain XML rendering for vm-manager."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, tostring

from vm_manager.constants import DISK_FORMAT, FIRMWARE, UNSAFE_PATH_CHARS
from vm_manager.exceptions import ValidationError
from vm_manager.models import MachineTemplate, StorageLayout, VmSpec
from vm_manager.utils import validate_vm_name

TEMPLATES: Dict[str, MachineTemplate] = {
    "secure-uefi": MachineTemplate(
        name="secure-uefi",
        storage_policy="fresh",
        firmware="secure",
        machine="q35",
        disk_bus="sata",
        graphics="spice",
        install_media=True,
        hyperv=True,
        tpm=True,
        description="Blank disk, Secure Boot OVMF, installer ISO, TPM, SPICE",
    ),
    "secure-uefi-golden": MachineTemplate(
        name="secure-uefi-golden",
        storage_policy="overlay",
        firmware="secure",
        machine="q35",
        disk_bus="sata",
        graphics="spice",
        tpm=True,
        description="Overlay of the golden image, Secure Boot OVMF, TPM, SPICE",
    ),
    "linux-cloudinit": MachineTemplate(
        name="linux-cloudinit",
        storage_policy="overlay",
        firmware=None,
        machine="pc",
        disk_bus="virtio",
        graphics="vnc",
        cloud_init=True,
        description="Overlay of the golden image, BIOS boot, cloud-init seed, VNC",
    ),
}

_DEV_PREFIX = {"virtio": "vd", "sata": "sd", "scsi": "sd", "ide": "hd"}


def get_template(name: object) -> MachineTemplate:
    if not isinstance(name, str) or name not in TEMPLATES:
        raise ValidationError(f"Unknown template '{name}'. Available templates: {', '.join(sorted(TEMPLATES))}")
    return TEMPLATES[name]


def _checked_path(label: str, path: Optional[Path]) -> str:
    if path is None:
        raise ValidationError(f"Template requires {label} but the storage layout has none")
    text = str(path)
    if not Path(text).is_absolute():
        raise ValidationError(f"{label} must be an absolute path (got '{text}')")
    if any(ch in UNSAFE_PATH_CHARS or ord(ch) < 32 or ord(ch) == 127 for ch in text):
        raise ValidationError(f"{label} contains characters that are not allowed: '{text}'")
    return text


def _add_cdrom(devices: Element, source: str, target: str, bus: str) -> None:
    cdrom = SubElement(devices, "disk", type="file", device="cdrom")
    SubElement(cdrom, "driver", name="qemu", type="raw")
    SubElement(cdrom, "source", file=source)
    SubElement(cdrom, "target", dev=target, bus=bus)
    SubElement(cdrom, "readonly")


def render(spec: VmSpec, layout: StorageLayout, template: MachineTemplate) -> str:
    """Render the libvirt domain definition for ``spec``.

    Output is a pure function of the arguments, so identical inputs always
    produce byte-identical XML.
    """
    validate_vm_name(spec.name)
    if spec.template != template.name:
        raise ValidationError(f"VM {spec.name} requests template '{spec.template}', not '{template.name}'")
    for label, value in (("memoryMB", spec.memory_mb), ("vcpus", spec.vcpus)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError(f"{label} must be a positive integer (got '{value}')")

    disk_path = _checked_path("disk path", layout.disk_path)
    nvram_path = _checked_path("firmware state path", layout.firmware_state_path) if template.firmware else None
    seed_path = _checked_path("seed ISO path", layout.seed_iso_path) if template.cloud_init else None
    media_path = _checked_path("install media path", layout.install_media_path) if template.install_media else None

    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = spec.name
    SubElement(domain, "memory", unit="MiB").text = str(spec.memory_mb)
    SubElement(domain, "vcpu", placement="static").text = str(spec.vcpus)

    # <os>
    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64", machine=template.machine).text = "hvm"
    if template.firmware:
        firmware = FIRMWARE[template.firmware]
        secure_val = "yes" if template.firmware == "secure" else "no"
        loader = SubElement(os_el, "loader", readonly="yes", secure=secure_val, type="pflash")
        loader.text = str(firmware["loader"])
        SubElement(os_el, "nvram").text = nvram_path
    if template.install_media:
        SubElement(os_el, "boot", dev="cdrom")
    SubElement(os_el, "boot", dev="hd")
    if template.cloud_init:
        SubElement(os_el, "bootmenu", enable="yes")

    # <features>
    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")
    if template.firmware == "secure":
        SubElement(features, "smm", state="on")
    if template.hyperv:
        hyperv = SubElement(features, "hyperv")
        SubElement(hyperv, "relaxed", state="on")
        SubElement(hyperv, "vapic", state="on")
        SubElement(hyperv, "spinlocks", state="on", retries="8191")

    SubElement(domain, "cpu", mode="host-passthrough")

    # <devices>
    devices = SubElement(domain, "devices")
    if media_path:
        _add_cdrom(devices, media_path, "sdb", "sata")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=DISK_FORMAT)
    SubElement(disk, "source", file=disk_path)
    SubElement(disk, "target", dev=f"{_DEV_PREFIX[template.disk_bus]}a", bus=template.disk_bus)

    if seed_path:
        _add_cdrom(devices, seed_path, "hdc", "ide")

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network="default")

    video = SubElement(devices, "video")
    model = SubElement(video, "model", type="qxl", ram="65536", vram="65536", vgamem="16384", heads="1")
    SubElement(model, "acceleration", accel3d="no")

    graphics = SubElement(devices, "graphics", type=template.graphics, autoport="yes", listen="0.0.0.0")
    SubElement(graphics, "listen", type="address", address="0.0.0.0")

    SubElement(devices, "input", type="keyboard", bus="usb")
    # Absolute pointer for SPICE/VNC sessions.
    SubElement(devices, "input", type="tablet", bus="usb")

    if template.tpm:
        tpm = SubElement(devices, "tpm", model="tpm-tis")
        SubElement(tpm, "backend", type="emulator")

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()
