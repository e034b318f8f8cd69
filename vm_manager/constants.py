"""Global constants and default paths for vm-manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("/etc/vm-manager/config.yaml")
CONFIG_PATH_ENV = "VM_MANAGER_CONFIG"

DEFAULT_IMAGES_DIR = Path("/var/lib/libvirt/images")
DEFAULT_NVRAM_DIR = Path("/var/lib/vm-manager/nvram")
DEFAULT_GOLDEN_IMAGE = DEFAULT_IMAGES_DIR / "ubuntu-preinstalled.qcow2"
DEFAULT_INSTALL_ISO = DEFAULT_IMAGES_DIR / "windows11.iso"
DEFAULT_SOCKET_PATH = Path("/tmp/vm_manager.sock")
DEFAULT_TEMPLATE = "secure-uefi"

GOLDEN_VM_NAME = "goldenImage"
GOLDEN_VM_TEMPLATE = "secure-uefi"
GOLDEN_VM_MEMORY_MB = 4096
GOLDEN_VM_VCPUS = 2

LIBVIRT_URI = "qemu:///system"
VIEWER_BINARY = "remote-viewer"
VIEWER_URI = "spice://localhost:5900"

TRUTHY = {"1", "true", "yes", "on"}

# Names end up in file names and in the domain XML, so keep them boring.
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
UNSAFE_PATH_CHARS = set("<>&'\"")

DISK_FORMAT = "qcow2"
DISK_SUFFIX = ".qcow2"
FIRMWARE_STATE_SUFFIX = "_VARS.fd"
SEED_ISO_SUFFIX = "-seed.iso"

FIRMWARE = {
    "uefi": {
        "loader": Path("/usr/share/OVMF/OVMF_CODE_4M.fd"),
        "vars_template": Path("/usr/share/OVMF/OVMF_VARS_4M.fd"),
    },
    "secure": {
        "loader": Path("/usr/share/OVMF/OVMF_CODE_4M.secboot.fd"),
        "vars_template": Path("/usr/share/OVMF/OVMF_VARS_4M.fd"),
    },
}

STORAGE_POLICIES = {"fresh", "overlay"}

# Only these variables reach the display viewer process.
VIEWER_ENV_ALLOWLIST = ("HOME", "PATH", "DISPLAY", "XAUTHORITY")
VIEWER_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

MAX_REQUEST_BYTES = 64 * 1024

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
