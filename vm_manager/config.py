"""Configuration loading and environment variable parsing for vm-manager."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vm_manager.constants import (
    CONFIG_PATH_ENV,
    DEFAULT_CONFIG_PATH,
    DEFAULT_GOLDEN_IMAGE,
    DEFAULT_IMAGES_DIR,
    DEFAULT_INSTALL_ISO,
    DEFAULT_NVRAM_DIR,
    DEFAULT_SOCKET_PATH,
    DEFAULT_TEMPLATE,
    LIBVIRT_URI,
    TRUTHY,
    VIEWER_URI,
)
from vm_manager.descriptor import TEMPLATES
from vm_manager.exceptions import ManagerError
from vm_manager.models import Settings
from vm_manager.utils import get_env, log, parse_int

# key -> (environment variable, default, kind)
_SETTINGS_FIELDS: Dict[str, tuple] = {
    "images_dir": ("VM_IMAGES_DIR", DEFAULT_IMAGES_DIR, "path"),
    "nvram_dir": ("NVRAM_DIR", DEFAULT_NVRAM_DIR, "path"),
    "seed_dir": ("SEED_DIR", DEFAULT_IMAGES_DIR, "path"),
    "golden_image": ("GOLDEN_IMAGE", DEFAULT_GOLDEN_IMAGE, "path"),
    "install_iso": ("INSTALL_ISO", DEFAULT_INSTALL_ISO, "path"),
    "default_template": ("VM_TEMPLATE", DEFAULT_TEMPLATE, "str"),
    "fresh_disk_size_gb": ("FRESH_DISK_SIZE_GB", 60, "int"),
    "overlay_disk_size_gb": ("OVERLAY_DISK_SIZE_GB", 20, "int"),
    "preserve_firmware_state": ("PRESERVE_FIRMWARE_STATE", False, "bool"),
    "socket_path": ("VM_MANAGER_SOCKET", DEFAULT_SOCKET_PATH, "path"),
    "libvirt_uri": ("LIBVIRT_URI", LIBVIRT_URI, "str"),
    "viewer_uri": ("VIEWER_URI", VIEWER_URI, "str"),
    "tool_timeout": ("TOOL_TIMEOUT", 600, "int"),
    "gateway_timeout": ("GATEWAY_TIMEOUT", 120, "int"),
    "viewer_timeout": ("VIEWER_TIMEOUT", 2, "int"),
    "slot_timeout": ("SLOT_TIMEOUT", 900, "int"),
    "guest_user": ("GUEST_USER", "ubuntu", "str"),
    "guest_password": ("GUEST_PASSWORD", "ubuntu", "str"),
}


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the YAML settings file. A missing default file yields no overrides."""
    explicit = config_path is not None
    if config_path is None:
        env_path = get_env(CONFIG_PATH_ENV)
        if env_path:
            config_path = Path(env_path)
            explicit = True
        else:
            config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if explicit:
            raise ManagerError(f"Config file missing: {config_path}")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid YAML in {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"{config_path} must contain a mapping of settings")
    unknown = sorted(set(data) - set(_SETTINGS_FIELDS))
    if unknown:
        raise ManagerError(f"Unknown settings in {config_path}: {', '.join(unknown)}")
    log("DEBUG", f"Loaded settings from {config_path}")
    return data


def _coerce(key: str, raw: Any, kind: str) -> Any:
    if kind == "path":
        if isinstance(raw, Path):
            return raw
        if not isinstance(raw, str) or not raw.strip():
            raise ManagerError(f"{key} must be a non-empty path (got '{raw}')")
        return Path(raw.strip())
    if kind == "int":
        return parse_int(key, raw, min_val=1)
    if kind == "bool":
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in TRUTHY
    if not isinstance(raw, str) or not raw.strip():
        raise ManagerError(f"{key} must be a non-empty string (got '{raw}')")
    return raw.strip()


def load_settings(config_path: Optional[Path] = None) -> Settings:
    file_values = load_config_file(config_path)
    values: Dict[str, Any] = {}
    for key, (env_name, default, kind) in _SETTINGS_FIELDS.items():
        raw = get_env(env_name)
        if raw is None:
            raw = file_values.get(key, default)
        values[key] = _coerce(key, raw, kind)

    settings = Settings(**values)
    if settings.default_template not in TEMPLATES:
        raise ManagerError(
            f"Unknown default template '{settings.default_template}'. "
            f"Available templates: {', '.join(sorted(TEMPLATES))}"
        )
    for key in ("images_dir", "nvram_dir", "seed_dir", "golden_image", "install_iso"):
        if not getattr(settings, key).is_absolute():
            raise ManagerError(f"{key} must be an absolute path (got '{getattr(settings, key)}')")
    return settings
