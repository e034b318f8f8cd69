"""Utility functions for vm-manager."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vm_manager.constants import _LOG_VERBOSE, TRUTHY, VM_NAME_RE
from vm_manager.exceptions import (
    BackendFailure,
    BackendToolFailure,
    ManagerError,
    OperationTimeout,
    ValidationError,
)


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    if isinstance(raw, bool):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_vm_name(name: object) -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError("VM name must be a non-empty string")
    if not VM_NAME_RE.fullmatch(name):
        raise ValidationError(
            f"Invalid VM name '{name}'. Use up to 64 letters, digits, '.', '_' or '-', "
            "starting with a letter or digit"
        )
    return name


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def remove_quietly(path: Path) -> None:
    """Best-effort removal used when unwinding a failed provisioning step."""
    try:
        path.unlink(missing_ok=True)
        log("INFO", f"Removed {path}")
    except OSError as exc:
        log("WARN", f"Failed to remove {path}: {exc}")


def run(cmd: List[str], timeout: Optional[float] = None, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging; failures surface as typed backend errors."""
    tool = Path(cmd[0]).name
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, check=False, text=True, capture_output=True, timeout=timeout, **kwargs)
    except FileNotFoundError:
        raise BackendFailure(f"{tool} not found. Ensure it is installed and on PATH.")
    except subprocess.TimeoutExpired:
        raise OperationTimeout(f"{tool} did not finish within {timeout:g}s")
    if result.returncode != 0:
        raise BackendToolFailure(tool, result.returncode, result.stderr or "")
    return result
