"""External tool collaborators: qemu-img, genisoimage and remote-viewer."""

from __future__ import annotations

import os
import subprocess
import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vm_manager.constants import DISK_FORMAT, VIEWER_BINARY, VIEWER_ENV_ALLOWLIST, VIEWER_PATH, VIEWER_URI
from vm_manager.exceptions import BackendFailure
from vm_manager.utils import hash_password, log, remove_quietly, run


def _partial_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.partial")


class ImageTool:
    """Create qcow2 images; a finished image appears at its path atomically."""

    def __init__(self, timeout: Optional[float] = None, binary: str = "qemu-img") -> None:
        self.timeout = timeout
        self.binary = binary

    def create_blank(self, path: Path, size_gb: int) -> None:
        log("INFO", f"Creating a new {DISK_FORMAT} disk ({size_gb}G): {path}")
        self._create(path, [], size_gb)

    def create_overlay(self, path: Path, backing_path: Path, size_gb: int) -> None:
        log("INFO", f"Creating overlay {path} backed by {backing_path} ({size_gb}G)")
        self._create(path, ["-F", DISK_FORMAT, "-b", str(backing_path)], size_gb)

    def _create(self, path: Path, extra: List[str], size_gb: int) -> None:
        partial = _partial_path(path)
        cmd = [self.binary, "create", "-f", DISK_FORMAT, *extra, str(partial), f"{size_gb}G"]
        try:
            run(cmd, timeout=self.timeout)
            os.replace(partial, path)
        except BaseException:
            if partial.exists():
                remove_quietly(partial)
            raise


class SeedBuilder:
    """Build a NoCloud seed ISO (volume label ``cidata``) for cloud-init guests."""

    def __init__(self, login_user: str, password: str, timeout: Optional[float] = None) -> None:
        self.login_user = login_user
        self.password = password
        self.timeout = timeout

    def vendor_data(self) -> str:
        # Kept out of user-data so it is processed independently of any user payload.
        cloud_cfg = {
            "users": [
                {
                    "name": self.login_user,
                    "groups": "sudo",
                    "shell": "/bin/bash",
                    "lock_passwd": False,
                    "passwd": hash_password(self.password),
                    "sudo": "ALL=(ALL) NOPASSWD:ALL",
                }
            ],
            "ssh_pwauth": True,
            "chpasswd": {"expire": False},
        }
        return "#cloud-config\n" + yaml.safe_dump(cloud_cfg, sort_keys=False, default_flow_style=False)

    @staticmethod
    def meta_data(vm_name: str) -> str:
        return (
            textwrap.dedent(
                f"""
            instance-id: iid-{vm_name}
            local-hostname: {vm_name}
            """
            ).strip()
            + "\n"
        )

    def build(self, vm_name: str, destination: Path) -> None:
        log("INFO", f"Generating cloud-init seed {destination}")
        partial = _partial_path(destination)
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            (tmp / "meta-data").write_text(self.meta_data(vm_name), encoding="utf-8")
            (tmp / "user-data").write_text("", encoding="utf-8")
            (tmp / "vendor-data").write_text(self.vendor_data(), encoding="utf-8")
            cmd = [
                "genisoimage",
                "-output",
                str(partial),
                "-volid",
                "cidata",
                "-joliet",
                "-rock",
                str(tmp / "meta-data"),
                str(tmp / "user-data"),
                str(tmp / "vendor-data"),
            ]
            try:
                run(cmd, timeout=self.timeout)
                os.replace(partial, destination)
            except BaseException:
                if partial.exists():
                    remove_quietly(partial)
                raise


class ViewerLauncher:
    """Spawn the remote display viewer with an allow-listed environment."""

    def __init__(
        self,
        uri: str = VIEWER_URI,
        timeout: float = 2.0,
        binary: str = VIEWER_BINARY,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.uri = uri
        self.timeout = timeout
        self.binary = binary
        self._environ = environ

    def build_env(self) -> Dict[str, str]:
        source = os.environ if self._environ is None else self._environ
        env = {key: source.get(key, "") for key in VIEWER_ENV_ALLOWLIST}
        env["PATH"] = VIEWER_PATH
        if not env["XAUTHORITY"]:
            env["XAUTHORITY"] = f"{env['HOME']}/.Xauthority"
        return env

    def launch(self, vm_name: str) -> None:
        cmd = [self.binary, self.uri]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                env=self.build_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except FileNotFoundError:
            raise BackendFailure(f"Failed to open VM: {vm_name}: {self.binary} not found")
        except OSError as exc:
            raise BackendFailure(f"Failed to open VM: {vm_name}: {exc}")

        # A viewer that survives the startup window is considered launched.
        try:
            returncode = proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            log("INFO", f"Viewer for {vm_name} running (pid {proc.pid})")
            return
        if returncode != 0:
            raise BackendFailure(f"Failed to open VM: {vm_name}: {self.binary} exited with code {returncode}")
