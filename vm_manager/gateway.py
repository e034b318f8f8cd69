"""libvirt-backed hypervisor gateway for vm-manager."""

from __future__ import annotations

import concurrent.futures
import threading
from functools import partial
from typing import Any, Callable, Optional

try:
    import libvirt  # type: ignore
except ImportError:  # pragma: no cover
    libvirt = None

from vm_manager.constants import LIBVIRT_URI
from vm_manager.exceptions import BackendFailure, ManagerError, NotFound, OperationTimeout
from vm_manager.models import VmState
from vm_manager.utils import log


def _error_message(exc: Exception) -> str:
    message = exc.get_error_message() if hasattr(exc, "get_error_message") else None
    return message or str(exc)


class LibvirtGateway:
    """One process-wide libvirt connection plus a bounded pool for blocking calls.

    Every public call waits at most ``timeout`` seconds. A call that overruns is
    reported as :class:`OperationTimeout`; libvirt may still complete it later.
    ``api`` is the libvirt module; it defaults to the installed bindings.
    """

    def __init__(
        self,
        uri: str = LIBVIRT_URI,
        timeout: Optional[float] = None,
        max_workers: int = 8,
        conn: Optional[Any] = None,
        api: Optional[Any] = None,
    ) -> None:
        self.api = api or libvirt
        if self.api is None:
            raise ManagerError("libvirt python bindings not available. Install the 'libvirt-python' package.")
        self.uri = uri
        self.timeout = timeout
        self.conn = conn
        self._conn_lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="libvirt"
        )

    def connect(self) -> None:
        with self._conn_lock:
            if self.conn is not None:
                return
            try:
                conn = self.api.open(self.uri)
            except self.api.libvirtError as exc:
                raise ManagerError(f"Failed to connect to hypervisor at {self.uri}: {_error_message(exc)}") from exc
            if conn is None:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}")
            self.conn = conn
            log("DEBUG", f"Connected to {self.uri}")

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        with self._conn_lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def _is_missing_domain(self, exc: Exception) -> bool:
        code = exc.get_error_code() if hasattr(exc, "get_error_code") else None
        return code == self.api.VIR_ERR_NO_DOMAIN

    def _call(self, what: str, func: Callable[..., Any], *args: Any) -> Any:
        if self.conn is None:
            raise ManagerError("libvirt connection not established")
        future = self._executor.submit(partial(func, *args))
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise OperationTimeout(f"{what} did not complete within {self.timeout:g}s")
        except self.api.libvirtError as exc:
            if self._is_missing_domain(exc):
                raise NotFound(f"{what}: {_error_message(exc)}") from exc
            raise BackendFailure(f"{what}: {_error_message(exc)}") from exc

    def _domain(self, name: str) -> Any:
        return self._call(f"Failed to look up VM {name}", self.conn.lookupByName, name)

    def _shutoff_states(self) -> tuple:
        return (self.api.VIR_DOMAIN_SHUTOFF, self.api.VIR_DOMAIN_CRASHED, self.api.VIR_DOMAIN_NOSTATE)

    def lookup(self, name: str) -> VmState:
        try:
            domain = self._domain(name)
        except NotFound:
            return VmState.UNDEFINED
        return self._call(f"Failed to read state of VM {name}", self._state_of, domain)

    def _state_of(self, domain: Any) -> VmState:
        state, _reason = domain.state()
        if state in (self.api.VIR_DOMAIN_PAUSED, self.api.VIR_DOMAIN_PMSUSPENDED):
            return VmState.PAUSED
        if state in self._shutoff_states():
            if domain.hasManagedSaveImage(0):
                return VmState.PAUSED
            return VmState.DEFINED
        return VmState.RUNNING

    def define(self, xml: str) -> Any:
        domain = self._call("Failed to define VM", self.conn.defineXML, xml)
        if domain is None:
            raise BackendFailure("Failed to define VM. Check the XML configuration.")
        return domain

    def power_on(self, domain: Any) -> None:
        self._call("Failed to start VM. Check QEMU logs for details", domain.create)

    def start(self, name: str) -> None:
        domain = self._domain(name)
        self._call(f"Failed to start VM: {name}", domain.create)

    def suspend(self, name: str) -> None:
        domain = self._domain(name)
        self._call(f"Failed to stop VM: {name}", domain.managedSave, 0)

    def resume(self, name: str) -> None:
        domain = self._domain(name)
        state, _reason = self._call(f"Failed to read state of VM {name}", domain.state)
        if state == self.api.VIR_DOMAIN_PMSUSPENDED:
            self._call(f"Failed to resume VM: {name}", domain.pMWakeup, 0)
        elif state == self.api.VIR_DOMAIN_PAUSED:
            self._call(f"Failed to resume VM: {name}", domain.resume)
        elif state in self._shutoff_states():
            # Restores from the managed save image when one exists.
            self._call(f"Failed to resume VM: {name}", domain.create)
