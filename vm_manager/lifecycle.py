"""VM lifecycle state machine and per-VM serialization for vm-manager."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from vm_manager.descriptor import get_template, render
from vm_manager.exceptions import AlreadyExists, InvalidState, NotFound, OperationTimeout
from vm_manager.models import VmSpec, VmState
from vm_manager.storage import StorageProvisioner
from vm_manager.tools import ViewerLauncher
from vm_manager.utils import log, validate_vm_name


@runtime_checkable
class HypervisorGateway(Protocol):
    """The hypervisor operations the controller relies on."""

    def lookup(self, name: str) -> VmState: ...

    def define(self, xml: str) -> Any: ...

    def power_on(self, handle: Any) -> None: ...

    def start(self, name: str) -> None: ...

    def suspend(self, name: str) -> None: ...

    def resume(self, name: str) -> None: ...


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SlotRegistry:
    """Per-name mutual exclusion. Slots exist only while someone holds or waits on them."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._slots: Dict[str, _Slot] = {}

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(name, _Slot())
            slot.users += 1
        try:
            acquired = slot.lock.acquire(timeout=-1 if self.timeout is None else self.timeout)
            if not acquired:
                raise OperationTimeout(f"Timed out waiting for another operation on VM {name} to finish")
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[name]

    def active(self) -> List[str]:
        with self._guard:
            return sorted(self._slots)


class LifecycleController:
    """Turn lifecycle verbs into gateway calls, one operation per VM at a time.

    State is never cached: each operation asks the gateway before acting, so a
    restarted daemon picks up whatever the hypervisor already runs.
    """

    def __init__(
        self,
        gateway: HypervisorGateway,
        provisioner: StorageProvisioner,
        viewer: ViewerLauncher,
        slots: Optional[SlotRegistry] = None,
    ) -> None:
        self.gateway = gateway
        self.provisioner = provisioner
        self.viewer = viewer
        self.slots = slots or SlotRegistry()

    def _require_defined(self, name: str) -> VmState:
        state = self.gateway.lookup(name)
        if state == VmState.UNDEFINED:
            raise NotFound(f"VM {name} not found")
        return state

    def create(self, spec: VmSpec) -> str:
        validate_vm_name(spec.name)
        template = get_template(spec.template)
        with self.slots.hold(spec.name):
            if self.gateway.lookup(spec.name) != VmState.UNDEFINED:
                raise AlreadyExists("VM already exists. Use the 'start' command instead.")
            log(
                "INFO",
                f"Creating VM {spec.name} ({template.name}): {spec.memory_mb} MiB, {spec.vcpus} vCPUs",
            )
            layout = self.provisioner.prepare(spec)
            try:
                xml = render(spec, layout, template)
                log("INFO", f"Defining the VM {spec.name} in libvirt...")
                handle = self.gateway.define(xml)
            except OperationTimeout:
                # libvirt may still finish the define.
                raise
            except Exception:
                # Nothing was defined; drop the files this attempt created.
                self.provisioner.discard(layout)
                raise
            log("INFO", f"Starting the VM: {spec.name}")
            self.gateway.power_on(handle)
        log("SUCCESS", f"VM started successfully: {spec.name}")
        return f"Successfully created and started VM {spec.name}"

    def start(self, name: str) -> str:
        with self.slots.hold(name):
            state = self._require_defined(name)
            if state == VmState.RUNNING:
                log("INFO", f"Domain {name} already running")
            elif state == VmState.PAUSED:
                log("INFO", f"Resuming VM {name}")
                self.gateway.resume(name)
            else:
                log("INFO", f"Powering on VM {name}")
                self.gateway.start(name)
        return f"VM {name} started (resumed) successfully."

    def pause(self, name: str) -> str:
        with self.slots.hold(name):
            state = self._require_defined(name)
            if state == VmState.DEFINED:
                raise InvalidState(f"VM {name} is not running")
            if state == VmState.PAUSED:
                log("INFO", f"VM {name} already paused")
            else:
                log("INFO", f"Saving state of VM {name}")
                self.gateway.suspend(name)
        return f"VM {name} stopped successfully."

    def resume(self, name: str) -> str:
        with self.slots.hold(name):
            state = self._require_defined(name)
            if state == VmState.DEFINED:
                raise InvalidState(f"VM {name} is powered off. Use the 'start' command instead.")
            if state == VmState.PAUSED:
                log("INFO", f"Resuming VM {name}")
                self.gateway.resume(name)
            self.viewer.launch(name)
        return f"VM {name} opened successfully."
