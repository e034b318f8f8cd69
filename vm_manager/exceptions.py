"""Custom exceptions for vm-manager."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Malformed request or unusable input; correctable by the caller."""


class PreconditionError(ManagerError):
    """The VM is not in a state that allows the requested operation."""


class AlreadyExists(PreconditionError):
    pass


class NotFound(PreconditionError):
    pass


class InvalidState(PreconditionError):
    pass


class ProvisioningFailure(ManagerError):
    """Disk or firmware preparation failed. Safe to retry."""


class AlreadyProvisioned(ProvisioningFailure):
    pass


class MissingPrerequisiteDirectory(ProvisioningFailure):
    pass


class MissingPrerequisite(ProvisioningFailure):
    pass


class BackendFailure(ManagerError):
    """A hypervisor or external tool call failed."""


class BackendToolFailure(BackendFailure):
    def __init__(self, tool: str, returncode: int, stderr: str = "") -> None:
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"{tool} failed with exit code {returncode}{detail}")


class OperationTimeout(BackendFailure):
    pass
