"""Error taxonomy for fleet provisioning.

Every error carries the context needed to diagnose it without re-running
in verbose mode: the tenant, the VM name and the provisioning step, when
known.

Fatal to the whole run:
- ConfigurationError, AuthenticationError, DirectoryApiError, ImageBuildError

Non-fatal (logged, run continues without enrollment payload):
- NotFoundError, SelectionAbortedError

Fatal to a single VM:
- ResourceConflictError, ProvisioningError
"""


class FleetError(Exception):
    """Base class for all hvfleet errors."""

    def __init__(
        self,
        message: str,
        *,
        tenant: str | None = None,
        vm_name: str | None = None,
        step: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.tenant = tenant
        self.vm_name = vm_name
        self.step = step

    def __str__(self) -> str:
        context = []
        if self.tenant:
            context.append(f"tenant={self.tenant}")
        if self.vm_name:
            context.append(f"vm={self.vm_name}")
        if self.step:
            context.append(f"step={self.step}")
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ConfigurationError(FleetError):
    """Missing tenant/image entry, missing install media, unwritable workspace."""

    pass


class AuthenticationError(FleetError):
    """Raised when the directory API handshake fails."""

    pass


class DirectoryApiError(FleetError):
    """Raised when the directory API returns a non-retryable error."""

    pass


class NotFoundError(FleetError):
    """Raised when no enrollment profiles are available."""

    pass


class SelectionAbortedError(FleetError):
    """Raised when the operator declines to choose an enrollment profile."""

    pass


class ResourceConflictError(FleetError):
    """Raised when a VM with the requested name already exists."""

    pass


class ProvisioningError(FleetError):
    """Raised when a hypervisor step fails for a VM."""

    pass


class DiskBusyError(ProvisioningError):
    """Raised when a disk is already mounted by this process."""

    pass


class ImageBuildError(FleetError):
    """Raised when the reference image builder does not produce an image."""

    pass


class PowerShellError(FleetError):
    """Raised when a PowerShell command exits non-zero or times out."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DirectoryApiError",
    "DiskBusyError",
    "FleetError",
    "ImageBuildError",
    "NotFoundError",
    "PowerShellError",
    "ProvisioningError",
    "ResourceConflictError",
    "SelectionAbortedError",
]
