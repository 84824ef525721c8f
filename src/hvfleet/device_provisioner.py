"""VM provisioning module.

Turns one allocated name, a reference image and an optional enrollment
config into a running, TPM-enabled Hyper-V VM.

Steps run strictly in order; each is a precondition for the next:
    check_name -> copy_disk -> inject_enrollment -> create_vm
    -> enable_tpm -> start_vm -> tag_vm

A failure after copy_disk leaves the copied disk in place for the
operator to inspect and remove; nothing is rolled back.
"""

import logging
import shutil
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from hvfleet.disk_mount import mounted_disk
from hvfleet.enrollment_config import GUEST_CONFIG_FILE_NAME, GUEST_PROVISIONING_DIR
from hvfleet.errors import PowerShellError, ProvisioningError, ResourceConflictError
from hvfleet.hyperv_host import HyperVHost, VMDefinition
from hvfleet.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

DISK_EXTENSION = ".vhdx"


class ProvisioningStep(str, Enum):
    CHECK_NAME = "check_name"
    COPY_DISK = "copy_disk"
    INJECT_ENROLLMENT = "inject_enrollment"
    CREATE_VM = "create_vm"
    ENABLE_TPM = "enable_tpm"
    START_VM = "start_vm"
    TAG_VM = "tag_vm"


@dataclass
class VMRecord:
    """Observed state of a provisioned VM. The hypervisor is the source of truth."""

    name: str
    tenant: str
    hardware_serial: str
    state: str = "Unknown"


@dataclass
class ProvisionRequest:
    """Everything needed to provision a single VM."""

    name: str
    tenant: str
    reference_image: Path
    workspace_dir: Path
    switch_name: str
    cpu_count: int
    memory_bytes: int
    vlan_id: int | None = None
    enrollment_config: Path | None = None

    @property
    def disk_path(self) -> Path:
        return self.workspace_dir / f"{self.name}{DISK_EXTENSION}"


def vm_notes(serial: str, tenant: str) -> str:
    """Operator-facing VM notes used for traceability."""
    return f"Serial# {serial} | Tenant: {tenant}"


class DeviceProvisioner:
    """Provision individual VMs on a Hyper-V host."""

    def __init__(
        self,
        host: HyperVHost,
        progress_callback: Callable[[str], None] | None = None,
    ):
        self.host = host
        self.progress_callback = progress_callback

    def _report(self, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(message)
        logger.info(message)

    @contextmanager
    def _step(
        self, request: ProvisionRequest, step: ProvisioningStep
    ) -> Generator[None, None, None]:
        """Attribute any failure inside the block to a provisioning step."""
        logger.debug(f"{request.name}: {step.value}")
        try:
            yield
        except ProvisioningError as e:
            e.tenant = e.tenant or request.tenant
            e.vm_name = e.vm_name or request.name
            e.step = e.step or step.value
            raise
        except (OSError, PowerShellError) as e:
            raise ProvisioningError(
                LogSanitizer.create_safe_error_message(e, f"{step.value} failed"),
                tenant=request.tenant,
                vm_name=request.name,
                step=step.value,
            ) from e

    def provision(self, request: ProvisionRequest) -> VMRecord:
        """Provision one VM.

        Raises:
            ResourceConflictError: If the VM or its disk already exists (nothing is touched)
            ProvisioningError: If any hypervisor step fails
        """
        self._check_name(request)

        disk_path = request.disk_path
        with self._step(request, ProvisioningStep.COPY_DISK):
            self._report(f"{request.name}: copying reference image")
            shutil.copyfile(request.reference_image, disk_path)

        if request.enrollment_config is not None:
            with self._step(request, ProvisioningStep.INJECT_ENROLLMENT):
                self._report(f"{request.name}: injecting enrollment config")
                self._inject_enrollment(disk_path, request.enrollment_config)

        with self._step(request, ProvisioningStep.CREATE_VM):
            self._report(f"{request.name}: creating VM")
            self.host.create_vm(
                VMDefinition(
                    name=request.name,
                    disk_path=disk_path,
                    vm_path=request.workspace_dir,
                    switch_name=request.switch_name,
                    cpu_count=request.cpu_count,
                    memory_bytes=request.memory_bytes,
                    vlan_id=request.vlan_id,
                )
            )

        with self._step(request, ProvisioningStep.ENABLE_TPM):
            self._report(f"{request.name}: enabling virtual TPM")
            self.host.enable_tpm(request.name)

        with self._step(request, ProvisioningStep.START_VM):
            self._report(f"{request.name}: starting VM")
            self.host.start_vm(request.name)

        with self._step(request, ProvisioningStep.TAG_VM):
            serial = self.host.get_serial_number(request.name)
            self.host.set_notes(request.name, vm_notes(serial, request.tenant))
            state = self.host.get_vm_state(request.name)

        self._report(f"{request.name}: provisioned (serial {serial})")
        return VMRecord(
            name=request.name, tenant=request.tenant, hardware_serial=serial, state=state
        )

    def _check_name(self, request: ProvisionRequest) -> None:
        with self._step(request, ProvisioningStep.CHECK_NAME):
            exists = self.host.vm_exists(request.name)

        if exists:
            raise ResourceConflictError(
                f"A VM named '{request.name}' already exists on this host",
                tenant=request.tenant,
                vm_name=request.name,
                step=ProvisioningStep.CHECK_NAME.value,
            )
        if request.disk_path.exists():
            raise ResourceConflictError(
                f"Disk {request.disk_path} already exists (left over from an earlier run?). "
                "Remove it before provisioning this name.",
                tenant=request.tenant,
                vm_name=request.name,
                step=ProvisioningStep.CHECK_NAME.value,
            )

    def _inject_enrollment(self, disk_path: Path, enrollment_config: Path) -> None:
        with mounted_disk(self.host, disk_path) as root:
            target_dir = root / GUEST_PROVISIONING_DIR
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(enrollment_config, target_dir / GUEST_CONFIG_FILE_NAME)


__all__ = [
    "DeviceProvisioner",
    "ProvisionRequest",
    "ProvisioningStep",
    "VMRecord",
    "vm_notes",
]
