"""Hyper-V host operations.

Thin wrappers around Hyper-V and Host Guardian cmdlets. Each method maps to
one provisioning step so failures can be reported against that step.

Read-only queries are retried; mutations are not.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from hvfleet.errors import PowerShellError
from hvfleet.powershell_executor import PowerShellExecutor, ps_quote

logger = logging.getLogger(__name__)

UNTRUSTED_GUARDIAN_NAME = "UntrustedGuardian"


@dataclass
class VMDefinition:
    """Virtual hardware for a new VM."""

    name: str
    disk_path: Path
    vm_path: Path
    switch_name: str
    cpu_count: int
    memory_bytes: int
    vlan_id: int | None = None


class HyperVHost:
    """Hyper-V operations on the local host."""

    def __init__(self, executor: PowerShellExecutor | None = None):
        self.executor = executor or PowerShellExecutor()

    def list_vm_names(self) -> set[str]:
        """Names of every VM on the host."""
        data = self.executor.run_json(
            "@(Get-VM | Select-Object -ExpandProperty Name) | ConvertTo-Json -Compress",
            retry=True,
        )
        if data is None:
            return set()
        # ConvertTo-Json collapses a single-element array into a scalar
        if isinstance(data, str):
            return {data}
        return {str(name) for name in data}

    def vm_exists(self, name: str) -> bool:
        return name in self.list_vm_names()

    def get_vm_state(self, name: str) -> str:
        state = self.executor.run(
            f"(Get-VM -Name {ps_quote(name)}).State.ToString()", retry=True
        )
        return state.strip()

    def mount_disk(self, disk_path: Path) -> Path:
        """Mount a virtual disk and return the root of its lettered volume.

        Raises:
            PowerShellError: If mounting fails or no volume has a drive letter
        """
        script = (
            f"$letter = Mount-VHD -Path {ps_quote(disk_path)} -Passthru | Get-Disk | "
            "Get-Partition | Where-Object { $_.DriveLetter } | "
            "Select-Object -First 1 -ExpandProperty DriveLetter; "
            "Write-Output $letter"
        )
        try:
            letter = self.executor.run(script).strip()
        except PowerShellError:
            # Mount-VHD may have succeeded before a later cmdlet failed
            self._dismount_quietly(disk_path)
            raise
        if not letter:
            # Leave nothing mounted behind when the volume is unusable
            self.dismount_disk(disk_path)
            raise PowerShellError(f"Mounted disk has no lettered volume: {disk_path}")
        root = Path(f"{letter}:\\")
        logger.debug(f"Mounted {disk_path} at {root}")
        return root

    def dismount_disk(self, disk_path: Path) -> None:
        self.executor.run(f"Dismount-VHD -Path {ps_quote(disk_path)}")
        logger.debug(f"Dismounted {disk_path}")

    def _dismount_quietly(self, disk_path: Path) -> None:
        try:
            self.dismount_disk(disk_path)
        except PowerShellError as e:
            logger.warning(f"Could not dismount {disk_path} after a failed mount: {e}")

    def create_vm(self, definition: VMDefinition) -> None:
        """Create a generation-2 VM with secure boot and no automatic checkpoints."""
        name = ps_quote(definition.name)
        lines = [
            f"New-VM -Name {name} -Generation 2 "
            f"-MemoryStartupBytes {definition.memory_bytes} "
            f"-VHDPath {ps_quote(definition.disk_path)} "
            f"-Path {ps_quote(definition.vm_path)} "
            f"-SwitchName {ps_quote(definition.switch_name)} | Out-Null",
            f"Set-VMFirmware -VMName {name} -EnableSecureBoot On",
            f"Set-VM -Name {name} -AutomaticCheckpointsEnabled $false "
            f"-ProcessorCount {definition.cpu_count}",
            f"Set-VMNetworkAdapter -VMName {name} -DeviceNaming On",
        ]
        if definition.vlan_id is not None:
            lines.append(
                f"Set-VMNetworkAdapterVlan -VMName {name} -Access -VlanId {definition.vlan_id}"
            )
        self.executor.run("; ".join(lines))

    def enable_tpm(self, name: str) -> None:
        """Bind a key protector from the local untrusted guardian and enable vTPM.

        The guardian is created on first use and reused afterwards.
        """
        guardian = ps_quote(UNTRUSTED_GUARDIAN_NAME)
        script = (
            f"$owner = Get-HgsGuardian -Name {guardian} -ErrorAction SilentlyContinue; "
            f"if (-not $owner) {{ $owner = New-HgsGuardian -Name {guardian} -GenerateCertificates }}; "
            "$kp = New-HgsKeyProtector -Owner $owner -AllowUntrustedRoot; "
            f"Set-VMKeyProtector -VMName {ps_quote(name)} -KeyProtector $kp.RawData; "
            f"Enable-VMTPM -VMName {ps_quote(name)}"
        )
        self.executor.run(script)

    def start_vm(self, name: str) -> None:
        self.executor.run(f"Start-VM -Name {ps_quote(name)}")

    def get_serial_number(self, name: str) -> str:
        """Hypervisor-assigned BIOS serial number of a VM."""
        script = (
            "Get-CimInstance -Namespace root\\virtualization\\v2 "
            "-ClassName Msvm_VirtualSystemSettingData | "
            f"Where-Object {{ $_.ElementName -eq {ps_quote(name)} -and "
            "$_.VirtualSystemType -eq 'Microsoft:Hyper-V:System:Realized' } | "
            "Select-Object -First 1 -ExpandProperty BIOSSerialNumber"
        )
        serial = self.executor.run(script, retry=True).strip()
        if not serial:
            raise PowerShellError(f"No serial number reported for VM: {name}")
        return serial

    def set_notes(self, name: str, notes: str) -> None:
        self.executor.run(f"Set-VM -Name {ps_quote(name)} -Notes {ps_quote(notes)}")


__all__ = ["HyperVHost", "UNTRUSTED_GUARDIAN_NAME", "VMDefinition"]
