"""Fleet orchestration module.

Runs the tenant provisioning pipeline:
    resolve tenant/image -> ensure reference image -> fetch enrollment
    config -> allocate names -> provision each VM in order

Fatal errors (configuration, authentication, image build) abort the run
before any VM is touched. Per-VM errors are isolated by default; with
FailureMode.FAIL_FAST the first failure stops the loop and the remaining
names are reported as skipped.

Philosophy:
- Single responsibility: sequence the pipeline only
- Clear contracts: VMRequest in, FleetRunResult out
- Configuration is passed in explicitly, never read from global state
"""

import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from hvfleet.config_manager import FleetConfig
from hvfleet.device_provisioner import DeviceProvisioner, ProvisionRequest, VMRecord
from hvfleet.enrollment_config import CONFIG_FILE_NAME
from hvfleet.errors import ConfigurationError, FleetError
from hvfleet.hyperv_host import HyperVHost
from hvfleet.image_builder import ReferenceImageBuilder
from hvfleet.name_allocator import MAX_NAMES_PER_RUN, allocate
from hvfleet.policy_fetcher import PolicyFetcher
from hvfleet.tenant_lock import tenant_run_lock

logger = logging.getLogger(__name__)

GIB = 1024**3
MIN_MEMORY_BYTES = 2 * GIB
MAX_MEMORY_BYTES = 20 * GIB
DEFAULT_MEMORY_BYTES = 4 * GIB
MAX_CPU_COUNT = 999


class FailureMode(str, Enum):
    ISOLATE = "isolate"
    FAIL_FAST = "fail_fast"


@dataclass
class VMRequest:
    """Validated input to a fleet run."""

    tenant_name: str
    count: int
    cpu_count: int
    memory_bytes: int = DEFAULT_MEMORY_BYTES
    skip_enrollment: bool = False
    image_name: str | None = None

    def validate(self) -> None:
        """Raise ConfigurationError when a field is out of range."""
        if not self.tenant_name:
            raise ConfigurationError("Tenant name is required")
        if not 1 <= self.count <= MAX_NAMES_PER_RUN:
            raise ConfigurationError(
                f"VM count must be between 1 and {MAX_NAMES_PER_RUN}, got {self.count}",
                tenant=self.tenant_name,
            )
        if not 1 <= self.cpu_count <= MAX_CPU_COUNT:
            raise ConfigurationError(
                f"CPU count must be between 1 and {MAX_CPU_COUNT}, got {self.cpu_count}",
                tenant=self.tenant_name,
            )
        if not MIN_MEMORY_BYTES <= self.memory_bytes <= MAX_MEMORY_BYTES:
            raise ConfigurationError(
                f"Memory must be between 2 GiB and 20 GiB, got {self.memory_bytes} bytes",
                tenant=self.tenant_name,
            )


@dataclass
class VMOutcome:
    """Result for one requested VM."""

    name: str
    record: VMRecord | None = None
    error: FleetError | None = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.record is not None


@dataclass
class FleetRunResult:
    """Result of a fleet run (or, in dry-run mode, of its plan)."""

    tenant_name: str
    image_name: str
    workspace_dir: Path
    reference_image: Path
    enrollment_config: Path | None = None
    enrollment_status: str = "skipped"
    image_needs_build: bool = False
    planned_names: list[str] = field(default_factory=list)
    outcomes: list[VMOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> list[VMOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> list[VMOutcome]:
        return [o for o in self.outcomes if o.error is not None]

    @property
    def skipped(self) -> list[VMOutcome]:
        return [o for o in self.outcomes if o.skipped]

    @property
    def all_succeeded(self) -> bool:
        return len(self.succeeded) == len(self.outcomes)

    def get_summary(self) -> str:
        if self.dry_run:
            return (
                f"Dry run: would provision {len(self.planned_names)} VM(s) "
                f"for {self.tenant_name}"
            )
        skipped = f", {len(self.skipped)} skipped" if self.skipped else ""
        return (
            f"Fleet {self.tenant_name}: {len(self.succeeded)}/{len(self.outcomes)} succeeded, "
            f"{len(self.failed)} failed{skipped}"
        )


class FleetOrchestrator:
    """Provision a block of VMs for one tenant."""

    def __init__(
        self,
        config: FleetConfig,
        host: HyperVHost,
        image_builder: ReferenceImageBuilder,
        policy_fetcher: PolicyFetcher | None,
        provisioner: DeviceProvisioner | None = None,
        failure_mode: FailureMode = FailureMode.ISOLATE,
        vlan_id: int | None = None,
        serialize_runs: bool = False,
        progress_callback: Callable[[str], None] | None = None,
    ):
        self.config = config
        self.host = host
        self.image_builder = image_builder
        self.policy_fetcher = policy_fetcher
        self.provisioner = provisioner or DeviceProvisioner(host, progress_callback)
        self.failure_mode = failure_mode
        self.vlan_id = vlan_id
        self.serialize_runs = serialize_runs
        self.progress_callback = progress_callback

    def _report(self, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(message)
        logger.info(message)

    def run(self, request: VMRequest, dry_run: bool = False) -> FleetRunResult:
        """Run the pipeline for a request.

        Raises:
            ConfigurationError: Unknown tenant/image, missing media, bad request
            AuthenticationError: Enrollment handshake failed
            ImageBuildError: Reference image could not be built
        """
        request.validate()

        tenant = self.config.get_tenant(request.tenant_name)
        image = self.config.get_image(request.image_name or tenant.image_name)
        workspace_dir = self.config.workspace_for(tenant.tenant_name)

        result = FleetRunResult(
            tenant_name=tenant.tenant_name,
            image_name=image.image_name,
            workspace_dir=workspace_dir,
            reference_image=image.reference_image_path,
            dry_run=dry_run,
        )

        if dry_run:
            return self._plan(request, result)

        lock: contextlib.AbstractContextManager = (
            tenant_run_lock(workspace_dir, tenant.tenant_name)
            if self.serialize_runs
            else contextlib.nullcontext()
        )
        with lock:
            self._execute(request, result)
        return result

    def _plan(self, request: VMRequest, result: FleetRunResult) -> FleetRunResult:
        """Fill in what a real run would do without mutating anything."""
        result.image_needs_build = not result.reference_image.exists()
        if request.skip_enrollment or self.policy_fetcher is None:
            result.enrollment_status = "skipped"
        elif (result.workspace_dir / CONFIG_FILE_NAME).exists():
            result.enrollment_config = result.workspace_dir / CONFIG_FILE_NAME
            result.enrollment_status = "cached"
        else:
            result.enrollment_status = "would fetch"

        result.planned_names = allocate(
            request.tenant_name, request.count, self.host.list_vm_names()
        )
        self._report(result.get_summary())
        return result

    def _execute(self, request: VMRequest, result: FleetRunResult) -> None:
        image = self.config.get_image(result.image_name)
        result.image_needs_build = not image.reference_image_path.exists()
        reference_image = self.image_builder.ensure_image(image)

        if request.skip_enrollment or self.policy_fetcher is None:
            self._report("Enrollment skipped")
        else:
            result.enrollment_config = self.policy_fetcher.fetch_or_create(result.workspace_dir)
            result.enrollment_status = "ready" if result.enrollment_config else "unavailable"

        try:
            result.workspace_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create workspace directory {result.workspace_dir}: {e}",
                tenant=result.tenant_name,
            ) from e

        # Re-query right before allocating
        names = allocate(request.tenant_name, request.count, self.host.list_vm_names())
        result.planned_names = names
        self._report(f"Allocated {len(names)} name(s): {names[0]} .. {names[-1]}")

        for index, name in enumerate(names):
            provision_request = ProvisionRequest(
                name=name,
                tenant=result.tenant_name,
                reference_image=reference_image,
                workspace_dir=result.workspace_dir,
                switch_name=self.config.switch_name,
                cpu_count=request.cpu_count,
                memory_bytes=request.memory_bytes,
                vlan_id=self.vlan_id,
                enrollment_config=result.enrollment_config,
            )
            try:
                record = self.provisioner.provision(provision_request)
            except FleetError as e:
                logger.error(f"Provisioning failed: {e}")
                result.outcomes.append(VMOutcome(name=name, error=e))
                if self.failure_mode == FailureMode.FAIL_FAST:
                    for remaining in names[index + 1 :]:
                        result.outcomes.append(VMOutcome(name=remaining, skipped=True))
                    self._report(
                        f"Fail-fast: skipping {len(names) - index - 1} remaining VM(s)"
                    )
                    break
                continue

            result.outcomes.append(VMOutcome(name=name, record=record))

        self._report(result.get_summary())


__all__ = [
    "DEFAULT_MEMORY_BYTES",
    "FailureMode",
    "FleetOrchestrator",
    "FleetRunResult",
    "GIB",
    "MAX_MEMORY_BYTES",
    "MIN_MEMORY_BYTES",
    "VMOutcome",
    "VMRequest",
]
