"""Command line interface for hvfleet.

Commands:
    provision   Provision a block of VMs for a tenant
    tenants     List tenants from the fleet catalog
    config      Show or change operator settings
"""

import logging
import re
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hvfleet import __version__
from hvfleet.click_group import HvfleetGroup
from hvfleet.config_manager import ConfigManager, FleetCatalog, FleetConfig, HvfleetSettings
from hvfleet.errors import FleetError, PowerShellError
from hvfleet.fleet_orchestrator import (
    DEFAULT_MEMORY_BYTES,
    MAX_MEMORY_BYTES,
    MIN_MEMORY_BYTES,
    FailureMode,
    FleetOrchestrator,
    FleetRunResult,
    VMRequest,
)
from hvfleet.graph_client import GraphAuthenticator, GraphClient
from hvfleet.hyperv_host import HyperVHost
from hvfleet.image_builder import PowerShellImageBuilder, ReferenceImageBuilder
from hvfleet.name_allocator import tenant_vm_names
from hvfleet.policy_fetcher import PolicyFetcher
from hvfleet.powershell_executor import PowerShellExecutor
from hvfleet.profile_selector import build_selector

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VM_FAILURES = 1
EXIT_FATAL = 2

_MEMORY_UNITS = {"": 1, "B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}


class MemoryParamType(click.ParamType):
    """Memory size such as 4GB, 8192MB or a raw byte count."""

    name = "memory"

    def convert(self, value, param, ctx) -> int:
        if isinstance(value, int):
            size = value
        else:
            match = re.fullmatch(r"\s*(\d+)\s*([KMG]?B?)\s*", str(value).upper())
            if not match:
                self.fail(f"'{value}' is not a memory size (e.g. 4GB, 8192MB)", param, ctx)
            unit = match.group(2)
            if unit and not unit.endswith("B"):
                unit += "B"
            size = int(match.group(1)) * _MEMORY_UNITS[unit]

        if not MIN_MEMORY_BYTES <= size <= MAX_MEMORY_BYTES:
            self.fail(f"memory must be between 2GB and 20GB, got {value}", param, ctx)
        return size


MEMORY = MemoryParamType()


class FatalConfigError(click.ClickException):
    """Configuration problem detected before any VM is touched."""

    exit_code = EXIT_FATAL


def _load_settings(config: str | None) -> HvfleetSettings:
    try:
        return ConfigManager.load_config(config)
    except FleetError as e:
        raise FatalConfigError(str(e)) from e


def _load_catalog(settings: HvfleetSettings, catalog: str | None) -> FleetConfig:
    try:
        return FleetCatalog.load(ConfigManager.resolve_catalog_path(settings, catalog))
    except FleetError as e:
        raise FatalConfigError(str(e)) from e


def _build_orchestrator(
    settings: HvfleetSettings,
    fleet_config: FleetConfig,
    failure_mode: FailureMode,
    vlan_id: int | None,
    serialize_runs: bool,
) -> FleetOrchestrator:
    executor = PowerShellExecutor(
        executable=settings.powershell, timeout=settings.hypervisor_timeout
    )
    host = HyperVHost(executor)
    authenticator = GraphAuthenticator(
        method=settings.auth_method,
        client_id=settings.graph_client_id,
        tenant_id=settings.graph_tenant_id,
    )
    fetcher = PolicyFetcher(
        GraphClient(authenticator, timeout=settings.api_timeout),
        build_selector(settings.selection, settings.preferred_profile),
    )
    image_builder = ReferenceImageBuilder(
        PowerShellImageBuilder(settings.image_build_script, executor)
    )
    return FleetOrchestrator(
        config=fleet_config,
        host=host,
        image_builder=image_builder,
        policy_fetcher=fetcher,
        failure_mode=failure_mode,
        vlan_id=vlan_id,
        serialize_runs=serialize_runs,
    )


def _print_result(console: Console, result: FleetRunResult) -> None:
    console.print(
        f"[bold]Tenant:[/bold] {result.tenant_name}  "
        f"[bold]Image:[/bold] {result.image_name}  "
        f"[bold]Workspace:[/bold] {result.workspace_dir}"
    )
    image_state = "to be built" if result.image_needs_build else "cached"
    console.print(f"[bold]Reference image:[/bold] {result.reference_image} ({image_state})")
    console.print(f"[bold]Enrollment:[/bold] {result.enrollment_status}")

    if result.dry_run:
        table = Table(title="Planned VMs", show_header=True, header_style="bold")
        table.add_column("Name", style="cyan")
        for name in result.planned_names:
            table.add_row(name)
        console.print(table)
        console.print(f"\n[bold]{result.get_summary()}[/bold]")
        return

    table = Table(title="Provisioned VMs", show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Serial")
    table.add_column("Detail")
    for outcome in result.outcomes:
        if outcome.record is not None:
            table.add_row(
                outcome.name,
                "[green]OK[/green]",
                outcome.record.hardware_serial,
                outcome.record.state,
            )
        elif outcome.skipped:
            table.add_row(outcome.name, "[yellow]SKIPPED[/yellow]", "-", "fail-fast")
        else:
            table.add_row(outcome.name, "[red]FAILED[/red]", "-", escape(str(outcome.error)))
    console.print(table)

    style = "green" if result.all_succeeded else "red"
    console.print(f"\n[bold {style}]{result.get_summary()}[/bold {style}]")


@click.group(
    cls=HvfleetGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """hvfleet - Hyper-V tenant VM fleet provisioning.

    Builds or reuses a reference image, fetches the tenant's zero-touch
    enrollment profile, and provisions sequentially named VMs.

    \b
    COMMANDS:
        provision     Provision VMs for a tenant
        tenants       List tenants in the fleet catalog
        config        Show or change settings

    \b
    CONFIGURATION:
        Settings file: ~/.hvfleet/config.toml
        Fleet catalog: ~/.hvfleet/catalog.json (or catalog_path setting)
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format="%(message)s"
    )

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)


@main.command(name="provision")
@click.argument("tenant")
@click.option("--count", "-n", required=True, type=click.IntRange(1, 999), help="Number of VMs")
@click.option("--cpus", required=True, type=click.IntRange(1, 999), help="Processors per VM")
@click.option(
    "--memory",
    type=MEMORY,
    default=DEFAULT_MEMORY_BYTES,
    show_default="4GB",
    help="Startup memory per VM (2GB-20GB)",
)
@click.option("--image", "image_name", help="Image name overriding the tenant default")
@click.option("--skip-enrollment", is_flag=True, help="Do not inject an enrollment config")
@click.option("--dry-run", is_flag=True, help="Show what would be provisioned")
@click.option(
    "--fail-fast/--isolate",
    "fail_fast",
    default=None,
    help="Stop at the first failed VM, or keep going (default from settings)",
)
@click.option("--vlan-id", type=click.IntRange(1, 4094), help="Access VLAN for the adapter")
@click.option("--no-lock", is_flag=True, help="Do not take the per-tenant run lock")
@click.option("--catalog", help="Fleet catalog path", type=click.Path())
@click.option("--config", help="Settings file path", type=click.Path())
@click.pass_context
def provision_command(
    ctx: click.Context,
    tenant: str,
    count: int,
    cpus: int,
    memory: int,
    image_name: str | None,
    skip_enrollment: bool,
    dry_run: bool,
    fail_fast: bool | None,
    vlan_id: int | None,
    no_lock: bool,
    catalog: str | None,
    config: str | None,
) -> None:
    """Provision COUNT VMs for TENANT.

    Exits 0 when every VM was provisioned, 1 when any VM failed or was
    skipped, 2 on configuration, authentication or image build errors.

    \b
    EXAMPLES:
        $ hvfleet provision contoso --count 3 --cpus 2
        $ hvfleet provision contoso -n 5 --cpus 4 --memory 8GB --image win11-23h2
        $ hvfleet provision contoso -n 2 --cpus 2 --skip-enrollment --fail-fast
        $ hvfleet provision contoso -n 10 --cpus 2 --dry-run
    """
    console = Console()
    settings = _load_settings(config)
    fleet_config = _load_catalog(settings, catalog)

    if fail_fast is None:
        failure_mode = FailureMode(settings.failure_mode)
    else:
        failure_mode = FailureMode.FAIL_FAST if fail_fast else FailureMode.ISOLATE

    orchestrator = _build_orchestrator(
        settings,
        fleet_config,
        failure_mode,
        vlan_id if vlan_id is not None else settings.vlan_id,
        serialize_runs=not no_lock,
    )
    request = VMRequest(
        tenant_name=tenant,
        count=count,
        cpu_count=cpus,
        memory_bytes=memory,
        skip_enrollment=skip_enrollment,
        image_name=image_name,
    )

    try:
        result = orchestrator.run(request, dry_run=dry_run)
    except FleetError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(EXIT_FATAL)
        return

    _print_result(console, result)
    ctx.exit(EXIT_OK if result.all_succeeded else EXIT_VM_FAILURES)


@main.command(name="tenants")
@click.option("--catalog", help="Fleet catalog path", type=click.Path())
@click.option("--config", help="Settings file path", type=click.Path())
def tenants_command(catalog: str | None, config: str | None) -> None:
    """List tenants with their default image and VM count on this host."""
    console = Console()
    settings = _load_settings(config)
    fleet_config = _load_catalog(settings, catalog)

    host = HyperVHost(PowerShellExecutor(settings.powershell, settings.hypervisor_timeout))
    try:
        host_names: set[str] | None = host.list_vm_names()
    except PowerShellError as e:
        console.print(f"[yellow]Warning:[/yellow] could not list host VMs: {escape(str(e))}")
        host_names = None

    table = Table(title="Tenants", show_header=True, header_style="bold")
    table.add_column("Tenant", style="cyan")
    table.add_column("Admin")
    table.add_column("Image")
    table.add_column("VMs", justify="right")
    for entry in fleet_config.tenants:
        vm_count = (
            str(len(tenant_vm_names(entry.tenant_name, host_names)))
            if host_names is not None
            else "?"
        )
        table.add_row(entry.tenant_name, entry.admin_identity, entry.image_name, vm_count)
    console.print(table)


@main.group(name="config")
def config_group() -> None:
    """Show or change hvfleet settings."""


@config_group.command(name="show")
@click.option("--config", help="Settings file path", type=click.Path())
def config_show(config: str | None) -> None:
    """Print the effective settings."""
    settings = _load_settings(config)
    click.echo(f"# {ConfigManager.get_config_path(config)}")
    for key, value in settings.to_dict().items():
        click.echo(f"{key} = {value!r}")


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.option("--config", help="Settings file path", type=click.Path())
def config_set(key: str, value: str, config: str | None) -> None:
    """Set KEY to VALUE in the settings file."""
    try:
        path = ConfigManager.set_value(key, value, config)
    except FleetError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Set {key} in {path}")


if __name__ == "__main__":
    sys.exit(main())
