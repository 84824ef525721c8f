"""Unit tests for fleet_orchestrator module."""

from unittest.mock import Mock

import pytest
from mocks.fake_hyperv import FakeHyperVHost

from hvfleet.device_provisioner import DeviceProvisioner
from hvfleet.enrollment_config import CONFIG_FILE_NAME
from hvfleet.errors import (
    AuthenticationError,
    ConfigurationError,
    ImageBuildError,
    PowerShellError,
    ResourceConflictError,
)
from hvfleet.fleet_orchestrator import (
    GIB,
    FailureMode,
    FleetOrchestrator,
    VMRequest,
)
from hvfleet.image_builder import ReferenceImageBuilder


class FakeBuilder:
    """Image build backend that writes a placeholder disk."""

    def __init__(self):
        self.builds = []

    def build_image(self, install_media, destination):
        self.builds.append((install_media, destination))
        destination.write_bytes(b"built-reference")
        return destination


@pytest.fixture
def host(tmp_path):
    return FakeHyperVHost(mount_root=tmp_path / "mnt")


@pytest.fixture
def backend():
    return FakeBuilder()


@pytest.fixture
def fetcher(tmp_path):
    """Policy fetcher stand-in that writes the config like the real one."""

    def fetch_or_create(workspace_dir):
        workspace_dir.mkdir(parents=True, exist_ok=True)
        path = workspace_dir / CONFIG_FILE_NAME
        path.write_text('{"Version": 2049}')
        return path

    mock = Mock()
    mock.fetch_or_create.side_effect = fetch_or_create
    return mock


def _orchestrator(fleet_config, host, backend, fetcher, **kwargs):
    return FleetOrchestrator(
        config=fleet_config,
        host=host,
        image_builder=ReferenceImageBuilder(backend),
        policy_fetcher=fetcher,
        **kwargs,
    )


def _request(**overrides):
    values = {"tenant_name": "contoso", "count": 3, "cpu_count": 2, "memory_bytes": 4 * GIB}
    values.update(overrides)
    return VMRequest(**values)


class TestVMRequestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"tenant_name": ""},
            {"count": 0},
            {"count": 1000},
            {"cpu_count": 0},
            {"memory_bytes": 1 * GIB},
            {"memory_bytes": 21 * GIB},
        ],
    )
    def test_invalid_requests(self, overrides):
        with pytest.raises(ConfigurationError):
            _request(**overrides).validate()

    def test_bounds_are_inclusive(self):
        _request(count=999, cpu_count=1, memory_bytes=2 * GIB).validate()
        _request(count=1, memory_bytes=20 * GIB).validate()


class TestRun:
    def test_provisions_sequential_names(self, fleet_config, host, backend, fetcher):
        result = _orchestrator(fleet_config, host, backend, fetcher).run(_request())

        assert [o.name for o in result.outcomes] == ["contoso_1", "contoso_2", "contoso_3"]
        assert result.all_succeeded
        assert set(host.vms) == {"contoso_1", "contoso_2", "contoso_3"}
        assert result.enrollment_status == "ready"
        assert result.enrollment_config == fleet_config.workspace_for("contoso") / CONFIG_FILE_NAME
        # Reference image already exists in the catalog fixture
        assert backend.builds == []
        assert result.image_needs_build is False

    def test_continues_numbering_after_existing_vms(self, fleet_config, tmp_path, backend, fetcher):
        host = FakeHyperVHost(
            mount_root=tmp_path / "mnt",
            existing_vms={"contoso_1", "contoso_2", "contoso_7", "fabrikam_9"},
        )

        result = _orchestrator(fleet_config, host, backend, fetcher).run(_request(count=2))

        assert result.planned_names == ["contoso_8", "contoso_9"]

    def test_vms_are_provisioned_in_order(self, fleet_config, host, backend, fetcher):
        _orchestrator(fleet_config, host, backend, fetcher).run(_request())

        started = [arg for op, arg in host.calls if op == "start_vm"]
        assert started == ["contoso_1", "contoso_2", "contoso_3"]

    def test_builds_missing_reference_image(self, fleet_config, host, backend, fetcher):
        result = _orchestrator(fleet_config, host, backend, fetcher).run(
            _request(tenant_name="fabrikam", count=1)
        )

        assert len(backend.builds) == 1
        assert result.image_needs_build is True
        assert result.image_name == "win10"
        assert result.all_succeeded

    def test_image_override(self, fleet_config, host, backend, fetcher):
        result = _orchestrator(fleet_config, host, backend, fetcher).run(
            _request(count=1, image_name="win10")
        )

        assert result.image_name == "win10"
        assert result.reference_image.name == "win10.vhdx"
        assert len(backend.builds) == 1

    def test_unknown_tenant_is_fatal_before_any_vm(self, fleet_config, host, backend, fetcher):
        with pytest.raises(ConfigurationError, match="Available tenants: contoso, fabrikam"):
            _orchestrator(fleet_config, host, backend, fetcher).run(
                _request(tenant_name="northwind")
            )

        assert host.calls == []

    def test_unknown_image_is_fatal(self, fleet_config, host, backend, fetcher):
        with pytest.raises(ConfigurationError, match="Image 'win7' not found"):
            _orchestrator(fleet_config, host, backend, fetcher).run(_request(image_name="win7"))

    def test_image_build_failure_is_fatal(self, fleet_config, host, fetcher):
        broken = Mock()
        broken.build_image.side_effect = ImageBuildError("build script failed")

        with pytest.raises(ImageBuildError):
            _orchestrator(fleet_config, host, broken, fetcher).run(
                _request(tenant_name="fabrikam")
            )

        assert host.vms == {}
        fetcher.fetch_or_create.assert_not_called()

    def test_authentication_failure_is_fatal(self, fleet_config, host, backend):
        fetcher = Mock()
        fetcher.fetch_or_create.side_effect = AuthenticationError("token rejected")

        with pytest.raises(AuthenticationError):
            _orchestrator(fleet_config, host, backend, fetcher).run(_request())

        assert host.vms == {}

    def test_unavailable_enrollment_still_provisions(self, fleet_config, host, backend):
        fetcher = Mock()
        fetcher.fetch_or_create.return_value = None

        result = _orchestrator(fleet_config, host, backend, fetcher).run(_request(count=1))

        assert result.enrollment_status == "unavailable"
        assert result.all_succeeded
        assert "mount_disk" not in host.operations()

    def test_skip_enrollment(self, fleet_config, host, backend, fetcher):
        result = _orchestrator(fleet_config, host, backend, fetcher).run(
            _request(count=1, skip_enrollment=True)
        )

        fetcher.fetch_or_create.assert_not_called()
        assert result.enrollment_status == "skipped"
        assert result.enrollment_config is None
        assert "mount_disk" not in host.operations()

    def test_isolate_continues_after_failure(self, fleet_config, host, backend, fetcher):
        provisioner = DeviceProvisioner(host)
        original = provisioner.provision

        def provision(request):
            if request.name == "contoso_2":
                raise ResourceConflictError("exists", vm_name=request.name)
            return original(request)

        provisioner.provision = provision

        result = _orchestrator(
            fleet_config, host, backend, fetcher, provisioner=provisioner
        ).run(_request())

        assert [o.name for o in result.succeeded] == ["contoso_1", "contoso_3"]
        assert [o.name for o in result.failed] == ["contoso_2"]
        assert result.skipped == []
        assert not result.all_succeeded
        assert result.get_summary() == "Fleet contoso: 2/3 succeeded, 1 failed"

    def test_fail_fast_stops_and_records_skips(self, fleet_config, host, backend, fetcher):
        host.fail_on("enable_tpm", PowerShellError("Enable-VMTPM failed"))

        result = _orchestrator(
            fleet_config, host, backend, fetcher, failure_mode=FailureMode.FAIL_FAST
        ).run(_request())

        assert [o.name for o in result.failed] == ["contoso_1"]
        assert [o.name for o in result.skipped] == ["contoso_2", "contoso_3"]
        assert result.failed[0].error.step == "enable_tpm"
        assert [arg for op, arg in host.calls if op == "create_vm"][0].name == "contoso_1"
        assert len([op for op in host.operations() if op == "create_vm"]) == 1
        assert result.get_summary() == "Fleet contoso: 0/3 succeeded, 1 failed, 2 skipped"

    def test_vlan_is_applied(self, fleet_config, host, backend, fetcher):
        _orchestrator(fleet_config, host, backend, fetcher, vlan_id=120).run(_request(count=1))

        assert host.vms["contoso_1"]["definition"].vlan_id == 120

    def test_serialized_run_creates_lock_file(self, fleet_config, host, backend, fetcher):
        _orchestrator(fleet_config, host, backend, fetcher, serialize_runs=True).run(
            _request(count=1)
        )

        assert (fleet_config.workspace_for("contoso") / ".hvfleet.lock").exists()

    def test_progress_callback(self, fleet_config, host, backend, fetcher):
        messages = []
        _orchestrator(
            fleet_config, host, backend, fetcher, progress_callback=messages.append
        ).run(_request(count=1))

        assert "Allocated 1 name(s): contoso_1 .. contoso_1" in messages
        assert messages[-1] == "Fleet contoso: 1/1 succeeded, 0 failed"


class TestDryRun:
    def test_plans_without_mutating(self, fleet_config, host, backend, fetcher):
        result = _orchestrator(fleet_config, host, backend, fetcher).run(
            _request(tenant_name="fabrikam", count=2), dry_run=True
        )

        assert result.dry_run
        assert result.planned_names == ["fabrikam_1", "fabrikam_2"]
        assert result.image_needs_build is True
        assert result.enrollment_status == "would fetch"
        assert result.outcomes == []
        assert host.operations() == ["list_vm_names"]
        assert backend.builds == []
        fetcher.fetch_or_create.assert_not_called()
        assert not fleet_config.workspace_for("fabrikam").exists()
        assert result.get_summary() == "Dry run: would provision 2 VM(s) for fabrikam"

    def test_reports_cached_enrollment_config(self, fleet_config, host, backend, fetcher):
        workspace = fleet_config.workspace_for("contoso")
        workspace.mkdir(parents=True)
        (workspace / CONFIG_FILE_NAME).write_text("{}")

        result = _orchestrator(fleet_config, host, backend, fetcher).run(
            _request(count=1), dry_run=True
        )

        assert result.enrollment_status == "cached"
        assert result.enrollment_config == workspace / CONFIG_FILE_NAME
        assert result.image_needs_build is False

    def test_still_validates_request(self, fleet_config, host, backend, fetcher):
        with pytest.raises(ConfigurationError):
            _orchestrator(fleet_config, host, backend, fetcher).run(
                _request(count=0), dry_run=True
            )
