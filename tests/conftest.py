"""Pytest configuration and fixtures for hvfleet tests.

Tests never touch a real hypervisor, the network or the operator's
~/.hvfleet directory.
"""

import json
from pathlib import Path

import pytest

from hvfleet import disk_mount
from hvfleet.config_manager import FleetCatalog
from hvfleet.retry_config import reset_retry_config


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory, monkeypatch):
    """Point HOME at its own temp dir so settings files are never shared."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("HVFLEET_CONFIG", raising=False)
    return home


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Keep retry delays negligible and deterministic."""
    monkeypatch.setenv("HVFLEET_RETRY_INITIAL_DELAY", "0.01")
    monkeypatch.setenv("HVFLEET_RETRY_MAX_DELAY", "0.01")
    monkeypatch.setenv("HVFLEET_RETRY_HYPERVISOR_INITIAL_DELAY", "0.01")
    monkeypatch.setenv("HVFLEET_RETRY_HYPERVISOR_MAX_DELAY", "0.01")
    monkeypatch.setenv("HVFLEET_RETRY_JITTER_ENABLED", "false")
    reset_retry_config()
    yield
    reset_retry_config()


@pytest.fixture(autouse=True)
def clear_mount_registry():
    disk_mount._mounted.clear()
    yield
    disk_mount._mounted.clear()


@pytest.fixture
def catalog_data(tmp_path) -> dict:
    """A catalog with two tenants; the reference image for win11 is already built."""
    media = tmp_path / "media"
    media.mkdir()
    images = tmp_path / "images"
    images.mkdir()
    (media / "win11.iso").write_bytes(b"iso")
    (images / "win11.vhdx").write_bytes(b"reference-disk")
    (media / "win10.iso").write_bytes(b"iso")

    return {
        "vmPath": str(tmp_path / "vms"),
        "vSwitchName": "External",
        "tenantConfig": [
            {"tenantName": "contoso", "adminIdentity": "admin@contoso.com", "imageName": "win11"},
            {"tenantName": "fabrikam", "adminIdentity": "admin@fabrikam.com", "imageName": "win10"},
        ],
        "images": [
            {
                "imageName": "win11",
                "installMediaPath": str(media / "win11.iso"),
                "referenceImagePath": str(images / "win11.vhdx"),
            },
            {
                "imageName": "win10",
                "installMediaPath": str(media / "win10.iso"),
                "referenceImagePath": str(images / "win10.vhdx"),
            },
        ],
    }


@pytest.fixture
def catalog_file(tmp_path, catalog_data) -> Path:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(catalog_data))
    return path


@pytest.fixture
def fleet_config(catalog_data):
    return FleetCatalog.from_dict(catalog_data)
