"""Configuration management module.

Two kinds of configuration live here:

- Operator settings (~/.hvfleet/config.toml): preferences such as the
  catalog location, how to authenticate to Microsoft Graph and the default
  failure mode. Read with tomllib, written with tomlkit so comments survive.
- Fleet catalog (JSON): tenants and golden image recipes. Loaded once into
  an immutable FleetConfig that is handed to the orchestrator explicitly.

Security:
- Settings file permissions: 0600 (owner read/write only)
- Atomic writes (temp file + rename)
"""

import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomlkit

from hvfleet.errors import ConfigurationError

logger = logging.getLogger(__name__)

AUTH_METHODS = ("interactive", "cli", "service_principal")
FAILURE_MODES = ("isolate", "fail_fast")
SELECTION_MODES = ("prompt", "auto", "fail")


@dataclass
class HvfleetSettings:
    """Operator settings loaded from config.toml."""

    catalog_path: str | None = None
    auth_method: str = "interactive"
    graph_client_id: str | None = None
    graph_tenant_id: str | None = None
    vlan_id: int | None = None
    failure_mode: str = "isolate"
    selection: str = "prompt"
    preferred_profile: str | None = None
    powershell: str = "powershell.exe"
    image_build_script: str | None = None
    hypervisor_timeout: int = 600
    api_timeout: int = 30

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values (TOML has no null)."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HvfleetSettings":
        """Create from dictionary, validating value types.

        Raises:
            ConfigurationError: If a known key has the wrong type or value
        """
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.debug(f"Ignoring unknown setting: {key}")
                continue
            values[key] = _coerce_setting(key, value)
        return cls(**values)


def _coerce_setting(key: str, value: Any) -> Any:
    int_keys = {"vlan_id", "hypervisor_timeout", "api_timeout"}
    choices = {
        "auth_method": AUTH_METHODS,
        "failure_mode": FAILURE_MODES,
        "selection": SELECTION_MODES,
    }

    if key in int_keys:
        if isinstance(value, bool):
            raise ConfigurationError(f"Setting '{key}' must be an integer, got {value!r}")
        try:
            number = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Setting '{key}' must be an integer, got {value!r}") from e
        if number <= 0 or (key == "vlan_id" and number > 4094):
            raise ConfigurationError(f"Setting '{key}' is out of range: {number}")
        return number

    if not isinstance(value, str):
        raise ConfigurationError(f"Setting '{key}' must be a string, got {value!r}")

    if key in choices and value not in choices[key]:
        raise ConfigurationError(
            f"Setting '{key}' must be one of {', '.join(choices[key])}, got '{value}'"
        )
    return value


class ConfigManager:
    """Manage the hvfleet settings file.

    Settings are stored at ~/.hvfleet/config.toml with secure permissions.
    HVFLEET_CONFIG overrides the default location.
    """

    CONFIG_DIR_NAME = ".hvfleet"
    CONFIG_FILE_NAME = "config.toml"
    CATALOG_FILE_NAME = "catalog.json"

    @classmethod
    def config_dir(cls) -> Path:
        return Path.home() / cls.CONFIG_DIR_NAME

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            Path to config file
        """
        if custom_path:
            return Path(custom_path).expanduser().resolve()

        env_path = os.environ.get("HVFLEET_CONFIG")
        if env_path:
            return Path(env_path).expanduser().resolve()

        return cls.config_dir() / cls.CONFIG_FILE_NAME

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> HvfleetSettings:
        """Load settings from file, falling back to defaults when absent.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return HvfleetSettings()

        try:
            mode = config_path.stat().st_mode & 0o777
            if os.name != "nt" and mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Failed to load config {config_path}: {e}") from e

        logger.debug(f"Loaded config from: {config_path}")
        return HvfleetSettings.from_dict(data)

    @classmethod
    def save_config(cls, settings: HvfleetSettings, custom_path: str | None = None) -> Path:
        """Save settings to file, preserving existing comments and formatting.

        Raises:
            ConfigurationError: If saving fails
        """
        config_path = cls.get_config_path(custom_path)
        temp_path = config_path.with_suffix(".tmp")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            for key, value in settings.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigurationError(f"Failed to save config: {e}") from e

    @classmethod
    def set_value(cls, key: str, value: str, custom_path: str | None = None) -> Path:
        """Validate and persist a single setting.

        Raises:
            ConfigurationError: If the key is unknown or the value invalid
        """
        if key not in {f.name for f in fields(HvfleetSettings)}:
            raise ConfigurationError(f"Unknown setting: {key}")

        settings = cls.load_config(custom_path)
        data = settings.to_dict()
        data[key] = value
        return cls.save_config(HvfleetSettings.from_dict(data), custom_path)

    @classmethod
    def resolve_catalog_path(
        cls, settings: HvfleetSettings, override: str | None = None
    ) -> Path:
        """Pick the catalog path: CLI override, then settings, then the default."""
        if override:
            return Path(override).expanduser()
        if settings.catalog_path:
            return Path(settings.catalog_path).expanduser()
        return cls.config_dir() / cls.CATALOG_FILE_NAME


@dataclass(frozen=True)
class TenantConfig:
    """One tenant entry of the fleet catalog."""

    tenant_name: str
    admin_identity: str
    image_name: str


@dataclass(frozen=True)
class ImageCatalogEntry:
    """Golden image recipe. reference_image_path is the "already built" cache key."""

    image_name: str
    install_media_path: Path
    reference_image_path: Path


@dataclass(frozen=True)
class FleetConfig:
    """Immutable fleet catalog, loaded once and passed to the orchestrator."""

    vm_path: Path
    switch_name: str
    tenants: tuple[TenantConfig, ...]
    images: tuple[ImageCatalogEntry, ...]

    def get_tenant(self, tenant_name: str) -> TenantConfig:
        for tenant in self.tenants:
            if tenant.tenant_name == tenant_name:
                return tenant
        available = ", ".join(t.tenant_name for t in self.tenants) or "none"
        raise ConfigurationError(
            f"Tenant '{tenant_name}' not found in catalog. Available tenants: {available}",
            tenant=tenant_name,
        )

    def get_image(self, image_name: str) -> ImageCatalogEntry:
        for image in self.images:
            if image.image_name == image_name:
                return image
        available = ", ".join(i.image_name for i in self.images) or "none"
        raise ConfigurationError(
            f"Image '{image_name}' not found in catalog. Available images: {available}"
        )

    def workspace_for(self, tenant_name: str) -> Path:
        """Per-tenant directory holding VM disks and the cached enrollment config."""
        return self.vm_path / tenant_name


class FleetCatalog:
    """Load the JSON fleet catalog.

    Expected shape:
        {
          "vmPath": "D:\\\\VMs",
          "vSwitchName": "External",
          "tenantConfig": [{"tenantName": ..., "adminIdentity": ..., "imageName": ...}],
          "images": [{"imageName": ..., "installMediaPath": ..., "referenceImagePath": ...}]
        }
    """

    @classmethod
    def load(cls, path: Path) -> FleetConfig:
        """Load and validate the catalog.

        Raises:
            ConfigurationError: If the file is missing, malformed or inconsistent
        """
        if not path.exists():
            raise ConfigurationError(f"Fleet catalog not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to parse fleet catalog {path}: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> FleetConfig:
        if not isinstance(data, dict):
            raise ConfigurationError("Fleet catalog must be a JSON object")

        try:
            tenants = tuple(
                TenantConfig(
                    tenant_name=entry["tenantName"],
                    admin_identity=entry["adminIdentity"],
                    image_name=entry["imageName"],
                )
                for entry in data.get("tenantConfig", [])
            )
            images = tuple(
                ImageCatalogEntry(
                    image_name=entry["imageName"],
                    install_media_path=Path(entry["installMediaPath"]),
                    reference_image_path=Path(entry["referenceImagePath"]),
                )
                for entry in data.get("images", [])
            )
            config = FleetConfig(
                vm_path=Path(data["vmPath"]),
                switch_name=data["vSwitchName"],
                tenants=tenants,
                images=images,
            )
        except KeyError as e:
            raise ConfigurationError(f"Fleet catalog is missing required key: {e}") from e
        except TypeError as e:
            raise ConfigurationError(f"Fleet catalog entry is malformed: {e}") from e

        _check_unique("tenant", [t.tenant_name for t in tenants])
        _check_unique("image", [i.image_name for i in images])

        logger.debug(f"Loaded fleet catalog: {len(tenants)} tenants, {len(images)} images")
        return config


def _check_unique(kind: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigurationError(f"Duplicate {kind} name in fleet catalog: {name}")
        seen.add(name)


__all__ = [
    "ConfigManager",
    "FleetCatalog",
    "FleetConfig",
    "HvfleetSettings",
    "ImageCatalogEntry",
    "TenantConfig",
]
