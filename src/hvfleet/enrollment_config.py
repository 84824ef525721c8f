"""Enrollment (zero-touch) configuration documents.

A selected Graph deployment profile is reduced to an EnrollmentProfile and
serialized into the fixed-schema offline configuration file the guest OS
reads at first boot.

OOBE flag composition (cumulative):
    always                              8 + 256
    user type "standard"                2
    privacy settings hidden             4
    EULA hidden                         16
    keyboard selection page skipped     1024
    device usage type "shared"          32 + 64
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from enum import IntFlag
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "EnrollmentConfig.json"
GUEST_CONFIG_FILE_NAME = "AutopilotConfigurationFile.json"
GUEST_PROVISIONING_DIR = Path("Windows") / "Provisioning" / "Autopilot"

SCHEMA_VERSION = 2049
UPDATE_TIMEOUT_MS = 1800000
HYBRID_PROFILE_TYPE = "#microsoft.graph.activeDirectoryWindowsAutopilotDeploymentProfile"


class OobeFlag(IntFlag):
    STANDARD_USER = 2
    HIDE_PRIVACY = 4
    BASE_SKIP_CORTANA = 8
    HIDE_EULA = 16
    SHARED_DEVICE = 32
    SHARED_DEVICE_RESET = 64
    BASE_HIDE_OEM = 256
    SKIP_KEYBOARD = 1024


BASE_OOBE_FLAGS = OobeFlag.BASE_SKIP_CORTANA | OobeFlag.BASE_HIDE_OEM


@dataclass(frozen=True)
class EnrollmentProfile:
    """Profile fields that end up in the enrollment config."""

    correlation_id: str
    display_name: str
    domain_join_method: int
    oobe_flags: int
    forced_enrollment: int
    tenant_id: str
    tenant_domain: str
    language: str | None = None
    device_name_template: str | None = None
    hybrid_skip_connectivity_check: bool = False

    def to_document(self) -> dict[str, Any]:
        """Build the offline configuration JSON object."""
        aad_server_data = {
            "ZeroTouchConfig": {
                "CloudAssignedTenantUpn": "",
                "ForcedEnrollment": self.forced_enrollment,
                "CloudAssignedTenantDomain": self.tenant_domain,
            }
        }

        document: dict[str, Any] = {
            "Comment_File": f"Profile {self.display_name}",
            "Version": SCHEMA_VERSION,
            "ZtdCorrelationId": self.correlation_id,
            "CloudAssignedDomainJoinMethod": self.domain_join_method,
        }
        if self.device_name_template:
            document["CloudAssignedDeviceName"] = self.device_name_template
        if self.language:
            document["CloudAssignedLanguage"] = self.language
        document.update(
            {
                "CloudAssignedOobeConfig": self.oobe_flags,
                "CloudAssignedForcedEnrollment": self.forced_enrollment,
                "CloudAssignedTenantId": self.tenant_id,
                "CloudAssignedTenantDomain": self.tenant_domain,
                "CloudAssignedAadServerData": json.dumps(aad_server_data),
            }
        )
        if self.hybrid_skip_connectivity_check:
            document["HybridJoinSkipDCConnectivityCheck"] = 1
        document["CloudAssignedAutopilotUpdateDisabled"] = 1
        document["CloudAssignedAutopilotUpdateTimeout"] = UPDATE_TIMEOUT_MS
        return document


def compute_oobe_flags(oobe_settings: dict[str, Any]) -> int:
    """Compose the OOBE bitmask from a profile's outOfBoxExperienceSettings."""
    flags = BASE_OOBE_FLAGS
    if str(oobe_settings.get("userType", "")).lower() == "standard":
        flags |= OobeFlag.STANDARD_USER
    if oobe_settings.get("hidePrivacySettings"):
        flags |= OobeFlag.HIDE_PRIVACY
    if oobe_settings.get("hideEULA"):
        flags |= OobeFlag.HIDE_EULA
    if oobe_settings.get("skipKeyboardSelectionPage"):
        flags |= OobeFlag.SKIP_KEYBOARD
    if str(oobe_settings.get("deviceUsageType", "")).lower() == "shared":
        flags |= OobeFlag.SHARED_DEVICE | OobeFlag.SHARED_DEVICE_RESET
    return int(flags)


def profile_from_graph(
    profile: dict[str, Any], tenant_id: str, tenant_domain: str
) -> EnrollmentProfile:
    """Reduce a Graph deployment profile to the fields the config file needs."""
    oobe = profile.get("outOfBoxExperienceSettings") or {}
    hybrid = profile.get("@odata.type") == HYBRID_PROFILE_TYPE
    return EnrollmentProfile(
        correlation_id=profile["id"],
        display_name=profile.get("displayName", ""),
        domain_join_method=1 if hybrid else 0,
        oobe_flags=compute_oobe_flags(oobe),
        forced_enrollment=1 if oobe.get("hideEscapeLink") else 0,
        tenant_id=tenant_id,
        tenant_domain=tenant_domain,
        language=profile.get("language") or None,
        device_name_template=profile.get("deviceNameTemplate") or None,
        hybrid_skip_connectivity_check=bool(
            profile.get("hybridAzureADJoinSkipConnectivityCheck")
        ),
    )


def write_config_atomic(document: dict[str, Any], destination: Path) -> Path:
    """Write JSON next to destination and rename it into place.

    A crash mid-write leaves at most a stray temp file, never a truncated
    config that a later run would treat as a valid cache.
    """
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
    )
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    logger.debug(f"Wrote enrollment config: {destination}")
    return destination


__all__ = [
    "BASE_OOBE_FLAGS",
    "CONFIG_FILE_NAME",
    "EnrollmentProfile",
    "GUEST_CONFIG_FILE_NAME",
    "GUEST_PROVISIONING_DIR",
    "OobeFlag",
    "compute_oobe_flags",
    "profile_from_graph",
    "write_config_atomic",
]
