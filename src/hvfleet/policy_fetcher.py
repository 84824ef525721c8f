"""Enrollment policy fetching.

The workspace's EnrollmentConfig.json is the cache: when it exists, it is
returned as-is and Graph is never contacted. Delete the file to force a
fresh fetch.
"""

import logging
from pathlib import Path

from hvfleet.enrollment_config import (
    CONFIG_FILE_NAME,
    profile_from_graph,
    write_config_atomic,
)
from hvfleet.errors import ConfigurationError, NotFoundError, SelectionAbortedError
from hvfleet.graph_client import GraphClient
from hvfleet.profile_selector import ProfileSelector

logger = logging.getLogger(__name__)


class PolicyFetcher:
    """Fetch, select and cache the enrollment profile for a workspace."""

    def __init__(self, client: GraphClient, selector: ProfileSelector):
        self.client = client
        self.selector = selector

    def fetch_or_create(self, workspace_dir: Path) -> Path | None:
        """Return the workspace's enrollment config, creating it if needed.

        Returns:
            Path to the config file, or None when no profile is available
            or the operator declined to choose (enrollment is skipped)

        Raises:
            ConfigurationError: If the workspace cannot be created or written
            AuthenticationError: If the Graph handshake fails
            DirectoryApiError: If Graph keeps failing after retries
        """
        config_path = workspace_dir / CONFIG_FILE_NAME
        if config_path.exists():
            logger.info(f"Using cached enrollment config: {config_path}")
            return config_path

        try:
            workspace_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create workspace directory {workspace_dir}: {e}"
            ) from e

        try:
            profile = self._select_profile()
        except (NotFoundError, SelectionAbortedError) as e:
            logger.warning(f"Enrollment skipped: {e}")
            return None

        organization = self.client.get_organization()
        tenant_domain = self.client.get_default_domain()
        enrollment = profile_from_graph(profile, organization["id"], tenant_domain)

        try:
            write_config_atomic(enrollment.to_document(), config_path)
        except OSError as e:
            raise ConfigurationError(f"Cannot write enrollment config {config_path}: {e}") from e
        logger.info(
            f"Saved enrollment profile '{enrollment.display_name}' "
            f"(oobe flags {enrollment.oobe_flags}) to {config_path}"
        )
        return config_path

    def _select_profile(self) -> dict:
        profiles = self.client.list_enrollment_profiles()
        logger.debug(f"Found {len(profiles)} enrollment profile(s)")

        if not profiles:
            raise NotFoundError("No enrollment profiles found in the directory")

        profile = self.selector.select(profiles)
        name = profile.get("displayName") or profile.get("id", "?")
        logger.info(f"Selected enrollment profile: {name}")
        return profile


__all__ = ["PolicyFetcher"]
