"""Reference image management.

Building a generalized disk from install media is delegated to an external
builder; this module only owns the "build if missing" decision. A failed
build is not retried and aborts the fleet run.
"""

import logging
from pathlib import Path
from typing import Protocol

from hvfleet.config_manager import ImageCatalogEntry
from hvfleet.errors import ConfigurationError, ImageBuildError, PowerShellError
from hvfleet.powershell_executor import PowerShellExecutor, ps_quote

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TIMEOUT = 2 * 60 * 60


class ImageBuildBackend(Protocol):
    def build_image(self, install_media: Path, destination: Path) -> Path:
        """Materialize a generalized bootable disk at destination."""
        ...


class PowerShellImageBuilder:
    """Run an operator-supplied build script.

    The script is called as ``& <script> -InstallMedia <iso> -DestinationPath <vhdx>``.
    """

    def __init__(
        self,
        script_path: str | None,
        executor: PowerShellExecutor | None = None,
        timeout: int = DEFAULT_BUILD_TIMEOUT,
    ):
        self.script_path = script_path
        self.executor = executor or PowerShellExecutor()
        self.timeout = timeout

    def build_image(self, install_media: Path, destination: Path) -> Path:
        if not self.script_path:
            raise ConfigurationError(
                "No image build script configured. "
                "Set one with: hvfleet config set image_build_script <path>"
            )

        script = (
            f"& {ps_quote(self.script_path)} "
            f"-InstallMedia {ps_quote(install_media)} "
            f"-DestinationPath {ps_quote(destination)}"
        )
        try:
            self.executor.run(script, timeout=self.timeout)
        except PowerShellError as e:
            raise ImageBuildError(f"Reference image build failed: {e}") from e
        return destination


class ReferenceImageBuilder:
    def __init__(self, backend: ImageBuildBackend):
        self.backend = backend

    def ensure_image(self, entry: ImageCatalogEntry) -> Path:
        """Return the reference image path, building it first if absent.

        Raises:
            ConfigurationError: If the image must be built and the install media is missing
            ImageBuildError: If the builder does not produce the image
        """
        reference = entry.reference_image_path
        if reference.exists():
            logger.info(f"Reusing reference image: {reference}")
            return reference

        if not entry.install_media_path.exists():
            raise ConfigurationError(
                f"Install media for image '{entry.image_name}' not found: "
                f"{entry.install_media_path}"
            )

        logger.info(
            f"Building reference image '{entry.image_name}' from {entry.install_media_path}"
        )
        try:
            reference.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create reference image directory {reference.parent}: {e}"
            ) from e
        self.backend.build_image(entry.install_media_path, reference)

        if not reference.exists():
            raise ImageBuildError(
                f"Image builder finished but {reference} does not exist"
            )
        logger.info(f"Reference image ready: {reference}")
        return reference


__all__ = ["ImageBuildBackend", "PowerShellImageBuilder", "ReferenceImageBuilder"]
