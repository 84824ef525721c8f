"""Per-tenant run lock.

Name allocation is a pure function over a snapshot of host VM names, so
two fleet runs for the same tenant could pick the same names. Holding an
exclusive lock on a file in the tenant workspace for the whole run
serializes them on this host.

Uses platform-appropriate locking:
- Unix: fcntl.flock() (advisory whole-file lock)
- Windows: msvcrt.locking() (mandatory byte-range lock on the first byte)

Example:
    >>> with tenant_run_lock(Path("D:/VMs/contoso"), "contoso"):
    ...     orchestrator.run(request)
"""

import logging
import platform
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, TYPE_CHECKING

from hvfleet.errors import ConfigurationError

_system = platform.system()
if TYPE_CHECKING or _system == "Windows":
    import msvcrt  # type: ignore[import-not-found]
if TYPE_CHECKING or _system != "Windows":
    import fcntl  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".hvfleet.lock"


class LockTimeoutError(ConfigurationError):
    """Raised when another run for the tenant holds the lock past the timeout."""


@contextmanager
def tenant_run_lock(
    workspace_dir: Path, tenant_name: str, timeout: float = 10.0
) -> Generator[Path, None, None]:
    """Hold the tenant's run lock for the duration of the block.

    Raises:
        ConfigurationError: If the workspace cannot be created
        LockTimeoutError: If the lock cannot be acquired within timeout
    """
    try:
        workspace_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"Cannot create workspace directory {workspace_dir}: {e}", tenant=tenant_name
        ) from e

    lock_path = workspace_dir / LOCK_FILE_NAME
    with open(lock_path, "a+") as handle:
        handle.seek(0)
        _acquire_with_backoff(handle, lock_path, tenant_name, timeout)
        logger.debug(f"Acquired run lock for tenant {tenant_name}")
        try:
            yield lock_path
        finally:
            _release(handle)
            logger.debug(f"Released run lock for tenant {tenant_name}")


def _acquire_with_backoff(
    handle: IO[str], lock_path: Path, tenant_name: str, timeout: float
) -> None:
    """Backoff: 0.1s -> 0.2s -> 0.4s ... capped at 2s."""
    start_time = time.monotonic()
    delay = 0.1

    while True:
        try:
            if _system == "Windows":
                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except OSError:
            elapsed = time.monotonic() - start_time
            if elapsed >= timeout:
                raise LockTimeoutError(
                    f"Another fleet run for tenant '{tenant_name}' is in progress "
                    f"(lock: {lock_path}). Waited {timeout:.0f}s.",
                    tenant=tenant_name,
                ) from None
            time.sleep(min(delay, timeout - elapsed))
            delay = min(delay * 2, 2.0)


def _release(handle: IO[str]) -> None:
    try:
        if _system == "Windows":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        # Closing the handle releases the lock anyway
        logger.debug(f"Error during lock cleanup: {e}")


__all__ = ["LOCK_FILE_NAME", "LockTimeoutError", "tenant_run_lock"]
