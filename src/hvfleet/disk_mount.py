"""Scoped virtual disk mounting.

A mounted disk holds a drive letter and a host mount-table entry, so the
mount is always released when the scope exits: on success, when the work
inside the scope fails, and on KeyboardInterrupt.

Only one mount of a given disk file may be outstanding in this process.

Example:
    >>> with mounted_disk(host, Path("D:/VMs/contoso/contoso_1.vhdx")) as root:
    ...     shutil.copyfile(config, root / "Windows" / "Provisioning" / "Autopilot" / name)
"""

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from hvfleet.errors import DiskBusyError
from hvfleet.hyperv_host import HyperVHost
from hvfleet.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

_mounted: set[str] = set()
_mounted_lock = threading.Lock()


def _key(disk_path: Path) -> str:
    return str(disk_path.resolve()).lower()


def is_mounted(disk_path: Path) -> bool:
    """True while a mounted_disk scope for this file is open."""
    with _mounted_lock:
        return _key(disk_path) in _mounted


@contextmanager
def mounted_disk(host: HyperVHost, disk_path: Path) -> Generator[Path, None, None]:
    """Mount a disk for the duration of the block and yield its root.

    Raises:
        DiskBusyError: If the disk is already mounted by this process
        PowerShellError: If mounting or (on a clean exit) dismounting fails
    """
    key = _key(disk_path)
    with _mounted_lock:
        if key in _mounted:
            raise DiskBusyError(f"Disk is already mounted: {disk_path}")
        _mounted.add(key)

    try:
        root = host.mount_disk(disk_path)
    except BaseException:
        with _mounted_lock:
            _mounted.discard(key)
        raise

    body_failed = False
    try:
        yield root
    except BaseException:
        body_failed = True
        raise
    finally:
        try:
            host.dismount_disk(disk_path)
        except Exception as e:
            if not body_failed:
                raise
            # The original error is more useful than the cleanup failure
            logger.error(
                f"Failed to dismount {disk_path} after error: "
                f"{LogSanitizer.sanitize_exception(e)}"
            )
        finally:
            with _mounted_lock:
                _mounted.discard(key)


__all__ = ["is_mounted", "mounted_disk"]
