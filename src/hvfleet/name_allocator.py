"""Sequential VM name allocation.

Names follow ``<tenant>_<n>``. The next block starts after the highest
suffix currently present on the host, so suffixes are never reused while
earlier VMs are still enumerable.

This is a pure function over a snapshot of host VM names. The caller
re-queries the host immediately before calling it. Two concurrent runs
for the same tenant can still race and pick the same names; runs must be
serialized per tenant (see tenant_lock).
"""

import re
from collections.abc import Iterable

MAX_NAMES_PER_RUN = 999


def tenant_name_pattern(tenant_name: str) -> re.Pattern[str]:
    """Regex matching ``<tenant>_<digits>`` exactly."""
    return re.compile(rf"^{re.escape(tenant_name)}_(\d+)$")


def highest_suffix(tenant_name: str, host_vm_names: Iterable[str]) -> int:
    """Largest numeric suffix among the tenant's VMs, 0 if none match."""
    pattern = tenant_name_pattern(tenant_name)
    suffixes = [
        int(match.group(1))
        for match in (pattern.match(name) for name in host_vm_names)
        if match
    ]
    return max(suffixes, default=0)


def allocate(tenant_name: str, count: int, host_vm_names: Iterable[str]) -> list[str]:
    """Return ``count`` contiguous, strictly increasing names for a tenant.

    Non-matching names (other tenants, hand-made VMs) are ignored.

    Args:
        tenant_name: Tenant prefix
        count: Number of names to allocate (1-999)
        host_vm_names: Snapshot of VM names currently on the host

    Raises:
        ValueError: If tenant_name is empty or count is out of range
    """
    if not tenant_name:
        raise ValueError("tenant_name must not be empty")
    if count < 1 or count > MAX_NAMES_PER_RUN:
        raise ValueError(f"count must be between 1 and {MAX_NAMES_PER_RUN}, got {count}")

    start = highest_suffix(tenant_name, host_vm_names) + 1
    return [f"{tenant_name}_{n}" for n in range(start, start + count)]


def tenant_vm_names(tenant_name: str, host_vm_names: Iterable[str]) -> list[str]:
    """Host VM names belonging to a tenant, ordered by suffix."""
    pattern = tenant_name_pattern(tenant_name)
    matched = [name for name in host_vm_names if pattern.match(name)]
    return sorted(matched, key=lambda name: int(name.rsplit("_", 1)[1]))


__all__ = ["MAX_NAMES_PER_RUN", "allocate", "highest_suffix", "tenant_vm_names"]
