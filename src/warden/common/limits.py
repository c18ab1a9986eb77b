"""
Parsing of human readable container resource limits.
"""

import math
import re

NANO_CPUS_PER_CPU = 1_000_000_000

MEMORY_UNITS = {
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
}

MEMORY_PATTERN = re.compile(r"^(\d+)([KMG])$", re.IGNORECASE)


class ProvisioningError(ValueError):
    """A worker cannot be created with the given configuration."""


def parse_cpu_limit(limit: str) -> int:
    """Convert a fractional CPU count like "0.5" into docker nano-CPU units."""
    try:
        cpus = float(limit)
    except (TypeError, ValueError):
        raise ProvisioningError(f"Invalid CPU limit: {limit!r}")
    if not math.isfinite(cpus) or cpus <= 0:
        raise ProvisioningError(f"CPU limit must be positive: {limit!r}")
    nano_cpus = round(cpus * NANO_CPUS_PER_CPU)
    if nano_cpus <= 0:
        # docker reads 0 as "no limit"
        raise ProvisioningError(f"CPU limit too small: {limit!r}")
    return nano_cpus


def parse_memory_limit(limit: str) -> int:
    """
    Convert a memory limit like "512M" or "2g" into bytes.

    The unit suffix is required and must be one of K, M or G (any case).
    """
    match = MEMORY_PATTERN.match((limit or "").strip())
    if not match:
        raise ProvisioningError(f"Invalid memory limit: {limit!r}")
    amount, unit = match.groups()
    if int(amount) <= 0:
        raise ProvisioningError(f"Memory limit must be positive: {limit!r}")
    return int(amount) * MEMORY_UNITS[unit.upper()]
