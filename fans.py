"""Fan sensor discovery and health checks over sysfs.

A fan sensor is any entry named fan*_input, e.g.
/sys/devices/pci0000:00/0000:00:1f.3/i2c-0/0-002d/hwmon/hwmon3/fan1_input
"""

from __future__ import annotations

import logging
import os
import pathlib
from collections.abc import Iterable

log = logging.getLogger("fan-watchdog")

# Type alias for the fixed set of monitored sensor paths
SensorSet = frozenset[pathlib.Path]


def is_fan_input(name: str) -> bool:
    """True if name looks like a fan speed input (fan*_input)."""
    return name.startswith("fan") and name.endswith("_input")


def discover(root: str | os.PathLike[str] = "/sys") -> SensorSet:
    """Walk root once and collect every fan*_input entry.

    Symlinks are reported as entries but not followed. Entries that can't be
    listed are skipped.
    """

    def _skip(err: OSError) -> None:
        log.debug("Skipping %s: %s", err.filename, err.strerror)

    found: set[pathlib.Path] = set()
    for dirpath, dirnames, filenames in os.walk(root, onerror=_skip):
        for name in (*dirnames, *filenames):
            if is_fan_input(name):
                found.add(pathlib.Path(dirpath) / name)
    return frozenset(found)


def is_readable(path: pathlib.Path) -> bool:
    """Read path and report whether it succeeded. Content is ignored."""
    try:
        _ = path.read_text()
    except (OSError, ValueError) as e:
        log.debug("Failed to read %s: %s", path, e)
        return False
    return True


def is_healthy(sensors: Iterable[pathlib.Path]) -> bool:
    """True iff every sensor is readable. No sensors counts as healthy."""
    # Read all of them so each failing path gets logged.
    return all([is_readable(p) for p in sensors])
