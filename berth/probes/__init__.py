"""Node-local probes: disk capacity and engine binary versions."""

from berth.probes.disk import DiskInfo, DiskProbe, StatvfsDiskProbe
from berth.probes.engine import (
    BinaryVersionProbe,
    EngineVersionProbe,
    VersionRange,
    is_compatible,
)

__all__ = [
    "BinaryVersionProbe",
    "DiskInfo",
    "DiskProbe",
    "EngineVersionProbe",
    "StatvfsDiskProbe",
    "VersionRange",
    "is_compatible",
]
