"""Disk capacity probe."""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

from berth.errors import ProbeError


@dataclass(frozen=True)
class DiskInfo:
    """Probed facts about the filesystem backing a disk path."""

    filesystem_id: str
    storage_maximum: int
    storage_available: int
    path: str = ""


class DiskProbe(ABC):
    @abstractmethod
    async def probe(self, path: str) -> DiskInfo:
        """Probe the filesystem at ``path``.

        Raises:
            ProbeError: If the path cannot be inspected
        """
        ...


class StatvfsDiskProbe(DiskProbe):
    """Probe with ``os.statvfs`` in a worker thread (statvfs may block on NFS)."""

    async def probe(self, path: str) -> DiskInfo:
        try:
            st = await asyncio.to_thread(os.statvfs, path)
        except OSError as e:
            raise ProbeError(
                f"failed to stat filesystem at {path}: {e.strerror or e}",
                details={"path": path},
            ) from e

        return DiskInfo(
            filesystem_id=format(st.f_fsid, "x"),
            storage_maximum=st.f_blocks * st.f_frsize,
            storage_available=st.f_bavail * st.f_frsize,
            path=path,
        )
