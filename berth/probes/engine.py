"""Engine binary version probe and compatibility check."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from berth.errors import ProbeError
from berth.models import EngineVersionDetails
from berth.naming import engine_binary_directory

logger = structlog.get_logger()

ENGINE_BINARY_NAME = "longhorn"

# Returned by binaries too old to report an API version
INVALID_VERSION = -1


@dataclass(frozen=True)
class VersionRange:
    """Inclusive range of CLI API versions."""

    min_version: int
    max_version: int


def is_compatible(details: EngineVersionDetails, expected: VersionRange) -> bool:
    """Whether the engine's CLI API range overlaps the expected range."""
    current = details.cli_api_version
    minimum = details.cli_api_min_version
    if current == INVALID_VERSION or minimum == INVALID_VERSION:
        return False
    return current >= expected.min_version and minimum <= expected.max_version


class EngineVersionProbe(ABC):
    @abstractmethod
    async def fetch(self, image: str) -> EngineVersionDetails:
        """Read version details of the engine shipped in ``image``.

        Raises:
            ProbeError: If the binary is missing or its output is unusable
        """
        ...


class BinaryVersionProbe(EngineVersionProbe):
    """Run the binary the daemon workload installed on this node.

    Invokes ``<binary_root>/<image dir>/longhorn version --client-only`` and
    parses the ``clientVersion`` object of its JSON output.
    """

    def __init__(self, binary_root: str, timeout: float = 10.0) -> None:
        self._binary_root = Path(binary_root)
        self._timeout = timeout
        self._log = logger.bind(probe="engine_version")

    def binary_path(self, image: str) -> Path:
        return self._binary_root / engine_binary_directory(image) / ENGINE_BINARY_NAME

    async def fetch(self, image: str) -> EngineVersionDetails:
        binary = self.binary_path(image)
        try:
            proc = await asyncio.create_subprocess_exec(
                str(binary),
                "version",
                "--client-only",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(
                f"engine binary for {image} is not available: {e}",
                details={"image": image, "path": str(binary)},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProbeError(
                f"engine binary for {image} timed out",
                details={"image": image, "timeout": self._timeout},
            ) from e

        if proc.returncode != 0:
            raise ProbeError(
                f"engine binary for {image} exited with {proc.returncode}",
                details={"image": image, "stderr": stderr.decode(errors="replace").strip()},
            )

        details = self.parse_output(image, stdout)
        self._log.info(
            "engine_version.fetched",
            image=image,
            version=details.version,
            cli_api_version=details.cli_api_version,
        )
        return details

    @staticmethod
    def parse_output(image: str, output: bytes | str) -> EngineVersionDetails:
        try:
            payload = json.loads(output)
            return EngineVersionDetails.model_validate(payload["clientVersion"])
        except (ValueError, KeyError, TypeError, PydanticValidationError) as e:
            raise ProbeError(
                f"unparseable version output from engine {image}",
                details={"image": image, "error": str(e)},
            ) from e
