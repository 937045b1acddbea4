"""Deterministic names for objects derived from an engine image.

Every manager instance must derive the same names independently, so these
are pure functions of their inputs.
"""

from __future__ import annotations

import hashlib
import re

from berth.errors import ValidationError
from berth.models import InstanceManagerType

ENGINE_IMAGE_PREFIX = "ei-"
DAEMON_WORKLOAD_PREFIX = "engine-image-"
INSTANCE_MANAGER_PREFIX = "instance-manager-"

_ROLE_SHORT = {
    InstanceManagerType.ENGINE: "e",
    InstanceManagerType.REPLICA: "r",
}

# [registry[:port]/]path[:tag][@digest]
_IMAGE_REFERENCE = re.compile(
    r"^"
    r"(?:(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
    r"(?:\.(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?))*(?::[0-9]+)?/)?"
    r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
    r"(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*"
    r"(?::[\w][\w.-]{0,127})?"
    r"(?:@[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,})?"
    r"$"
)


def _checksum(value: str) -> str:
    return hashlib.sha512(value.encode()).hexdigest()


def engine_image_name(image: str) -> str:
    """EngineImage resource name for an image reference."""
    return ENGINE_IMAGE_PREFIX + _checksum(image)[:8]


def daemon_workload_name(image: str) -> str:
    """Name of the DaemonSet that installs the image's binaries on every node."""
    return DAEMON_WORKLOAD_PREFIX + engine_image_name(image)


def instance_manager_name(image: str, role: InstanceManagerType, node: str) -> str:
    """Instance manager name for (image, role, node).

    >>> instance_manager_name("img:v1", InstanceManagerType.ENGINE, "n1")[:19]
    'instance-manager-e-'
    """
    return f"{INSTANCE_MANAGER_PREFIX}{_ROLE_SHORT[role]}-{_checksum(image + node)[:8]}"


def engine_binary_directory(image: str) -> str:
    """Host directory name (under binary_root) holding the image's binaries."""
    return image.replace("/", "-").replace(":", "-").replace("@", "-")


def validate_image_reference(image: str) -> str:
    """Return ``image`` if it is a well-formed image reference.

    Raises:
        ValidationError: If the reference cannot be parsed
    """
    if not image or len(image) > 255 or not _IMAGE_REFERENCE.match(image):
        raise ValidationError(
            f"invalid image reference {image!r}",
            details={"image": image},
        )
    return image
