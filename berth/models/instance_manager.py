"""Instance manager custom resource."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from pydantic import Field

from berth.models.common import BerthModel, Kind, Resource


class InstanceManagerType(str, Enum):
    ENGINE = "engine"
    REPLICA = "replica"


class InstanceManagerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class InstanceManagerSpec(BerthModel):
    image: str
    node_id: str = Field(alias="nodeID")
    type: InstanceManagerType
    engine_image: str = ""


class InstanceManagerStatus(BerthModel):
    current_state: InstanceManagerState | None = None


class InstanceManager(Resource):
    KIND: ClassVar[Kind] = Kind.INSTANCE_MANAGER

    spec: InstanceManagerSpec
    status: InstanceManagerStatus = Field(default_factory=InstanceManagerStatus)
