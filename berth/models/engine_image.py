"""Engine image custom resource."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import Field

from berth.models.common import BerthModel, Condition, Kind, Resource


class EngineImageState(str, Enum):
    DEPLOYING = "deploying"
    READY = "ready"
    INCOMPATIBLE = "incompatible"


class EngineImageConditionType(str, Enum):
    READY = "Ready"
    SYNCED = "Synced"


class EngineImageConditionReason(str, Enum):
    DAEMON_SET_NOT_READY = "DaemonSetNotReady"
    BINARY_UNAVAILABLE = "BinaryUnavailable"
    INCOMPATIBLE_VERSION = "IncompatibleVersion"
    INSTANCE_MANAGER_NOT_RUNNING = "InstanceManagerNotRunning"
    INVALID_IMAGE_REFERENCE = "InvalidImageReference"
    SYNC_FAILED = "SyncFailed"


class EngineVersionDetails(BerthModel):
    version: str = ""
    git_commit: str = ""
    build_date: str = ""

    cli_api_version: int = Field(default=0, alias="cliAPIVersion")
    cli_api_min_version: int = Field(default=0, alias="cliAPIMinVersion")
    controller_api_version: int = Field(default=0, alias="controllerAPIVersion")
    controller_api_min_version: int = Field(default=0, alias="controllerAPIMinVersion")
    data_format_version: int = 0
    data_format_min_version: int = 0


class EngineImageSpec(BerthModel):
    image: str


class EngineImageStatus(BerthModel):
    state: EngineImageState = EngineImageState.DEPLOYING
    ref_count: int = 0
    no_ref_since: datetime | None = None
    owner_id: str = Field(default="", alias="ownerID")
    engine_version_details: EngineVersionDetails | None = None
    conditions: dict[EngineImageConditionType, Condition] = Field(default_factory=dict)


class EngineImage(Resource):
    KIND: ClassVar[Kind] = Kind.ENGINE_IMAGE

    spec: EngineImageSpec
    status: EngineImageStatus = Field(default_factory=EngineImageStatus)
