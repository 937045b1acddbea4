"""Admin API endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter
from pydantic import BaseModel

from berth.api.dependencies import ManagerDep

router = APIRouter()


class ResyncResponse(BaseModel):
    """Response from a manual resync."""

    enqueued: dict[str, int]
    duration_ms: int


class ControllerState(BaseModel):
    running: bool
    queue_depth: int


class ManagerStatusResponse(BaseModel):
    controller_id: str
    backend: str
    running: bool
    controllers: dict[str, ControllerState]


@router.post("/resync", response_model=ResyncResponse)
async def trigger_resync(manager: ManagerDep) -> ResyncResponse:
    """Enqueue every key of every controller now."""
    start = time.monotonic()
    enqueued = await manager.resync()
    return ResyncResponse(
        enqueued=enqueued,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


@router.get("/status", response_model=ManagerStatusResponse)
async def get_status(manager: ManagerDep) -> ManagerStatusResponse:
    """Report controller manager state and queue depths."""
    return ManagerStatusResponse.model_validate(manager.status())
