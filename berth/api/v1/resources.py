"""Read-only views of reconciled resources."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from berth.api.dependencies import ManagerDep
from berth.models import Kind

router = APIRouter()


@router.get("/nodes")
async def list_nodes(manager: ManagerDep) -> list[dict[str, Any]]:
    """List storage nodes with their conditions and disk status."""
    nodes = await manager.repository.list(Kind.NODE)
    return [node.to_json() for node in nodes]


@router.get("/engineimages")
async def list_engine_images(manager: ManagerDep) -> list[dict[str, Any]]:
    """List engine images with state, reference count and owner."""
    images = await manager.repository.list(Kind.ENGINE_IMAGE)
    return [ei.to_json() for ei in images]


@router.get("/volumes/{name}/kubernetes-status")
async def get_volume_kubernetes_status(name: str, manager: ManagerDep) -> dict[str, Any]:
    """Get the PV/PVC/workload references recorded for a volume."""
    volume = await manager.repository.get(Kind.VOLUME, name)
    return volume.status.kubernetes_status.to_json()
