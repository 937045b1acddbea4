"""API v1 router."""

from fastapi import APIRouter

from berth.api.v1.admin import router as admin_router
from berth.api.v1.resources import router as resources_router

router = APIRouter()

router.include_router(resources_router, tags=["resources"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
