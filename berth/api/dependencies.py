"""FastAPI dependencies for the Berth API."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from berth.errors import BerthError
from berth.manager import ControllerManager, get_manager


class ManagerUnavailableError(BerthError):
    """The controller manager is not initialized (503)."""

    code = "manager_unavailable"
    message = "Controller manager is not running"
    status_code = 503


def require_manager() -> ControllerManager:
    manager = get_manager()
    if manager is None:
        raise ManagerUnavailableError()
    return manager


ManagerDep = Annotated[ControllerManager, Depends(require_manager)]
