"""Reconciliation controllers."""

from berth.controllers.base import BaseController, WorkQueue
from berth.controllers.engine_image import EngineImageController
from berth.controllers.kubernetes import KubernetesController
from berth.controllers.node import NodeController

__all__ = [
    "BaseController",
    "EngineImageController",
    "KubernetesController",
    "NodeController",
    "WorkQueue",
]
