"""Unit tests for ControllerManager wiring and lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from berth import manager as manager_module
from berth.config import Settings
from berth.datastore import InMemoryRepository
from berth.manager import ControllerManager
from berth.models import ConditionStatus, Kind, NodeConditionType
from berth.naming import engine_image_name
from tests.fakes import (
    TEST_DEFAULT_IMAGE,
    TEST_NODE_1,
    FakeDiskProbe,
    FakeEngineVersionProbe,
    RecordingEventRecorder,
    controller_config,
    engine_image_config,
    new_kube_node,
    new_manager_pod,
    new_node,
)


def _settings() -> Settings:
    return Settings(
        backend="memory",
        controller=controller_config(),
        engine_image=engine_image_config(),
    )


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def manager(repo) -> ControllerManager:
    return ControllerManager(
        _settings(),
        repository=repo,
        disk_probe=FakeDiskProbe(),
        version_probe=FakeEngineVersionProbe(),
        events=RecordingEventRecorder(),
    )


async def _eventually(check, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        if await check():
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_creates_default_engine_image_and_stop(self, repo, manager):
        await manager.start()
        try:
            assert manager.is_running
            ei = await repo.get(Kind.ENGINE_IMAGE, engine_image_name(TEST_DEFAULT_IMAGE))
            assert ei.spec.image == TEST_DEFAULT_IMAGE

            status = manager.status()
            assert status["controller_id"] == TEST_NODE_1
            assert status["backend"] == "memory"
            assert set(status["controllers"]) == {"node", "engine_image", "kubernetes"}
            assert all(c["running"] for c in status["controllers"].values())
        finally:
            await manager.stop()

        assert not manager.is_running
        assert not any(c.is_running for c in manager.controllers)

    @pytest.mark.asyncio
    async def test_changes_are_reconciled_by_workers(self, repo, manager):
        await manager.start()
        try:
            await repo.create(new_manager_pod(TEST_NODE_1))
            await repo.create(new_kube_node(TEST_NODE_1))
            await repo.create(new_node(TEST_NODE_1))

            async def node_ready() -> bool:
                node = await repo.get(Kind.NODE, TEST_NODE_1)
                cond = node.status.conditions.get(NodeConditionType.READY)
                return cond is not None and cond.status == ConditionStatus.TRUE

            await _eventually(node_ready)
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_resync_counts_keys(self, repo, manager):
        await repo.create(new_node(TEST_NODE_1))

        counts = await manager.resync()

        assert counts == {"node": 1, "engine_image": 1, "kubernetes": 0}
        assert len(manager.node_controller.queue) == 1

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, manager):
        await manager.stop()
        assert not manager.is_running


class TestGlobalManager:
    @pytest.mark.asyncio
    async def test_init_and_shutdown(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(manager_module, "_manager", None)

        created = await manager_module.init_manager(_settings())
        try:
            assert manager_module.get_manager() is created
            assert created.is_running
        finally:
            await manager_module.shutdown_manager()

        assert manager_module.get_manager() is None
        assert not created.is_running

    @pytest.mark.asyncio
    async def test_failed_start_keeps_manager(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(manager_module, "_manager", None)

        async def broken_start(self) -> None:
            raise RuntimeError("api server unreachable")

        monkeypatch.setattr(ControllerManager, "start", broken_start)

        created = await manager_module.init_manager(_settings())

        assert manager_module.get_manager() is created
        assert not created.is_running
        manager_module.set_manager(None)
