"""Unit tests for KubernetesRepository with mocked kubernetes-asyncio APIs."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes_asyncio.client import ApiException

from berth.config import K8sConfig
from berth.datastore.k8s import KubernetesRepository
from berth.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    TransientAPIError,
    ValidationError,
)
from berth.models import Kind
from tests.fakes import (
    NAMESPACE,
    TEST_NODE_1,
    new_daemon_set,
    new_engine_image,
    new_workload_pod,
)


def _node_json(name: str, version: str = "5") -> dict:
    return {
        "apiVersion": "berth.io/v1beta1",
        "kind": "Node",
        "metadata": {"name": name, "namespace": NAMESPACE, "resourceVersion": version},
        "spec": {"disks": {"fsid": {"path": "/var/lib/berth/", "allowScheduling": True}}},
        "status": {},
    }


@pytest.fixture
def api_client() -> MagicMock:
    api = MagicMock()
    api.close = AsyncMock()
    return api


@pytest.fixture
def repo(api_client) -> KubernetesRepository:
    repository = KubernetesRepository(K8sConfig(request_timeout_seconds=1.0), namespace=NAMESPACE)
    repository._config_loaded = True
    repository._api_client = api_client
    return repository


@pytest.fixture
def mock_client():
    with patch("berth.datastore.k8s.client") as mocked:
        custom = mocked.CustomObjectsApi.return_value
        core = mocked.CoreV1Api.return_value
        apps = mocked.AppsV1Api.return_value
        storage = mocked.StorageV1Api.return_value

        custom.list_namespaced_custom_object = AsyncMock(return_value={"items": []})
        empty = SimpleNamespace(items=[])
        core.list_pod_for_all_namespaces = AsyncMock(return_value=empty)
        core.list_node = AsyncMock(return_value=empty)
        core.list_persistent_volume = AsyncMock(return_value=empty)
        core.list_persistent_volume_claim_for_all_namespaces = AsyncMock(return_value=empty)
        apps.list_namespaced_daemon_set = AsyncMock(return_value=empty)
        storage.list_volume_attachment = AsyncMock(return_value=empty)
        yield mocked


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_fills_cache_from_custom_and_native_lists(self, repo, api_client, mock_client):
        async def list_custom(group, version, namespace, plural):
            assert (group, version, namespace) == ("berth.io", "v1beta1", NAMESPACE)
            if plural == "nodes":
                return {"items": [_node_json(TEST_NODE_1)]}
            return {"items": []}

        mock_client.CustomObjectsApi.return_value.list_namespaced_custom_object = AsyncMock(
            side_effect=list_custom
        )
        native_node = object()
        mock_client.CoreV1Api.return_value.list_node = AsyncMock(
            return_value=SimpleNamespace(items=[native_node])
        )
        api_client.sanitize_for_serialization.return_value = {
            "metadata": {"name": TEST_NODE_1, "resourceVersion": "77"},
            "status": {"conditions": [{"type": "Ready", "status": "True"}]},
        }

        await repo.sync()

        node = await repo.get(Kind.NODE, TEST_NODE_1)
        assert node.metadata.resource_version == "5"
        assert "fsid" in node.spec.disks

        kube_node = await repo.get(Kind.KUBE_NODE, TEST_NODE_1)
        assert kube_node.status.conditions[0].type == "Ready"
        api_client.sanitize_for_serialization.assert_called_with(native_node)

    @pytest.mark.asyncio
    async def test_failed_kind_keeps_previous_cache(self, repo, mock_client):
        custom = mock_client.CustomObjectsApi.return_value

        async def only_nodes(group, version, namespace, plural):
            if plural == "nodes":
                return {"items": [_node_json(TEST_NODE_1)]}
            return {"items": []}

        custom.list_namespaced_custom_object = AsyncMock(side_effect=only_nodes)
        await repo.sync()

        custom.list_namespaced_custom_object = AsyncMock(
            side_effect=ApiException(status=500, reason="Internal Server Error")
        )
        await repo.sync()

        assert (await repo.get(Kind.NODE, TEST_NODE_1)).name == TEST_NODE_1

    @pytest.mark.asyncio
    async def test_missing_resource_type_does_not_stop_relist(self, repo, mock_client):
        mock_client.CustomObjectsApi.return_value.list_namespaced_custom_object = AsyncMock(
            side_effect=ApiException(status=404, reason="Not Found")
        )
        mock_client.AppsV1Api.return_value.list_namespaced_daemon_set = AsyncMock(
            return_value=SimpleNamespace(items=[{"metadata": {"name": "engine-image-ei-1"}}])
        )

        await repo.sync()

        assert (await repo.get(Kind.DAEMON_SET, "engine-image-ei-1")).name == "engine-image-ei-1"
        mock_client.StorageV1Api.return_value.list_volume_attachment.assert_awaited()

    @pytest.mark.asyncio
    async def test_malformed_object_skips_only_its_kind(self, repo, mock_client):
        async def list_custom(group, version, namespace, plural):
            if plural == "nodes":
                return {"items": [{"metadata": {"name": TEST_NODE_1}, "spec": {"disks": "bad"}}]}
            if plural == "engineimages":
                return {"items": [new_engine_image().to_json()]}
            return {"items": []}

        mock_client.CustomObjectsApi.return_value.list_namespaced_custom_object = AsyncMock(
            side_effect=list_custom
        )

        await repo.sync()

        with pytest.raises(NotFoundError):
            await repo.get(Kind.NODE, TEST_NODE_1)
        assert len(await repo.list(Kind.ENGINE_IMAGE)) == 1


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_custom_object_writes_through_to_cache(self, repo, mock_client):
        ei = new_engine_image()
        custom = mock_client.CustomObjectsApi.return_value

        async def create(group, version, namespace, plural, body):
            assert plural == "engineimages"
            assert body["apiVersion"] == "berth.io/v1beta1"
            assert body["kind"] == "EngineImage"
            assert body["status"]["ownerID"] == TEST_NODE_1
            returned = dict(body)
            returned["metadata"] = dict(body["metadata"], resourceVersion="42")
            return returned

        custom.create_namespaced_custom_object = AsyncMock(side_effect=create)

        created = await repo.create(ei)

        assert created.metadata.resource_version == "42"
        cached = await repo.get(Kind.ENGINE_IMAGE, ei.name)
        assert cached.spec.image == ei.spec.image

    @pytest.mark.asyncio
    async def test_create_conflict_maps_to_already_exists(self, repo, mock_client):
        mock_client.AppsV1Api.return_value.create_namespaced_daemon_set = AsyncMock(
            side_effect=ApiException(status=409, reason="AlreadyExists")
        )

        with pytest.raises(AlreadyExistsError):
            await repo.create(new_daemon_set())

    @pytest.mark.asyncio
    async def test_update_status_conflict_maps_to_conflict(self, repo, mock_client):
        mock_client.CustomObjectsApi.return_value.replace_namespaced_custom_object_status = (
            AsyncMock(side_effect=ApiException(status=409, reason="Conflict"))
        )

        with pytest.raises(ConflictError) as exc_info:
            await repo.update_status(new_engine_image())
        assert not isinstance(exc_info.value, AlreadyExistsError)

    @pytest.mark.asyncio
    async def test_server_error_maps_to_transient(self, repo, mock_client):
        mock_client.CustomObjectsApi.return_value.replace_namespaced_custom_object = AsyncMock(
            side_effect=ApiException(status=503, reason="Service Unavailable")
        )

        with pytest.raises(TransientAPIError) as exc_info:
            await repo.update(new_engine_image())
        assert exc_info.value.details["status"] == 503

    @pytest.mark.asyncio
    async def test_delete_missing_forgets_cache_and_raises(self, repo, mock_client):
        custom = mock_client.CustomObjectsApi.return_value

        async def only_nodes(group, version, namespace, plural):
            if plural == "nodes":
                return {"items": [_node_json(TEST_NODE_1)]}
            return {"items": []}

        custom.list_namespaced_custom_object = AsyncMock(side_effect=only_nodes)
        await repo.sync()
        custom.delete_namespaced_custom_object = AsyncMock(
            side_effect=ApiException(status=404, reason="Not Found")
        )

        with pytest.raises(NotFoundError):
            await repo.delete(Kind.NODE, TEST_NODE_1)
        with pytest.raises(NotFoundError):
            await repo.get(Kind.NODE, TEST_NODE_1)

    @pytest.mark.asyncio
    async def test_read_only_kinds_reject_writes(self, repo, mock_client):
        with pytest.raises(ValidationError):
            await repo.create(new_workload_pod("pod-1"))

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, repo, api_client):
        await repo.stop()
        api_client.close.assert_awaited_once()
