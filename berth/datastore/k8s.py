"""Kubernetes-backed repository using kubernetes-asyncio.

Reads are served from an InMemoryRepository cache that a background loop
refreshes by relisting every kind. Writes go to the API server carrying the
cached resourceVersion, and the server's answer is written back to the cache
so the next read sees it without waiting for a relist.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, TypeVar

import pydantic
import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiClient, ApiException

from berth.datastore.base import ChangeHandler, IndexFunc, Repository, T
from berth.datastore.memory import InMemoryRepository
from berth.errors import (
    AlreadyExistsError,
    BerthError,
    ConflictError,
    NotFoundError,
    TransientAPIError,
    ValidationError,
)
from berth.models import MODELS, Kind, Resource

if TYPE_CHECKING:
    from berth.config import K8sConfig

logger = structlog.get_logger()

R = TypeVar("R")

CUSTOM_PLURALS: dict[Kind, str] = {
    Kind.ENGINE_IMAGE: "engineimages",
    Kind.NODE: "nodes",
    Kind.INSTANCE_MANAGER: "instancemanagers",
    Kind.VOLUME: "volumes",
    Kind.ENGINE: "engines",
    Kind.REPLICA: "replicas",
}


class KubernetesRepository(Repository):
    """Repository over the Kubernetes API server.

    Custom resources live in ``namespace``; so do the daemon workloads this
    manager creates. Pods and claims are watched cluster-wide.
    """

    def __init__(
        self,
        k8s_config: "K8sConfig",
        namespace: str,
        cache: InMemoryRepository | None = None,
    ) -> None:
        self._kubeconfig = k8s_config.kubeconfig
        self._group = k8s_config.group
        self._version = k8s_config.version
        self._timeout = k8s_config.request_timeout_seconds
        self._relist_seconds = k8s_config.relist_seconds
        self._namespace = namespace
        self._cache = cache or InMemoryRepository()

        self._log = logger.bind(repository="k8s")
        self._api_client: ApiClient | None = None
        self._config_loaded = False

        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def api_version(self) -> str:
        return f"{self._group}/{self._version}"

    async def _ensure_config(self) -> None:
        """Load Kubernetes configuration once."""
        if self._config_loaded:
            return

        if self._kubeconfig:
            await config.load_kube_config(config_file=self._kubeconfig)
            self._log.info("k8s.config.loaded", source="kubeconfig", path=self._kubeconfig)
        else:
            config.load_incluster_config()
            self._log.info("k8s.config.loaded", source="incluster")

        self._config_loaded = True

    async def _get_api_client(self) -> ApiClient:
        """Get or create the API client."""
        await self._ensure_config()
        if self._api_client is None:
            self._api_client = ApiClient()
        return self._api_client

    # ---- Lifecycle ----

    async def start(self) -> None:
        """Fill the cache, then keep it fresh in the background."""
        if self._running:
            return
        await self.sync()
        self._running = True
        self._task = asyncio.create_task(self._relist_loop())
        self._log.info("k8s.relist.started", interval_seconds=self._relist_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None

    async def _relist_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._relist_seconds)
            except asyncio.CancelledError:
                break
            try:
                await self.sync()
            except Exception as e:
                self._log.exception("k8s.relist.failed", error=str(e))

    async def sync(self) -> None:
        """Relist every kind into the cache.

        A kind that fails to list keeps its previous cache contents.
        """
        for kind in Kind:
            try:
                objects = await self._list_remote(kind)
            except (BerthError, pydantic.ValidationError) as e:
                self._log.warning(
                    "k8s.relist.kind_failed",
                    kind=kind.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            await self._cache.replace(kind, objects)

    # ---- Reads (cache) ----

    async def get(self, kind: Kind, key: str) -> Resource:
        return await self._cache.get(kind, key)

    async def list(
        self, kind: Kind, selector: dict[str, str] | None = None
    ) -> list[Resource]:
        return await self._cache.list(kind, selector)

    async def list_by_index(self, kind: Kind, index: str, value: str) -> list[Resource]:
        return await self._cache.list_by_index(kind, index, value)

    def add_index(self, kind: Kind, name: str, func: IndexFunc) -> None:
        self._cache.add_index(kind, name, func)

    def subscribe(self, kind: Kind, handler: ChangeHandler) -> None:
        self._cache.subscribe(kind, handler)

    # ---- Writes (API server, then cache) ----

    async def create(self, obj: T) -> T:
        kind = obj.KIND
        api = await self._get_api_client()
        body = self._to_body(obj)

        if kind in CUSTOM_PLURALS:
            raw = await self._call(
                client.CustomObjectsApi(api).create_namespaced_custom_object(
                    self._group, self._version, self._namespace, CUSTOM_PLURALS[kind], body
                ),
                kind,
                obj.key,
                creating=True,
            )
        elif kind == Kind.DAEMON_SET:
            raw = await self._call(
                client.AppsV1Api(api).create_namespaced_daemon_set(self._namespace, body),
                kind,
                obj.key,
                creating=True,
            )
        else:
            raise ValidationError(f"{kind.value} objects are read-only")

        created = self._from_raw(kind, raw, api)
        await self._cache.observe(created)
        self._log.info("k8s.object.created", kind=kind.value, name=obj.name)
        return created

    async def update(self, obj: T) -> T:
        kind = obj.KIND
        api = await self._get_api_client()
        body = self._to_body(obj)

        if kind in CUSTOM_PLURALS:
            raw = await self._call(
                client.CustomObjectsApi(api).replace_namespaced_custom_object(
                    self._group,
                    self._version,
                    self._namespace,
                    CUSTOM_PLURALS[kind],
                    obj.name,
                    body,
                ),
                kind,
                obj.key,
            )
        elif kind == Kind.DAEMON_SET:
            raw = await self._call(
                client.AppsV1Api(api).replace_namespaced_daemon_set(
                    obj.name, self._namespace, body
                ),
                kind,
                obj.key,
            )
        else:
            raise ValidationError(f"{kind.value} objects are read-only")

        updated = self._from_raw(kind, raw, api)
        await self._cache.observe(updated)
        return updated

    async def update_status(self, obj: T) -> T:
        kind = obj.KIND
        if kind not in CUSTOM_PLURALS:
            raise ValidationError(f"{kind.value} status is not written by this manager")

        api = await self._get_api_client()
        raw = await self._call(
            client.CustomObjectsApi(api).replace_namespaced_custom_object_status(
                self._group,
                self._version,
                self._namespace,
                CUSTOM_PLURALS[kind],
                obj.name,
                self._to_body(obj),
            ),
            kind,
            obj.key,
        )
        updated = self._from_raw(kind, raw, api)
        await self._cache.observe(updated)
        return updated

    async def delete(self, kind: Kind, key: str) -> None:
        api = await self._get_api_client()

        if kind in CUSTOM_PLURALS:
            call = client.CustomObjectsApi(api).delete_namespaced_custom_object(
                self._group, self._version, self._namespace, CUSTOM_PLURALS[kind], key
            )
        elif kind == Kind.DAEMON_SET:
            call = client.AppsV1Api(api).delete_namespaced_daemon_set(
                key, self._namespace, propagation_policy="Foreground"
            )
        elif kind == Kind.VOLUME_ATTACHMENT:
            call = client.StorageV1Api(api).delete_volume_attachment(key)
        else:
            raise ValidationError(f"{kind.value} objects are read-only")

        try:
            await self._call(call, kind, key)
        except NotFoundError:
            await self._cache.forget(kind, key)
            raise
        await self._cache.forget(kind, key)
        self._log.info("k8s.object.deleted", kind=kind.value, name=key)

    # ---- Helpers ----

    async def _list_remote(self, kind: Kind) -> list[Resource]:
        api = await self._get_api_client()
        key = "*"

        if kind in CUSTOM_PLURALS:
            raw = await self._call(
                client.CustomObjectsApi(api).list_namespaced_custom_object(
                    self._group, self._version, self._namespace, CUSTOM_PLURALS[kind]
                ),
                kind,
                key,
            )
            items = raw.get("items", [])
        else:
            core = client.CoreV1Api(api)
            calls = {
                Kind.POD: core.list_pod_for_all_namespaces,
                Kind.KUBE_NODE: core.list_node,
                Kind.PERSISTENT_VOLUME: core.list_persistent_volume,
                Kind.PERSISTENT_VOLUME_CLAIM: core.list_persistent_volume_claim_for_all_namespaces,
                Kind.VOLUME_ATTACHMENT: client.StorageV1Api(api).list_volume_attachment,
            }
            if kind == Kind.DAEMON_SET:
                result = await self._call(
                    client.AppsV1Api(api).list_namespaced_daemon_set(self._namespace),
                    kind,
                    key,
                )
            else:
                result = await self._call(calls[kind](), kind, key)
            items = result.items or []

        return [self._from_raw(kind, item, api) for item in items]

    def _from_raw(self, kind: Kind, raw: Any, api: ApiClient) -> Resource:
        if not isinstance(raw, dict):
            raw = api.sanitize_for_serialization(raw)
        return MODELS[kind].model_validate(raw)

    def _to_body(self, obj: Resource) -> dict[str, Any]:
        body = obj.to_json()
        if obj.KIND in CUSTOM_PLURALS:
            body["apiVersion"] = self.api_version
            body["kind"] = obj.KIND.value
            body.setdefault("metadata", {})["namespace"] = self._namespace
        return body

    async def _call(
        self,
        coro: Awaitable[R],
        kind: Kind,
        key: str,
        creating: bool = False,
    ) -> R:
        """Await an API call, translating failures into Berth errors."""
        details = {"kind": kind.value, "key": key}
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except ApiException as e:
            details["status"] = e.status
            if e.status == 404:
                raise NotFoundError(f"{kind.value} {key} not found", details=details) from e
            if e.status == 409:
                if creating:
                    raise AlreadyExistsError(
                        f"{kind.value} {key} already exists", details=details
                    ) from e
                raise ConflictError(
                    f"{kind.value} {key} was modified concurrently", details=details
                ) from e
            if e.status == 422:
                raise ValidationError(f"{kind.value} {key} rejected: {e.reason}", details=details) from e
            raise TransientAPIError(
                f"{kind.value} {key}: API error {e.status} {e.reason}", details=details
            ) from e
        except (TimeoutError, OSError) as e:
            raise TransientAPIError(f"{kind.value} {key}: {e!r}", details=details) from e
