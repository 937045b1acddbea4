"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 9500


class ControllerConfig(BaseModel):
    """Reconciliation loop configuration shared by all controllers.

    Note on controller_id:
    - Identifies the node this manager instance runs on. Node-local work
      (disk probing, mount propagation) is only done for this node, and
      EngineImage ownership is claimed in its name.
    - Every manager instance in a cluster MUST have a distinct id. The
      DaemonSet normally injects NODE_NAME from spec.nodeName.
    """

    controller_id: str | None = None

    # Namespace holding the custom resources, daemon workloads and manager pods
    namespace: str = "berth-system"

    # Concurrent workers per controller; a key is never processed by two at once
    workers: int = 2

    # Period of the full re-enqueue of every key
    resync_seconds: int = 30

    # Retry policy for failed passes: base * 2^retries, capped at backoff_max
    max_retries: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 60.0

    probe_timeout_seconds: float = 10.0

    # Prefix for labels written on managed objects (e.g. berth.io/component)
    label_prefix: str = "berth.io"

    # Label selector (key=value) identifying the manager pods
    manager_pod_label: str = "app=berth-manager"

    # Only PersistentVolumes provisioned by this CSI driver are tracked
    csi_driver: str = "driver.berth.io"

    def get_controller_id(self) -> str:
        """Get resolved controller_id with fallback logic.

        Derivation order:
          1. BERTH_CONTROLLER__CONTROLLER_ID env var / config file
          2. NODE_NAME env var
          3. HOSTNAME env var
          4. Fallback to "berth"
        """
        if self.controller_id:
            return self.controller_id
        return os.environ.get("NODE_NAME") or os.environ.get("HOSTNAME", "berth")

    def manager_pod_selector(self) -> dict[str, str]:
        """Parse manager_pod_label into a label selector dict."""
        selector: dict[str, str] = {}
        for part in self.manager_pod_label.split(","):
            part = part.strip()
            if not part:
                continue
            key, _, value = part.partition("=")
            selector[key.strip()] = value.strip()
        return selector


class NodeConfig(BaseModel):
    """Node and disk condition configuration."""

    # A disk is under pressure once its free, unreserved and unscheduled
    # space drops to this share of its capacity.
    minimal_available_percentage: int = Field(default=25, ge=0, le=100)


class EngineImageConfig(BaseModel):
    """Engine image lifecycle configuration."""

    # Never expires, and is created automatically on startup
    default_image: str = "berthio/berth-engine:v1.0.0"

    # How long an unreferenced non-default image is kept before deletion
    expiry_grace_seconds: int = 3600

    # CLI API range this manager speaks; engines must overlap it
    cli_api_version: int = 3
    cli_api_min_version: int = 3

    # Host directory where the daemon workload installs engine binaries
    binary_root: str = "/var/lib/berth/engine-binaries"

    service_account: str = "berth-service-account"


class K8sConfig(BaseModel):
    """Kubernetes API access configuration."""

    kubeconfig: str | None = None  # None = in-cluster config

    # Custom resource API group/version
    group: str = "berth.io"
    version: str = "v1beta1"

    request_timeout_seconds: float = 30.0

    # Period of the full relist that refreshes the local cache
    relist_seconds: int = 10


class Settings(BaseSettings):
    """Berth application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)

    # memory: standalone in-process store (development, tests)
    # k8s: API server backed store
    backend: Literal["memory", "k8s"] = "k8s"

    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    node: NodeConfig = Field(default_factory=NodeConfig)
    engine_image: EngineImageConfig = Field(default_factory=EngineImageConfig)
    k8s: K8sConfig = Field(default_factory=K8sConfig)


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. BERTH_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/berth/config.yaml
    """
    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return Settings(**file_config)
