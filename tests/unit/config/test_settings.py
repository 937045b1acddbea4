"""Unit tests for settings loading."""

from __future__ import annotations

import pytest

from berth.config import ControllerConfig, Settings, _load_config_file, get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestControllerId:
    def test_explicit_id_wins(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("NODE_NAME", "node-from-env")

        assert ControllerConfig(controller_id="node-a").get_controller_id() == "node-a"

    def test_node_name_then_hostname(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("NODE_NAME", "node-from-env")
        monkeypatch.setenv("HOSTNAME", "pod-hostname")
        assert ControllerConfig().get_controller_id() == "node-from-env"

        monkeypatch.delenv("NODE_NAME")
        assert ControllerConfig().get_controller_id() == "pod-hostname"

        monkeypatch.delenv("HOSTNAME")
        assert ControllerConfig().get_controller_id() == "berth"


def test_manager_pod_selector_parses_pairs():
    config = ControllerConfig(manager_pod_label="app=berth-manager, tier = storage,")

    assert config.manager_pod_selector() == {"app": "berth-manager", "tier": "storage"}


def test_nested_env_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BERTH_BACKEND", "memory")
    monkeypatch.setenv("BERTH_CONTROLLER__WORKERS", "4")
    monkeypatch.setenv("BERTH_NODE__MINIMAL_AVAILABLE_PERCENTAGE", "10")

    settings = Settings()

    assert settings.backend == "memory"
    assert settings.controller.workers == 4
    assert settings.node.minimal_available_percentage == 10
    assert settings.engine_image.expiry_grace_seconds == 3600


def test_config_file_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    path = tmp_path / "berth.yaml"
    path.write_text(
        "backend: memory\n"
        "controller:\n"
        "  controller_id: node-x\n"
        "engine_image:\n"
        "  default_image: example/engine:v2\n"
    )
    monkeypatch.setenv("BERTH_CONFIG_FILE", str(path))

    assert _load_config_file()["controller"]["controller_id"] == "node-x"

    settings = get_settings()
    assert settings.backend == "memory"
    assert settings.controller.get_controller_id() == "node-x"
    assert settings.engine_image.default_image == "example/engine:v2"
    assert get_settings() is settings


def test_empty_config_file(monkeypatch: pytest.MonkeyPatch, tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    monkeypatch.setenv("BERTH_CONFIG_FILE", str(path))

    assert _load_config_file() == {}
