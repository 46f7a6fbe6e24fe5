import yaml

from rigwatch.core.config import AppConfig, Settings


def test_defaults_without_config_file(tmp_path):
    config = AppConfig(tmp_path / "config.yaml")

    assert config.get("mqtt.enabled") is False
    assert config.get("network_discovery.networks") == []
    assert config.get("missing.key", "fallback") == "fallback"
    assert not (tmp_path / "config.yaml").exists()


def test_set_persists_dotted_keys(tmp_path):
    path = tmp_path / "nested" / "config.yaml"
    config = AppConfig(path)

    config.set("network_discovery.networks", ["192.168.1.0/24"])

    assert yaml.safe_load(path.read_text())["network_discovery"]["networks"] == ["192.168.1.0/24"]
    assert AppConfig(path).get("network_discovery.networks") == ["192.168.1.0/24"]


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("OFFLINE_THRESHOLD", "5")
    monkeypatch.setenv("POLL_INTERVAL_MS", "10000")

    settings = Settings()

    assert settings.OFFLINE_THRESHOLD == 5
    assert settings.POLL_INTERVAL_MS == 10000
    assert settings.CGMINER_PORT == 4028
