"""
Configuration management using /config volume
"""
from pathlib import Path
from typing import Any

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables"""
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    WEB_PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # Internal paths
    CONFIG_DIR: Path = Path("/config")
    CONFIG_FILE: Path = Path("/config/config.yaml")
    DB_PATH: Path = Path("/config/data.db")

    # Polling
    POLL_INTERVAL_MS: int = 5000
    OFFLINE_THRESHOLD: int = 3

    # Per-family request timeouts (seconds)
    BITAXE_TIMEOUT: float = 8.0
    BITMAIN_TIMEOUT: float = 8.0
    CGMINER_PORT: int = 4028
    CGMINER_TIMEOUT: float = 5.0
    CGMINER_IDLE_TIMEOUT: float = 0.5

    # Network discovery
    DISCOVERY_TIMEOUT: float = 3.0
    DISCOVERY_CONCURRENCY: int = 20


settings = Settings()


class AppConfig:
    """Application configuration from config.yaml"""

    def __init__(self, config_path: Path = settings.CONFIG_FILE):
        self.config_path = Path(config_path)
        self._config = {}
        self.load()

    def load(self):
        """Load configuration from YAML file, falling back to defaults"""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                self._config = yaml.safe_load(f) or {}
        else:
            self._config = self._get_default_config()

    def save(self):
        """Save configuration to YAML file"""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False)

    def _get_default_config(self) -> dict:
        """Get default configuration structure"""
        return {
            "mqtt": {
                "enabled": False,
                "broker": "localhost",
                "port": 1883,
                "topic_prefix": "rigwatch"
            },
            "network_discovery": {
                # CIDRs to scan instead of the local interfaces, e.g. ["192.168.1.0/24"]
                "networks": []
            }
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dotted key"""
        keys = key.split('.')
        value = self._config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def set(self, key: str, value: Any):
        """Set configuration value by dotted key and persist"""
        keys = key.split('.')
        config = self._config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value
        self.save()


app_config = AppConfig()
