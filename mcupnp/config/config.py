"""Configuration management for mcupnp.

Provides centralized configuration with TOML support and validation,
loaded hierarchically from defaults → config file → environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from mcupnp.models import Config
from mcupnp.utils.exceptions import ConfigurationError
from mcupnp.utils.logging_config import setup_logging

CONFIG_FILENAME = "mcupnp.toml"

# Global configuration instance
_config_manager: ConfigManager | None = None

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    "MCUPNP_TCP_PORTS": "upnp.tcp_ports",
    "MCUPNP_UDP_PORTS": "upnp.udp_ports",
    "MCUPNP_REFRESH_INTERVAL_MINUTES": "upnp.refresh_interval_minutes",
    "MCUPNP_DESCRIPTION": "upnp.description",
    "MCUPNP_LEASE_DURATION": "upnp.lease_duration",
    "MCUPNP_SHUTDOWN_GRACE_SECONDS": "upnp.shutdown_grace_seconds",
    "MCUPNP_REQUEST_TIMEOUT": "upnp.request_timeout",
    "MCUPNP_DEVICE_URL": "upnp.device_url",
    "MCUPNP_DEDICATED_SERVER": "host.dedicated_server",
    "MCUPNP_LOG_LEVEL": "observability.log_level",
    "MCUPNP_LOG_FILE": "observability.log_file",
    "MCUPNP_STRUCTURED_LOGGING": "observability.structured_logging",
}

LIST_PATHS = frozenset({"upnp.tcp_ports", "upnp.udp_ports"})
STRING_PATHS = frozenset(
    {
        "upnp.description",
        "upnp.device_url",
        "observability.log_level",
        "observability.log_file",
    }
)


def parse_port_list(raw: str) -> list[int]:
    """Parse ``"25565, 25566"`` into ``[25565, 25566]``.

    Raises:
        ConfigurationError: If an item is not an integer

    """
    try:
        return [int(item.strip()) for item in raw.split(",") if item.strip()]
    except ValueError as e:
        msg = f"Invalid port list: {raw!r}"
        raise ConfigurationError(msg) from e


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for mcupnp.toml

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "mcupnp" / CONFIG_FILENAME,
            Path.home() / f".{CONFIG_FILENAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                logging.warning(
                    "Failed to load config file %s: %s", self.config_file, e
                )

            # Port lists may be written as comma-separated strings
            upnp_section = config_data.get("upnp", {})
            for key in ("tcp_ports", "udp_ports"):
                value = upnp_section.get(key)
                if isinstance(value, str):
                    upnp_section[key] = parse_port_list(value)

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}

        def _parse_env_value(raw: str, path: str) -> bool | int | float | str | list[int]:
            if path in LIST_PATHS:
                return parse_port_list(raw)
            if path in STRING_PATHS:
                return raw

            low = raw.lower()
            if low in {"true", "yes", "on"}:
                return True
            if low in {"false", "no", "off"}:
                return False
            try:
                if "." in raw:
                    return float(raw)
                return int(raw)
            except ValueError:
                return raw

        def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
            parts = path.split(".")
            cur = d
            for p in parts[:-1]:
                cur = cur.setdefault(p, {})
            cur[parts[-1]] = value

        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))

        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self) -> str:
        """Export the effective configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))

    def _setup_logging(self) -> None:
        """Set up logging from the observability section."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)

    _config_manager.config = _config_manager._load_config()  # noqa: SLF001
    _config_manager._setup_logging()  # noqa: SLF001
    return _config_manager.config


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config
    _config_manager._setup_logging()  # noqa: SLF001
