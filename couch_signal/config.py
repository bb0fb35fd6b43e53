"""
Configuration loader for Couch Signal.
Supports YAML config files with sensible defaults.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "health_port": 8081,
        "max_message_bytes": 1024 * 1024,
    },
    "liveness": {
        "interval_seconds": 30,
    },
    "client": {
        "signaling_url": "ws://localhost:8080",
        "controller_id": "",
        "host_id": "",
        "ping_interval_seconds": 25,
        "ice_servers": [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ],
    },
    "logging": {
        "level": "INFO",
    },
}


def get_config_paths() -> list[Path]:
    """Get list of possible config file locations (in priority order)."""
    paths = []

    # 1. Current directory
    paths.append(Path.cwd() / "config.yaml")

    # 2. XDG config directory
    xdg_config = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg_config:
        paths.append(Path(xdg_config) / "couch-signal" / "config.yaml")

    # 3. ~/.config/couch-signal/
    paths.append(Path.home() / ".config" / "couch-signal" / "config.yaml")

    # 4. ~/.couch-signal.yaml
    paths.append(Path.home() / ".couch-signal.yaml")

    return paths


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from file.

    Args:
        config_path: Explicit config file path. If None, searches default locations.

    Returns:
        Configuration dictionary with defaults filled in.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    # Find config file
    if config_path:
        paths = [config_path]
    else:
        paths = get_config_paths()

    # First existing file wins
    for path in paths:
        if path.exists():
            try:
                with open(path, "r") as f:
                    file_config = yaml.safe_load(f) or {}
                config = deep_merge(config, file_config)
                logger.debug("Loaded config from %s", path)
                break
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load config from %s: %s", path, e)

    return config


def get_local_ip() -> str:
    """
    Get the local network IP address.

    Returns:
        Local IP address string (e.g., "192.168.1.100")
    """
    try:
        import netifaces
    except ImportError:
        return "127.0.0.1"

    interfaces = netifaces.interfaces()

    # Wired and wireless interfaces first, then anything but loopback
    priority = ["eth", "enp", "wlan", "wlp", "eno", "ens", ""]

    for prefix in priority:
        for iface in interfaces:
            if iface == "lo" or not iface.startswith(prefix):
                continue
            addrs = netifaces.ifaddresses(iface)
            for addr in addrs.get(netifaces.AF_INET, []):
                ip = addr.get("addr", "")
                if ip and not ip.startswith("127."):
                    return ip

    return "127.0.0.1"


class Config:
    """Configuration wrapper with easy access to settings."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config = load_config(config_path)

        # Resolve "auto" host
        if self._config["server"]["host"] == "auto":
            self._config["server"]["host"] = get_local_ip()

    @property
    def host(self) -> str:
        return self._config["server"]["host"]

    @property
    def port(self) -> int:
        return int(self._config["server"]["port"])

    @property
    def health_port(self) -> int:
        return int(self._config["server"]["health_port"])

    @property
    def max_message_bytes(self) -> int:
        return int(self._config["server"]["max_message_bytes"])

    @property
    def liveness_interval(self) -> float:
        """Seconds between liveness sweeps."""
        return float(self._config["liveness"]["interval_seconds"])

    @property
    def signaling_url(self) -> str:
        return self._config["client"]["signaling_url"]

    @property
    def controller_id(self) -> str:
        return self._config["client"]["controller_id"] or ""

    @property
    def host_id(self) -> str:
        return self._config["client"]["host_id"] or ""

    @property
    def ping_interval(self) -> float:
        return float(self._config["client"]["ping_interval_seconds"])

    @property
    def ice_servers(self) -> List[str]:
        return list(self._config["client"]["ice_servers"] or [])

    @property
    def log_level(self) -> str:
        return str(self._config["logging"]["level"]).upper()

    def set(self, section: str, key: str, value: Any) -> None:
        """Override one setting, e.g. from a command line flag."""
        self._config.setdefault(section, {})[key] = value

    def to_dict(self) -> Dict[str, Any]:
        """Return config as dictionary."""
        return copy.deepcopy(self._config)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = Config(config_path)
    return _config
