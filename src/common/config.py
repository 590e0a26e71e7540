"""
Configuration management for Kiosk Screen Agent.
Loads settings from a YAML file with environment variable overrides.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "default_config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    'KSA_STORE_URL': 'store.url',
    'KSA_STORE_API_KEY': 'store.api_key',
    'KSA_STATE_FILE': 'state.path',
    'KSA_BASE_URL': 'display.base_url',
    'KSA_LOG_LEVEL': 'logging.level',
}


class Config:
    """Manages application configuration from YAML files."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses default_config.yaml
        """
        # An installed package may not ship config/; built-in defaults apply
        self._required = config_path is not None
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            if self._required:
                raise FileNotFoundError(f"Config file not found: {self.config_path}")
            self._config = {}
            self._apply_env_overrides()
            return

        with open(self.config_path, 'r') as f:
            self._config = yaml.safe_load(f) or {}

        self._apply_env_overrides()

    def _apply_env_overrides(self) -> None:
        """Override config values from environment variables."""
        for env_name, key in ENV_OVERRIDES.items():
            if env_name in os.environ:
                self.set(key, os.environ[env_name])

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'store.url')
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            >>> config = Config()
            >>> config.get('screen.heartbeat_interval')
            30
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'store.api_key')
            value: Value to set
        """
        keys = key.split('.')
        config = self._config

        # Navigate to the parent key
        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def save(self, path: Optional[str] = None) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Path to save to. If None, uses original config_path
        """
        save_path = Path(path) if path else self.config_path

        with open(save_path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False, indent=2)

    # Store

    @property
    def store_url(self) -> str:
        """Get identity store base URL."""
        return self.get('store.url', '')

    @property
    def store_api_key(self) -> str:
        """Get identity store API key."""
        return self.get('store.api_key', '')

    @property
    def store_table(self) -> str:
        return self.get('store.table', 'screens')

    @property
    def request_timeout(self) -> float:
        return float(self.get('store.request_timeout', 10))

    @property
    def realtime_heartbeat_interval(self) -> float:
        return float(self.get('realtime.heartbeat_interval', 25))

    @property
    def realtime_reconnect_delay(self) -> float:
        return float(self.get('realtime.reconnect_delay', 5))

    # Screen protocol timings

    @property
    def heartbeat_interval(self) -> float:
        """Get seconds between heartbeat/poll ticks."""
        return float(self.get('screen.heartbeat_interval', 30))

    @property
    def registration_attempts(self) -> int:
        """Get registration retry budget."""
        return int(self.get('screen.registration_attempts', 10))

    @property
    def registration_retry_delay(self) -> float:
        return float(self.get('screen.registration_retry_delay', 2))

    @property
    def health_check_interval(self) -> float:
        return float(self.get('health.check_interval', 5))

    @property
    def max_downtime(self) -> float:
        """Get seconds of total channel loss tolerated before a reload."""
        return float(self.get('health.max_downtime', 30))

    # Display

    @property
    def display_mode(self) -> str:
        """Get display mode (browser or console)."""
        return self.get('display.mode', 'browser')

    @property
    def base_url(self) -> str:
        """Get base URL that assigned routes are resolved against."""
        return self.get('display.base_url', '')

    @property
    def browser(self) -> str:
        return self.get('display.browser', 'chromium')

    @property
    def status_page(self) -> str:
        return self.get('display.status_page', '/tmp/kiosk-screen/status.html')

    # Local state

    @property
    def state_path(self) -> str:
        """Get path of the persisted local state file."""
        return self.get('state.path', '/var/lib/kiosk-screen/state.json')

    @property
    def log_level(self) -> str:
        return self.get('logging.level', 'INFO')

    def __repr__(self) -> str:
        """String representation."""
        return f"Config(path={self.config_path})"
