"""
Configuration management for the house screen reconciler.
Loads and validates settings from YAML files.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


# Environment variable -> dotted config key
ENV_OVERRIDES = {
    'HSR_BACKEND_URL': 'backend.base_url',
    'HSR_SESSION_ID': 'session.id',
    'HSR_STATE_DIR': 'state.dir',
    'HSR_DISPLAY_WIDTH': 'display.width',
    'HSR_DISPLAY_HEIGHT': 'display.height',
}

# Overrides that must be parsed as integers
INT_OVERRIDES = {'display.width', 'display.height'}


class Config:
    """Manages application configuration from YAML files."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses default_config.yaml
        """
        if config_path is None:
            # Default to config/default_config.yaml in project root
            project_root = Path(__file__).parent.parent.parent
            config_path = project_root / "config" / "default_config.yaml"

        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            self._config = yaml.safe_load(f) or {}

        self._apply_env_overrides()

    def _apply_env_overrides(self) -> None:
        """Override config values from environment variables."""
        for env_name, key in ENV_OVERRIDES.items():
            if env_name not in os.environ:
                continue
            value: Any = os.environ[env_name]
            if key in INT_OVERRIDES:
                try:
                    value = int(value)
                except ValueError:
                    raise ValueError(f"{env_name} must be an integer, got {value!r}")
            self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'backend.base_url')
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            >>> config = Config()
            >>> config.get('reconciler.max_attempts')
            10
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
            key: Configuration key (e.g., 'session.id')
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

    @property
    def backend_url(self) -> str:
        """Get provisioning backend base URL."""
        return self.get('backend.base_url', '')

    @property
    def backend_timeout(self) -> float:
        """Get per-request timeout in seconds."""
        return float(self.get('backend.timeout', 10))

    @property
    def cache_ttl(self) -> float:
        """Get how long a non-forced fetch may reuse the last graph."""
        return float(self.get('backend.cache_ttl', 5))

    @property
    def session_id(self) -> str:
        """Get the session the reconciler acts for."""
        return self.get('session.id', '')

    @property
    def default_domain(self) -> str:
        """Get the content domain used when the session does not name one."""
        return str(self.get('session.default_domain', '1'))

    @property
    def guest_sessions(self) -> Dict[str, str]:
        """Get the domain -> template account session map."""
        return {str(k): v for k, v in (self.get('content.guest_sessions') or {}).items()}

    @property
    def player_environment_name(self) -> str:
        """Get the reserved name of browser-embedded player environments."""
        return self.get('reconciler.player_environment_name', 'Web player')

    @property
    def master_ip(self) -> str:
        """Get the address that marks the master environment."""
        return self.get('reconciler.master_ip', '127.0.0.1')

    @property
    def state_dir(self) -> Path:
        """Get the directory holding the per-device state file."""
        return Path(os.path.expanduser(self.get('state.dir', '~/.house_sync')))

    @property
    def ipc_enabled(self) -> bool:
        """Check if events are mirrored over ZeroMQ."""
        return bool(self.get('ipc.enabled', False))

    def __repr__(self) -> str:
        """String representation."""
        return f"Config(path={self.config_path})"


# Global config instance (can be imported by other modules)
_global_config: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Args:
        config_path: Path to config file (only used on first call)

    Returns:
        Config instance
    """
    global _global_config

    if _global_config is None:
        _global_config = Config(config_path)

    return _global_config
