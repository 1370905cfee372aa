"""Configuration management for the GitOps controller."""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from gitops_controller.exceptions import ConfigurationError


class Config:
    """Manages controller configuration from file and environment variables."""

    DEFAULT_CONFIG_DIR = Path.home() / ".gitops-controller"
    DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"

    DEFAULT_CONFIG = {
        "kubeconfig": None,
        "cluster_context": None,
        "poll_interval": 180.0,
        "max_workers": 4,
        "api_concurrency": 8,
        "request_timeout": 30.0,
        "history_limit": 10,
        "apply_max_attempts": 5,
        "retry_base_delay": 1.0,
        "retry_max_delay": 60.0,
        "source_max_attempts": 5,
        "health_timeout": 300.0,
        "health_poll_interval": 2.0,
        "cache_dir": str(DEFAULT_CONFIG_DIR / "cache"),
        "state_file": str(DEFAULT_CONFIG_DIR / "state.yaml"),
        "applications_file": str(DEFAULT_CONFIG_DIR / "applications.yaml"),
        "log_level": "INFO",
    }

    # Environment variable overrides: variable name -> config key
    ENV_OVERRIDES = {
        "KUBECONFIG": "kubeconfig",
        "KUBE_CONTEXT": "cluster_context",
        "GITOPS_CONTROLLER_POLL_INTERVAL": "poll_interval",
        "GITOPS_CONTROLLER_MAX_WORKERS": "max_workers",
        "GITOPS_CONTROLLER_API_CONCURRENCY": "api_concurrency",
        "GITOPS_CONTROLLER_REQUEST_TIMEOUT": "request_timeout",
        "GITOPS_CONTROLLER_HISTORY_LIMIT": "history_limit",
        "GITOPS_CONTROLLER_HEALTH_TIMEOUT": "health_timeout",
        "GITOPS_CONTROLLER_CACHE_DIR": "cache_dir",
        "GITOPS_CONTROLLER_STATE_FILE": "state_file",
        "GITOPS_CONTROLLER_APPLICATIONS_FILE": "applications_file",
        "GITOPS_CONTROLLER_LOG_LEVEL": "log_level",
    }

    INT_KEYS = ("max_workers", "api_concurrency", "history_limit", "apply_max_attempts", "source_max_attempts")
    FLOAT_KEYS = (
        "poll_interval",
        "request_timeout",
        "retry_base_delay",
        "retry_max_delay",
        "health_timeout",
        "health_poll_interval",
    )

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file. Defaults to ~/.gitops-controller/config.yaml

        Raises:
            ConfigurationError: If the file or a value is invalid
        """
        self.config_path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from defaults, file and environment, in that order.

        Returns:
            Dictionary containing configuration values
        """
        config = self.DEFAULT_CONFIG.copy()

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(
                    f"Failed to load config from {self.config_path}: {e}", str(self.config_path)
                )
            if not isinstance(file_config, dict):
                raise ConfigurationError(
                    f"Config file {self.config_path} must contain a mapping", str(self.config_path)
                )
            unknown = sorted(set(file_config) - set(self.DEFAULT_CONFIG))
            if unknown:
                raise ConfigurationError(
                    f"Unknown configuration keys: {', '.join(unknown)}", str(self.config_path)
                )
            config.update(file_config)

        for env_name, key in self.ENV_OVERRIDES.items():
            if os.getenv(env_name):
                config[key] = os.getenv(env_name)

        return self._coerce(config)

    def _coerce(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Convert numeric values and check their ranges."""
        for key in self.INT_KEYS + self.FLOAT_KEYS:
            cast = int if key in self.INT_KEYS else float
            try:
                config[key] = cast(config[key])
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid value for '{key}': {config[key]!r}", str(self.config_path)
                )
            if config[key] <= 0 and key != "retry_base_delay":
                raise ConfigurationError(
                    f"'{key}' must be greater than zero", str(self.config_path)
                )
        config["log_level"] = str(config["log_level"]).upper()
        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value.

        Args:
            key: Configuration key
            value: Configuration value
        """
        if key not in self.DEFAULT_CONFIG:
            raise ConfigurationError(f"Unknown configuration key: {key}", str(self.config_path))
        self.config[key] = value
        self.config = self._coerce(self.config)

    def save(self) -> None:
        """Save configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.safe_dump(self.config, f, default_flow_style=False)

    @property
    def kubeconfig(self) -> Optional[str]:
        """Get kubeconfig path."""
        return self.get('kubeconfig')

    @property
    def cluster_context(self) -> Optional[str]:
        """Get cluster context."""
        return self.get('cluster_context')

    @property
    def poll_interval(self) -> float:
        return self.get('poll_interval')

    @property
    def max_workers(self) -> int:
        return self.get('max_workers')

    @property
    def api_concurrency(self) -> int:
        return self.get('api_concurrency')

    @property
    def request_timeout(self) -> float:
        return self.get('request_timeout')

    @property
    def history_limit(self) -> int:
        return self.get('history_limit')

    @property
    def cache_dir(self) -> Path:
        return Path(self.get('cache_dir')).expanduser()

    @property
    def state_file(self) -> Path:
        return Path(self.get('state_file')).expanduser()

    @property
    def applications_file(self) -> Path:
        return Path(self.get('applications_file')).expanduser()

    @property
    def log_level(self) -> str:
        return self.get('log_level')


# Global config instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[Path] = None) -> Config:
    """Get global configuration instance.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None or (config_path and Path(config_path) != _config_instance.config_path):
        _config_instance = Config(config_path)

    return _config_instance


def reset_config() -> None:
    """Drop the global configuration instance so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
