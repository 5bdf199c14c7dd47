"""
Configuration Loader for Strategy Arena
Loads YAML configuration files based on environment
"""

import os
import logging
import yaml
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class Config:
    """Configuration singleton that loads and merges YAML configs"""

    _instance = None
    _config: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_config()
        return cls._instance

    def _load_config(self):
        """Load configuration from YAML files"""
        config_dir = Path(__file__).parent / "config"
        env = os.getenv("ARENA_ENV", "development")

        # Load default config
        default_path = config_dir / "default.yaml"
        if default_path.exists():
            with open(default_path, 'r') as f:
                self._config = yaml.safe_load(f) or {}

        # Load environment-specific config and merge
        env_path = config_dir / f"{env}.yaml"
        if env_path.exists():
            with open(env_path, 'r') as f:
                env_config = yaml.safe_load(f) or {}
                self._deep_merge(self._config, env_config)

        logger.info(f"Loaded configuration for environment: {env}")

    def _deep_merge(self, base: dict, override: dict):
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, path: str, default=None) -> Any:
        """
        Get config value using dot notation.
        Example: config.get('simulator.fee_rate', 0.001)
        """
        keys = path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def reload(self):
        """Reload configuration from files"""
        self._config = {}
        self._load_config()

    # Convenience properties for common config sections
    @property
    def history(self) -> Dict[str, Any]:
        return self.get_section('history')

    @property
    def stages(self) -> Dict[str, Any]:
        return self.get_section('stages')

    @property
    def series(self) -> Dict[str, Any]:
        return self.get_section('series')

    @property
    def simulator(self) -> Dict[str, Any]:
        return self.get_section('simulator')

    @property
    def session(self) -> Dict[str, Any]:
        return self.get_section('session')

    @property
    def api(self) -> Dict[str, Any]:
        return self.get_section('api')


# Singleton instance
config = Config()
