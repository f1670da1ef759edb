"""Configuration management for the TAXII ingestion pipeline."""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional

from taxii_pipeline.models import TAXIIServer

DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"
LOCAL_CONFIG_PATH = Path("config") / "local.yaml"


class Config:
    """Manages configuration loading and access."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Layers, later ones winning: packaged defaults, config/local.yaml in
        the working directory, `config_path`, environment variables.

        Args:
            config_path: Path to an extra config file

        Raises:
            FileNotFoundError: If config_path is given but does not exist
        """
        self.config = self._load(DEFAULT_CONFIG_PATH)

        if LOCAL_CONFIG_PATH.exists():
            self._merge_configs(self.config, self._load(LOCAL_CONFIG_PATH))

        if config_path:
            if not os.path.exists(config_path):
                raise FileNotFoundError(f"Config file not found: {config_path}")
            self._merge_configs(self.config, self._load(config_path))

        self._apply_env_overrides()

    @staticmethod
    def _load(path) -> Dict[str, Any]:
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _merge_configs(self, base: Dict, override: Dict):
        """Recursively merge override config into base config."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_configs(base[key], value)
            else:
                base[key] = value

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        if os.getenv('TAXII_PIPELINE_DB_PATH'):
            self.config.setdefault('database', {})['path'] = os.getenv('TAXII_PIPELINE_DB_PATH')
        if os.getenv('TAXII_PIPELINE_LOG_LEVEL'):
            self.config.setdefault('logging', {})['level'] = os.getenv('TAXII_PIPELINE_LOG_LEVEL')

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'polling.page_size')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_taxii_servers(self) -> List[TAXIIServer]:
        """Get configured TAXII servers, including disabled ones."""
        return [TAXIIServer.from_config(entry) for entry in self.config.get('taxii_servers') or []]

    def get_db_path(self) -> str:
        """Get database path."""
        return self.get('database.path', 'data/taxii_pipeline.db')
