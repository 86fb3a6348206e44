"""Configuration management for todo-sync.

Three layers:

* ``SyncSettings`` - validated engine tuning (see ``sync.settings``), stored
  in the ``sync`` section of ``config.yaml``;
* ``BackendSettings`` - backend endpoint and keys read from the environment
  or a ``.env`` file (pydantic-settings), never written to disk by us;
* ``ConfigModel`` - the YAML-backed application config tying them together.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .sync.settings import SyncSettings


logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.todo_sync"


class BackendSettings(BaseSettings):
    """Hosted backend connection settings (``SUPABASE_*`` environment variables)."""

    model_config = SettingsConfigDict(env_prefix="SUPABASE_", env_file=".env", extra="ignore")

    url: Optional[str] = None
    anon_key: Optional[str] = None
    access_token: Optional[str] = None
    tasks_table: str = "tasks"
    cursor_column: str = "revision"

    @property
    def configured(self) -> bool:
        return bool(self.url and self.anon_key)


@dataclass
class ConfigModel:
    """Global configuration model for todo-sync."""

    user_id: str = "local-user"
    data_dir: str = DEFAULT_DATA_DIR
    db_file: str = "todo_sync.db"
    log_level: str = "WARNING"
    sync: SyncSettings = field(default_factory=SyncSettings)

    def __post_init__(self):
        self.data_dir = os.path.expanduser(self.data_dir)
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        if isinstance(self.sync, dict):
            self.sync = SyncSettings(**self.sync)

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        data = {
            "user_id": self.user_id,
            "data_dir": self.data_dir,
            "db_file": self.db_file,
            "log_level": self.log_level,
            "sync": self.sync.model_dump(mode="json"),
        }
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML."""
        data: Dict[str, Any] = yaml.safe_load(yaml_str) or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**known)

    def get_db_path(self) -> Path:
        return Path(self.data_dir) / self.db_file

    def get_config_path(self) -> Path:
        return Path(self.data_dir) / "config.yaml"


def default_data_dir() -> str:
    return os.environ.get("TODO_SYNC_HOME", DEFAULT_DATA_DIR)


class Config:
    """Configuration manager for todo-sync."""

    _instance: Optional[ConfigModel] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> ConfigModel:
        """Load configuration from file or create default."""
        if cls._instance is not None and config_path is None:
            return cls._instance

        config = ConfigModel(data_dir=default_data_dir())

        if config_path is None:
            config_path = config.get_config_path()

        if config_path.exists():
            try:
                config = ConfigModel.from_yaml(config_path.read_text())
                logger.debug(f"Loaded configuration from {config_path}")
            except (yaml.YAMLError, TypeError, ValueError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}; using defaults")
        else:
            cls.save(config, config_path)
            logger.info(f"Created default configuration at {config_path}")

        cls._instance = config
        return config

    @classmethod
    def save(cls, config: ConfigModel, config_path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = config.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Write with atomic rename
        temp_file = config_path.with_suffix(".tmp")
        temp_file.write_text(config.to_yaml())
        temp_file.replace(config_path)
        logger.debug(f"Configuration saved to {config_path}")

    @classmethod
    def get(cls) -> ConfigModel:
        """Get the current configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reload(cls) -> ConfigModel:
        """Reload configuration from file."""
        cls._instance = None
        return cls.load()


def get_config() -> ConfigModel:
    """Get the current configuration."""
    return Config.get()


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file."""
    return Config.load(config_path)


def save_config(config: ConfigModel, config_path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    Config.save(config, config_path)
