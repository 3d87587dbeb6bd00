"""
Configuration management for schedule data storage.

This module provides a centralized configuration system for managing
data directory locations. The schedule database, the persistent job
store, firing history and logs all live under the configured base
data directory.
"""

import os
import json
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Default data directory locations
DEFAULT_DATA_DIR = os.path.expanduser("~/.cadence")
CONFIG_FILE = os.path.expanduser("~/.cadence/config.json")

# Environment variable to override data directory
ENV_DATA_DIR = "CADENCE_DATA_DIR"


class Config:
    """
    Configuration manager for schedule data storage.

    Data directory resolution order (highest to lowest priority):
    1. Explicitly passed data_dir parameter
    2. CADENCE_DATA_DIR environment variable
    3. Config file (~/.cadence/config.json)
    4. Default (~/.cadence)

    Directory structure:
        {data_dir}/
        ├── schedules.db             # Recurrence definitions
        ├── scheduler_jobs.db        # Pending one-shot jobs (APScheduler)
        ├── scheduler_history.json   # Firing outcomes
        ├── scheduler.pid            # PID of the running scheduler
        └── logs/
    """

    _instance: Optional['Config'] = None

    def __init__(self, data_dir: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            data_dir: Base directory for all data storage. If None, will be
                     resolved from environment variable, config file, or default.
        """
        self.data_dir = self._resolve_data_dir(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.schedules_db = self.data_dir / "schedules.db"
        self.job_store_db = self.data_dir / "scheduler_jobs.db"
        self.history_file = self.data_dir / "scheduler_history.json"
        self.pid_file = self.data_dir / "scheduler.pid"
        self.info_file = self.data_dir / "scheduler_info.json"
        self.logs_dir = self.data_dir / "logs"

        self.logs_dir.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Cadence data directory: {self.data_dir}")
        logger.debug(f"  Schedules DB: {self.schedules_db}")
        logger.debug(f"  Job store DB: {self.job_store_db}")

    def _resolve_data_dir(self, data_dir: Optional[str]) -> Path:
        """
        Resolve data directory from multiple sources.

        Priority:
        1. Explicitly passed data_dir
        2. CADENCE_DATA_DIR environment variable
        3. Config file
        4. Default
        """
        if data_dir:
            logger.debug(f"Using explicitly provided data_dir: {data_dir}")
            return Path(data_dir).expanduser().resolve()

        env_dir = os.getenv(ENV_DATA_DIR)
        if env_dir:
            logger.debug(f"Using data_dir from {ENV_DATA_DIR}: {env_dir}")
            return Path(env_dir).expanduser().resolve()

        config_dir = self._load_from_config_file()
        if config_dir:
            logger.debug(f"Using data_dir from config file: {config_dir}")
            return Path(config_dir).expanduser().resolve()

        logger.debug(f"Using default data_dir: {DEFAULT_DATA_DIR}")
        return Path(DEFAULT_DATA_DIR).expanduser().resolve()

    def _load_from_config_file(self) -> Optional[str]:
        """Load data directory from config file if it exists."""
        try:
            config_path = Path(CONFIG_FILE).expanduser()
            if config_path.exists():
                with open(config_path, 'r') as f:
                    config_data = json.load(f)
                    return config_data.get('data_dir')
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load config file: {e}")
        return None

    def save_config(self):
        """Save current configuration to config file."""
        config_path = Path(CONFIG_FILE).expanduser()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            json.dump({'data_dir': str(self.data_dir)}, f, indent=2)

        logger.info(f"Saved configuration to {config_path}")

    @classmethod
    def get_instance(cls, data_dir: Optional[str] = None) -> 'Config':
        """
        Get or create singleton Config instance.

        Args:
            data_dir: Base directory for data storage

        Returns:
            Config instance
        """
        if cls._instance is None or data_dir is not None:
            cls._instance = Config(data_dir)
        return cls._instance

    def __repr__(self):
        return f"Config(data_dir={self.data_dir})"


def get_config(data_dir: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Args:
        data_dir: Optional data directory to use. If provided, will create
                 a new Config instance with this directory.

    Returns:
        Config instance
    """
    return Config.get_instance(data_dir)


def set_data_directory(data_dir: str, save: bool = True) -> Config:
    """
    Set the data directory and optionally save to config file.

    Args:
        data_dir: Path to base data directory
        save: If True, save configuration to config file

    Returns:
        Config instance
    """
    config = Config(data_dir)
    Config._instance = config

    if save:
        config.save_config()

    return config
