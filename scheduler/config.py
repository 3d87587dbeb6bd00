"""
Scheduler configuration management.

Handles loading, saving, and validating scheduler configuration: the
wall-clock timezone schedules are interpreted in, the staleness policy
for late firings, and how messages are generated and delivered.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from config import get_config
from content_source import DEFAULT_BASE_URL, DEFAULT_MODEL
from transport import DEFAULT_MAX_PART_LENGTH, DEFAULT_TIMEOUT

load_dotenv()

logger = logging.getLogger(__name__)

STALENESS_POLICIES = ('elapsed', 'time_of_day')
TRANSPORT_KINDS = ('log', 'http')


@dataclass
class StalenessConfig:
    """Admission check for late firings."""
    policy: str = "elapsed"  # 'elapsed' or 'time_of_day'
    tolerance_minutes: int = 120


@dataclass
class TransportConfig:
    """Message delivery configuration."""
    kind: str = "log"  # 'log' (dry run) or 'http'
    url: Optional[str] = None  # SMS gateway endpoint for 'http'
    api_key_env: str = "CADENCE_GATEWAY_API_KEY"  # env var holding the gateway token
    sender: Optional[str] = None
    max_part_length: int = DEFAULT_MAX_PART_LENGTH
    timeout: int = DEFAULT_TIMEOUT

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


@dataclass
class ContentConfig:
    """Generated message configuration."""
    api_key_env: str = "OPENAI_API_KEY"
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    max_length: int = 100

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


def _get_default_log_file() -> str:
    """Get default log file path from environment or data directory."""
    if os.environ.get('CADENCE_LOG_DIR'):
        return str(Path(os.environ['CADENCE_LOG_DIR']).expanduser() / "scheduler.log")
    return str(get_config().logs_dir / "scheduler.log")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class ExecutorConfig:
    """Job executor configuration."""
    max_workers: int = 5


class SchedulerConfig:
    """
    Scheduler configuration manager.

    Loads and manages scheduler configuration from JSON file,
    with support for validation and defaults.

    Configuration path priority:
    1. Explicit config_path argument
    2. CADENCE_SCHEDULER_CONFIG environment variable
    3. Default: <data dir>/scheduler_config.json
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize scheduler configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get('CADENCE_SCHEDULER_CONFIG'):
            self.config_path = Path(os.environ['CADENCE_SCHEDULER_CONFIG']).expanduser()
        else:
            self.config_path = get_config().data_dir / "scheduler_config.json"

        self.timezone: str = "UTC"
        self.staleness = StalenessConfig()
        self.transport = TransportConfig()
        self.content = ContentConfig()
        self.logging = LoggingConfig()
        self.executor = ExecutorConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        # Environment wins over the file
        if os.environ.get('CADENCE_TIMEZONE'):
            self.timezone = os.environ['CADENCE_TIMEZONE']

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            self.timezone = data.get('timezone', self.timezone)
            if 'staleness' in data:
                self.staleness = StalenessConfig(**data['staleness'])
            if 'transport' in data:
                self.transport = TransportConfig(**data['transport'])
            if 'content' in data:
                self.content = ContentConfig(**data['content'])
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])
            if 'executor' in data:
                self.executor = ExecutorConfig(**data['executor'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'timezone': self.timezone,
            'staleness': asdict(self.staleness),
            'transport': asdict(self.transport),
            'content': asdict(self.content),
            'logging': asdict(self.logging),
            'executor': asdict(self.executor)
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    @property
    def zone(self) -> ZoneInfo:
        """Wall-clock zone schedules are interpreted in"""
        return ZoneInfo(self.timezone)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Unknown timezone '{self.timezone}'")

        if self.staleness.policy not in STALENESS_POLICIES:
            errors.append(f"staleness.policy must be one of {', '.join(STALENESS_POLICIES)}")
        if self.staleness.tolerance_minutes <= 0:
            errors.append("staleness.tolerance_minutes must be positive")

        if self.transport.kind not in TRANSPORT_KINDS:
            errors.append(f"transport.kind must be one of {', '.join(TRANSPORT_KINDS)}")
        elif self.transport.kind == 'http' and not self.transport.url:
            errors.append("'http' transport requires 'url'")
        if self.transport.max_part_length <= 0:
            errors.append("transport.max_part_length must be positive")

        if self.executor.max_workers <= 0:
            errors.append("executor.max_workers must be positive")

        return errors

    def __repr__(self):
        return f"SchedulerConfig(timezone={self.timezone}, path={self.config_path})"
