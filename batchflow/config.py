"""
Configuration management for batchflow.

Loads $BATCHFLOW_HOME/config.yaml (default ~/.config/batchflow):

    max_workers: 4
    max_attempts: 3
    backoff_seconds: 1.0
    backoff_multiplier: 2.0
    timeout_seconds: null
    fail_fast: false
    log_level: INFO
    log_format: pretty        # or structured
    log_file: null
    env_file: ~/.config/batchflow/.env
    profiles:
      default:
        env:
          JAVA_HOME: /opt/java

An env_file, if configured, is loaded into the process environment
(existing variables win).
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from batchflow.errors import ConfigError

HOME_ENV_VAR = "BATCHFLOW_HOME"
DEFAULT_HOME = "~/.config/batchflow"
CONFIG_FILE_NAME = "config.yaml"

_LOG_FORMATS = ("pretty", "structured")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_batchflow_home() -> Path:
    """Return the configuration directory ($BATCHFLOW_HOME or the default)."""
    return Path(os.environ.get(HOME_ENV_VAR, DEFAULT_HOME)).expanduser()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class BatchflowConfig:
    """Engine, logging and profile settings."""

    max_workers: int = 4
    max_attempts: int = 1
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    timeout_seconds: Optional[float] = None
    fail_fast: bool = False
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if not _is_int(self.max_workers) or self.max_workers < 1:
            raise ConfigError(f"max_workers must be a positive integer, got {self.max_workers!r}")
        if not _is_int(self.max_attempts) or self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be a positive integer, got {self.max_attempts!r}")
        if not _is_number(self.backoff_seconds) or self.backoff_seconds < 0:
            raise ConfigError(f"backoff_seconds must be >= 0, got {self.backoff_seconds!r}")
        if not _is_number(self.backoff_multiplier) or self.backoff_multiplier < 1:
            raise ConfigError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier!r}")
        if self.timeout_seconds is not None and (
            not _is_number(self.timeout_seconds) or self.timeout_seconds <= 0
        ):
            raise ConfigError(f"timeout_seconds must be > 0 or null, got {self.timeout_seconds!r}")
        if not isinstance(self.fail_fast, bool):
            raise ConfigError(f"fail_fast must be true or false, got {self.fail_fast!r}")
        if str(self.log_level).upper() not in _LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {self.log_level!r}")
        self.log_level = str(self.log_level).upper()
        if self.log_format not in _LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {', '.join(_LOG_FORMATS)}, got {self.log_format!r}")
        if self.profiles is None:
            self.profiles = {}
        if not isinstance(self.profiles, dict):
            raise ConfigError("profiles must be a mapping of profile name -> settings")
        for name, settings in self.profiles.items():
            if not isinstance(settings, dict):
                raise ConfigError(f"Profile {name}: settings must be a mapping")
            env = settings.get("env", {})
            if env is not None and not isinstance(env, dict):
                raise ConfigError(f"Profile {name}: env must be a mapping")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchflowConfig":
        """
        Create from a parsed config.yaml.

        Raises:
            ConfigError: If data has unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def profile_environments(self) -> dict[str, dict[str, str]]:
        """Profile name -> environment variables (values as strings)."""
        return {
            name: {str(k): str(v) for k, v in (settings.get("env") or {}).items()}
            for name, settings in self.profiles.items()
        }

    def get_log_file_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None


def default_config(home: Path) -> dict[str, Any]:
    """The config.yaml content written by `batchflow init`."""
    data = BatchflowConfig(env_file=str(home / ".env")).to_dict()
    data["profiles"] = {"default": {"env": {}}}
    return data


def load_config(config_path: Optional[Path] = None) -> BatchflowConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $BATCHFLOW_HOME/config.yaml

    Returns:
        BatchflowConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_batchflow_home() / CONFIG_FILE_NAME

    if not config_path.exists():
        raise FileNotFoundError(
            f"batchflow config.yaml not found at {config_path}. "
            "Run 'batchflow init' to create one."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping: {config_path}")

    config = BatchflowConfig.from_dict(data)
    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)
    return config
