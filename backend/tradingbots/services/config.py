"""Configuration management and validation service."""

import copy
import os
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when config validation fails."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


class BotConfigurationError(ValueError):
    """Raised when a bot cannot be started from the given request.

    Covers unsupported bot types or platforms, malformed strategy parameters,
    invalid savings plans and missing exchange credentials. Raised before
    anything is registered.
    """


@dataclass(frozen=True)
class Setting:
    """A single configurable value: its type, default and constraints."""
    kind: str
    default: Any
    minimum: Optional[float] = None
    positive: bool = False
    options: Optional[Tuple[str, ...]] = None
    nullable: bool = False


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Sections are plain dicts, leaves are Settings
CONFIG_SCHEMA: Dict[str, Any] = {
    "database": {
        "url": Setting("str", "sqlite+aiosqlite:///./tradingbots.db"),
    },
    "bots": {
        "grid": {
            "interval_seconds": Setting("float", 10, positive=True),
        },
        "market_spread": {
            "interval_seconds": Setting("float", 10, positive=True),
            "stale_order_seconds": Setting("float", 60, positive=True),
            # null drains an open sell for as long as it takes
            "soft_shutdown_timeout_seconds": Setting("float", 3600, positive=True, nullable=True),
        },
        "arbitrage": {
            "check_interval_seconds": Setting("float", 30, positive=True),
        },
    },
    "activity_log": {
        "queue_size": Setting("int", 1000, minimum=0),
        "shutdown_timeout_seconds": Setting("float", 5.0, minimum=0),
    },
    "exchanges": {
        "sandbox": Setting("bool", False),
    },
    "savings_plans": {
        "enabled": Setting("bool", True),
    },
    "logging": {
        "level": Setting("str", "INFO", options=LOG_LEVELS),
        "format": Setting("str", "%(asctime)s %(levelname)s [%(name)s] %(message)s"),
        "bot_log_dir": Setting("str", None, nullable=True),
    },
}


def _defaults(schema: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: _defaults(entry) if isinstance(entry, dict) else entry.default
        for key, entry in schema.items()
    }


# Values used when a key is absent from the config file
DEFAULT_CONFIG: Dict[str, Any] = _defaults(CONFIG_SCHEMA)


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``overrides`` onto a copy of ``defaults``."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _is_kind(value: Any, kind: str) -> bool:
    # bool is an int subclass, never accept it for numeric settings
    if kind == "bool":
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if kind == "int":
        return isinstance(value, int)
    if kind == "float":
        return isinstance(value, (int, float))
    return isinstance(value, str)


def _check_setting(value: Any, setting: Setting, path: str) -> Iterator[ConfigValidationError]:
    if value is None and setting.nullable:
        return

    if not _is_kind(value, setting.kind):
        yield ConfigValidationError(path, f"Expected {setting.kind}, got {type(value).__name__}")
        return

    if setting.minimum is not None and value < setting.minimum:
        yield ConfigValidationError(path, f"Value {value} is below minimum {setting.minimum}")

    if setting.positive and value <= 0:
        yield ConfigValidationError(path, f"Value {value} must be greater than 0")

    if setting.options is not None and value not in setting.options:
        yield ConfigValidationError(path, f"Value '{value}' not in allowed options: {list(setting.options)}")


def _check_section(data: Any, schema: Dict[str, Any], path: str) -> Iterator[ConfigValidationError]:
    if not isinstance(data, dict):
        yield ConfigValidationError(path, f"Expected dict, got {type(data).__name__}")
        return

    for key, value in data.items():
        key_path = f"{path}.{key}" if path else key
        entry = schema.get(key)

        if entry is None:
            yield ConfigValidationError(key_path, f"Unknown configuration key '{key}'")
        elif isinstance(entry, dict):
            yield from _check_section(value, entry, key_path)
        else:
            yield from _check_setting(value, entry, key_path)


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. If None, uses backend/config.yaml.
        """
        if config_path is None:
            config_path = str(Path(__file__).parent.parent.parent / "config.yaml")

        self.config_path = config_path
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)

    def load_and_validate(self) -> Dict[str, Any]:
        """Load and validate the configuration file.

        Every key is optional; the file only needs to hold what differs from
        the defaults. On failure the previously loaded configuration is kept.

        Returns:
            Validated configuration dictionary, merged over the defaults.

        Raises:
            ConfigValidationException: If the file is not valid YAML or
                does not match the schema.
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = copy.deepcopy(DEFAULT_CONFIG)
            return self._config

        try:
            with open(self.config_path, 'r') as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        errors = list(_check_section({} if loaded is None else loaded, CONFIG_SCHEMA, ""))
        if errors:
            raise ConfigValidationException(errors)

        self._config = _merge(DEFAULT_CONFIG, loaded or {})
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dot-notation key (e.g. "bots.grid.interval_seconds")."""
        value = self._config
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value


# Global config service instance
config_service = ConfigService()
