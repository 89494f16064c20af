"""Configuration loader.

This module provides configuration loading from YAML with automatic validation
against the Pydantic schema, plus a thread-safe singleton for shared access.

Usage:
    from graphclassifier.config import get_config

    # Get current config (singleton)
    config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from graphclassifier.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from graphclassifier.core.errors import ConfigLoadError, ConfigValidationError
from graphclassifier.core.logging import get_logger

logger = get_logger(__name__)

# Default config path - can be overridden via environment variable
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "GRAPHCLASSIFIER_CONFIG_PATH"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None


def _get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with specific field errors
    """
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        msg = err["msg"]
        err_type = err["type"]

        if err_type == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err_type == "int_type":
            messages.append(f"  - Field '{field_path}' must be an integer")
        elif err_type == "float_type":
            messages.append(f"  - Field '{field_path}' must be a number")
        else:
            messages.append(f"  - Field '{field_path}': {msg}")

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Parsed YAML as dictionary

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it or point {CONFIG_PATH_ENV} at an existing file"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            if data is None:
                return {}
            if not isinstance(data, dict):
                raise ConfigLoadError(
                    f"Configuration file must be a YAML mapping, got {type(data).__name__}"
                )
            return data
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        error_details = _format_validation_errors(e)
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{error_details}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade graphclassifier or downgrade the config."
        )

    return config


def load_config(path: Path | None = None, missing_ok: bool = False) -> AppConfig:
    """Load and validate configuration from YAML file.

    This function always loads fresh from disk. For cached access, use
    get_config() instead.

    Args:
        path: Optional path to config file. If not provided, uses
              GRAPHCLASSIFIER_CONFIG_PATH env var or default.
        missing_ok: Return built-in defaults when the file does not exist

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or _get_config_path()

    if missing_ok and not config_path.exists():
        logger.info("Configuration file not found, using defaults", path=str(config_path))
        return AppConfig()

    logger.debug("Loading configuration", path=str(config_path))

    data = _load_yaml(config_path)
    config = _validate_config(data, config_path)

    logger.info(
        "Configuration loaded successfully",
        path=str(config_path),
        schema_version=config.schema_version,
        concurrency=config.engine.concurrency,
        vocabulary_terms=len(config.graph.vocabulary.projects)
        + len(config.graph.vocabulary.topics),
    )

    return config


def get_config(missing_ok: bool = False) -> AppConfig:
    """Get the current configuration singleton.

    On first call, loads configuration from disk. Subsequent calls return
    the cached config.

    Thread-safe: protected by _config_lock.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config

    with _config_lock:
        if _current_config is None:
            _current_config = load_config(_get_config_path(), missing_ok=missing_ok)
        return _current_config


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without loading it into the singleton.

    Useful for CLI validation commands and testing.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or _get_config_path()

    try:
        config = load_config(config_path)
        vocabulary = config.graph.vocabulary
        return (
            True,
            f"Configuration valid (schema version {config.schema_version})\n"
            f"  - concurrency {config.engine.concurrency}\n"
            f"  - {len(vocabulary.projects)} vocabulary projects\n"
            f"  - {len(vocabulary.topics)} vocabulary topics\n"
            f"  - {len(config.graph.personal_domains)} personal domains\n"
            f"  - rule store at {config.rule_store.db_path}",
        )
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config
    with _config_lock:
        _current_config = None
