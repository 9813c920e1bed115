# venice/config.py
"""
Configuration management for venice.

This module handles global configuration for the venice library: API access,
retry and rate limit behavior, webhook verification and logging.
Configuration can be set through code, environment variables, or
configuration files.
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Union
from dataclasses import dataclass, field

from .constants import (
    CONFIG_FILE_NAME, DEFAULT_API_ENDPOINT, DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_CONFIG_DIR, DEFAULT_INITIAL_BACKOFF, DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RATE_LIMIT_WAIT, DEFAULT_TIMEOUT, DEFAULT_WEBHOOK_TOLERANCE,
    ENV_VARS, MAX_API_RETRIES, RATE_LIMIT_HEADERS
)
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_LOG_FORMATS = ["simple", "context", "json"]
VALID_JITTER_MODES = ["none", "decorrelated"]


@dataclass
class VeniceConfig:
    """
    Global configuration for venice.

    Settings can be modified at runtime and are validated by :func:`configure`.

    Attributes:
        api_key: API authentication key
        api_endpoint: API base URL
        api_timeout: Per-attempt request timeout in seconds
        api_retries: Retries after the first attempt
        initial_backoff: Delay before the first retry in seconds
        max_backoff: Upper bound on any backoff in seconds
        backoff_multiplier: Exponential backoff growth factor
        jitter: Backoff jitter ("none", "decorrelated")
        rate_limit_retries: Separate retry budget for HTTP 429 (None = shared)
        max_rate_limit_wait: Longest server reset hint still worth waiting for
        auto_throttle: Sleep before sending when capacity is known exhausted
        max_throttle_wait: Upper bound on a pre-emptive throttle sleep
        rate_limit_headers: Overrides of rate limit header names
        verify_ssl: Verify TLS certificates
        user_agent: Custom user agent (None = library default)
        webhook_secret: Shared secret for webhook verification
        webhook_tolerance: Accepted webhook timestamp skew in seconds
        log_level: Logging level ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        log_format: Log format ("simple", "context", "json")
        log_to_file: Enable logging to file
        log_file: Log file path (None = ~/.venice/venice.log)
    """

    # API settings
    api_key: Optional[str] = None
    api_endpoint: str = DEFAULT_API_ENDPOINT
    api_timeout: float = DEFAULT_TIMEOUT
    verify_ssl: bool = True
    user_agent: Optional[str] = None

    # Retry settings
    api_retries: int = MAX_API_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: str = "decorrelated"

    # Rate limiting
    rate_limit_retries: Optional[int] = None
    max_rate_limit_wait: float = DEFAULT_MAX_RATE_LIMIT_WAIT
    auto_throttle: bool = False
    max_throttle_wait: float = DEFAULT_MAX_RATE_LIMIT_WAIT
    rate_limit_headers: Dict[str, str] = field(default_factory=dict)

    # Webhooks
    webhook_secret: Optional[str] = None
    webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE

    # Logging
    log_level: str = "WARNING"
    log_format: str = "simple"
    log_to_file: bool = False
    log_file: Optional[str] = None


# Global configuration instance
_config: Optional[VeniceConfig] = None

# Fields never written by save_config
_SECRET_FIELDS = ("webhook_secret",)


def configure(**kwargs) -> VeniceConfig:
    """
    Configure venice with custom settings.

    This function initializes or updates the global venice configuration.
    Settings are loaded from (in order of precedence):
    1. Keyword arguments passed to this function
    2. Environment variables
    3. Configuration files
    4. Default values

    Args:
        **kwargs: Configuration options to set. Can be any attribute of VeniceConfig.

    Returns:
        VeniceConfig: The updated configuration object

    Raises:
        ConfigurationError: If invalid configuration values are provided

    Example:
        >>> import venice
        >>> config = venice.configure(
        ...     api_retries=5,
        ...     auto_throttle=True,
        ...     log_level="INFO"
        ... )
        >>> print(config.api_retries)
        5
    """
    global _config

    if _config is None:
        _config = VeniceConfig()

        # Files first so the environment overrides them
        _update_from_config_file(_config)
        _update_from_env(_config)

    for key, value in kwargs.items():
        if hasattr(_config, key):
            setattr(_config, key, value)
        else:
            raise ConfigurationError(
                f"Unknown configuration option: {key}",
                config_key=key,
                invalid_value=str(value)
            )

    _validate_config(_config)
    _setup_logging(_config)

    return _config


def get_config() -> VeniceConfig:
    """
    Get the current global configuration.

    If no configuration has been set, this will initialize it with default values.

    Returns:
        VeniceConfig: The current configuration object
    """
    if _config is None:
        return configure()
    return _config


def reset_config():
    """
    Reset configuration to default values.

    Example:
        >>> import venice
        >>> venice.configure(api_retries=10)
        >>> venice.reset_config()
        >>> venice.get_config().api_retries
        3
    """
    global _config
    _config = None
    configure()


def save_config(path: Optional[Union[str, Path]] = None) -> Path:
    """
    Save current configuration to a file.

    The webhook secret is never written.

    Args:
        path: Path to save the configuration file. If None, saves to the default
              location (~/.venice/config.yaml)

    Returns:
        Path: The file that was written

    Raises:
        ConfigurationError: If the configuration cannot be saved
    """
    config = get_config()

    if path is None:
        path = DEFAULT_CONFIG_DIR / CONFIG_FILE_NAME
    else:
        path = Path(path)

    config_dict = {}
    for field_name in config.__dataclass_fields__:
        value = getattr(config, field_name)
        if value is not None and field_name not in _SECRET_FIELDS:
            config_dict[field_name] = value

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=True)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to save configuration: {e}") from e

    logger.debug(f"Configuration saved to {path}")
    return path


def load_config(path: Union[str, Path]) -> VeniceConfig:
    """
    Load configuration from a file.

    Args:
        path: Path to the configuration file

    Returns:
        VeniceConfig: The updated configuration object

    Raises:
        ConfigurationError: If the configuration file cannot be loaded or contains invalid values

    Example:
        >>> import venice
        >>> venice.load_config("venice.yaml")
    """
    path = Path(path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, 'r') as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load configuration from {path}: {e}") from e

    if config_data and not isinstance(config_data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")

    return configure(**(config_data or {}))


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


def _update_from_env(config: VeniceConfig):
    """Update configuration from environment variables."""
    env_mapping = {
        ENV_VARS["API_KEY"]: ("api_key", str),
        ENV_VARS["API_ENDPOINT"]: ("api_endpoint", str),
        ENV_VARS["API_TIMEOUT"]: ("api_timeout", float),
        ENV_VARS["API_RETRIES"]: ("api_retries", int),
        ENV_VARS["WEBHOOK_SECRET"]: ("webhook_secret", str),
        ENV_VARS["LOG_LEVEL"]: ("log_level", str),
        ENV_VARS["AUTO_THROTTLE"]: ("auto_throttle", bool),
        ENV_VARS["VERIFY_SSL"]: ("verify_ssl", bool),
    }

    for env_var, (config_attr, value_type) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                if value_type == bool:
                    value = _parse_bool(value)
                elif value_type in (int, float):
                    value = value_type(value)

                setattr(config, config_attr, value)
            except ValueError:
                logger.warning(f"Invalid value for {env_var}: {value}")


def _config_file_paths() -> List[Path]:
    return [
        DEFAULT_CONFIG_DIR / CONFIG_FILE_NAME,
        Path.cwd() / "venice.yaml",
    ]


def _update_from_config_file(config: VeniceConfig):
    """Update configuration from the first YAML config file found."""
    for config_path in _config_file_paths():
        if config_path.exists():
            try:
                with open(config_path, 'r') as f:
                    file_config = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}")
                continue

            if isinstance(file_config, dict):
                for key, value in file_config.items():
                    if hasattr(config, key):
                        setattr(config, key, value)
                    else:
                        logger.warning(f"Ignoring unknown option '{key}' in {config_path}")
            break


def _validate_config(config: VeniceConfig):
    """Validate configuration values."""
    config.log_level = str(config.log_level).upper()
    if config.log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level: {config.log_level}",
            config_key="log_level",
            invalid_value=config.log_level,
            valid_values=VALID_LOG_LEVELS
        )

    if config.log_format not in VALID_LOG_FORMATS:
        raise ConfigurationError(
            f"Invalid log_format: {config.log_format}",
            config_key="log_format",
            invalid_value=config.log_format,
            valid_values=VALID_LOG_FORMATS
        )

    if config.jitter not in VALID_JITTER_MODES:
        raise ConfigurationError(
            f"Invalid jitter: {config.jitter}",
            config_key="jitter",
            invalid_value=str(config.jitter),
            valid_values=VALID_JITTER_MODES
        )

    unknown_headers = set(config.rate_limit_headers or {}) - set(RATE_LIMIT_HEADERS)
    if unknown_headers:
        raise ConfigurationError(
            f"Unknown rate_limit_headers keys: {', '.join(sorted(unknown_headers))}",
            config_key="rate_limit_headers",
            invalid_value=", ".join(sorted(unknown_headers)),
            valid_values=sorted(RATE_LIMIT_HEADERS)
        )

    if not str(config.api_endpoint).startswith(("http://", "https://")):
        raise ConfigurationError(
            f"Invalid api_endpoint: {config.api_endpoint}",
            config_key="api_endpoint",
            invalid_value=str(config.api_endpoint)
        )

    # Validate numeric values
    if config.api_timeout <= 0:
        raise ConfigurationError("api_timeout must be positive", config_key="api_timeout")

    if config.api_retries < 0:
        raise ConfigurationError("api_retries must be non-negative", config_key="api_retries")

    if config.rate_limit_retries is not None and config.rate_limit_retries < 0:
        raise ConfigurationError(
            "rate_limit_retries must be non-negative", config_key="rate_limit_retries"
        )

    if config.initial_backoff < 0 or config.max_backoff < config.initial_backoff:
        raise ConfigurationError(
            "Backoff bounds must satisfy 0 <= initial_backoff <= max_backoff",
            config_key="max_backoff"
        )

    if config.backoff_multiplier < 1.0:
        raise ConfigurationError(
            "backoff_multiplier must be >= 1.0", config_key="backoff_multiplier"
        )

    if config.max_rate_limit_wait < 0 or config.max_throttle_wait < 0:
        raise ConfigurationError("Rate limit waits must be non-negative", config_key="max_rate_limit_wait")

    if config.webhook_tolerance <= 0:
        raise ConfigurationError("webhook_tolerance must be positive", config_key="webhook_tolerance")


def _setup_logging(config: VeniceConfig):
    """Setup logging based on configuration."""
    from .utils.logging import configure_logging

    log_file = config.log_file
    if config.log_to_file and log_file is None:
        log_file = str(DEFAULT_CONFIG_DIR / "venice.log")

    configure_logging(
        level=config.log_level,
        format_type=config.log_format,
        log_to_file=config.log_to_file,
        log_file=log_file
    )


class configure_session:
    """
    Context manager for temporary configuration changes.

    Args:
        **kwargs: Configuration options to temporarily set

    Example:
        >>> import venice
        >>> with venice.configure_session(api_retries=0, api_timeout=5):
        ...     client = venice.APIClient()
        ...     client.models.list()
        >>> # Configuration automatically restored here
    """

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.original_values: Dict[str, Any] = {}

    def __enter__(self) -> VeniceConfig:
        """Enter the context and apply temporary configuration."""
        config = get_config()

        for key in self.kwargs:
            if not hasattr(config, key):
                raise ConfigurationError(f"Unknown configuration option: {key}", config_key=key)

        for key, value in self.kwargs.items():
            self.original_values[key] = getattr(config, key)
            setattr(config, key, value)

        try:
            _validate_config(config)
        except ConfigurationError:
            self._restore(config)
            raise

        return config

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the context and restore original configuration."""
        self._restore(get_config())

    def _restore(self, config: VeniceConfig):
        for key, value in self.original_values.items():
            setattr(config, key, value)
        self.original_values = {}
