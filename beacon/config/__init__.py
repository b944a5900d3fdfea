"""Configuration management: YAML settings plus environment secrets."""

from .duration import DurationParseError, parse_duration, validate_duration_range
from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_config_file
from .models import (
    AppConfig,
    DispatchConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    ProvidersConfig,
    ScheduleDefinition,
    SchedulerConfig,
    SlackSettings,
    SMTPProviderConfig,
    WebhookSettings,
)

__all__ = [
    # Main loader functions
    "load_config",
    "parse_config_file",
    "load_environment_config",
    # Configuration models
    "AppConfig",
    "SchedulerConfig",
    "ScheduleDefinition",
    "DispatchConfig",
    "ProvidersConfig",
    "SMTPProviderConfig",
    "SlackSettings",
    "WebhookSettings",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Durations
    "parse_duration",
    "validate_duration_range",
    "DurationParseError",
    # Exceptions
    "ConfigurationError",
]
