"""
Configuration package for dbstream.

This package provides centralized configuration management with:
- Environment variable support
- Configuration file loading (YAML/JSON)
- Type-safe configuration classes
- Validation utilities
"""

from .settings import (
    AppConfig,
    KafkaConfig,
    DatabaseConfig,
    LoggingConfig,
    MonitoringConfig,
    ConsumerConfig,
    PollerConfig,
    Environment,
    PollerMode,
)

from .validator import (
    ConfigValidator,
    validate_configuration,
    mask_connection_string,
)

from .loader import (
    ConfigLoader,
    load_configuration,
    DEFAULT_CONFIG_YAML,
    DEFAULT_CONFIG_JSON,
)

__all__ = [
    # Main configuration classes
    "AppConfig",
    "KafkaConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "MonitoringConfig",
    "ConsumerConfig",
    "PollerConfig",
    "Environment",
    "PollerMode",

    # Validation utilities
    "ConfigValidator",
    "validate_configuration",
    "mask_connection_string",

    # Loading utilities
    "ConfigLoader",
    "load_configuration",
    "DEFAULT_CONFIG_YAML",
    "DEFAULT_CONFIG_JSON",
]
