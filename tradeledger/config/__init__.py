"""Configuration management and validation."""

from .validator import (
    CONFIG_SCHEMA,
    ConfigValidator,
    ConfigValidationError,
    Setting,
    ValidationResult,
    default_settings,
    load_and_validate_config,
    read_settings_file,
    validate_config,
)

__all__ = [
    "CONFIG_SCHEMA",
    "ConfigValidator",
    "ConfigValidationError",
    "Setting",
    "ValidationResult",
    "default_settings",
    "load_and_validate_config",
    "read_settings_file",
    "validate_config",
]
