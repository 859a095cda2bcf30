"""Configuration management for cfn-deploy."""

from .models import (
    ApplicationConfig,
    CompanionFileConfig,
    EnvironmentConfig,
    OutputReference,
    ProjectConfig,
    StageConfig,
    format_parameter_value,
)
from .parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE

__all__ = [
    "ApplicationConfig",
    "CompanionFileConfig",
    "EnvironmentConfig",
    "OutputReference",
    "ProjectConfig",
    "StageConfig",
    "format_parameter_value",
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
]
