"""
Configuration package.

Settings loaded from the environment and startup validation.
"""

from swapflow.config.config import Settings, env_bool
from swapflow.config.config_validator import (
    ConfigValidator,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
    validate_and_log,
    validate_config,
)

__all__ = [
    "Settings",
    "env_bool",
    "ConfigValidator",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    "validate_and_log",
    "validate_config",
]
