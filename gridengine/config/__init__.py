"""
Configuration package.

Process settings from the environment, strategy definitions from YAML, and
the validator every strategy passes before it is stored.
"""

from gridengine.config.config import Settings
from gridengine.config.strategy_config import build_strategy, load_strategies, resolve_credential
from gridengine.config.validator import (
    ConfigurationError,
    StrategyValidator,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
    validate_or_raise,
)

__all__ = [
    "Settings",
    "build_strategy",
    "load_strategies",
    "resolve_credential",
    "ConfigurationError",
    "StrategyValidator",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    "validate_or_raise",
]
