"""Configuration management for daycycle."""

from .models import (
    OperationType,
    ServiceDefinition,
    ProjectConfig,
    OrchestrationConfig,
    RemoteConfig,
    ValidationConfig,
    EODConfig,
    DaycycleSettings,
)
from .parser import Config, ConfigValidationError, ServiceRegistry

__all__ = [
    "OperationType",
    "ServiceDefinition",
    "ProjectConfig",
    "OrchestrationConfig",
    "RemoteConfig",
    "ValidationConfig",
    "EODConfig",
    "DaycycleSettings",
    "Config",
    "ConfigValidationError",
    "ServiceRegistry",
]
