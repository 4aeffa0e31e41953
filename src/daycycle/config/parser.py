"""Loading of daycycle.yaml into validated settings, and the service registry."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

import yaml
from pydantic import BaseModel, ValidationError

from .models import (
    DaycycleSettings,
    EODConfig,
    OrchestrationConfig,
    ProjectConfig,
    RemoteConfig,
    ServiceDefinition,
    ValidationConfig,
)

# Sections validated on their own so one bad section does not hide another
SECTION_MODELS: Dict[str, Type[BaseModel]] = {
    "project": ProjectConfig,
    "orchestration": OrchestrationConfig,
    "remote": RemoteConfig,
    "validation": ValidationConfig,
    "eod": EODConfig,
}


class ConfigValidationError(Exception):
    """The configuration document is unreadable or fails validation.

    Each entry of ``errors`` has a ``loc`` path into the document and a ``msg``.
    """

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def __str__(self) -> str:
        lines = [self.message]
        if self.errors:
            lines.append("")
        for error in self.errors:
            path = " -> ".join(str(part) for part in error.get("loc", []))
            lines.append(f"  • {path}: {error.get('msg', 'Unknown error')}")
        return "\n".join(lines)


def _located(prefix: Sequence[Any], error: ValidationError) -> List[Dict]:
    return [{"loc": [*prefix, *item["loc"]], "msg": item["msg"]} for item in error.errors()]


def collect_errors(data: Any) -> List[Dict]:
    """Validate each section and service independently.

    Returns:
        Every problem found, empty when the document is valid section by section
    """
    if not isinstance(data, dict):
        return [{"loc": [], "msg": "Configuration must be a mapping"}]

    errors = []
    if "project" not in data:
        errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})

    for section, model in SECTION_MODELS.items():
        if section in data:
            try:
                model.model_validate(data[section] or {})
            except ValidationError as e:
                errors.extend(_located([section], e))

    services = data.get("services", [])
    if not isinstance(services, list):
        errors.append({"loc": ["services"], "msg": "Services must be a list"})
        return errors

    for index, entry in enumerate(services):
        try:
            ServiceDefinition.model_validate(entry)
        except ValidationError as e:
            errors.extend(_located(["services", index], e))
    return errors


class Config:
    """daycycle.yaml, validated into DaycycleSettings."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else None
        self.data: Dict[str, Any] = {}
        self.settings: Optional[DaycycleSettings] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Validate an in-memory document."""
        config = cls()
        config.data = data
        config._validate()
        return config

    def load(self) -> "Config":
        """Read and validate the YAML file.

        Returns:
            Self for method chaining

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigValidationError: If the YAML is malformed or invalid
        """
        if self.config_path is None or not self.config_path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            self.data = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        self._validate()
        return self

    def _validate(self) -> None:
        errors = collect_errors(self.data)
        if errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(errors)} error(s)", errors
            )

        try:
            self.settings = DaycycleSettings.model_validate(self.data)
        except ValidationError as e:
            # Cross-section rules such as unique service names
            raise ConfigValidationError("Configuration validation failed", _located([], e))

    @property
    def project(self) -> ProjectConfig:
        return self.settings.project

    @property
    def orchestration(self) -> OrchestrationConfig:
        return self.settings.orchestration

    @property
    def remote(self) -> RemoteConfig:
        return self.settings.remote

    @property
    def validation(self) -> ValidationConfig:
        return self.settings.validation

    @property
    def eod(self) -> EODConfig:
        return self.settings.eod

    @property
    def services(self) -> List[ServiceDefinition]:
        return self.settings.services

    def to_dict(self) -> Dict:
        return self.settings.model_dump(mode="json") if self.settings else {}


class ServiceRegistry:
    """Read-only view of the registered service definitions."""

    def __init__(self, services: List[ServiceDefinition]):
        self._services = list(services)
        self._by_id = {service.id: service for service in self._services}
        self._by_name = {service.name: service for service in self._services}

    @classmethod
    def from_config(cls, config: Config) -> "ServiceRegistry":
        return cls(config.services)

    def get_services(self) -> List[ServiceDefinition]:
        """Every registered service, enabled or not, in configuration order."""
        return list(self._services)

    def get_enabled_services(self) -> List[ServiceDefinition]:
        return [service for service in self._services if service.is_enabled]

    def get_service(self, service_id: int) -> Optional[ServiceDefinition]:
        return self._by_id.get(service_id)

    def get_service_by_name(self, name: str) -> Optional[ServiceDefinition]:
        return self._by_name.get(name)
