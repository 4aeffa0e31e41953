"""Pydantic models for configuration schema."""

import json
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class OperationType(str, Enum):
    """Operation types orchestrated by daycycle."""
    SOD = "SOD"
    EOD = "EOD"


class ServiceDefinition(BaseModel):
    """A registered service with per-operation dependencies and limits."""

    id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=100)
    host: str = Field(..., min_length=1)
    type: str = Field("Application", min_length=1)
    instance_id: Optional[str] = Field(
        None, pattern="^(i|mi)-[0-9a-f]+$", description="SSM managed instance id of the host"
    )
    sod_dependencies: List[int] = Field(default_factory=list)
    eod_dependencies: List[int] = Field(default_factory=list)
    is_critical_for_sod: bool = True
    is_critical_for_eod: bool = True
    sod_timeout: int = Field(300, ge=1, le=86400)
    eod_timeout: int = Field(300, ge=1, le=86400)
    sod_order: int = 0
    eod_order: int = 0
    allow_parallel_execution: bool = True
    requires_manual_confirmation: bool = False
    is_enabled: bool = True

    @field_validator("sod_dependencies", "eod_dependencies", mode="before")
    @classmethod
    def decode_dependency_list(cls, v):
        """Accept a JSON-encoded integer array as stored by registry exports."""
        if v is None:
            return []
        if isinstance(v, str):
            text = v.strip()
            if not text:
                return []
            try:
                v = json.loads(text)
            except json.JSONDecodeError as e:
                raise ValueError(f"Dependency list is not valid JSON: {e}")
            if not isinstance(v, list):
                raise ValueError("Dependency list must decode to an array of integers")
        return v

    @model_validator(mode="after")
    def validate_no_self_dependency(self):
        """A service cannot depend on itself."""
        if self.id in self.sod_dependencies or self.id in self.eod_dependencies:
            raise ValueError(f"Service {self.name} lists itself as a dependency")
        return self

    def dependencies_for(self, operation_type: OperationType) -> List[int]:
        if OperationType(operation_type) == OperationType.SOD:
            return self.sod_dependencies
        return self.eod_dependencies

    def is_critical_for(self, operation_type: OperationType) -> bool:
        if OperationType(operation_type) == OperationType.SOD:
            return self.is_critical_for_sod
        return self.is_critical_for_eod

    def timeout_for(self, operation_type: OperationType) -> int:
        if OperationType(operation_type) == OperationType.SOD:
            return self.sod_timeout
        return self.eod_timeout

    def order_for(self, operation_type: OperationType) -> int:
        if OperationType(operation_type) == OperationType.SOD:
            return self.sod_order
        return self.eod_order


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    environment: str = Field("production", min_length=1)
    state_path: Optional[str] = Field(
        ".daycycle/state.json", description="State document path; null keeps state in memory"
    )
    log_dir: Optional[str] = ".daycycle/logs"


class OrchestrationConfig(BaseModel):
    """Worker pools, polling and synthetic delays."""

    max_workers: int = Field(10, ge=1, le=64)
    max_concurrent_operations: int = Field(4, ge=1, le=32)
    in_flight_poll_interval: float = Field(30.0, gt=0)
    in_flight_timeout: float = Field(1800.0, gt=0)
    dry_run_delay: float = Field(0.1, ge=0)
    scheduler_interval: float = Field(60.0, gt=0)

    @model_validator(mode="after")
    def validate_poll_window(self):
        """Poll interval must fit inside the in-flight ceiling."""
        if self.in_flight_poll_interval > self.in_flight_timeout:
            raise ValueError("in_flight_poll_interval cannot exceed in_flight_timeout")
        return self


class RemoteConfig(BaseModel):
    """Remote action transport configuration."""

    executor: str = Field("simulated", pattern="^(ssm|simulated)$")
    region: Optional[str] = None
    profile: Optional[str] = None
    document_name: str = Field("AWS-RunShellScript", min_length=1)
    commands: Dict[str, str] = Field(
        default_factory=lambda: {
            "Start": "systemctl start {name}",
            "Stop": "systemctl stop {name}",
            "Restart": "systemctl restart {name}",
            "HealthCheck": "systemctl is-active {name}",
        }
    )
    poll_interval: float = Field(2.0, gt=0)
    max_retries: int = Field(3, ge=0, le=10)

    @field_validator("commands")
    @classmethod
    def validate_commands(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Every action needs a command template."""
        missing = {"Start", "Stop", "Restart", "HealthCheck"} - set(v)
        if missing:
            raise ValueError(f"Missing command templates for: {', '.join(sorted(missing))}")
        return v


class ValidationConfig(BaseModel):
    """Pre-validation battery inputs."""

    filesystem_paths: List[str] = Field(default_factory=list)
    network_targets: List[str] = Field(
        default_factory=list, description="host:port pairs probed for reachability"
    )
    network_timeout: float = Field(3.0, gt=0)
    min_free_disk_percent: float = Field(10.0, ge=0, le=100)

    @field_validator("network_targets")
    @classmethod
    def validate_network_targets(cls, v: List[str]) -> List[str]:
        """Validate host:port format."""
        for target in v:
            host, sep, port = target.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"Network target must be host:port: {target}")
        return v


class EODConfig(BaseModel):
    """Batch host and commands used for End of Day processing."""

    batch_host: Optional[str] = None
    batch_instance_id: Optional[str] = Field(None, pattern="^(i|mi)-[0-9a-f]+$")
    command_timeout: int = Field(900, ge=1)
    commands: Dict[str, str] = Field(default_factory=dict)


class DaycycleSettings(BaseModel):
    """Top-level validated configuration document."""

    project: ProjectConfig
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    eod: EODConfig = Field(default_factory=EODConfig)
    services: List[ServiceDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_services(self):
        """Service ids and names must be unique."""
        seen_ids = set()
        seen_names = set()
        for service in self.services:
            if service.id in seen_ids:
                raise ValueError(f"Duplicate service id: {service.id}")
            if service.name in seen_names:
                raise ValueError(f"Duplicate service name: {service.name}")
            seen_ids.add(service.id)
            seen_names.add(service.name)
        return self
