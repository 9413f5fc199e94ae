"""
Configuration for Report Job Orchestrator

Settings are loaded from a YAML file into pydantic models. The database URL
may be overridden from the environment.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from .exceptions import ConfigurationError


DATABASE_URL_ENV = "REPORT_ORCHESTRATOR_DATABASE_URL"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DispatcherConfig(_Section):
    max_concurrent_jobs: int = Field(default=4, ge=1)
    max_jobs_per_department: Optional[int] = Field(default=None, ge=1)
    resync_interval: float = Field(default=30.0, gt=0)
    lease_check_interval: float = Field(default=15.0, gt=0)


class WorkerConfig(_Section):
    heartbeat_interval: float = Field(default=10.0, gt=0)
    lease_timeout: float = Field(default=60.0, gt=0)
    stall_timeout: float = Field(default=300.0, gt=0)
    drain_timeout: float = Field(default=30.0, ge=0)


class RetryConfig(_Section):
    base_delay: float = Field(default=5.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=300.0, ge=0)
    jitter: bool = False
    default_max_retries: int = Field(default=3, ge=0)


class SchedulerConfig(_Section):
    tick_interval: float = Field(default=60.0, gt=0)


class StorageConfig(_Section):
    provider: str = "local"
    base_dir: str = "./report-output"
    base_url: Optional[str] = None
    retention_hours: float = Field(default=168.0, gt=0)


class LoggingConfig(_Section):
    level: str = "INFO"
    structured: bool = True
    log_file: Optional[str] = None


class ReportTypeConfig(_Section):
    """One report type; ``data_source`` is a ``module:attribute`` path."""

    name: str
    data_source: str
    formats: List[str] = Field(default_factory=lambda: ["csv", "json"])
    max_retries: Optional[int] = Field(default=None, ge=0)
    batch_size: int = Field(default=500, ge=1)
    parameters_model: Optional[str] = None
    allowed_group_by: Optional[List[str]] = None
    allowed_measures: Optional[List[str]] = None
    description: Optional[str] = None


class OrchestratorConfig(_Section):
    """Top-level orchestrator configuration."""

    database_url: Optional[str] = None
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    report_types: List[ReportTypeConfig] = Field(default_factory=list)
    department_ids: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        """
        Validate a configuration mapping.

        Raises:
            ConfigurationError: If the mapping is not a valid configuration
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first.get("loc", ())) or "config"
            raise ConfigurationError(key, first.get("msg", str(e)))


def load_config(path: Optional[Union[str, Path]] = None, env: Optional[Dict[str, str]] = None) -> OrchestratorConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: YAML file; defaults apply when omitted
        env: Environment mapping used for overrides (defaults to ``os.environ``)

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle)
        except OSError as e:
            raise ConfigurationError("config", f"cannot read {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError("config", f"invalid YAML in {path}: {e}")
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError("config", f"{path} must contain a mapping")
        data = loaded or {}

    if env.get(DATABASE_URL_ENV):
        data["database_url"] = env[DATABASE_URL_ENV]

    return OrchestratorConfig.from_dict(data)
