"""Configuration loading and validation."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..workflow.models import Workflow

logger = logging.getLogger(__name__)


class StorageConfig(BaseModel):
    """Where workflow, enrollment and lease documents live."""
    root: Path = Field(default=Path(".crm-automation"))
    records_file: str = "records.json"  # Local record source for the CLI


class RetryConfig(BaseModel):
    """Retry policy for transient action failures."""
    max_attempts: int = 3
    backoff_initial: int = 60
    backoff_max: int = 3600
    backoff_multiplier: int = 2

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_attempts must be >= 1, got {v}")
        return v

    @model_validator(mode="after")
    def validate_backoff(self) -> "RetryConfig":
        if self.backoff_initial > self.backoff_max:
            raise ValueError(
                f"backoff_initial ({self.backoff_initial}) cannot exceed backoff_max ({self.backoff_max})"
            )
        return self


class SchedulerConfig(BaseModel):
    """Scheduler pass settings."""
    poll_interval: int = 60
    batch_size: int = 100
    max_pass_seconds: float = 55.0  # Stop picking up new work after this
    date_triggers_enabled: bool = True


class WorkerConfig(BaseModel):
    """Worker pool and lease settings."""
    count: int = 4
    lease_ttl_seconds: int = 300

    @field_validator("count")
    @classmethod
    def validate_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"worker count must be >= 1, got {v}")
        return v


class DispatchConfig(BaseModel):
    """Action dispatch settings."""
    timeout_seconds: float = 30.0


class ExecutorConfig(BaseModel):
    """Step graph executor settings."""
    loop_guard_multiplier: int = 2
    loop_guard_min_hops: int = 10


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    use_file: bool = True
    use_json: bool = False


class EngineConfig(BaseSettings):
    """Main engine configuration."""
    workspace: Path = Field(default=Path("."))
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        env_prefix = "CRM_AUTOMATION_"
        env_nested_delimiter = "__"
        extra = "allow"

    @property
    def storage_root(self) -> Path:
        root = self.storage.root
        return root if root.is_absolute() else self.workspace / root


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> EngineConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    return EngineConfig(**_expand_env_vars(data))


def load_config(config_path: Path = Path("config/crm-automation.yaml")) -> EngineConfig:
    """Load engine configuration from a YAML file.

    Returns the cached config while the file's mtime is unchanged. A missing
    file yields the defaults (still overridable through CRM_AUTOMATION_* env vars).
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return EngineConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else EngineConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def load_workflow_file(path: Path) -> Workflow:
    """Parse a workflow definition from a YAML or JSON file.

    Schema problems raise pydantic's ValidationError; completeness is only
    checked at activation.
    """
    with open(path) as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Workflow file {path} must contain a mapping, got {type(data).__name__}")
    return Workflow.model_validate(_expand_env_vars(data))


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` values in config data."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
