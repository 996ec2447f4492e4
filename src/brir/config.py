"""Configuration model and YAML loading for the pipeline enforcer."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .memory.schema import DEFAULT_FAILURE_MARKERS

DEFAULT_CONFIG_NAME = "brir.yaml"

DEFAULT_SUBAGENT_TOOLS = [
    "read",
    "write",
    "edit",
    "bash",
    "glob",
    "grep",
    "todowrite",
    "todoread",
    "apply_patch",
    "pipeline_advance",
    "pipeline_status",
]


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be read or validated."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _lowercase(values: List[str]) -> List[str]:
    return [value.strip().lower() for value in values if value.strip()]


class PipelineSettings(_Section):
    """Workflow rules for orchestrator sessions."""

    orchestrator_agent: str = "orchestrator"
    max_iterations: int = Field(default=3, ge=0, le=3)
    dispatch_tool: str = "task"
    shell_tools: List[str] = Field(default_factory=lambda: ["bash"])
    mutation_tools: List[str] = Field(default_factory=lambda: ["write", "edit"])
    failure_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_FAILURE_MARKERS))

    @field_validator("dispatch_tool")
    @classmethod
    def _normalise_tool(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("shell_tools", "mutation_tools")
    @classmethod
    def _normalise_tools(cls, value: List[str]) -> List[str]:
        return _lowercase(value)


class SubagentSettings(_Section):
    """Tool allow-list applied to sessions never registered by a user turn."""

    allowed_tools: List[str] = Field(default_factory=lambda: list(DEFAULT_SUBAGENT_TOOLS))

    @field_validator("allowed_tools")
    @classmethod
    def _normalise_tools(cls, value: List[str]) -> List[str]:
        return _lowercase(value)


class ProbeSettings(_Section):
    """Bounds for the version-control probe."""

    timeout_seconds: float = Field(default=5.0, gt=0)


class SessionSettings(_Section):
    """Retention policy for the in-memory session registry."""

    max_sessions: int = Field(default=512, ge=1)
    idle_ttl_seconds: float | None = Field(default=24 * 60 * 60, gt=0)


class LoggingSettings(_Section):
    """Structured logging identity."""

    service: str = "pipeline-enforcer"


class EnforcerConfig(_Section):
    """Top-level configuration for :class:`brir.enforcer.PipelineEnforcer`."""

    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    subagents: SubagentSettings = Field(default_factory=SubagentSettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_mapping(cls, data: Any) -> "EnforcerConfig":
        """Validate a parsed YAML document."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping at the top level.")
        try:
            return cls.model_validate(data)
        except ValidationError as error:
            raise ConfigError(f"Invalid configuration: {error}") from error


def default_config_dict() -> Dict[str, Any]:
    """Return the default configuration as plain YAML-friendly data."""
    return EnforcerConfig().model_dump(mode="json")


def load_config(path: Path | str | None) -> EnforcerConfig:
    """Load configuration from ``path``; a missing file yields the defaults."""
    if path is None:
        return EnforcerConfig()
    config_path = Path(path)
    if not config_path.exists():
        return EnforcerConfig()
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    return EnforcerConfig.from_mapping(data)


def save_config(path: Path | str, config: EnforcerConfig) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.model_dump(mode="json"), handle, sort_keys=False)


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_SUBAGENT_TOOLS",
    "EnforcerConfig",
    "LoggingSettings",
    "PipelineSettings",
    "ProbeSettings",
    "SessionSettings",
    "SubagentSettings",
    "default_config_dict",
    "load_config",
    "save_config",
]
