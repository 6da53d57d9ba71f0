"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every tunable of the
orchestration engine: iteration and timeout limits, the retry policy,
worker routing, approval checkpoints, per-resource concurrency, storage,
notifications, and phase role overrides.

Every section has working defaults, so ``EngineSettings()`` is a valid
configuration. Values can come from a YAML file (``from_yaml``) or from
environment variables with the ``ISSUE_PILOT_`` prefix, e.g.
``ISSUE_PILOT_RETRY__MAX_RETRIES=5``.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, HttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from issue_pilot.engine.phases import build_phase_roles
from issue_pilot.enums import ApprovalMode, Phase
from issue_pilot.exceptions import ConfigurationError


class WorkflowConfig(BaseModel):
    """Workflow behavior configuration."""

    state_directory: str = Field(default=".issue-pilot/state", description="Directory for state files")
    default_resource: str = Field(default="default", description="Resource key when a start request names none")
    max_iterations: int | None = Field(default=None, ge=1, description="Items per execution (None = unbounded)")
    phase_timeout: float = Field(default=600.0, gt=0, description="Seconds a single phase call may run")
    status_poll_interval: float = Field(default=60.0, ge=0, description="Seconds between status checks")
    status_max_polls: int = Field(default=60, ge=1, description="Status checks before giving up on a change")


class RetryConfig(BaseModel):
    """Retry and escalation policy for phase failures."""

    max_retries: int = Field(default=3, ge=0, description="Retries per phase before escalating")
    base_delay: float = Field(default=2.0, ge=0, description="Initial backoff delay in seconds")
    max_delay: float = Field(default=300.0, ge=0, description="Backoff delay cap in seconds")
    jitter: bool = Field(default=False, description="Randomize delays between 0.5x and 1.5x")
    escalation_enabled: bool = Field(default=True, description="Escalate to a human instead of failing")


class RoutingConfig(BaseModel):
    """Worker routing and liveness configuration."""

    retry_interval: float = Field(default=10.0, ge=0, description="Seconds to wait when no worker is available")
    heartbeat_interval: float = Field(default=30.0, gt=0, description="Expected seconds between heartbeats")
    max_missed_heartbeats: int = Field(default=3, ge=1, description="Missed heartbeats before removal")
    default_max_concurrent: int = Field(default=1, ge=1, description="Per-worker task limit if undeclared")


class ApprovalConfig(BaseModel):
    """Human approval checkpoint configuration."""

    mode: ApprovalMode = Field(default=ApprovalMode.ASYNC, description="Synchronous or asynchronous delivery")
    timeout: float | None = Field(default=86400.0, gt=0, description="Seconds before a phase gate times out")
    escalation_timeout: float | None = Field(
        default=None, gt=0, description="Seconds before an escalation aborts (None = wait forever)"
    )
    refactoring_requires_approval: bool = Field(default=False, description="Gate refactoring proposals")
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between checks while blocking")


class ConcurrencyConfig(BaseModel):
    """Shared-resource concurrency limits."""

    per_resource_limit: int = Field(default=2, ge=1, description="Concurrent executions per resource")
    resource_limits: dict[str, int] = Field(default_factory=dict, description="Per-resource overrides")

    def limit_for(self, resource: str) -> int:
        return self.resource_limits.get(resource, self.per_resource_limit)

    @model_validator(mode="after")
    def validate_limits(self) -> ConcurrencyConfig:
        for resource, limit in self.resource_limits.items():
            if limit < 1:
                raise ValueError(f"Concurrency limit for '{resource}' must be >= 1")
        return self


class StorageConfig(BaseModel):
    """Durable store I/O retry configuration."""

    retry_attempts: int = Field(default=3, ge=1, description="Attempts per store operation")
    retry_backoff: float = Field(default=0.5, ge=0, description="Seconds before the first retry, doubled after each")


class NotificationConfig(BaseModel):
    """Operator notification configuration."""

    webhook_url: HttpUrl | None = Field(default=None, description="POST approval notifications here")
    webhook_timeout: float = Field(default=10.0, gt=0, description="Webhook request timeout in seconds")
    log_notifications: bool = Field(default=True, description="Also log every notification")


class EngineSettings(BaseSettings):
    """Main engine settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISSUE_PILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    approvals: ApprovalConfig = Field(default_factory=ApprovalConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    phase_roles: dict[str, list[str]] = Field(default_factory=dict, description="Phase to role list overrides")

    @model_validator(mode="after")
    def validate_phase_roles(self) -> EngineSettings:
        """Reject overrides naming unknown phases or empty role lists."""
        try:
            build_phase_roles(self.phase_roles)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return self

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.workflow.state_directory)

    @property
    def phase_role_table(self) -> Mapping[Phase, tuple[str, ...]]:
        """Immutable phase to role mapping with overrides applied."""
        return build_phase_roles(self.phase_roles)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> EngineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            EngineSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
