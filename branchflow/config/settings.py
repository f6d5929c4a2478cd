"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every tunable part of the
orchestration engine: the closed set of branch targets, retry and timeout
policy, merge-policy thresholds, the audit sink and the routing table.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from branchflow.enums import BranchRole, MergeMethod, ProtectionLevel
from branchflow.exceptions import ConfigurationError


class BranchesConfig(BaseModel):
    """Long-lived branches that make up the closed set of merge targets.

    Routing rules refer to these by role (``production``, ``integration``,
    ``development``) so branch names live in configuration only.
    """

    production: str = Field(default="main", description="Production branch")
    integration: str = Field(default="ai-main", description="AI integration branch")
    development: str = Field(default="develop", description="Development branch, base for new work")
    base_candidates: list[str] | None = Field(
        default=None,
        description="Ordered base-branch candidates for fallback branch creation "
        "(defaults to [development, production])",
    )

    @model_validator(mode="after")
    def validate_branches(self) -> BranchesConfig:
        """Require non-empty, distinct branch names."""
        names = [self.production, self.integration, self.development]
        if any(not name.strip() for name in names):
            raise ValueError("branch names must not be empty")
        if len(set(names)) != len(names):
            raise ValueError("production, integration and development branches must be distinct")
        if self.base_candidates is not None and not self.base_candidates:
            raise ValueError("base_candidates must not be empty when set")
        return self

    @property
    def targets(self) -> frozenset[str]:
        """The closed set of allowed merge targets."""
        return frozenset({self.production, self.integration, self.development})

    @property
    def candidates(self) -> list[str]:
        """Base-branch candidates in preference order."""
        return list(self.base_candidates or [self.development, self.production])

    def resolve(self, ref: str) -> str:
        """Resolve a role name or configured branch name to a branch name.

        Raises:
            ValueError: If ``ref`` is neither a role nor a configured branch
        """
        try:
            return getattr(self, BranchRole(ref).value)
        except ValueError:
            pass
        if ref in self.targets:
            return ref
        raise ValueError(f"'{ref}' is not a configured branch or branch role")


class RetryConfig(BaseModel):
    """Retry policy for transient git and code-hosting failures."""

    max_retries: int = Field(default=3, ge=0, le=10, description="Retries after the first attempt")
    base_delay: float = Field(default=0.5, ge=0.0, description="Delay before the first retry, in seconds")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Multiplier applied per retry")


class TimeoutConfig(BaseModel):
    """Independent timeouts (seconds) for each external call."""

    create_branch: float = Field(default=30.0, gt=0, description="Branch creation timeout")
    push: float = Field(default=30.0, gt=0, description="Push timeout")
    create_pull_request: float = Field(default=30.0, gt=0, description="Pull request creation timeout")
    merge: float = Field(default=30.0, gt=0, description="Merge timeout")


class PolicyConfig(BaseModel):
    """Merge policy thresholds."""

    auto_merge_confidence_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Minimum confidence for low-protection auto-merge"
    )
    critical_min_reviewers: int = Field(default=2, ge=2, description="Reviewers required at critical level")
    high_default_reviewers: int = Field(default=2, ge=1, description="Reviewers required at high level")


class AuditConfig(BaseModel):
    """Audit sink configuration."""

    log_path: str | None = Field(
        default=None, description="JSON-lines audit file; in-memory sink when unset"
    )
    write_timeout: float = Field(default=2.0, gt=0, description="Upper bound for one audit write, in seconds")


class RouteConfig(BaseModel):
    """A routing rule as written in configuration.

    ``base`` and ``target`` accept a branch role or a configured branch name.
    """

    prefix: str = Field(..., description="Branch name prefix, e.g. 'fix/'")
    base: str = Field(default=BranchRole.DEVELOPMENT.value, description="Base branch or role")
    target: str = Field(..., description="Merge target branch or role")
    protection: ProtectionLevel = Field(default=ProtectionLevel.MEDIUM, description="Protection level")
    auto_merge: bool = Field(default=False, description="Auto-merge default")
    review_required: bool = Field(default=True, description="Whether review is required")
    description: str = Field(default="", description="Human-readable description")
    merge_method: MergeMethod = Field(default=MergeMethod.SQUASH, description="Merge method when the caller sets none")


class RoutingConfig(BaseModel):
    """Routing table overrides applied on top of the built-in table."""

    routes: dict[str, RouteConfig] = Field(default_factory=dict, description="Per task type rules")
    default: RouteConfig | None = Field(default=None, description="Rule for unmatched task types")
    replace_builtin: bool = Field(default=False, description="Ignore the built-in table entirely")


class HostingConfig(BaseModel):
    """Code-hosting service used for pull requests and merges."""

    provider_type: Literal["gitea"] = Field(default="gitea", description="Code-hosting provider")
    base_url: HttpUrl = Field(..., description="Base URL of the code-hosting service")
    api_token: SecretStr = Field(..., description="API token for authentication")
    owner: str = Field(..., description="Repository owner/organization")
    repo: str = Field(..., description="Repository name")


class EngineSettings(BaseSettings):
    """Main engine settings.

    Every section has defaults, so ``EngineSettings()`` is a working
    configuration. Values can be overridden by ``BRANCHFLOW_`` environment
    variables (``BRANCHFLOW_RETRY__MAX_RETRIES=5``) or loaded from YAML.
    """

    model_config = SettingsConfigDict(
        env_prefix="BRANCHFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    branches: BranchesConfig = Field(default_factory=BranchesConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    hosting: HostingConfig | None = Field(default=None, description="Code-hosting service")

    @property
    def audit_path(self) -> Path | None:
        """Audit log path as Path object, if configured."""
        return Path(self.audit.log_path) if self.audit.log_path else None

    @classmethod
    def from_yaml(cls, config_path: str) -> EngineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            EngineSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
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
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

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
