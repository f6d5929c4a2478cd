"""Configuration system for the orchestration engine.

This package provides type-safe configuration management using Pydantic.

Key Components:
    - EngineSettings: Main configuration container with YAML loading support
    - BranchesConfig: Production/integration/development branches (merge targets)
    - RetryConfig / TimeoutConfig: Resilience policy for external calls
    - PolicyConfig: Merge policy thresholds
    - AuditConfig: Audit sink location and write timeout
    - RoutingConfig: Routing table overrides

Example:
    >>> from branchflow.config import EngineSettings
    >>> settings = EngineSettings.from_yaml("branchflow.yaml")
    >>> settings.branches.production
    'main'
"""

from branchflow.config.settings import (
    AuditConfig,
    BranchesConfig,
    EngineSettings,
    HostingConfig,
    PolicyConfig,
    RetryConfig,
    RouteConfig,
    RoutingConfig,
    TimeoutConfig,
)

__all__ = [
    "AuditConfig",
    "BranchesConfig",
    "EngineSettings",
    "HostingConfig",
    "PolicyConfig",
    "RetryConfig",
    "RouteConfig",
    "RoutingConfig",
    "TimeoutConfig",
]
