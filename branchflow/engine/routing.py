"""
Task-type routing: which branch strategy applies to a task.

The routing table maps a task type to a :class:`BranchStrategy`. Lookups are
a single dictionary access. The built-in table refers to branches by role
(production, integration, development); roles are resolved against
:class:`~branchflow.config.settings.BranchesConfig` when the table is built,
so branch names never appear in classification logic.

Hot reload replaces the whole table in one assignment. A lookup therefore
sees either the old or the new table, never a mixture.

Example:
    >>> table = TaskTypeRoutingTable.from_settings(EngineSettings())
    >>> table.resolve("bug").name_prefix
    'fix/'
    >>> table.resolve("unheard-of").name_prefix
    'task/'
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

import structlog

from branchflow.config.settings import BranchesConfig, EngineSettings, RouteConfig
from branchflow.enums import BranchRole, MergeMethod, ProtectionLevel
from branchflow.exceptions import ConfigurationError
from branchflow.models.domain import BranchStrategy

log = structlog.get_logger(__name__)

_P = BranchRole.PRODUCTION.value
_I = BranchRole.INTEGRATION.value
_D = BranchRole.DEVELOPMENT.value
_LOW, _MEDIUM, _HIGH, _CRITICAL = (
    ProtectionLevel.LOW,
    ProtectionLevel.MEDIUM,
    ProtectionLevel.HIGH,
    ProtectionLevel.CRITICAL,
)

# task type: (prefix, protection, auto-merge default, review required, target role, description)
_BUILTIN_ROUTES: dict[str, tuple[str, ProtectionLevel, bool, bool, str, str]] = {
    "feature": ("feature/", _MEDIUM, False, True, _I, "Feature development"),
    "optimization": ("enhance/", _MEDIUM, False, True, _I, "Performance optimization"),
    "refactor": ("refactor/", _MEDIUM, False, True, _I, "Code refactoring"),
    "analysis": ("analyze/", _LOW, True, False, _I, "Code analysis"),
    "documentation": ("docs/", _LOW, False, False, _I, "Documentation"),
    "bug": ("fix/", _HIGH, False, True, _P, "Bug fix"),
    "security": ("hotfix/", _CRITICAL, False, True, _P, "Security fix"),
    "testing": ("test/", _LOW, True, False, _D, "Testing"),
    "test": ("test/", _LOW, True, False, _D, "Testing"),
    "test_fix": ("test-fix/", _MEDIUM, False, True, _D, "Test fixes"),
    "test_coverage": ("test-coverage/", _LOW, True, False, _D, "Test coverage"),
    "test_refactor": ("test-refactor/", _MEDIUM, False, True, _D, "Test refactoring"),
    "test_status": ("test-status/", _LOW, True, False, _D, "Test status"),
    "test_report": ("test-report/", _LOW, True, False, _D, "Test reports"),
    "test_unit": ("test-unit/", _LOW, True, False, _D, "Unit tests"),
    "test_integration": ("test-integration/", _MEDIUM, False, True, _D, "Integration tests"),
    "test_e2e": ("test-e2e/", _MEDIUM, False, True, _D, "End-to-end tests"),
    "test_performance": ("test-performance/", _MEDIUM, False, True, _D, "Performance tests"),
    "test_security": ("test-security/", _HIGH, False, True, _D, "Security tests"),
    "refactor_node": ("refactor-node/", _MEDIUM, False, True, _I, "Node.js refactoring"),
    "refactor_react": ("refactor-react/", _MEDIUM, False, True, _I, "React refactoring"),
    "refactor_frontend": ("refactor-frontend/", _MEDIUM, False, True, _I, "Frontend refactoring"),
    "refactor_backend": ("refactor-backend/", _MEDIUM, False, True, _I, "Backend refactoring"),
    "refactor_database": ("refactor-db/", _HIGH, False, True, _I, "Database refactoring"),
    "refactor_api": ("refactor-api/", _MEDIUM, False, True, _I, "API refactoring"),
    "feature_summary": ("feature-summary/", _LOW, True, False, _I, "Feature summary"),
    "feature_implementation": ("feature-impl/", _MEDIUM, False, True, _I, "Feature implementation"),
    "feature_phase": ("feature-phase/", _MEDIUM, False, True, _I, "Feature phase"),
    "feature_index": ("feature-index/", _LOW, True, False, _I, "Feature index"),
}

# Merge method per task type; unlisted types squash.
_MERGE_METHODS: dict[str, MergeMethod] = {
    "bug": MergeMethod.MERGE,
    "security": MergeMethod.MERGE,
    "analysis": MergeMethod.REBASE,
}

DEFAULT_ROUTE = RouteConfig(
    prefix="task/",
    base=_D,
    target=_D,
    protection=ProtectionLevel.MEDIUM,
    auto_merge=False,
    review_required=True,
    description="Default task",
)


def builtin_routes() -> dict[str, RouteConfig]:
    """The built-in routing rules, expressed with branch roles."""
    return {
        task_type: RouteConfig(
            prefix=prefix,
            base=_D,
            target=target,
            protection=protection,
            auto_merge=auto_merge,
            review_required=review,
            description=description,
            merge_method=_MERGE_METHODS.get(task_type, MergeMethod.SQUASH),
        )
        for task_type, (prefix, protection, auto_merge, review, target, description) in _BUILTIN_ROUTES.items()
    }


def normalize_task_type(task_type: str) -> str:
    """Canonical lookup key: lower-case, trimmed, dashes as underscores."""
    return task_type.strip().lower().replace("-", "_")


def build_strategy(route: RouteConfig, branches: BranchesConfig, task_type: str = "default") -> BranchStrategy:
    """Resolve a configured route against the configured branches.

    Raises:
        ConfigurationError: If the base or target is not a configured branch,
            or the route relaxes critical protection
    """
    try:
        base = branches.resolve(route.base)
        target = branches.resolve(route.target)
        return BranchStrategy(
            name_prefix=route.prefix,
            base_branch=base,
            merge_target=target,
            protection_level=route.protection,
            auto_merge_default=route.auto_merge,
            review_required=route.review_required,
            description=route.description,
            merge_method=route.merge_method,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid route for task type '{task_type}': {e}") from e


@dataclass(frozen=True)
class _RoutingSnapshot:
    routes: Mapping[str, BranchStrategy]
    default: BranchStrategy
    merge_targets: frozenset[str]


class TaskTypeRoutingTable:
    """Read-only mapping from task type to branch strategy.

    Attributes are never mutated in place; :meth:`reload` swaps the complete
    snapshot with a single assignment.
    """

    def __init__(
        self,
        routes: Mapping[str, BranchStrategy],
        default: BranchStrategy,
        merge_targets: frozenset[str] | set[str],
    ) -> None:
        self._snapshot = self._build_snapshot(routes, default, merge_targets)

    @staticmethod
    def _build_snapshot(
        routes: Mapping[str, BranchStrategy],
        default: BranchStrategy,
        merge_targets: frozenset[str] | set[str],
    ) -> _RoutingSnapshot:
        targets = frozenset(merge_targets)
        for task_type, strategy in [*routes.items(), ("default", default)]:
            if strategy.merge_target not in targets:
                raise ConfigurationError(
                    f"Route '{task_type}' merges into '{strategy.merge_target}', "
                    f"which is not one of {sorted(targets)}"
                )
        normalized = {normalize_task_type(task_type): strategy for task_type, strategy in routes.items()}
        return _RoutingSnapshot(routes=MappingProxyType(normalized), default=default, merge_targets=targets)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> TaskTypeRoutingTable:
        """Build the table from the built-in rules plus configured overrides."""
        routes, default = cls._strategies_from_settings(settings)
        return cls(routes, default, settings.branches.targets)

    @staticmethod
    def _strategies_from_settings(settings: EngineSettings) -> tuple[dict[str, BranchStrategy], BranchStrategy]:
        configured = {} if settings.routing.replace_builtin else builtin_routes()
        configured.update(settings.routing.routes)
        routes = {
            task_type: build_strategy(route, settings.branches, task_type) for task_type, route in configured.items()
        }
        default = build_strategy(settings.routing.default or DEFAULT_ROUTE, settings.branches)
        return routes, default

    def resolve(self, task_type: str) -> BranchStrategy:
        """Return the strategy for ``task_type``, or the default strategy."""
        snapshot = self._snapshot
        return snapshot.routes.get(normalize_task_type(task_type), snapshot.default)

    def reload(
        self,
        routes: Mapping[str, BranchStrategy],
        default: BranchStrategy | None = None,
        merge_targets: frozenset[str] | set[str] | None = None,
    ) -> None:
        """Atomically replace the whole table.

        The new table is validated completely before it becomes visible; on
        error the current table stays in place.
        """
        current = self._snapshot
        self._snapshot = self._build_snapshot(
            routes,
            default or current.default,
            current.merge_targets if merge_targets is None else merge_targets,
        )
        log.info("routing_table_reloaded", task_types=len(routes))

    def reload_from_settings(self, settings: EngineSettings) -> None:
        """Rebuild from settings and swap atomically."""
        routes, default = self._strategies_from_settings(settings)
        self.reload(routes, default, settings.branches.targets)

    @property
    def default(self) -> BranchStrategy:
        return self._snapshot.default

    @property
    def merge_targets(self) -> frozenset[str]:
        """The closed set of merge targets this table was validated against."""
        return self._snapshot.merge_targets

    def task_types(self) -> list[str]:
        return sorted(self._snapshot.routes)

    def __contains__(self, task_type: object) -> bool:
        return isinstance(task_type, str) and normalize_task_type(task_type) in self._snapshot.routes

    def __iter__(self) -> Iterator[tuple[str, BranchStrategy]]:
        return iter(sorted(self._snapshot.routes.items()))

    def __len__(self) -> int:
        return len(self._snapshot.routes)
