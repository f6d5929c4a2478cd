"""Tests for branchflow/engine/routing.py."""

import pytest

from branchflow.config.settings import EngineSettings, RouteConfig
from branchflow.engine.routing import TaskTypeRoutingTable, build_strategy, builtin_routes, normalize_task_type
from branchflow.enums import MergeMethod, ProtectionLevel
from branchflow.exceptions import ConfigurationError
from branchflow.models.domain import BranchStrategy


@pytest.fixture
def table() -> TaskTypeRoutingTable:
    return TaskTypeRoutingTable.from_settings(EngineSettings())


class TestResolve:
    @pytest.mark.parametrize(
        ("task_type", "prefix", "target", "protection", "auto_merge"),
        [
            ("bug", "fix/", "main", ProtectionLevel.HIGH, False),
            ("security", "hotfix/", "main", ProtectionLevel.CRITICAL, False),
            ("feature", "feature/", "ai-main", ProtectionLevel.MEDIUM, False),
            ("refactor_database", "refactor-db/", "ai-main", ProtectionLevel.HIGH, False),
            ("test_unit", "test-unit/", "develop", ProtectionLevel.LOW, True),
            ("documentation", "docs/", "ai-main", ProtectionLevel.LOW, False),
        ],
    )
    def test_builtin_routes(self, table, task_type, prefix, target, protection, auto_merge):
        strategy = table.resolve(task_type)

        assert strategy.name_prefix == prefix
        assert strategy.base_branch == "develop"
        assert strategy.merge_target == target
        assert strategy.protection_level == protection
        assert strategy.auto_merge_default is auto_merge

    @pytest.mark.parametrize(
        ("task_type", "method"),
        [
            ("bug", MergeMethod.MERGE),
            ("security", MergeMethod.MERGE),
            ("feature", MergeMethod.SQUASH),
            ("refactor", MergeMethod.SQUASH),
            ("analysis", MergeMethod.REBASE),
            ("migrate-to-rust", MergeMethod.SQUASH),
        ],
    )
    def test_merge_method_per_task_type(self, table, task_type, method):
        assert table.resolve(task_type).merge_method == method

    def test_configured_route_merge_method(self):
        route = {"prefix": "feature/", "target": "integration", "merge_method": "rebase"}
        settings = EngineSettings(routing={"routes": {"feature": route}})
        assert TaskTypeRoutingTable.from_settings(settings).resolve("feature").merge_method == MergeMethod.REBASE

    def test_unknown_type_uses_default(self, table):
        strategy = table.resolve("migrate-to-rust")
        assert strategy == table.default
        assert strategy.name_prefix == "task/"
        assert strategy.protection_level == ProtectionLevel.MEDIUM
        assert strategy.merge_target == "develop"

    def test_lookup_is_normalized(self, table):
        assert table.resolve(" Test-Unit ") == table.resolve("test_unit")
        assert normalize_task_type("Test-E2E") == "test_e2e"

    def test_resolution_is_deterministic(self, table):
        first = [table.resolve(task_type) for task_type in table.task_types()]
        second = [table.resolve(task_type) for task_type in table.task_types()]
        assert first == second

    def test_every_target_is_configured(self, table):
        targets = EngineSettings().branches.targets
        assert all(strategy.merge_target in targets for _, strategy in table)
        assert table.merge_targets == targets

    def test_container_protocol(self, table):
        assert "bug" in table
        assert "BUG" in table
        assert "nope" not in table
        assert len(table) == len(builtin_routes())


class TestConfiguration:
    def test_routes_follow_configured_branch_names(self):
        settings = EngineSettings(branches={"production": "master", "development": "dev"})
        table = TaskTypeRoutingTable.from_settings(settings)

        assert table.resolve("bug").merge_target == "master"
        assert table.resolve("bug").base_branch == "dev"

    def test_configured_routes_extend_and_override(self):
        settings = EngineSettings(
            routing={
                "routes": {
                    "chore": {"prefix": "chore/", "target": "development", "protection": "low"},
                    "feature": {"prefix": "feat/", "target": "production", "protection": "high"},
                }
            }
        )
        table = TaskTypeRoutingTable.from_settings(settings)

        assert table.resolve("chore").name_prefix == "chore/"
        assert table.resolve("feature").merge_target == "main"
        assert table.resolve("bug").name_prefix == "fix/"

    def test_replace_builtin(self):
        settings = EngineSettings(
            routing={
                "replace_builtin": True,
                "routes": {"chore": {"prefix": "chore/", "target": "development"}},
            }
        )
        table = TaskTypeRoutingTable.from_settings(settings)

        assert table.task_types() == ["chore"]
        assert table.resolve("bug") == table.default

    def test_unknown_branch_in_route(self):
        settings = EngineSettings(routing={"routes": {"chore": {"prefix": "chore/", "target": "release"}}})
        with pytest.raises(ConfigurationError, match="chore"):
            TaskTypeRoutingTable.from_settings(settings)

    def test_critical_route_cannot_auto_merge(self):
        route = RouteConfig(prefix="sec/", target="production", protection="critical", auto_merge=True)
        with pytest.raises(ConfigurationError):
            build_strategy(route, EngineSettings().branches, "sec")


class TestReload:
    def test_reload_swaps_table(self, table):
        strategy = BranchStrategy("x/", "develop", "develop", ProtectionLevel.LOW)
        table.reload({"x": strategy})

        assert table.resolve("x") == strategy
        assert "bug" not in table

    def test_invalid_reload_keeps_current_table(self, table):
        before = table.resolve("bug")
        bad = BranchStrategy("x/", "develop", "release", ProtectionLevel.LOW)

        with pytest.raises(ConfigurationError):
            table.reload({"x": bad})

        assert table.resolve("bug") == before
        assert "x" not in table

    def test_reload_from_settings(self, table):
        settings = EngineSettings(routing={"routes": {"bug": {"prefix": "bugfix/", "target": "production"}}})
        table.reload_from_settings(settings)
        assert table.resolve("bug").name_prefix == "bugfix/"
