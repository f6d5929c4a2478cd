"""Tests for branchflow/config/settings.py."""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from branchflow.config.settings import BranchesConfig, EngineSettings, RetryConfig
from branchflow.enums import ProtectionLevel
from branchflow.exceptions import ConfigurationError


class TestDefaults:
    def test_engine_defaults(self):
        settings = EngineSettings()

        assert settings.branches.production == "main"
        assert settings.branches.integration == "ai-main"
        assert settings.branches.development == "develop"
        assert settings.retry.max_retries == 3
        assert settings.retry.base_delay == 0.5
        assert settings.retry.backoff_factor == 2.0
        assert settings.timeouts.push == 30.0
        assert settings.policy.auto_merge_confidence_threshold == 0.8
        assert settings.policy.critical_min_reviewers == 2
        assert settings.audit.log_path is None
        assert settings.audit_path is None
        assert settings.hosting is None

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("BRANCHFLOW_RETRY__MAX_RETRIES", "5")
        assert EngineSettings().retry.max_retries == 5

    def test_retry_bounds(self):
        with pytest.raises(PydanticValidationError):
            RetryConfig(max_retries=-1)


class TestBranchesConfig:
    def test_targets_are_the_three_branches(self):
        assert BranchesConfig().targets == frozenset({"main", "ai-main", "develop"})

    def test_default_candidates(self):
        assert BranchesConfig().candidates == ["develop", "main"]

    def test_resolve_roles_and_names(self):
        branches = BranchesConfig(production="master")
        assert branches.resolve("production") == "master"
        assert branches.resolve("develop") == "develop"
        with pytest.raises(ValueError):
            branches.resolve("release")

    def test_branches_must_be_distinct(self):
        with pytest.raises(PydanticValidationError):
            BranchesConfig(production="main", development="main")

    def test_critical_reviewer_floor(self):
        with pytest.raises(PydanticValidationError):
            EngineSettings(policy={"critical_min_reviewers": 1})


class TestFromYaml:
    def test_load_with_env_interpolation(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("PROD_BRANCH", "master")
        monkeypatch.delenv("DEV_BRANCH", raising=False)
        config = tmp_path / "branchflow.yaml"
        config.write_text(
            """
# production: ${NOT_SET}
branches:
  production: ${PROD_BRANCH}
  development: ${DEV_BRANCH:-dev}
retry:
  max_retries: 1
audit:
  log_path: /tmp/audit.jsonl
routing:
  routes:
    chore:
      prefix: chore/
      target: development
      protection: low
      auto_merge: true
      review_required: false
"""
        )

        settings = EngineSettings.from_yaml(str(config))

        assert settings.branches.production == "master"
        assert settings.branches.development == "dev"
        assert settings.retry.max_retries == 1
        assert settings.audit_path == Path("/tmp/audit.jsonl")
        assert settings.routing.routes["chore"].protection == ProtectionLevel.LOW

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        config = tmp_path / "empty.yaml"
        config.write_text("")
        assert EngineSettings.from_yaml(str(config)).branches.production == "main"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            EngineSettings.from_yaml(str(tmp_path / "missing.yaml"))

    def test_missing_env_var(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("BRANCHFLOW_TEST_UNSET", raising=False)
        config = tmp_path / "config.yaml"
        config.write_text("branches:\n  production: ${BRANCHFLOW_TEST_UNSET}\n")
        with pytest.raises(ConfigurationError, match="BRANCHFLOW_TEST_UNSET"):
            EngineSettings.from_yaml(str(config))

    def test_invalid_yaml(self, tmp_path: Path):
        config = tmp_path / "config.yaml"
        config.write_text("branches: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            EngineSettings.from_yaml(str(config))

    def test_non_mapping_yaml(self, tmp_path: Path):
        config = tmp_path / "config.yaml"
        config.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            EngineSettings.from_yaml(str(config))

    def test_validation_failure(self, tmp_path: Path):
        config = tmp_path / "config.yaml"
        config.write_text("branches:\n  production: develop\n")
        with pytest.raises(ConfigurationError, match="validate"):
            EngineSettings.from_yaml(str(config))
