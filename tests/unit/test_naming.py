"""Tests for branchflow/engine/naming.py."""

from datetime import UTC, datetime

import pytest

from branchflow.engine.naming import BranchNameGenerator, slugify, validate_task_id
from branchflow.enums import ProtectionLevel
from branchflow.exceptions import ValidationError
from branchflow.models.domain import BranchStrategy, Task

NOW = datetime(2024, 1, 1, tzinfo=UTC)
FIX = BranchStrategy("fix/", "develop", "main", ProtectionLevel.HIGH)


@pytest.fixture
def generator() -> BranchNameGenerator:
    return BranchNameGenerator()


@pytest.fixture
def task() -> Task:
    return Task(id="101", title="Fix login authentication bug", type="bug")


class TestSlugify:
    @pytest.mark.parametrize(
        ("text", "slug"),
        [
            ("Fix login authentication bug", "fix-login-authentication-bug"),
            ("  Add OAuth2 / SSO support!  ", "add-oauth2-sso-support"),
            ("already-slugged", "already-slugged"),
            ("Ünïcödé title", "n-c-d-title"),
            ("!!!", ""),
        ],
    )
    def test_slugify(self, text, slug):
        assert slugify(text) == slug


class TestGenerate:
    def test_base_name(self, generator, task):
        name = generator.generate(FIX, task, NOW, exists_check=lambda _: False)
        assert name == "fix/fix-login-authentication-bug-101-1704067200000"

    def test_same_inputs_same_name(self, generator, task):
        names = {generator.generate(FIX, task, NOW, exists_check=lambda _: False) for _ in range(5)}
        assert len(names) == 1

    def test_collisions_get_numeric_suffix(self, generator, task):
        base = generator.base_name(FIX, task, NOW)
        taken = {base, f"{base}-2"}

        name = generator.generate(FIX, task, NOW, exists_check=taken.__contains__)

        assert name == f"{base}-3"

    def test_n_collisions_yield_n_plus_one_distinct_names(self, generator, task):
        taken: set[str] = set()
        for _ in range(6):
            taken.add(generator.generate(FIX, task, NOW, exists_check=taken.__contains__))
        assert len(taken) == 6

    def test_exhausted_suffixes(self, task):
        generator = BranchNameGenerator(max_suffix=3)
        with pytest.raises(RuntimeError):
            generator.generate(FIX, task, NOW, exists_check=lambda _: True)

    def test_empty_title_is_skipped(self, generator):
        task = Task(id="7", title="???", type="bug")
        assert generator.base_name(FIX, task, NOW) == "fix/7-1704067200000"

    def test_task_id_is_used_verbatim(self, generator):
        task = Task(id="PROJ-42_b", title="Fix login", type="bug")
        assert generator.base_name(FIX, task, NOW) == "fix/fix-login-PROJ-42_b-1704067200000"

    def test_invalid_task_id_is_rejected(self, generator):
        task = Task(id="feat/42", title="Fix login", type="bug")
        with pytest.raises(ValidationError) as exc_info:
            generator.generate(FIX, task, NOW, exists_check=lambda _: False)
        assert exc_info.value.field == "id"


class TestValidateTaskId:
    @pytest.mark.parametrize("task_id", ["101", "PROJ-42", "a.b", "issue_7", "v1.2-rc"])
    def test_valid(self, task_id):
        assert validate_task_id(task_id) == task_id

    @pytest.mark.parametrize(
        "task_id",
        [
            "", "a b", "a..b", "feat/42", "x~1", "a^b", "a:b", "a?b",
            "a*b", "a[b", "a\\b", "a@{1}", ".hidden", "-7", "a\tb",
        ],
    )
    def test_invalid(self, task_id):
        with pytest.raises(ValidationError):
            validate_task_id(task_id)
