"""
Merge policy engine.

Derives review requirements and auto-merge eligibility for a workflow run
from its branch strategy, the caller's options and live execution signals.
All override precedence rules live here so call sites never merge options
with strategy defaults themselves. The merge method comes from the caller
when set, otherwise from the task type's route.

Rules, evaluated in order of protection level:

- critical: auto-merge never allowed; at least ``critical_min_reviewers``
  reviewers; caller overrides are ignored.
- high: auto-merge never allowed; ``high_default_reviewers`` reviewers
  unless the caller sets ``require_review=False``, which lowers the
  requirement to one reviewer (never zero).
- medium: auto-merge only when the caller asks for it; one reviewer when
  review is required.
- low: auto-merge follows the caller or the strategy default, and is only
  granted once the reported confidence reaches the configured threshold.

Reviewer lists come from the caller when they satisfy the requirement;
otherwise the reviewer pool is asked once per workflow run and the answer is
cached, so re-evaluating a run after a signal update is idempotent.
"""

from __future__ import annotations

from dataclasses import replace

import structlog

from branchflow.config.settings import PolicyConfig
from branchflow.enums import ProtectionLevel
from branchflow.exceptions import ValidationError
from branchflow.models.domain import (
    BranchStrategy,
    ExecutionSignals,
    ResolvedPolicy,
    Task,
    WorkflowOptions,
)
from branchflow.providers.base import ReviewerPool

log = structlog.get_logger(__name__)


class MergePolicyEngine:
    """Central authority for strategy overrides and merge policy.

    Attributes:
        config: Thresholds and reviewer counts
        merge_targets: The closed set of allowed merge targets
        reviewer_pool: Optional collaborator used when the caller names too
            few reviewers
    """

    def __init__(
        self,
        config: PolicyConfig,
        merge_targets: frozenset[str] | set[str],
        reviewer_pool: ReviewerPool | None = None,
    ) -> None:
        self.config = config
        self.merge_targets = frozenset(merge_targets)
        self.reviewer_pool = reviewer_pool
        self._reviewer_cache: dict[str, tuple[str, ...]] = {}

    def resolve_strategy(self, strategy: BranchStrategy, options: WorkflowOptions) -> BranchStrategy:
        """Apply the caller's merge-target, merge-method and protection overrides.

        Args:
            strategy: Strategy from the routing table
            options: Caller overrides

        Returns:
            The strategy to use for the run (a new instance when overridden)

        Raises:
            ValidationError: If the merge target override is not configured
        """
        if options.merge_target is not None:
            if options.merge_target not in self.merge_targets:
                raise ValidationError(
                    f"Unknown merge target '{options.merge_target}'; expected one of {sorted(self.merge_targets)}",
                    field="merge_target",
                )
            strategy = replace(strategy, merge_target=options.merge_target)
        if options.merge_strategy is not None and options.merge_strategy != strategy.merge_method:
            strategy = replace(strategy, merge_method=options.merge_strategy)

        requested = options.branch_protection
        if requested is not None and requested != strategy.protection_level:
            if strategy.protection_level == ProtectionLevel.CRITICAL:
                log.warning(
                    "protection_override_ignored",
                    current=strategy.protection_level.value,
                    requested=requested.value,
                )
            elif requested == ProtectionLevel.CRITICAL:
                strategy = replace(
                    strategy,
                    protection_level=requested,
                    auto_merge_default=False,
                    review_required=True,
                )
            else:
                strategy = replace(strategy, protection_level=requested)
        return strategy

    async def evaluate(
        self,
        strategy: BranchStrategy,
        options: WorkflowOptions,
        signals: ExecutionSignals | None = None,
        *,
        task: Task | None = None,
        run_id: str | None = None,
    ) -> ResolvedPolicy:
        """Resolve auto-merge eligibility and reviewers for a run.

        Args:
            strategy: Resolved strategy for the run
            options: Caller overrides
            signals: Execution-time signals such as the confidence score
            task: Task passed to the reviewer pool
            run_id: Workflow run id keying the reviewer cache

        Returns:
            ResolvedPolicy for the run
        """
        signals = signals or ExecutionSignals()
        level = strategy.protection_level
        review_required = strategy.review_required if options.require_review is None else options.require_review
        reason: str | None = None

        if level == ProtectionLevel.CRITICAL:
            requested = bool(options.auto_merge)
            allowed = False
            required = self.config.critical_min_reviewers
            reason = "critical protection never allows auto-merge"
        elif level == ProtectionLevel.HIGH:
            requested = bool(options.auto_merge)
            allowed = False
            required = 1 if options.require_review is False else self.config.high_default_reviewers
            reason = "high protection never allows auto-merge"
        elif level == ProtectionLevel.MEDIUM:
            requested = bool(options.auto_merge)
            allowed = requested
            required = 1 if review_required else 0
        else:
            requested = strategy.auto_merge_default if options.auto_merge is None else options.auto_merge
            required = 1 if review_required else 0
            allowed = False
            if requested:
                threshold = self.config.auto_merge_confidence_threshold
                score = signals.confidence_score
                allowed = score is not None and score >= threshold
                if not allowed:
                    reason = f"confidence {score} below auto-merge threshold {threshold}"

        reviewers = await self._select_reviewers(required, options, task, run_id)
        policy = ResolvedPolicy(
            auto_merge_allowed=allowed,
            reviewers_required=required,
            reviewers=reviewers,
            protection_level=level,
            auto_merge_requested=requested,
            reason=reason if requested and not allowed else None,
        )
        log.debug(
            "policy_evaluated",
            run_id=run_id,
            protection=level.value,
            auto_merge_allowed=allowed,
            reviewers_required=required,
        )
        return policy

    async def _select_reviewers(
        self,
        required: int,
        options: WorkflowOptions,
        task: Task | None,
        run_id: str | None,
    ) -> tuple[str, ...]:
        explicit = options.reviewers
        if len(explicit) >= required:
            return explicit
        if run_id is not None and run_id in self._reviewer_cache:
            return self._reviewer_cache[run_id]
        if self.reviewer_pool is None or task is None:
            log.warning("reviewer_pool_unavailable", required=required, provided=len(explicit))
            return explicit

        try:
            selected = await self.reviewer_pool.select_reviewers(task, required)
        except Exception as e:
            log.warning("reviewer_pool_failed", required=required, error=str(e))
            return explicit

        reviewers = tuple(dict.fromkeys([*explicit, *selected]))
        if run_id is not None:
            self._reviewer_cache[run_id] = reviewers
        return reviewers

    def forget(self, run_id: str) -> None:
        """Drop the cached reviewer selection of a finished run."""
        self._reviewer_cache.pop(run_id, None)
