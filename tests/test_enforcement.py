"""Tests for the enforcement decision engine and the downgrade ladder."""

from datetime import date
from decimal import Decimal

import pytest

from fineflow_budget.domain.budget import (
    AlertSeverity,
    BudgetStatus,
    EnforcementAction,
    EnforcementDecision,
    EnforcementMode,
    OperationConfig,
)
from fineflow_budget.domain.downgrade import DowngradePlanner
from fineflow_budget.domain.enforcement import decide

BOTTOM_OF_LADDER = OperationConfig(embedding_model="text-embedding-3-small", top_k=3, num_experiments=5)


# ---------------------------------------------------------------------------
# Decision table
# ---------------------------------------------------------------------------
class TestDecisionTable:
    @pytest.mark.parametrize("mode", list(EnforcementMode))
    @pytest.mark.parametrize(
        "spending, today, expected",
        [
            ("10", date(2026, 6, 20), BudgetStatus.UNDER_BUDGET),
            ("400", date(2026, 6, 29), BudgetStatus.ON_TRACK),
        ],
    )
    def test_healthy_budgets_always_proceed(self, make_summary, mode, spending, today, expected):
        summary = make_summary(spending, "500", today=today)
        assert summary.status is expected

        decision = decide(summary, mode)

        assert decision.allowed
        assert decision.action is EnforcementAction.PROCEED
        assert decision.decision_type == "proceed"

    def test_over_budget_abort_blocks(self, make_summary):
        decision = decide(make_summary("600", "500"), EnforcementMode.ABORT)

        assert decision.allowed is False
        assert decision.action is EnforcementAction.BLOCK
        assert decision.severity is AlertSeverity.CRITICAL
        assert decision.decision_type == "abort"
        assert "over_budget" in decision.reason
        assert "abort" in decision.reason

    def test_at_risk_auto_downgrade_suggests_downgrade(self, make_summary):
        decision = decide(make_summary("450", "500"), EnforcementMode.AUTO_DOWNGRADE)

        assert decision.allowed
        assert decision.action is EnforcementAction.PROCEED_WITH_DOWNGRADE
        assert decision.suggested_downgrade is not None
        assert decision.suggested_downgrade.adjusted_config != decision.suggested_downgrade.original_config
        assert decision.decision_type == "downgrade"

    def test_at_risk_warn_proceeds_with_warning(self, make_summary):
        decision = decide(make_summary("450", "500"), EnforcementMode.WARN)

        assert decision.action is EnforcementAction.PROCEED
        assert decision.severity is AlertSeverity.WARNING
        assert decision.decision_type == "warn"

    def test_over_budget_warn_proceeds_with_strong_warning(self, make_summary):
        decision = decide(make_summary("600", "500"), EnforcementMode.WARN)

        assert decision.allowed
        assert decision.severity is AlertSeverity.CRITICAL

    def test_at_risk_abort_still_proceeds(self, make_summary):
        decision = decide(make_summary("450", "500"), EnforcementMode.ABORT)

        assert decision.allowed
        assert decision.severity is AlertSeverity.WARNING

    def test_auto_downgrade_without_cheaper_tier_blocks(self, make_summary):
        decision = decide(
            make_summary("600", "500"),
            EnforcementMode.AUTO_DOWNGRADE,
            Decimal("1"),
            operation=BOTTOM_OF_LADDER,
        )

        assert decision.action is EnforcementAction.BLOCK
        assert "no cheaper configuration" in decision.reason

    def test_auto_downgrade_prefers_first_tier_that_fits_remaining_budget(self, make_summary):
        decision = decide(make_summary("450", "500"), EnforcementMode.AUTO_DOWNGRADE, Decimal("1"))

        suggestion = decision.suggested_downgrade
        assert suggestion.tier == "reduce_top_k"
        assert suggestion.estimated_new_cost_usd == Decimal("0.75")

    def test_auto_downgrade_falls_back_to_largest_reduction(self, make_summary):
        decision = decide(make_summary("600", "500"), EnforcementMode.AUTO_DOWNGRADE, Decimal("1"))

        assert decision.suggested_downgrade.tier == "aggressive"
        assert decision.severity is AlertSeverity.CRITICAL

    def test_mode_accepts_plain_strings(self, make_summary):
        decision = decide(make_summary("600", "500"), "abort")
        assert decision.mode is EnforcementMode.ABORT

    def test_decide_is_pure(self, make_summary):
        summary = make_summary("450", "500")
        first = decide(summary, EnforcementMode.AUTO_DOWNGRADE, Decimal("2"))
        second = decide(summary, EnforcementMode.AUTO_DOWNGRADE, Decimal("2"))
        assert first == second


# ---------------------------------------------------------------------------
# Per-query cap
# ---------------------------------------------------------------------------
class TestPerQueryCap:
    @pytest.mark.parametrize("mode", [EnforcementMode.ABORT, EnforcementMode.AUTO_DOWNGRADE])
    def test_strict_modes_block_above_cap_even_under_budget(self, make_summary, mode):
        decision = decide(
            make_summary("10", "500"),
            mode,
            Decimal("1.00"),
            max_cost_per_query_usd=Decimal("0.50"),
        )

        assert decision.action is EnforcementAction.BLOCK
        assert decision.cap_exceeded
        assert "$1.00" in decision.reason
        assert "$0.50" in decision.reason

    def test_warn_downgrades_into_the_cap(self, make_summary):
        decision = decide(
            make_summary("10", "500"),
            EnforcementMode.WARN,
            Decimal("1.00"),
            max_cost_per_query_usd=Decimal("0.50"),
        )

        assert decision.action is EnforcementAction.PROCEED_WITH_DOWNGRADE
        assert decision.suggested_downgrade.tier == "fewer_experiments"
        assert decision.suggested_downgrade.estimated_new_cost_usd <= Decimal("0.50")

    def test_warn_blocks_when_nothing_fits_the_cap(self, make_summary):
        decision = decide(
            make_summary("10", "500"),
            EnforcementMode.WARN,
            Decimal("1.00"),
            max_cost_per_query_usd=Decimal("0.10"),
        )

        assert decision.action is EnforcementAction.BLOCK
        assert decision.cap_exceeded

    def test_estimate_at_cap_is_not_capped(self, make_summary):
        decision = decide(
            make_summary("10", "500"),
            EnforcementMode.ABORT,
            Decimal("0.50"),
            max_cost_per_query_usd=Decimal("0.50"),
        )

        assert decision.allowed
        assert not decision.cap_exceeded

    def test_no_estimate_ignores_cap(self, make_summary):
        decision = decide(make_summary("10", "500"), EnforcementMode.ABORT, max_cost_per_query_usd=Decimal("0.01"))
        assert decision.allowed


# ---------------------------------------------------------------------------
# Downgrade ladder
# ---------------------------------------------------------------------------
class TestDowngradePlanner:
    def test_skips_tiers_that_change_nothing(self):
        tiers = [s.tier for s in DowngradePlanner().available(OperationConfig(), Decimal("1"))]
        # The default config already uses the small embedding model.
        assert tiers == ["reduce_top_k", "fewer_experiments", "aggressive"]

    def test_large_model_starts_with_model_swap(self):
        config = OperationConfig(embedding_model="text-embedding-3-large")
        suggestion = DowngradePlanner().fit(config, Decimal("1"), Decimal("0.5"))

        assert suggestion.tier == "smaller_embedding_model"
        assert suggestion.adjusted_config.embedding_model == "text-embedding-3-small"
        assert suggestion.cost_savings_percent == pytest.approx(85.0)
        assert suggestion.quality_impact_percent == pytest.approx(-15.0)

    def test_fewer_experiments_has_floor_of_five(self):
        config = OperationConfig(num_experiments=6)
        [suggestion] = [
            s for s in DowngradePlanner().available(config, None) if s.tier == "fewer_experiments"
        ]
        assert suggestion.adjusted_config.num_experiments == 5

    def test_fit_without_estimate_returns_mildest_tier(self):
        suggestion = DowngradePlanner().fit(OperationConfig(), None, Decimal("0"))
        assert suggestion.tier == "reduce_top_k"
        assert suggestion.estimated_new_cost_usd is None

    def test_bottom_of_ladder_has_no_path(self):
        planner = DowngradePlanner()
        assert planner.available(BOTTOM_OF_LADDER, Decimal("1")) == []
        assert planner.best_effort(BOTTOM_OF_LADDER, Decimal("1"), Decimal("0")) is None


def test_decision_invariants_are_enforced():
    with pytest.raises(ValueError):
        EnforcementDecision(
            allowed=True,
            action=EnforcementAction.BLOCK,
            reason="inconsistent",
            status=BudgetStatus.OVER_BUDGET,
            mode=EnforcementMode.ABORT,
        )
    with pytest.raises(ValueError):
        EnforcementDecision(
            allowed=True,
            action=EnforcementAction.PROCEED_WITH_DOWNGRADE,
            reason="missing suggestion",
            status=BudgetStatus.AT_RISK,
            mode=EnforcementMode.AUTO_DOWNGRADE,
        )
