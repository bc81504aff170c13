from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Sequence

from fineflow_budget.domain.budget import DowngradeSuggestion, OperationConfig

SMALL_EMBEDDING_MODEL = "text-embedding-3-small"

_HUNDRED = Decimal(100)


@dataclass(frozen=True, slots=True)
class DowngradeTier:
    """One rung of the downgrade ladder.

    Args:
        name: Stable identifier reported in suggestions and the decision ledger.
        apply: Returns the reduced configuration for a given original.
        cost_reduction: Fraction of the estimated cost saved, e.g. 0.85.
        quality_impact_percent: Expected quality change, negative for a loss.
    """

    name: str
    apply: Callable[[OperationConfig], OperationConfig]
    cost_reduction: Decimal
    quality_impact_percent: float


def _smaller_embedding_model(config: OperationConfig) -> OperationConfig:
    return replace(config, embedding_model=SMALL_EMBEDDING_MODEL)


def _reduce_top_k(config: OperationConfig) -> OperationConfig:
    return replace(config, top_k=min(config.top_k, 5))


def _fewer_experiments(config: OperationConfig) -> OperationConfig:
    return replace(
        config,
        num_experiments=min(config.num_experiments, max(5, config.num_experiments // 2)),
    )


def _aggressive(config: OperationConfig) -> OperationConfig:
    return replace(
        config,
        embedding_model=SMALL_EMBEDDING_MODEL,
        top_k=min(config.top_k, 3),
        num_experiments=min(config.num_experiments, 5),
    )


DEFAULT_TIERS: tuple[DowngradeTier, ...] = (
    DowngradeTier("smaller_embedding_model", _smaller_embedding_model, Decimal("0.85"), -15.0),
    DowngradeTier("reduce_top_k", _reduce_top_k, Decimal("0.25"), -5.0),
    DowngradeTier("fewer_experiments", _fewer_experiments, Decimal("0.50"), -10.0),
    DowngradeTier("aggressive", _aggressive, Decimal("0.75"), -25.0),
)


class DowngradePlanner:
    """Walks the downgrade ladder in order of preference.

    Tiers that would leave the configuration unchanged are skipped, so a
    configuration already at the bottom of the ladder has no downgrade path.
    """

    def __init__(self, tiers: Sequence[DowngradeTier] = DEFAULT_TIERS) -> None:
        self._tiers = tuple(tiers)

    def available(
        self,
        config: OperationConfig,
        estimated_cost_usd: Decimal | None,
    ) -> list[DowngradeSuggestion]:
        """All tiers that actually change ``config``, in ladder order."""

        suggestions: list[DowngradeSuggestion] = []
        for tier in self._tiers:
            adjusted = tier.apply(config)
            if adjusted == config:
                continue
            suggestions.append(self._suggest(tier, config, adjusted, estimated_cost_usd))
        return suggestions

    def fit(
        self,
        config: OperationConfig,
        estimated_cost_usd: Decimal | None,
        limit_usd: Decimal,
    ) -> DowngradeSuggestion | None:
        """First tier whose adjusted cost is within ``limit_usd``, if any.

        Without a cost estimate nothing can be shown to fit, so the mildest
        available tier is returned.
        """

        candidates = self.available(config, estimated_cost_usd)
        if estimated_cost_usd is None:
            return candidates[0] if candidates else None
        for suggestion in candidates:
            new_cost = suggestion.estimated_new_cost_usd
            if new_cost is not None and new_cost <= limit_usd:
                return suggestion
        return None

    def best_effort(
        self,
        config: OperationConfig,
        estimated_cost_usd: Decimal | None,
        limit_usd: Decimal,
    ) -> DowngradeSuggestion | None:
        """Like ``fit``, falling back to the tier with the largest cost reduction."""

        fitted = self.fit(config, estimated_cost_usd, limit_usd)
        if fitted is not None:
            return fitted
        candidates = self.available(config, estimated_cost_usd)
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.cost_savings_percent)

    @staticmethod
    def _suggest(
        tier: DowngradeTier,
        original: OperationConfig,
        adjusted: OperationConfig,
        estimated_cost_usd: Decimal | None,
    ) -> DowngradeSuggestion:
        new_cost = None
        if estimated_cost_usd is not None:
            new_cost = estimated_cost_usd * (1 - tier.cost_reduction)
        return DowngradeSuggestion(
            tier=tier.name,
            original_config=original,
            adjusted_config=adjusted,
            estimated_cost_usd=estimated_cost_usd,
            estimated_new_cost_usd=new_cost,
            cost_savings_percent=float(tier.cost_reduction * _HUNDRED),
            quality_impact_percent=tier.quality_impact_percent,
        )


DEFAULT_PLANNER = DowngradePlanner()
