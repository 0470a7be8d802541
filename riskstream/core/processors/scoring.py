"""
Composite risk scoring.

Every signal source reports (risk, weight) pairs; the composite is the
weight-normalized average over the sources that produced a value. Sources
that fail or have nothing to say are excluded from the denominator.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class InsufficientDataError(Exception):
    """Raised by a signal source that has no basis for a risk value."""


@dataclass(frozen=True)
class RiskSignal:
    risk: float
    weight: float


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def weighted_average(signals: Iterable[RiskSignal]) -> Optional[float]:
    """
    Weight-normalized average of risk signals.

    Signals with zero weight do not apply and are ignored. Returns None when
    no signal applies, which callers must treat as insufficient data.
    """
    numerator = 0.0
    denominator = 0.0
    for signal in signals:
        if signal.weight <= 0:
            continue
        numerator += clamp(signal.risk) * signal.weight
        denominator += signal.weight

    if denominator == 0:
        return None
    return clamp(numerator / denominator)


@dataclass(frozen=True)
class CompositeResult:
    score: float
    insufficient_data: bool
    categories: Dict[str, float] = field(default_factory=dict)


class CompositeScorer:
    """Combine per-category scores (activity, network, biometric) into one score."""

    def __init__(self, category_weights: Dict[str, float], enabled_categories: Optional[List[str]] = None):
        self.category_weights = dict(category_weights)
        self.enabled_categories = list(enabled_categories or category_weights.keys())

        unknown = [c for c in self.enabled_categories if c not in self.category_weights]
        if unknown:
            raise ValueError(f"No weight configured for categories: {unknown}")

    def is_enabled(self, category: str) -> bool:
        return category in self.enabled_categories

    def combine(self, category_scores: Dict[str, Optional[float]]) -> CompositeResult:
        """
        Args:
            category_scores: Category name -> score, or None when the category
                produced nothing

        Returns:
            CompositeResult; score 0 flagged insufficient_data when no enabled
            category produced a score
        """
        available = {
            name: clamp(score)
            for name, score in category_scores.items()
            if score is not None and self.is_enabled(name)
        }

        score = weighted_average(
            RiskSignal(risk, self.category_weights[name]) for name, risk in available.items()
        )
        if score is None:
            return CompositeResult(score=0.0, insufficient_data=True, categories=available)

        return CompositeResult(score=round(score, 6), insufficient_data=False, categories=available)
