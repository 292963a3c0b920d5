"""
Composite scoring for per-item and per-user bot-likelihood.

This module decides which items escalate to the next cascade stage, combines
the sub-scores an item has collected into one composite score, and aggregates
per-item results into a user-level verdict.
"""

from typing import Dict, Iterable, List, Optional
import structlog

from botcheck.config import ScoringConfig
from botcheck.entropy import BAND_INCONCLUSIVE
from botcheck.models.analysis_models import (
    ENTROPY_SIGNAL,
    STAGE_CLASSIFIED,
    STAGE_CONTEXT,
    STAGE_ENTROPY,
    PerItemSummary,
)

logger = structlog.get_logger(__name__)


# Contribution of one item at each stage to the user-level confidence
STAGE_CONFIDENCE_WEIGHTS = {
    STAGE_ENTROPY: 0.3,
    STAGE_CLASSIFIED: 0.7,
    STAGE_CONTEXT: 1.0,
}


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def needs_escalation(item: PerItemSummary, config: Optional[ScoringConfig] = None) -> bool:
    """
    Decide whether an item should move to the next, more expensive stage.

    Args:
        item: Per-item summary at its current stage
        config: Scoring configuration (confidence_threshold)

    Returns:
        bool:
        - stage entropy: True only when the entropy band is inconclusive
        - stage classified: True when item confidence is below the threshold
        - stage context: always False (final stage)

    Examples:
        >>> needs_escalation(PerItemSummary("a", stage="entropy", entropy_band="bot"))
        False
        >>> needs_escalation(PerItemSummary("a", stage="classified", confidence=0.4))
        True
    """
    if config is None:
        config = ScoringConfig()

    if item.stage == STAGE_ENTROPY:
        return item.entropy_band == BAND_INCONCLUSIVE
    if item.stage == STAGE_CLASSIFIED:
        return item.confidence < config.confidence_threshold
    return False


def combine(item: PerItemSummary, config: Optional[ScoringConfig] = None) -> float:
    """
    Compute the composite score for one item from its present sub-scores.

    At stage entropy the entropy sub-score is returned as-is. At later stages
    a weighted average is taken over the signals that qualify: the entropy
    signal always qualifies; a remote signal qualifies when its own confidence
    meets the threshold. With one qualifying signal its value is returned
    unweighted; with none the result is 0.0.

    Args:
        item: Per-item summary with signal_scores / signal_confidences
        config: Scoring configuration (weights, confidence_threshold)

    Returns:
        float: Composite score clamped to [0.0, 1.0]
    """
    if config is None:
        config = ScoringConfig()

    if item.stage == STAGE_ENTROPY:
        return _clamp01(item.signal_scores.get(ENTROPY_SIGNAL) or 0.0)

    qualifying: Dict[str, float] = {}
    for name, value in item.signal_scores.items():
        if value is None:
            continue
        if name == ENTROPY_SIGNAL:
            qualifying[name] = value
            continue
        if item.signal_confidences.get(name, 0.0) >= config.confidence_threshold:
            qualifying[name] = value

    if not qualifying:
        return 0.0
    if len(qualifying) == 1:
        return _clamp01(next(iter(qualifying.values())))

    total_weight = 0.0
    weighted_sum = 0.0
    for name, value in qualifying.items():
        weight = config.weights.for_signal(name)
        weighted_sum += weight * value
        total_weight += weight

    if total_weight <= 0:
        return _clamp01(sum(qualifying.values()) / len(qualifying))
    return _clamp01(weighted_sum / total_weight)


def aggregate_user(items: Iterable[PerItemSummary]) -> Dict[str, object]:
    """
    Aggregate per-item results into a user-level verdict.

    Items with a composite score <= 0 carry no evidence and are dropped.

    Returns:
        dict with keys:
        - user_score: mean composite score of the kept items
        - confidence: min(1, (0.3 * entropy + 0.7 * classified + 1.0 * context) / n)
        - stage_counts: kept items per final stage
        - signal_averages: mean sub-score per signal over items that have it
        - item_count: number of kept items
    """
    kept: List[PerItemSummary] = [i for i in items if i.score > 0]

    stage_counts = {STAGE_ENTROPY: 0, STAGE_CLASSIFIED: 0, STAGE_CONTEXT: 0}

    if not kept:
        return {
            "user_score": 0.0,
            "confidence": 0.0,
            "stage_counts": stage_counts,
            "signal_averages": {},
            "item_count": 0,
        }

    for item in kept:
        stage_counts[item.stage] += 1

    n = len(kept)
    user_score = sum(i.score for i in kept) / n

    weighted = sum(STAGE_CONFIDENCE_WEIGHTS[stage] * count for stage, count in stage_counts.items())
    confidence = min(1.0, weighted / n)

    totals: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    for item in kept:
        for name, value in item.signal_scores.items():
            if value is None:
                continue
            totals[name] = totals.get(name, 0.0) + value
            counts[name] = counts.get(name, 0) + 1
    signal_averages = {name: totals[name] / counts[name] for name in totals}

    return {
        "user_score": _clamp01(user_score),
        "confidence": _clamp01(confidence),
        "stage_counts": stage_counts,
        "signal_averages": signal_averages,
        "item_count": n,
    }


class CompositeScorer:
    """Binds the scoring functions to one ScoringConfig.

    Example:
        >>> scorer = CompositeScorer(config)
        >>> if scorer.needs_escalation(item):
        ...     ...
        >>> item.score = scorer.combine(item)
    """

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def needs_escalation(self, item: PerItemSummary) -> bool:
        return needs_escalation(item, self.config)

    def combine(self, item: PerItemSummary) -> float:
        return combine(item, self.config)

    def aggregate_user(self, items: Iterable[PerItemSummary]) -> Dict[str, object]:
        return aggregate_user(items)
