"""
Entropy screen: fast, local bot-likelihood signal per text item.

Computes Shannon entropy (bits per character) over the character distribution
of whitespace-normalized text and maps it onto a banded classification and a
0..1 bot-likelihood score. Lower entropy means more repetitive text, which is
treated as more bot-like. No network calls; safe to run on every item.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from botcheck.config import ScoringConfig

logger = structlog.get_logger(__name__)


BAND_BOT = "bot"
BAND_HUMAN = "human"
BAND_INCONCLUSIVE = "inconclusive"

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

# Score range of the inconclusive band; the bot and human bands sit outside it
INCONCLUSIVE_HIGH_SCORE = 0.8
INCONCLUSIVE_LOW_SCORE = 0.2

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class EntropyScore:
    """Result of the entropy screen for one text.

    Attributes:
        raw_entropy: Shannon entropy in bits per character (0.0 for rejected input)
        normalized_score: Bot-likelihood in [0.0, 1.0]
        band: bot, human or inconclusive
        confidence: high, medium or low
    """
    raw_entropy: float
    normalized_score: float
    band: str
    confidence: str


NEUTRAL_SCORE = EntropyScore(
    raw_entropy=0.0,
    normalized_score=0.5,
    band=BAND_INCONCLUSIVE,
    confidence=CONFIDENCE_LOW,
)


def normalize_text(text: str) -> str:
    """Collapse runs of whitespace into single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def shannon_entropy(text: str) -> float:
    """
    Shannon entropy of the character distribution of ``text``.

    Args:
        text: Already-normalized text

    Returns:
        float: Bits per character; 0.0 for empty text

    Examples:
        >>> shannon_entropy("aaaa")
        0.0
        >>> shannon_entropy("abab")
        1.0
    """
    if not text:
        return 0.0

    total = len(text)
    entropy = 0.0
    for count in Counter(text).values():
        probability = count / total
        entropy -= probability * math.log2(probability)
    return entropy


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize_entropy(raw_entropy: float, config: ScoringConfig) -> float:
    """
    Map raw entropy onto a 0..1 bot-likelihood score.

    Three linear segments anchored at the configured bounds:
    - min_entropy..bot_threshold maps to 1.0..0.8
    - bot_threshold..human_threshold maps to 0.8..0.2
    - human_threshold..max_entropy maps to 0.2..0.0
    Values outside the realistic bounds are clamped to the end of their segment.
    """
    bot = config.bot_threshold
    human = config.human_threshold

    if raw_entropy <= bot:
        span = bot - config.min_entropy
        score = INCONCLUSIVE_HIGH_SCORE + (1.0 - INCONCLUSIVE_HIGH_SCORE) * (bot - raw_entropy) / span
        return _clamp(score, INCONCLUSIVE_HIGH_SCORE, 1.0)

    if raw_entropy < human:
        fraction = (raw_entropy - bot) / (human - bot)
        return INCONCLUSIVE_HIGH_SCORE - (INCONCLUSIVE_HIGH_SCORE - INCONCLUSIVE_LOW_SCORE) * fraction

    span = config.max_entropy - human
    score = INCONCLUSIVE_LOW_SCORE * (config.max_entropy - raw_entropy) / span
    return _clamp(score, 0.0, INCONCLUSIVE_LOW_SCORE)


def score_text(text: str, config: Optional[ScoringConfig] = None) -> EntropyScore:
    """
    Run the entropy screen on one text.

    Input whose normalized length is below ``config.min_length`` is rejected
    with a neutral, low-confidence result.

    Args:
        text: Raw item text
        config: Scoring configuration (defaults to ScoringConfig())

    Returns:
        EntropyScore with raw entropy, normalized score, band and confidence

    Raises:
        TypeError: If text is not a string
    """
    if config is None:
        config = ScoringConfig()
    if text is not None and not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    normalized = normalize_text(text)
    if len(normalized) < config.min_length:
        return NEUTRAL_SCORE

    raw = shannon_entropy(normalized)

    if raw < config.bot_threshold:
        band, confidence = BAND_BOT, CONFIDENCE_HIGH
    elif raw > config.human_threshold:
        band, confidence = BAND_HUMAN, CONFIDENCE_HIGH
    else:
        band, confidence = BAND_INCONCLUSIVE, CONFIDENCE_MEDIUM

    return EntropyScore(
        raw_entropy=raw,
        normalized_score=normalize_entropy(raw, config),
        band=band,
        confidence=confidence,
    )


def score_batch(
    texts: Iterable[Tuple[str, str]],
    config: Optional[ScoringConfig] = None
) -> List[Tuple[str, EntropyScore]]:
    """Apply score_text independently to (id, text) pairs, preserving order."""
    return [(item_id, score_text(text, config)) for item_id, text in texts]


def aggregate_entropy_stats(scores: Iterable[EntropyScore]) -> Dict[str, object]:
    """
    Summarize entropy results for one user.

    Neutral (rejected) results are ignored. Confidence is high when one band
    holds more than 70% of the results, medium above 40%, low otherwise.

    Returns:
        dict with average_entropy, bot_count, human_count, inconclusive_count, confidence
    """
    valid = [s for s in scores if s.raw_entropy > 0]

    if not valid:
        return {
            "average_entropy": 0.0,
            "bot_count": 0,
            "human_count": 0,
            "inconclusive_count": 0,
            "confidence": CONFIDENCE_LOW,
        }

    total = len(valid)
    bot_count = sum(1 for s in valid if s.band == BAND_BOT)
    human_count = sum(1 for s in valid if s.band == BAND_HUMAN)
    inconclusive_count = total - bot_count - human_count

    majority = max(bot_count, human_count) / total
    if majority > 0.7:
        confidence = CONFIDENCE_HIGH
    elif majority > 0.4:
        confidence = CONFIDENCE_MEDIUM
    else:
        confidence = CONFIDENCE_LOW

    return {
        "average_entropy": sum(s.raw_entropy for s in valid) / total,
        "bot_count": bot_count,
        "human_count": human_count,
        "inconclusive_count": inconclusive_count,
        "confidence": confidence,
    }
