"""Remote classifier signals

Turns inference responses into per-signal bot-likelihood sub-scores:

- Label signals read a (label, probability) distribution from a text
  classification model and map it through an explicit per-model label table.
- Generation signals ask a text-generation model to continue the text and
  score how closely the continuation echoes the input, combined with a cheap
  perplexity estimate.
- Perplexity signals check that the generation model is reachable for the
  text, then compare a surface perplexity estimate against a threshold.

ClassifierSuite runs every configured signal for a batch of texts with bounded
concurrency. A failed call never raises and never cancels sibling work: it
yields a neutral, zero-confidence result flagged as failed.
"""

import asyncio
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from botcheck.backend.utils.errors import (
    WARNING_TYPE_CLASSIFIER_FAILED,
    WARNING_TYPE_GENERATION_FALLBACK_USED,
    WarningsCollector,
)
from botcheck.config import (
    MODE_AUTO,
    MODE_GENERATION,
    MODE_LABEL,
    MODE_PERPLEXITY,
    ClassifierSignal,
    ScoringConfig,
)
from botcheck.inference import InferenceResponse

logger = structlog.get_logger()


@dataclass(frozen=True)
class LabelPatterns:
    """Lower-case substrings identifying AI-like and human-like labels of one model."""
    ai: Tuple[str, ...]
    human: Tuple[str, ...]


DEFAULT_LABEL_PATTERNS = LabelPatterns(
    ai=("ai", "generated", "fake", "synthetic", "machine"),
    human=("human", "real", "authentic", "original"),
)

# New detector models are added here as data
LABEL_PATTERNS: Dict[str, LabelPatterns] = {
    "Hello-SimpleAI/chatgpt-detector-roberta": LabelPatterns(ai=("chatgpt",), human=("human",)),
    "openai-community/roberta-base-openai-detector": LabelPatterns(ai=("fake",), human=("real",)),
    "roberta-base-openai-detector": LabelPatterns(ai=("fake",), human=("real",)),
}

METHOD_LABEL = "label"
METHOD_GENERATION = "generation"
METHOD_PERPLEXITY = "perplexity"

_WORD_RE = re.compile(r"\w+")


def patterns_for(model_id: str) -> LabelPatterns:
    return LABEL_PATTERNS.get(model_id, DEFAULT_LABEL_PATTERNS)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def confidence_for(score: float) -> float:
    """Distance of a score from the undecided midpoint, scaled to 0..1."""
    return _clamp01(abs(score - 0.5) * 2)


def parse_label_scores(data: Any) -> List[Tuple[str, float]]:
    """
    Flatten a classification payload into (label, probability) pairs.

    Accepts both the flat ``[{"label": ..., "score": ...}]`` shape and the
    nested ``[[{...}, {...}]]`` shape returned for single inputs.

    Raises:
        ValueError: If the payload has neither shape
    """
    if not isinstance(data, list):
        raise ValueError(f"Unexpected classification payload type: {type(data).__name__}")

    entries = data
    if entries and isinstance(entries[0], list):
        entries = entries[0]

    pairs = []
    for entry in entries:
        if not isinstance(entry, dict) or "label" not in entry or "score" not in entry:
            raise ValueError(f"Unexpected classification entry: {entry!r}")
        pairs.append((str(entry["label"]), float(entry["score"])))
    return pairs


def score_from_labels(
    pairs: Sequence[Tuple[str, float]],
    patterns: LabelPatterns
) -> Optional[Tuple[float, float]]:
    """
    Map a label distribution onto (score, confidence).

    The highest-probability AI-like label and human-like label are selected.
    score = ai_prob if ai_prob > human_prob else 1 - human_prob.

    Returns:
        (score, confidence), or None when no label matches either pattern set
    """
    ai_prob: Optional[float] = None
    human_prob: Optional[float] = None

    for label, probability in pairs:
        lowered = label.lower()
        if any(p in lowered for p in patterns.ai):
            ai_prob = probability if ai_prob is None else max(ai_prob, probability)
        elif any(p in lowered for p in patterns.human):
            human_prob = probability if human_prob is None else max(human_prob, probability)

    if ai_prob is None and human_prob is None:
        return None

    ai_prob = ai_prob or 0.0
    human_prob = human_prob or 0.0
    score = _clamp01(ai_prob if ai_prob > human_prob else 1.0 - human_prob)
    return score, confidence_for(score)


def _words(text: str) -> List[str]:
    return _WORD_RE.findall((text or "").lower())


def jaccard_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the word sets of two texts."""
    set_a, set_b = set(_words(a)), set(_words(b))
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def estimate_perplexity(text: str) -> float:
    """
    Cheap perplexity stand-in from surface statistics.

    ppl = 10 * ln(words) + 2 * ln(chars) + 5 * average word length
    """
    words = (text or "").split()
    if not words:
        return 0.0
    chars = len(text)
    avg_word_len = sum(len(w) for w in words) / len(words)
    return 10 * math.log(len(words)) + 2 * math.log(chars) + 5 * avg_word_len


def extract_generated_text(data: Any) -> str:
    """
    Pull the continuation out of a text-generation payload.

    Raises:
        ValueError: If the payload carries no generated_text
    """
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if isinstance(data, dict) and isinstance(data.get("generated_text"), str):
        return data["generated_text"]
    raise ValueError("Generation payload has no generated_text")


def score_from_generation(input_text: str, generated_text: str) -> Tuple[float, float]:
    """
    Score text by how predictable it is to a generation model.

    score = clamp((jaccard(input, generated) + (1 - ppl_estimate / 100)) / 2)
    """
    similarity = jaccard_similarity(input_text, generated_text)
    perplexity = estimate_perplexity(input_text)
    score = _clamp01((similarity + (1.0 - perplexity / 100.0)) / 2.0)
    return score, confidence_for(score)


def raw_perplexity(text: str) -> float:
    """Surface perplexity estimate: 10 * ln(words) + 2 * ln(chars)."""
    words = (text or "").split()
    if not words:
        return 0.0
    return 10 * math.log(len(words)) + 2 * math.log(len(text))


def score_from_perplexity(text: str, threshold: float = 30.0) -> Tuple[float, float]:
    """
    Score text by its perplexity estimate relative to a threshold.

    Lower perplexity reads as more machine-like:
    score = clamp(1 - raw / threshold), confidence = min(1, |raw - threshold| / threshold).
    Text without words scores 0.0 with confidence 0.0.
    """
    if not (text or "").split():
        return 0.0, 0.0
    raw = raw_perplexity(text)
    score = _clamp01(1.0 - raw / threshold)
    confidence = min(1.0, abs(raw - threshold) / threshold)
    return score, confidence


@dataclass
class SignalResult:
    """Outcome of one signal for one text.

    A failed result carries the neutral score 0.0 and confidence 0.0.
    """
    signal: str
    score: float = 0.0
    confidence: float = 0.0
    failed: bool = False
    method: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ClassifierOutcome:
    """All signal results for one item."""
    item_id: str
    results: Dict[str, SignalResult] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        """True when every signal failed (or none ran)."""
        return all(r.failed for r in self.results.values())

    def successful(self) -> Dict[str, SignalResult]:
        return {name: r for name, r in self.results.items() if not r.failed}

    @property
    def max_confidence(self) -> float:
        if not self.results:
            return 0.0
        return max(r.confidence for r in self.results.values())


class ClassifierSuite:
    """Runs the configured remote signals over batches of texts.

    Args:
        label_client: Transport with ``classify(text, model_id)``
        generation_client: Transport with ``generate(text, model_id)``;
            defaults to label_client
        config: Scoring configuration supplying the signal list
        max_concurrency: Maximum items classified at once
    """

    def __init__(
        self,
        label_client,
        generation_client=None,
        config: Optional[ScoringConfig] = None,
        max_concurrency: int = 8,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.label_client = label_client
        self.generation_client = generation_client or label_client
        self.config = config or ScoringConfig()
        self.max_concurrency = max_concurrency

    @property
    def signal_names(self) -> List[str]:
        return [s.name for s in self.config.signals]

    async def _run_label(self, text: str, signal: ClassifierSignal) -> SignalResult:
        response: InferenceResponse = await self.label_client.classify(text, signal.model_id)
        if not response.success:
            return SignalResult(signal.name, failed=True, method=METHOD_LABEL, error=response.error)
        try:
            scored = score_from_labels(parse_label_scores(response.data), patterns_for(signal.model_id))
        except ValueError as e:
            return SignalResult(signal.name, failed=True, method=METHOD_LABEL, error=str(e))
        if scored is None:
            return SignalResult(
                signal.name, failed=True, method=METHOD_LABEL,
                error=f"No recognizable labels from {signal.model_id}",
            )
        score, confidence = scored
        return SignalResult(signal.name, score=score, confidence=confidence, method=METHOD_LABEL)

    async def _run_generation(self, text: str, signal: ClassifierSignal) -> SignalResult:
        response: InferenceResponse = await self.generation_client.generate(text, signal.model_id)
        if not response.success:
            return SignalResult(signal.name, failed=True, method=METHOD_GENERATION, error=response.error)
        try:
            generated = extract_generated_text(response.data)
        except ValueError as e:
            return SignalResult(signal.name, failed=True, method=METHOD_GENERATION, error=str(e))
        score, confidence = score_from_generation(text, generated)
        return SignalResult(signal.name, score=score, confidence=confidence, method=METHOD_GENERATION)

    async def _run_perplexity(self, text: str, signal: ClassifierSignal) -> SignalResult:
        response: InferenceResponse = await self.generation_client.generate(text, signal.model_id)
        if not response.success:
            return SignalResult(signal.name, failed=True, method=METHOD_PERPLEXITY, error=response.error)
        score, confidence = score_from_perplexity(
            text[:self.config.max_text_length],
            self.config.perplexity_threshold,
        )
        return SignalResult(signal.name, score=score, confidence=confidence, method=METHOD_PERPLEXITY)

    async def run_signal(
        self,
        item_id: str,
        text: str,
        signal: ClassifierSignal,
        warnings: Optional[WarningsCollector] = None,
    ) -> SignalResult:
        """Run one signal on one text. Never raises."""
        try:
            if signal.mode == MODE_GENERATION:
                result = await self._run_generation(text, signal)
            elif signal.mode == MODE_PERPLEXITY:
                result = await self._run_perplexity(text, signal)
            else:
                result = await self._run_label(text, signal)
                if result.failed and signal.mode == MODE_AUTO:
                    logger.info(
                        "generation_fallback_used",
                        item_id=item_id,
                        signal=signal.name,
                        model_id=signal.model_id,
                        error=result.error,
                    )
                    if warnings is not None:
                        warnings.append(
                            WARNING_TYPE_GENERATION_FALLBACK_USED,
                            f"{signal.name} fell back to generation for item {item_id}",
                            {"item_id": item_id, "signal": signal.name, "error": result.error},
                        )
                    result = await self._run_generation(text, signal)
        except Exception as e:
            logger.error(
                "signal_unexpected_error",
                item_id=item_id,
                signal=signal.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            result = SignalResult(signal.name, failed=True, error=str(e))

        if result.failed:
            result.score = 0.0
            result.confidence = 0.0
            if warnings is not None:
                warnings.append(
                    WARNING_TYPE_CLASSIFIER_FAILED,
                    f"{signal.name} failed for item {item_id}",
                    {"item_id": item_id, "signal": signal.name, "error": result.error},
                )
        return result

    async def classify_text(
        self,
        item_id: str,
        text: str,
        warnings: Optional[WarningsCollector] = None,
    ) -> ClassifierOutcome:
        """Run every configured signal concurrently on one text."""
        results = await asyncio.gather(
            *(self.run_signal(item_id, text, signal, warnings) for signal in self.config.signals)
        )
        return ClassifierOutcome(item_id=item_id, results={r.signal: r for r in results})

    async def classify_batch(
        self,
        items: Sequence[Tuple[str, str]],
        warnings: Optional[WarningsCollector] = None,
    ) -> Dict[str, ClassifierOutcome]:
        """
        Classify (item_id, text) pairs concurrently, at most max_concurrency at a time.

        Every item receives an outcome; failed signals carry the neutral
        result and are recorded in ``warnings``.

        Returns:
            Dict mapping item_id to its ClassifierOutcome
        """
        if not items:
            return {}

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(item_id: str, text: str) -> ClassifierOutcome:
            async with semaphore:
                return await self.classify_text(item_id, text, warnings)

        outcomes = await asyncio.gather(*(_bounded(item_id, text) for item_id, text in items))

        failed_items = sum(1 for o in outcomes if o.failed)
        logger.info(
            "classifier_batch_complete",
            item_count=len(items),
            failed_items=failed_items,
            signals=self.signal_names,
        )
        return {o.item_id: o for o in outcomes}
