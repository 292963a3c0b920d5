"""Cascade orchestrator: the per-request state machine.

A request is claimed with an atomic queued -> fetching transition, then moves
through the cascade:

    1. fetch the user's items and drop those below the minimum length
    2. entropy-screen every qualifying item
    3. classify items whose entropy band is inconclusive
    4. (include_parent only) re-classify still-uncertain items with parent context
    5. aggregate, persist the result and mark the request done

Any failure in steps 1-5 marks the request error with the exception message
and persists nothing else. Cancellation marks the request error before the
CancelledError propagates.
"""

import asyncio
from enum import Enum
from typing import Dict, List, Optional

import structlog

from botcheck.ai_client import OpenAIClient
from botcheck.backend.utils.errors import WARNING_TYPE_CONTEXT_UNAVAILABLE, WarningsCollector
from botcheck.classifiers import ClassifierOutcome, ClassifierSuite
from botcheck.config import ScoringConfig, Settings, load_scoring_config
from botcheck.context import ContextResolver, build_context_text
from botcheck.entropy import (
    BAND_INCONCLUSIVE,
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    EntropyScore,
    aggregate_entropy_stats,
    score_batch,
)
from botcheck.inference import HuggingFaceInferenceClient
from botcheck.models.analysis_models import (
    ENTROPY_SIGNAL,
    STAGE_CLASSIFIED,
    STAGE_CONTEXT,
    STAGE_ENTROPY,
    AnalysisRequest,
    AnalysisResult,
    ContentItem,
    PerItemSummary,
)
from botcheck.reddit import RedditContentSource
from botcheck.scoring import CompositeScorer
from botcheck.storage import RequestStore

logger = structlog.get_logger()


METHOD_TAG = "cascading-entropy-classifier-context-v1"

# Numeric confidence recorded for the entropy signal, by entropy confidence level
ENTROPY_CONFIDENCE_VALUES = {
    CONFIDENCE_HIGH: 0.8,
    CONFIDENCE_MEDIUM: 0.5,
}


class ProcessOutcome(str, Enum):
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    DONE = "done"
    ERROR = "error"


class AnalysisInputError(Exception):
    """Terminal input problem for one request (never retried)."""
    pass


class CascadeOrchestrator:
    """Runs requests through the cascade.

    Args:
        store: Request queue and result store
        sources: Content source per platform identifier
        classifiers: Remote classifier suite
        config: Scoring configuration
        max_concurrency: Fan-out cap for parent-context lookups
    """

    def __init__(
        self,
        store: RequestStore,
        sources: Dict[str, object],
        classifiers: ClassifierSuite,
        config: Optional[ScoringConfig] = None,
        max_concurrency: int = 8,
    ):
        self.store = store
        self.sources = sources
        self.classifiers = classifiers
        self.config = config or ScoringConfig()
        self.scorer = CompositeScorer(self.config)
        self.max_concurrency = max_concurrency
        self._closeables: List[object] = []

    async def process_request(self, request_id: str) -> ProcessOutcome:
        """
        Process one request end to end.

        Returns:
            ProcessOutcome:
            - NOT_FOUND: no such request
            - SKIPPED: request was not queued (already claimed or terminal)
            - DONE: result persisted, status done
            - ERROR: status error with message
        """
        request = self.store.get_request(request_id)
        if request is None:
            logger.warning("request_not_found", request_id=request_id)
            return ProcessOutcome.NOT_FOUND

        if not self.store.claim_request(request_id):
            logger.info("request_skipped", request_id=request_id, status=request.status)
            return ProcessOutcome.SKIPPED

        logger.info(
            "request_claimed",
            request_id=request_id,
            platform=request.platform,
            user_id=request.user_id,
            include_parent=request.include_parent,
        )

        warnings = WarningsCollector()
        try:
            result = await self._run_cascade(request, warnings)
            self.store.save_result(result)
        except asyncio.CancelledError:
            logger.warning("request_cancelled", request_id=request_id)
            self.store.mark_error(request_id, "Processing cancelled")
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(
                "request_failed",
                request_id=request_id,
                error=message,
                error_type=type(e).__name__,
                exc_info=not isinstance(e, AnalysisInputError),
            )
            self.store.mark_error(request_id, message)
            return ProcessOutcome.ERROR

        logger.info(
            "request_completed",
            request_id=request_id,
            user_score=round(result.user_score, 4),
            analyzed_count=result.analyzed_count,
            total_count=result.total_count,
            stage_counts=result.stage_counts,
            warning_count=len(result.warnings),
        )
        return ProcessOutcome.DONE

    async def _run_cascade(self, request: AnalysisRequest, warnings: WarningsCollector) -> AnalysisResult:
        source = self.sources.get(request.platform)
        if source is None:
            raise AnalysisInputError(f"Unsupported platform: {request.platform}")

        # Step 1: fetch and filter
        items = await source.fetch_user_items(request.user_id, request.item_limit, warnings=warnings)
        qualifying = [
            item for item in items
            if len(item.text_for_scoring().strip()) >= self.config.min_length
        ]
        if not qualifying:
            raise AnalysisInputError("No valid items found for analysis")

        items_by_id = {item.id: item for item in qualifying}

        # Step 2: entropy screen
        screened = score_batch(
            [(item.id, item.text_for_scoring()) for item in qualifying],
            self.config,
        )
        summaries = [self._summarize(items_by_id[item_id], entropy) for item_id, entropy in screened]
        entropy_stats = aggregate_entropy_stats(entropy for _, entropy in screened)
        logger.info(
            "entropy_screen_complete",
            request_id=request.id,
            item_count=len(summaries),
            inconclusive_count=entropy_stats["inconclusive_count"],
            average_entropy=round(entropy_stats["average_entropy"], 4),
        )

        # Step 3: classifier escalation
        escalated = [s for s in summaries if self.scorer.needs_escalation(s)]
        if escalated:
            outcomes = await self.classifiers.classify_batch(
                [(s.item_id, items_by_id[s.item_id].text_for_scoring()) for s in escalated],
                warnings,
            )
            for summary in escalated:
                outcome = outcomes.get(summary.item_id)
                if outcome is not None:
                    self._apply_classification(summary, outcome)
            logger.info("classifier_stage_complete", request_id=request.id, escalated_count=len(escalated))

        # Step 4: parent-context escalation
        if request.include_parent:
            candidates = [
                s for s in summaries
                if self.scorer.needs_escalation(s) and items_by_id[s.item_id].parent_id
            ]
            if candidates:
                await self._escalate_with_context(request, candidates, items_by_id, source, warnings)

        for summary in summaries:
            summary.inconclusive = self._is_inconclusive(summary)

        # Step 5: aggregate
        aggregate = self.scorer.aggregate_user(summaries)

        return AnalysisResult(
            request_ref=request.id,
            platform=request.platform,
            user_id=request.user_id,
            user_score=aggregate["user_score"],
            analyzed_count=len(summaries),
            total_count=len(items),
            per_item=summaries,
            method=METHOD_TAG,
            stage_counts=aggregate["stage_counts"],
            signal_averages=aggregate["signal_averages"],
            entropy_stats=entropy_stats,
            overall_confidence=aggregate["confidence"],
            warnings=warnings.to_list(),
        )

    def _summarize(self, item: ContentItem, entropy: EntropyScore) -> PerItemSummary:
        text = item.text_for_scoring()
        summary = PerItemSummary(
            item_id=item.id,
            num_tokens=len(text.split()),
            raw_entropy=entropy.raw_entropy,
            entropy_band=entropy.band,
            has_parent=bool(item.parent_id),
        )
        summary.signal_scores[ENTROPY_SIGNAL] = entropy.normalized_score
        summary.signal_confidences[ENTROPY_SIGNAL] = ENTROPY_CONFIDENCE_VALUES.get(entropy.confidence, 0.0)
        summary.confidence = summary.signal_confidences[ENTROPY_SIGNAL]
        summary.score = self.scorer.combine(summary)
        return summary

    def _apply_classification(self, summary: PerItemSummary, outcome: ClassifierOutcome) -> None:
        for name, result in outcome.successful().items():
            summary.signal_scores[name] = result.score
            summary.signal_confidences[name] = result.confidence
        summary.confidence = outcome.max_confidence
        summary.promote(STAGE_CLASSIFIED)
        summary.score = self.scorer.combine(summary)

    def _apply_context(self, summary: PerItemSummary, outcome: ClassifierOutcome) -> None:
        successful = outcome.successful()
        for name, result in successful.items():
            summary.signal_scores[name] = result.score
            summary.signal_confidences[name] = result.confidence
        summary.confidence = max([summary.confidence] + [r.confidence for r in successful.values()])
        summary.used_parent_context = True
        summary.promote(STAGE_CONTEXT)
        summary.score = self.scorer.combine(summary)

    async def _escalate_with_context(
        self,
        request: AnalysisRequest,
        candidates: List[PerItemSummary],
        items_by_id: Dict[str, ContentItem],
        source,
        warnings: WarningsCollector,
    ) -> None:
        resolver = ContextResolver(source)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _resolve(summary: PerItemSummary) -> Optional[str]:
            async with semaphore:
                return await resolver.resolve_parent_text(items_by_id[summary.item_id])

        contexts = await asyncio.gather(*(_resolve(s) for s in candidates))

        batch = []
        with_context = {}
        for summary, context in zip(candidates, contexts):
            item = items_by_id[summary.item_id]
            if context is None:
                warnings.append(
                    WARNING_TYPE_CONTEXT_UNAVAILABLE,
                    f"Parent context unavailable for item {item.id}",
                    {"item_id": item.id, "parent_id": item.parent_id},
                )
                continue
            combined = build_context_text(context, item.text_for_scoring(), self.config.max_text_length)
            batch.append((summary.item_id, combined))
            with_context[summary.item_id] = summary

        if not batch:
            return

        outcomes = await self.classifiers.classify_batch(batch, warnings)
        promoted = 0
        for item_id, summary in with_context.items():
            outcome = outcomes.get(item_id)
            if outcome is None or outcome.failed:
                continue
            self._apply_context(summary, outcome)
            promoted += 1

        logger.info(
            "context_stage_complete",
            request_id=request.id,
            candidate_count=len(candidates),
            resolved_count=len(batch),
            promoted_count=promoted,
        )

    def _is_inconclusive(self, summary: PerItemSummary) -> bool:
        if summary.stage == STAGE_ENTROPY:
            return summary.entropy_band == BAND_INCONCLUSIVE
        return summary.confidence < self.config.confidence_threshold

    def add_closeable(self, resource) -> None:
        """Register a client to be closed by aclose()."""
        self._closeables.append(resource)

    async def aclose(self) -> None:
        for resource in self._closeables:
            await resource.aclose()
        self._closeables = []


def build_orchestrator(settings: Settings, config: Optional[ScoringConfig] = None) -> CascadeOrchestrator:
    """
    Construct the orchestrator and its collaborators from settings.

    Args:
        settings: Deployment settings (see load_settings)
        config: Scoring configuration; loaded from system_config when omitted

    Raises:
        ValueError: If a required API key is missing
    """
    if config is None:
        config = load_scoring_config(settings.db_path)

    store = RequestStore(settings.db_path)
    inference = HuggingFaceInferenceClient(
        api_key=settings.huggingface_api_key,
        base_url=settings.huggingface_base_url,
        timeout=settings.huggingface_timeout,
        max_attempts=settings.huggingface_max_retries,
        max_text_length=config.max_text_length,
    )
    generation = inference
    if settings.generation_backend == "openai":
        generation = OpenAIClient(
            api_key=settings.openai_api_key,
            max_text_length=config.max_text_length,
            timeout=settings.huggingface_timeout,
            max_retries=max(0, settings.huggingface_max_retries - 1),
        )

    reddit = RedditContentSource(include_submissions=settings.include_submissions)

    orchestrator = CascadeOrchestrator(
        store=store,
        sources={reddit.platform: reddit},
        classifiers=ClassifierSuite(
            inference,
            generation_client=generation,
            config=config,
            max_concurrency=settings.max_concurrency,
        ),
        config=config,
        max_concurrency=settings.max_concurrency,
    )
    orchestrator.add_closeable(inference)
    if generation is not inference:
        orchestrator.add_closeable(generation)
    orchestrator.add_closeable(reddit)

    logger.info(
        "orchestrator_built",
        generation_backend=settings.generation_backend,
        signals=[s.name for s in config.signals],
        max_concurrency=settings.max_concurrency,
    )
    return orchestrator
