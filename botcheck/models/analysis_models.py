"""Data models for the bot-likelihood analysis pipeline.

This module defines the data structures that flow through the cascade:
request documents read from the queue, content items fetched from the
platform, per-item scoring records and the aggregate result document.

Data Models:
    AnalysisRequest: one queued user-analysis job
    ContentItem: one comment or post belonging to the target user
    PerItemSummary: scoring record for one ContentItem within one request
    AnalysisResult: aggregate outcome for one request

These models use dataclasses for simplicity and map cleanly onto the
analysis_requests / analysis_results tables.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


# Request statuses. Status only moves queued -> fetching -> done|error.
STATUS_QUEUED = "queued"
STATUS_FETCHING = "fetching"
STATUS_SCORING = "scoring"
STATUS_DONE = "done"
STATUS_ERROR = "error"

VALID_STATUSES = {STATUS_QUEUED, STATUS_FETCHING, STATUS_SCORING, STATUS_DONE, STATUS_ERROR}

# Per-item stages, in escalation order.
STAGE_ENTROPY = "entropy"
STAGE_CLASSIFIED = "classified"
STAGE_CONTEXT = "context"

STAGE_ORDER = {STAGE_ENTROPY: 0, STAGE_CLASSIFIED: 1, STAGE_CONTEXT: 2}

# Signal name for the local entropy screen; remote signals are named by config.
ENTROPY_SIGNAL = "entropy"

MAX_ITEMS_LIMIT = 100


@dataclass
class AnalysisRequest:
    """A single user-analysis job read from the request queue.

    Attributes:
        id: Request identifier (primary key of analysis_requests)
        platform: Platform identifier (currently only "reddit")
        user_id: Target user identifier on the platform
        max_items: Optional cap on fetched items (1-100)
        include_parent: Whether parent context may be used for escalation
        status: One of queued, fetching, scoring, done, error
        created_at: Creation timestamp (ISO 8601)
        updated_at: Last update timestamp (ISO 8601)
        error_message: Failure description when status is error
    """
    id: str
    platform: str
    user_id: str
    max_items: Optional[int] = None
    include_parent: bool = False
    status: str = STATUS_QUEUED
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def item_limit(self) -> int:
        """Effective fetch limit, defaulting to and capped at 100."""
        if not self.max_items or self.max_items <= 0:
            return MAX_ITEMS_LIMIT
        return min(self.max_items, MAX_ITEMS_LIMIT)


@dataclass
class ContentItem:
    """One comment or post written by the target user.

    Attributes:
        id: Platform item ID (unique within the platform)
        body: Text content (may be empty)
        parent_id: Reference to the item this one replies to (e.g. "t1_abc", "t3_xyz")
        subreddit: Source subreddit/channel name
        created_utc: Unix timestamp of creation
        permalink: Absolute URL of the item
        score: Platform score (upvotes - downvotes)
        kind: "comment" or "post"
        title: Post title (posts only)
    """
    id: str
    body: str
    parent_id: Optional[str] = None
    subreddit: str = ""
    created_utc: float = 0.0
    permalink: str = ""
    score: int = 0
    kind: str = "comment"
    title: Optional[str] = None

    @property
    def fullname(self) -> str:
        """Platform-qualified reference to this item (t1_ for comments, t3_ for posts)."""
        prefix = "t3_" if self.kind == "post" else "t1_"
        return f"{prefix}{self.id}"

    @property
    def is_post(self) -> bool:
        return self.kind == "post"

    def text_for_scoring(self) -> str:
        """Body text, prefixed by the title for posts."""
        if self.is_post and self.title:
            return f"{self.title}\n{self.body}".strip()
        return self.body or ""


@dataclass
class PerItemSummary:
    """Scoring record for one ContentItem within one request.

    Sub-scores for signals that have not run are absent from ``signal_scores``
    (not zero), so a missing signal stays distinguishable from a confident
    zero score.

    Attributes:
        item_id: ID of the scored ContentItem
        score: Composite bot-likelihood (0.0-1.0, higher = more bot-like)
        num_tokens: Whitespace token count of the scored text
        stage: Highest stage reached (entropy, classified, context)
        signal_scores: Sub-score per signal source that has produced one
        signal_confidences: Confidence per signal source (0.0-1.0)
        confidence: Item-level confidence (0.0-1.0)
        raw_entropy: Bits-per-character of the scored text
        entropy_band: bot, human or inconclusive
        has_parent: Whether the item carries a parent reference
        used_parent_context: Whether context-enriched scoring succeeded
        inconclusive: Whether the item still needed escalation after its last stage
    """
    item_id: str
    score: float = 0.0
    num_tokens: int = 0
    stage: str = STAGE_ENTROPY
    signal_scores: Dict[str, float] = field(default_factory=dict)
    signal_confidences: Dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0
    raw_entropy: float = 0.0
    entropy_band: str = "inconclusive"
    has_parent: bool = False
    used_parent_context: bool = False
    inconclusive: bool = False

    @property
    def entropy_score(self) -> Optional[float]:
        return self.signal_scores.get(ENTROPY_SIGNAL)

    def promote(self, stage: str) -> None:
        """Advance the item to ``stage``.

        Raises:
            ValueError: If ``stage`` is unknown or would move the item backwards
        """
        if stage not in STAGE_ORDER:
            raise ValueError(f"Unknown stage: {stage}")
        if STAGE_ORDER[stage] < STAGE_ORDER[self.stage]:
            raise ValueError(
                f"Stage regression for item {self.item_id}: {self.stage} -> {stage}"
            )
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AnalysisResult:
    """Aggregate outcome for one request, written once on success.

    Attributes:
        request_ref: ID of the AnalysisRequest this result belongs to
        platform: Platform identifier
        user_id: Target user identifier
        user_score: Aggregate bot-likelihood (0.0-1.0)
        analyzed_count: Items that passed the length filter and were scored
        total_count: Items fetched from the content source
        per_item: PerItemSummary list
        method: Scorer method/version tag
        stage_counts: Item count per final stage, over items kept in the user score
        signal_averages: Mean sub-score per signal over items that have it
        entropy_stats: Entropy screen summary (average_entropy, per-band counts, confidence)
        overall_confidence: Stage-weighted confidence (0.0-1.0)
        warnings: Degradation events recorded during the run
        created_at: Creation timestamp (ISO 8601), set by storage when omitted
    """
    request_ref: str
    platform: str
    user_id: str
    user_score: float
    analyzed_count: int
    total_count: int
    per_item: List[PerItemSummary] = field(default_factory=list)
    method: str = ""
    stage_counts: Dict[str, int] = field(default_factory=dict)
    signal_averages: Dict[str, float] = field(default_factory=dict)
    entropy_stats: Dict[str, Any] = field(default_factory=dict)
    overall_confidence: float = 0.0
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[str] = None
