"""Process-wide configuration for the analysis worker.

Two kinds of configuration are loaded once at startup and never mutated:

    Settings: deployment settings read from environment variables
    ScoringConfig: scoring weights, thresholds and classifier signals,
        built from defaults and optional overrides in the system_config table

Both are frozen dataclasses so they can be shared across concurrent tasks
without locking.
"""

import os
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import structlog

from botcheck.backend.db.connection import get_config

logger = structlog.get_logger()


# Classifier signal modes
MODE_LABEL = "label"            # label classification only
MODE_GENERATION = "generation"  # generation-based heuristic only
MODE_AUTO = "auto"              # label classification, generation fallback
MODE_PERPLEXITY = "perplexity"  # perplexity estimate checked against a threshold

VALID_MODES = {MODE_LABEL, MODE_GENERATION, MODE_AUTO, MODE_PERPLEXITY}


@dataclass(frozen=True)
class ClassifierSignal:
    """One remote signal source.

    Attributes:
        name: Signal name, used as the sub-score key and weight lookup
        model_id: Remote model identifier
        mode: label, generation, auto or perplexity
    """
    name: str
    model_id: str
    mode: str = MODE_LABEL


DEFAULT_SIGNALS: Tuple[ClassifierSignal, ...] = (
    ClassifierSignal("bert", "Hello-SimpleAI/chatgpt-detector-roberta", MODE_LABEL),
    ClassifierSignal("ai_detector", "openai-community/roberta-base-openai-detector", MODE_AUTO),
    ClassifierSignal("perplexity", "gpt2", MODE_PERPLEXITY),
)


@dataclass(frozen=True)
class ScoringWeights:
    """Weight per signal source in the composite weighted average."""
    entropy: float = 0.15
    perplexity: float = 0.3
    bert: float = 0.3
    ai_detector: float = 0.25

    def for_signal(self, name: str) -> float:
        return float(getattr(self, name, 0.0))


@dataclass(frozen=True)
class ScoringConfig:
    """Thresholds and weights used by the entropy screen and composite scorer.

    Attributes:
        weights: Per-signal weights
        confidence_threshold: Minimum remote-signal confidence admitted into the average
        bot_threshold: Entropy below this is the bot band
        human_threshold: Entropy above this is the human band
        min_entropy: Lowest realistic entropy (maps to score 1.0)
        max_entropy: Highest realistic entropy (maps to score 0.0)
        min_length: Minimum trimmed body length for an item to be scored
        max_text_length: Characters sent to remote models
        perplexity_threshold: Perplexity estimate below which text looks generated
        signals: Remote classifier signals to run on escalation
    """
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    confidence_threshold: float = 0.6
    bot_threshold: float = 2.0
    human_threshold: float = 4.5
    min_entropy: float = 1.0
    max_entropy: float = 5.5
    min_length: int = 15
    max_text_length: int = 512
    perplexity_threshold: float = 30.0
    signals: Tuple[ClassifierSignal, ...] = DEFAULT_SIGNALS

    def __post_init__(self):
        if not (self.min_entropy < self.bot_threshold < self.human_threshold < self.max_entropy):
            raise ValueError(
                "Entropy bounds must satisfy min_entropy < bot_threshold < human_threshold < max_entropy "
                f"(got {self.min_entropy}, {self.bot_threshold}, {self.human_threshold}, {self.max_entropy})"
            )
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}")
        if self.perplexity_threshold <= 0:
            raise ValueError(f"perplexity_threshold must be positive, got {self.perplexity_threshold}")
        for signal in self.signals:
            if signal.mode not in VALID_MODES:
                raise ValueError(f"Invalid mode '{signal.mode}' for signal {signal.name}")


# system_config keys that may override ScoringConfig fields
_SCORING_OVERRIDE_KEYS = {
    "scoring_confidence_threshold": "confidence_threshold",
    "scoring_bot_threshold": "bot_threshold",
    "scoring_human_threshold": "human_threshold",
    "scoring_min_entropy": "min_entropy",
    "scoring_max_entropy": "max_entropy",
    "scoring_min_length": "min_length",
    "scoring_perplexity_threshold": "perplexity_threshold",
}

_WEIGHT_OVERRIDE_KEYS = {
    "weight_entropy": "entropy",
    "weight_perplexity": "perplexity",
    "weight_bert": "bert",
    "weight_ai_detector": "ai_detector",
}


def load_scoring_config(db_path: Optional[str] = None) -> ScoringConfig:
    """Build the ScoringConfig from defaults plus system_config overrides.

    Keys missing from system_config keep their defaults. If the table is
    unavailable the defaults are used as-is.

    Args:
        db_path: SQLite database path (defaults to DB_PATH env var)

    Returns:
        ScoringConfig: Validated, frozen configuration

    Raises:
        ValueError: If an override is not numeric or the resulting bounds are inconsistent
    """
    overrides = {}
    weight_overrides = {}

    try:
        for key, attr in _SCORING_OVERRIDE_KEYS.items():
            try:
                overrides[attr] = get_config(key, db_path)
            except KeyError:
                continue
        for key, attr in _WEIGHT_OVERRIDE_KEYS.items():
            try:
                weight_overrides[attr] = float(get_config(key, db_path))
            except KeyError:
                continue
    except sqlite3.Error as e:
        logger.warning("system_config_unavailable", error=str(e))
        return ScoringConfig()

    if "min_length" in overrides:
        overrides["min_length"] = int(overrides["min_length"])
    for attr in (
        "confidence_threshold", "bot_threshold", "human_threshold", "min_entropy", "max_entropy",
        "perplexity_threshold",
    ):
        if attr in overrides:
            overrides[attr] = float(overrides[attr])

    config = ScoringConfig()
    if weight_overrides:
        overrides["weights"] = replace(config.weights, **weight_overrides)

    if overrides:
        config = replace(config, **overrides)
        logger.info("scoring_config_overridden", keys=sorted(overrides.keys()))

    return config


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "").strip()
    return float(value) if value else default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name, "").strip().lower()
    if not value:
        return default
    return value in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Deployment settings read from the environment."""
    db_path: str = "./data/botcheck.db"
    huggingface_api_key: str = ""
    huggingface_base_url: str = "https://api-inference.huggingface.co"
    huggingface_timeout: float = 30.0
    huggingface_max_retries: int = 3
    generation_backend: str = "huggingface"
    openai_api_key: str = ""
    poll_interval_seconds: float = 5.0
    poll_batch_size: int = 5
    max_concurrency: int = 8
    enable_polling: bool = False
    include_submissions: bool = False


def load_settings() -> Settings:
    """Read Settings from environment variables.

    Environment variables:
        DB_PATH, HUGGINGFACE_API_KEY, HUGGINGFACE_BASE_URL, HUGGINGFACE_TIMEOUT,
        HUGGINGFACE_MAX_RETRIES, GENERATION_BACKEND, OPENAI_API_KEY,
        POLL_INTERVAL_SECONDS, POLL_BATCH_SIZE, MAX_CONCURRENCY, ENABLE_POLLING,
        REDDIT_INCLUDE_SUBMISSIONS

    Raises:
        ValueError: If GENERATION_BACKEND is not huggingface or openai
    """
    backend = os.environ.get("GENERATION_BACKEND", "huggingface").strip().lower() or "huggingface"
    if backend not in ("huggingface", "openai"):
        raise ValueError(f"GENERATION_BACKEND must be 'huggingface' or 'openai', got '{backend}'")

    return Settings(
        db_path=os.environ.get("DB_PATH", "./data/botcheck.db"),
        huggingface_api_key=os.environ.get("HUGGINGFACE_API_KEY", "").strip(),
        huggingface_base_url=os.environ.get("HUGGINGFACE_BASE_URL", "").strip()
        or "https://api-inference.huggingface.co",
        huggingface_timeout=_env_float("HUGGINGFACE_TIMEOUT", 30.0),
        huggingface_max_retries=_env_int("HUGGINGFACE_MAX_RETRIES", 3),
        generation_backend=backend,
        openai_api_key=os.environ.get("OPENAI_API_KEY", "").strip(),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 5.0),
        poll_batch_size=_env_int("POLL_BATCH_SIZE", 5),
        max_concurrency=_env_int("MAX_CONCURRENCY", 8),
        enable_polling=_env_bool("ENABLE_POLLING"),
        include_submissions=_env_bool("REDDIT_INCLUDE_SUBMISSIONS"),
    )
