"""Error Handling Utilities

This module provides retry logic with exponential backoff for transient upstream
failures, and warning collection for non-fatal degradation events during a request.

Error tiers used across the worker:
    Input errors: terminal for the request, never retried
    Transient upstream errors: retried here with backoff, then degraded by the caller
    Unexpected errors: caught at the orchestrator top level
"""

import asyncio
import json
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import structlog

T = TypeVar('T')

logger = structlog.get_logger()


class RetryableUpstreamError(Exception):
    """Transient upstream failure (HTTP 429/503) that may succeed on retry."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def calculate_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 30.0)

    Returns:
        Delay in seconds for this attempt

    Examples:
        >>> calculate_backoff_delay(0)
        1.0
        >>> calculate_backoff_delay(2)
        4.0
        >>> calculate_backoff_delay(10)
        30.0
    """
    delay = base_delay * (2 ** attempt)
    return min(delay, max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (RetryableUpstreamError,),
    operation: str = "upstream_call",
) -> T:
    """Await a coroutine factory with exponential backoff retry logic.

    Used for external integrations (Reddit public endpoints, inference API).
    ``max_attempts`` counts every call, including the first one.

    Args:
        fn: Zero-argument callable returning a fresh awaitable per attempt
        max_attempts: Maximum number of attempts in total (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 30.0)
        retryable_exceptions: Exception types that trigger a retry
        operation: Name used in retry log events

    Returns:
        The result of the first successful attempt

    Raises:
        The final exception once attempts are exhausted, or immediately if the
        exception type is not in retryable_exceptions

    Backoff schedule (base_delay=1.0, max_delay=30.0):
        - Attempt 1: immediate
        - Attempt 2: wait 1.0s
        - Attempt 3: wait 2.0s
        - Attempt 4: wait 4.0s, and so on, capped at max_delay
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(max_attempts):
        try:
            return await fn()
        except retryable_exceptions as e:
            if attempt >= max_attempts - 1:
                raise

            delay = calculate_backoff_delay(attempt, base_delay, max_delay)
            logger.debug(
                "upstream_retry",
                operation=operation,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Unreachable code")


# Supported warning types (degradation events)
WARNING_TYPE_CLASSIFIER_FAILED = "classifier_failed"
WARNING_TYPE_GENERATION_FALLBACK_USED = "generation_fallback_used"
WARNING_TYPE_CONTEXT_UNAVAILABLE = "context_unavailable"
WARNING_TYPE_PUBLIC_FALLBACK_USED = "public_fallback_used"

VALID_WARNING_TYPES = {
    WARNING_TYPE_CLASSIFIER_FAILED,
    WARNING_TYPE_GENERATION_FALLBACK_USED,
    WARNING_TYPE_CONTEXT_UNAVAILABLE,
    WARNING_TYPE_PUBLIC_FALLBACK_USED,
}


class WarningsCollector:
    """Thread-safe collector for non-fatal warnings during one request.

    Accumulates warning events with type, message, timestamp, and context.
    Serialized into analysis_results.warnings on success.

    Example:
        >>> collector = WarningsCollector()
        >>> collector.append(
        ...     "classifier_failed",
        ...     "bert failed for item abc123",
        ...     {"item_id": "abc123", "signal": "bert"}
        ... )
        >>> collector.to_json()
        '[{"type": "classifier_failed", "message": "...", "timestamp": "...", "context": {...}}]'
    """

    def __init__(self):
        self._warnings: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, warning_type: str, message: str, context: Dict[str, Any]) -> None:
        """Add a warning with type, message, timestamp, and context.

        Raises:
            ValueError: If warning_type is not in VALID_WARNING_TYPES
        """
        if warning_type not in VALID_WARNING_TYPES:
            raise ValueError(
                f"Invalid warning_type '{warning_type}'. "
                f"Must be one of: {', '.join(sorted(VALID_WARNING_TYPES))}"
            )

        warning = {
            "type": warning_type,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": context
        }

        with self._lock:
            self._warnings.append(warning)

    def to_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._warnings)

    def to_json(self) -> Optional[str]:
        """Serialize warnings to JSON array string, or None if none were collected."""
        with self._lock:
            if not self._warnings:
                return None
            return json.dumps(self._warnings)

    def __len__(self) -> int:
        with self._lock:
            return len(self._warnings)
