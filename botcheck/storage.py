"""Storage operations for analysis requests and results.

This module is the durable request queue and result store. The request row is
the only state shared between concurrent workers; it is claimed with a
conditional UPDATE so that each request is processed at most once.

Key Functions:
    RequestStore.create_request: insert a queued request
    RequestStore.claim_request: atomic queued -> fetching transition
    RequestStore.list_queued: oldest queued request ids
    RequestStore.save_result: persist the result and mark the request done
    RequestStore.mark_error: terminal failure with message
"""

import json
import sqlite3
import uuid
from typing import List, Optional

import structlog

from botcheck.backend.db.connection import get_connection
from botcheck.models.analysis_models import (
    MAX_ITEMS_LIMIT,
    STAGE_CLASSIFIED,
    STAGE_CONTEXT,
    STAGE_ENTROPY,
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_FETCHING,
    STATUS_QUEUED,
    STATUS_SCORING,
    AnalysisRequest,
    AnalysisResult,
    PerItemSummary,
)

logger = structlog.get_logger()

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


def _row_to_request(row: sqlite3.Row) -> AnalysisRequest:
    return AnalysisRequest(
        id=row['id'],
        platform=row['platform'],
        user_id=row['user_id'],
        max_items=row['max_items'],
        include_parent=bool(row['include_parent']),
        status=row['status'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        error_message=row['error_message'],
    )


def _row_to_result(row: sqlite3.Row) -> AnalysisResult:
    return AnalysisResult(
        request_ref=row['request_id'],
        platform=row['platform'],
        user_id=row['user_id'],
        user_score=row['user_score'],
        analyzed_count=row['analyzed_count'],
        total_count=row['total_count'],
        per_item=[PerItemSummary(**entry) for entry in json.loads(row['per_item'])],
        method=row['method'],
        stage_counts={
            STAGE_ENTROPY: row['entropy_count'],
            STAGE_CLASSIFIED: row['classified_count'],
            STAGE_CONTEXT: row['context_count'],
        },
        signal_averages=json.loads(row['signal_averages'] or '{}'),
        entropy_stats=json.loads(row['entropy_stats'] or '{}'),
        overall_confidence=row['overall_confidence'],
        warnings=json.loads(row['warnings']) if row['warnings'] else [],
        created_at=row['created_at'],
    )


class RequestStore:
    """SQLite-backed request queue and result store.

    Each method opens its own connection, so one store can be shared by the
    poller and the HTTP trigger.

    Args:
        db_path: SQLite database path (defaults to DB_PATH env var)
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def create_request(
        self,
        platform: str,
        user_id: str,
        max_items: Optional[int] = None,
        include_parent: bool = False,
        request_id: Optional[str] = None,
    ) -> str:
        """Insert a new queued request and return its id.

        Raises:
            ValueError: If max_items is outside 1..100 or user_id is empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        if max_items is not None and not 1 <= max_items <= MAX_ITEMS_LIMIT:
            raise ValueError(f"max_items must be between 1 and {MAX_ITEMS_LIMIT}, got {max_items}")

        request_id = request_id or uuid.uuid4().hex
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO analysis_requests (id, platform, user_id, max_items, include_parent, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (request_id, platform, user_id.strip(), max_items, int(include_parent), STATUS_QUEUED),
            )
            conn.commit()

        logger.info("request_created", request_id=request_id, platform=platform, user_id=user_id)
        return request_id

    def get_request(self, request_id: str) -> Optional[AnalysisRequest]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM analysis_requests WHERE id = ?", (request_id,)
            ).fetchone()
        return _row_to_request(row) if row else None

    def claim_request(self, request_id: str) -> bool:
        """Atomically move a request from queued to fetching.

        Returns:
            bool: True if this caller claimed the request, False if it was not queued
        """
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE analysis_requests
                SET status = ?, updated_at = {_NOW_SQL}
                WHERE id = ? AND status = ?
                """,
                (STATUS_FETCHING, request_id, STATUS_QUEUED),
            )
            conn.commit()
            return cursor.rowcount == 1

    def list_queued(self, limit: int = 5) -> List[str]:
        """Return ids of queued requests, oldest first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id FROM analysis_requests
                WHERE status = ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (STATUS_QUEUED, limit),
            ).fetchall()
        return [row['id'] for row in rows]

    def mark_error(self, request_id: str, message: str) -> None:
        """Set a non-terminal request to error with ``message``."""
        with get_connection(self.db_path) as conn:
            conn.execute(
                f"""
                UPDATE analysis_requests
                SET status = ?, error_message = ?, updated_at = {_NOW_SQL}
                WHERE id = ? AND status IN (?, ?)
                """,
                (STATUS_ERROR, message, request_id, STATUS_FETCHING, STATUS_SCORING),
            )
            conn.commit()

    def save_result(self, result: AnalysisResult) -> None:
        """Persist the result and mark the request done in one transaction.

        The request must still be in progress; a terminal request is left
        untouched and no result row is written.

        Raises:
            sqlite3.IntegrityError: If a result already exists for the request
            RuntimeError: If the request is not in progress
        """
        per_item = json.dumps([item.to_dict() for item in result.per_item])
        warnings = json.dumps(result.warnings) if result.warnings else None

        with get_connection(self.db_path) as conn:
            try:
                cursor = conn.execute(
                    f"""
                    UPDATE analysis_requests
                    SET status = ?, updated_at = {_NOW_SQL}
                    WHERE id = ? AND status IN (?, ?)
                    """,
                    (STATUS_DONE, result.request_ref, STATUS_FETCHING, STATUS_SCORING),
                )
                if cursor.rowcount != 1:
                    raise RuntimeError(f"Request {result.request_ref} is not in progress")

                conn.execute(
                    """
                    INSERT INTO analysis_results (
                        request_id, platform, user_id, user_score, analyzed_count, total_count,
                        per_item, method, entropy_count, classified_count, context_count,
                        signal_averages, entropy_stats, overall_confidence, warnings
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.request_ref,
                        result.platform,
                        result.user_id,
                        result.user_score,
                        result.analyzed_count,
                        result.total_count,
                        per_item,
                        result.method,
                        result.stage_counts.get(STAGE_ENTROPY, 0),
                        result.stage_counts.get(STAGE_CLASSIFIED, 0),
                        result.stage_counts.get(STAGE_CONTEXT, 0),
                        json.dumps(result.signal_averages),
                        json.dumps(result.entropy_stats),
                        result.overall_confidence,
                        warnings,
                    ),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.info(
            "result_saved",
            request_id=result.request_ref,
            user_score=round(result.user_score, 4),
            analyzed_count=result.analyzed_count,
        )

    def get_result(self, request_id: str) -> Optional[AnalysisResult]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM analysis_results WHERE request_id = ?", (request_id,)
            ).fetchone()
        return _row_to_result(row) if row else None

    def count_results(self, request_id: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM analysis_results WHERE request_id = ?", (request_id,)
            ).fetchone()
        return row['n']

