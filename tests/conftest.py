"""
Shared pytest fixtures for the analysis worker tests.

These fixtures provide temporary databases with the schema applied, a request
store, and in-memory fakes for the content source and inference transport.
All tests are behavioral - they verify what the code should do, not how it does it.
"""

import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Paths to SQL files relative to the project root
_DB_DIR = Path(__file__).parent.parent / "botcheck" / "backend" / "db"
SCHEMA_SQL_PATH = _DB_DIR / "schema.sql"


@pytest.fixture
def temp_db_path():
    """Provide a temporary database file path that is cleaned up after test."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    if os.path.exists(db_path):
        os.unlink(db_path)
    for suffix in ['-wal', '-shm']:
        wal_file = db_path + suffix
        if os.path.exists(wal_file):
            os.unlink(wal_file)


@pytest.fixture
def initialized_db_path(temp_db_path):
    """Temporary database path with schema.sql applied via init_schema."""
    from botcheck.backend.db.connection import init_schema

    init_schema(temp_db_path)
    return temp_db_path


@pytest.fixture
def db_connection(initialized_db_path):
    """Raw SQLite connection to the initialized temporary database."""
    conn = sqlite3.connect(initialized_db_path)
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


@pytest.fixture
def store(initialized_db_path):
    """RequestStore backed by the initialized temporary database."""
    from botcheck.storage import RequestStore

    return RequestStore(initialized_db_path)


@pytest.fixture
def entropy_test_config():
    """ScoringConfig with bounds that make the scenario strings land in known bands.

    - "lorem ipsum lorem ipsum lorem ipsum" (H ~ 3.27) -> bot band
    - string.ascii_letters (H = log2(52) ~ 5.70) -> human band
    - "abcdefghijklmnop" (H = 4.0) -> inconclusive band
    """
    from botcheck.config import ClassifierSignal, MODE_LABEL, ScoringConfig

    return ScoringConfig(
        bot_threshold=3.5,
        human_threshold=4.2,
        min_entropy=1.0,
        max_entropy=6.0,
        signals=(ClassifierSignal("bert", "test/detector", MODE_LABEL),),
    )


class FakeContentSource:
    """In-memory content source.

    Args:
        items: Items returned by fetch_user_items
        parents: Mapping of fullname -> ContentItem for fetch_parent
        error: Exception raised by fetch_user_items when set
    """

    platform = "reddit"

    def __init__(self, items=None, parents: Optional[Dict[str, object]] = None, error: Exception = None):
        self.items = list(items or [])
        self.parents = dict(parents or {})
        self.error = error
        self.fetch_calls: List[tuple] = []
        self.parent_calls: List[str] = []

    async def fetch_user_items(self, user_id, limit=100, warnings=None):
        self.fetch_calls.append((user_id, limit))
        if self.error is not None:
            raise self.error
        return list(self.items[:limit])

    async def fetch_parent(self, ref):
        self.parent_calls.append(ref)
        return self.parents.get(ref)

    async def aclose(self):
        pass


class FakeInferenceClient:
    """Scripted inference transport.

    ``responses`` maps a substring of the input text to an InferenceResponse;
    the first matching key wins, otherwise ``default`` is returned.
    """

    def __init__(self, default=None, responses=None, generate_default=None):
        from botcheck.inference import InferenceResponse

        self.default = default or InferenceResponse(
            success=True,
            data=[[{"label": "AI", "score": 0.9}, {"label": "Human", "score": 0.1}]],
            status_code=200,
            attempts=1,
        )
        self.generate_default = generate_default or InferenceResponse(
            success=True, data=[{"generated_text": "unrelated continuation"}], status_code=200, attempts=1
        )
        self.responses = dict(responses or {})
        self.classify_calls: List[tuple] = []
        self.generate_calls: List[tuple] = []

    def _lookup(self, text, fallback):
        for key, response in self.responses.items():
            if key in text:
                return response
        return fallback

    async def classify(self, text, model_id):
        self.classify_calls.append((text, model_id))
        return self._lookup(text, self.default)

    async def generate(self, text, model_id, max_new_tokens=50):
        self.generate_calls.append((text, model_id))
        return self._lookup(text, self.generate_default)

    async def aclose(self):
        pass


@pytest.fixture
def fake_source_factory():
    return FakeContentSource


@pytest.fixture
def fake_inference_factory():
    return FakeInferenceClient
