"""Global test fixtures and utilities for achievement engine tests"""
import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.gamification.catalog import build_catalog
from src.gamification.progress_engine import ProgressEngine
from src.models.achievement import (
    AchievementDefinition,
    AchievementRecord,
    CompletionEvent,
)


# ============================================================================
# In-memory collaborators
# ============================================================================

class InMemoryAchievementStore:
    """
    Achievement store with the same semantics as src.db.queries.achievements

    Compare-and-set writes behave like the SQL guards; every read returns a
    copy so a caller holding a record sees a stale snapshot, as it would
    against the database.
    """

    def __init__(self):
        self.definitions: Dict[str, AchievementDefinition] = {}
        self.records: Dict[str, AchievementRecord] = {}
        self.notifications: List[dict] = []
        self.key_writes: List[str] = []
        self.user_ids: List[str] = []
        self._ids = itertools.count(1)
        self._created = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):05d}"

    # ---- sync helpers for arranging tests ----

    def add_definition(self, definition: AchievementDefinition) -> AchievementDefinition:
        if definition.canonical_key is None:
            definition = build_catalog([definition])[0]
        definition = definition.model_copy(update={"id": definition.id or self._next_id("def")})
        self.definitions[definition.id] = definition
        return definition

    def add_record(self, user_id: str, definition: Optional[AchievementDefinition] = None, **fields) -> AchievementRecord:
        values = {}
        if definition is not None:
            values = {
                "definition_id": definition.id,
                "title": definition.title,
                "description": definition.description,
                "icon": definition.icon,
                "category": definition.category,
                "requirements": definition.requirement.to_requirements(),
                "canonical_key": definition.canonical_key,
                "translation_key": definition.translation_key,
            }
        values.update(fields)
        record_id = values.pop("id", None) or self._next_id("rec")
        self._created += timedelta(minutes=1)
        values.setdefault("created_at", self._created)
        record = AchievementRecord(id=record_id, user_id=user_id, **values)
        self.records[record.id] = record
        return record.model_copy()

    def _update(self, record_id: str, **fields) -> None:
        self.records[record_id] = self.records[record_id].model_copy(update=fields)

    # ---- catalog ----

    async def get_definitions(self):
        return list(self.definitions.values())

    async def get_definition(self, definition_id):
        return self.definitions.get(definition_id)

    async def insert_definition(self, definition):
        if any(d.canonical_key == definition.canonical_key for d in self.definitions.values()):
            return False
        self.add_definition(definition)
        return True

    # ---- records ----

    async def get_user_records(self, user_id, category=None):
        records = [
            r.model_copy() for r in self.records.values()
            if r.user_id == user_id and (category is None or r.category == category)
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def get_user_record(self, user_id, definition_id):
        for record in self.records.values():
            if record.user_id == user_id and record.definition_id == definition_id:
                return record.model_copy()
        return None

    async def get_record(self, record_id):
        record = self.records.get(record_id)
        return record.model_copy() if record else None

    async def count_user_records(self, user_id):
        return sum(1 for r in self.records.values() if r.user_id == user_id)

    async def create_user_records(self, user_id, definitions):
        created = 0
        for definition in definitions:
            if await self.get_user_record(user_id, definition.id) is None:
                self.add_record(user_id, definition)
                created += 1
        return created

    async def compare_and_set_progress(self, record_id, expected, progress):
        record = self.records.get(record_id)
        if record is None or record.completed or record.progress != expected:
            return False
        self._update(record_id, progress=progress)
        return True

    async def complete_record(self, record_id, expected, progress, completed_at):
        await asyncio.sleep(0)
        record = self.records.get(record_id)
        if record is None or record.completed or record.progress != expected:
            return False
        self._update(record_id, completed=True, completed_at=completed_at, progress=progress)
        return True

    # ---- backfill ----

    async def fetch_records_for_backfill(self, after_id, limit, force=False):
        candidates = sorted(
            (r for r in self.records.values()
             if (after_id is None or r.id > after_id) and (force or r.canonical_key is None)),
            key=lambda r: r.id
        )
        return [r.model_copy() for r in candidates[:limit]]

    async def set_record_keys(self, record_id, canonical_key, translation_key):
        if record_id not in self.records:
            return False
        self._update(record_id, canonical_key=canonical_key, translation_key=translation_key)
        self.key_writes.append(record_id)
        return True

    # ---- users ----

    async def fetch_user_ids(self, after_id, limit):
        user_ids = sorted(set(self.user_ids) | {r.user_id for r in self.records.values()})
        return [u for u in user_ids if after_id is None or u > after_id][:limit]

    # ---- notifications ----

    async def insert_notification(self, user_id, message, notification_type="ACHIEVEMENT"):
        self.notifications.append({"user_id": user_id, "message": message, "type": notification_type})


class FakeAggregator:
    """Returns metrics set per requirement type; yields once to let ticks interleave"""

    def __init__(self, metrics: Optional[Dict[str, int]] = None):
        self.metrics = dict(metrics or {})
        self.calls: List[tuple] = []

    async def measure(self, user_id, requirement_type, parameter=None, as_of=None):
        self.calls.append((user_id, requirement_type, parameter))
        await asyncio.sleep(0)
        return self.metrics.get(requirement_type, 0)


class RecordingNotifier:
    def __init__(self):
        self.events: List[CompletionEvent] = []

    async def notify_completion(self, event):
        self.events.append(event)


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def test_user_id():
    """Standard test user ID"""
    return "6f1c2b8e-0000-4000-8000-000000000001"


@pytest.fixture
def fixed_now():
    """Deterministic evaluation instant"""
    return datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryAchievementStore()


@pytest.fixture
def aggregator():
    return FakeAggregator()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, aggregator, notifier, fixed_now):
    """ProgressEngine wired to in-memory collaborators"""
    return ProgressEngine(
        store=store,
        aggregator=aggregator,
        notifier=notifier,
        clock=lambda: fixed_now,
        max_retries=3,
    )


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def mock_db_cursor():
    """Mock database cursor with standard query results"""
    cursor = AsyncMock()
    cursor.fetchone = AsyncMock(return_value=None)
    cursor.fetchall = AsyncMock(return_value=[])
    cursor.execute = AsyncMock()
    return cursor


@pytest.fixture
def mock_db_connection(mock_db_cursor):
    """Mock connection whose cursor() context yields mock_db_cursor"""
    conn = MagicMock()
    conn.cursor.return_value.__aenter__.return_value = mock_db_cursor
    conn.commit = AsyncMock()
    conn.rollback = AsyncMock()
    return conn
