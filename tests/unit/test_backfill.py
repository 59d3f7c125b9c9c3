"""Unit tests for the canonical key backfill"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from src.exceptions import ConnectionError as EngineConnectionError
from src.gamification.backfill import recompute_canonical_keys


@pytest.fixture
def legacy_records(store, test_user_id):
    """Records written before canonical keys existed"""
    return [
        store.add_record(test_user_id, requirements={"type": "EXPENSE_COUNT", "count": 1}, title="First Note"),
        store.add_record(test_user_id, requirements={"type": "EXPENSE_STREAK", "days": 7}),
        store.add_record(test_user_id, requirements={"type": "savings_percentage", "value": 20}),
        store.add_record(test_user_id, requirements={"type": "PERFECT_BALANCE"}),
    ]


@pytest.mark.asyncio
async def test_backfill_derives_keys(store, legacy_records):
    report = await recompute_canonical_keys(store=store, batch_size=2)

    assert report.scanned == 4
    assert report.updated == 4
    assert report.failed == 0

    keys = [store.records[r.id].canonical_key for r in legacy_records]
    assert keys == ["EXPENSE_COUNT_1", "EXPENSE_STREAK_7", "SAVINGS_PERCENTAGE_20", "PERFECT_BALANCE"]
    assert store.records[legacy_records[1].id].translation_key == "financial.finance_way_started"


@pytest.mark.asyncio
async def test_backfill_twice_equals_once(store, legacy_records):
    await recompute_canonical_keys(store=store, batch_size=3)
    after_first = {rid: r.model_copy() for rid, r in store.records.items()}

    second = await recompute_canonical_keys(store=store, batch_size=3)

    assert second.scanned == 0
    assert store.records == after_first


@pytest.mark.asyncio
async def test_forced_rerun_changes_nothing(store, legacy_records):
    await recompute_canonical_keys(store=store)
    writes = len(store.key_writes)

    report = await recompute_canonical_keys(force=True, store=store)

    assert report.scanned == 4
    assert report.updated == 0
    assert report.skipped == 4
    assert len(store.key_writes) == writes


@pytest.mark.asyncio
async def test_force_repairs_stale_keys(store, test_user_id):
    record = store.add_record(
        test_user_id,
        requirements={"type": "EXPENSE_STREAK", "days": 30},
        canonical_key="EXPENSE_STREAK_7",
        translation_key="financial.finance_way_started",
    )

    unforced = await recompute_canonical_keys(store=store)
    assert unforced.scanned == 0

    forced = await recompute_canonical_keys(force=True, store=store)
    assert forced.updated == 1
    assert store.records[record.id].canonical_key == "EXPENSE_STREAK_30"
    assert store.records[record.id].translation_key == "financial.responsible"


@pytest.mark.asyncio
async def test_invalid_record_skipped_not_aborted(store, test_user_id):
    good_before = store.add_record(test_user_id, requirements={"type": "EXPENSE_COUNT", "count": 1})
    bad = store.add_record(test_user_id, requirements={"type": "NOT_A_TYPE", "count": 1})
    malformed = store.add_record(test_user_id, requirements="not-json-object")
    good_after = store.add_record(test_user_id, requirements={"type": "TASK_STREAK", "days": 7})

    report = await recompute_canonical_keys(store=store, batch_size=1)

    assert report.scanned == 4
    assert report.updated == 2
    assert report.failed == 2
    assert store.records[good_before.id].canonical_key == "EXPENSE_COUNT_1"
    assert store.records[good_after.id].canonical_key == "TASK_STREAK_7"
    assert store.records[bad.id].canonical_key is None
    assert store.records[malformed.id].canonical_key is None


@pytest.mark.asyncio
async def test_backfill_never_touches_progress(store, test_user_id):
    completed_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
    record = store.add_record(
        test_user_id,
        requirements={"type": "EXPENSE_COUNT", "count": 1},
        progress=1,
        completed=True,
        completed_at=completed_at,
    )

    await recompute_canonical_keys(store=store)

    stored = store.records[record.id]
    assert stored.progress == 1
    assert stored.completed is True
    assert stored.completed_at == completed_at


@pytest.mark.asyncio
async def test_unmapped_key_keeps_existing_translation(store, test_user_id):
    record = store.add_record(
        test_user_id,
        requirements={"type": "EXPENSE_COUNT", "count": 3},
        translation_key="financial.custom",
    )

    await recompute_canonical_keys(store=store)

    assert store.records[record.id].canonical_key == "EXPENSE_COUNT_3"
    assert store.records[record.id].translation_key == "financial.custom"


@pytest.mark.asyncio
async def test_page_reads_are_retried(store, legacy_records):
    first_page = await store.fetch_records_for_backfill(None, 10, False)
    store.fetch_records_for_backfill = AsyncMock(side_effect=[EngineConnectionError(), first_page])

    with patch("src.resilience.retry.asyncio.sleep", new=AsyncMock()):
        report = await recompute_canonical_keys(store=store, batch_size=10)

    assert report.updated == 4
    assert store.fetch_records_for_backfill.call_count == 2
