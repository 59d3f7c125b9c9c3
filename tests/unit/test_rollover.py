"""Unit tests for the scheduled achievement rollover"""
import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

from src import config
from src.gamification.catalog import FINANCIAL_ICON
from src.gamification.rollover import rollover_events, run_rollover
from src.models.achievement import (
    AchievementCategory,
    AchievementDefinition,
    ActivityEvent,
    EvaluationOutcome,
    RequirementSpec,
    RequirementType as T,
)

MID_MONTH = datetime(2024, 3, 15, 0, 5, tzinfo=timezone.utc)
FIRST_OF_MONTH = datetime(2024, 4, 1, 0, 5, tzinfo=timezone.utc)


def _financial(title, **requirement):
    return AchievementDefinition(
        title=title,
        description=title,
        icon=FINANCIAL_ICON,
        category=AchievementCategory.FINANCIAL,
        requirement=RequirementSpec(**requirement),
    )


def test_daily_events_mid_month():
    assert rollover_events(date(2024, 3, 15)) == [ActivityEvent.DAILY_ROLLOVER]


def test_period_closes_on_first():
    assert rollover_events(date(2024, 4, 1)) == [
        ActivityEvent.DAILY_ROLLOVER,
        ActivityEvent.BUDGET_PERIOD_CLOSED,
    ]


@pytest.mark.asyncio
async def test_rollover_visits_every_user_across_pages(engine, store):
    store.user_ids = [f"user-{n}" for n in range(5)]
    engine.process_activity = AsyncMock(return_value=[])

    report = await run_rollover(engine=engine, store=store, as_of=MID_MONTH, batch_size=2)

    visited = [call.args[0] for call in engine.process_activity.call_args_list]
    assert visited == store.user_ids
    assert report.users == 5
    assert report.failed == 0


@pytest.mark.asyncio
async def test_rollover_with_no_users(engine, store):
    report = await run_rollover(engine=engine, store=store, as_of=MID_MONTH, batch_size=2)

    assert report.users == 0
    assert report.evaluated == 0


@pytest.mark.asyncio
async def test_rollover_resets_broken_streak(engine, store, aggregator, test_user_id):
    definition = store.add_definition(_financial("Responsible", requirement_type=T.EXPENSE_STREAK, days=30))
    record = store.add_record(test_user_id, definition, progress=12)
    aggregator.metrics["EXPENSE_STREAK"] = 0

    report = await run_rollover(engine=engine, store=store, as_of=MID_MONTH)

    assert store.records[record.id].progress == 0
    assert report.users == 1
    assert report.evaluated == 1
    assert report.events == [ActivityEvent.DAILY_ROLLOVER]


@pytest.mark.asyncio
async def test_budget_period_only_closed_on_first(engine, store, aggregator, test_user_id):
    definition = store.add_definition(_financial("Perfect Balance", requirement_type=T.PERFECT_BALANCE))
    record = store.add_record(test_user_id, definition)
    aggregator.metrics["PERFECT_BALANCE"] = 1

    await run_rollover(engine=engine, store=store, as_of=MID_MONTH)
    assert store.records[record.id].completed is False

    report = await run_rollover(engine=engine, store=store, as_of=FIRST_OF_MONTH)
    assert store.records[record.id].completed is True
    assert report.completed == 1


@pytest.mark.asyncio
async def test_local_day_follows_configured_timezone(engine, store, monkeypatch):
    monkeypatch.setattr(config, "ACHIEVEMENT_TIMEZONE", "Europe/Berlin")

    # 23:30 UTC on March 31st is already April 1st in Berlin
    report = await run_rollover(
        engine=engine, store=store, as_of=datetime(2024, 3, 31, 23, 30, tzinfo=timezone.utc)
    )

    assert ActivityEvent.BUDGET_PERIOD_CLOSED in report.events


@pytest.mark.asyncio
async def test_failing_user_does_not_stop_rollover(engine, store):
    store.user_ids = ["user-a", "user-b", "user-c"]

    async def process_activity(user_id, event, now=None):
        if user_id == "user-b":
            raise RuntimeError("aggregator unavailable")
        return [EvaluationOutcome(record_id=f"rec-{user_id}", user_id=user_id, progress=1, previous_progress=0)]

    engine.process_activity = process_activity

    report = await run_rollover(engine=engine, store=store, as_of=MID_MONTH, batch_size=2)

    assert report.users == 3
    assert report.failed == 1
    assert report.evaluated == 2
