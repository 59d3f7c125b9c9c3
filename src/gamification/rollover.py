"""
Scheduled achievement rollover

Time passing is itself an activity: a streak breaks at midnight without any
write by the user, and a budget month closes on the 1st. This job emits those
events for every user so time-driven records are re-evaluated.

Intended to run once a day shortly after local midnight
(ACHIEVEMENT_TIMEZONE), e.g. from cron via scripts/run_achievement_rollover.py.
"""

from datetime import date, datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo
import logging

from src import config
from src.db.queries import achievements as achievement_queries
from src.gamification.progress_engine import ProgressEngine
from src.models.achievement import ActivityEvent, RolloverReport

logger = logging.getLogger(__name__)


def rollover_events(local_day: date) -> List[ActivityEvent]:
    """Events due on a local calendar day: daily always, period close on the 1st"""
    events = [ActivityEvent.DAILY_ROLLOVER]
    if local_day.day == 1:
        events.append(ActivityEvent.BUDGET_PERIOD_CLOSED)
    return events


async def run_rollover(
    engine: Optional[ProgressEngine] = None,
    store=achievement_queries,
    as_of: Optional[datetime] = None,
    batch_size: Optional[int] = None
) -> RolloverReport:
    """
    Emit the day's rollover events for every user

    Users are paged by id; a user whose evaluation fails is counted and the
    run carries on with the next one.

    Args:
        engine: ProgressEngine used for evaluation (defaults to one over `store`)
        store: Persistence module (or object) exposing fetch_user_ids
        as_of: Instant the run represents (defaults to now)
        batch_size: User page size (defaults to ROLLOVER_BATCH_SIZE)

    Returns:
        RolloverReport with users/evaluated/completed/failed counts
    """
    engine = engine or ProgressEngine(store=store)
    batch_size = batch_size or config.ROLLOVER_BATCH_SIZE
    now = as_of or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_day = now.astimezone(ZoneInfo(config.ACHIEVEMENT_TIMEZONE)).date()

    report = RolloverReport(events=rollover_events(local_day))
    logger.info(
        f"Starting achievement rollover for {local_day.isoformat()}: "
        f"{', '.join(e.value for e in report.events)}"
    )

    after_id = None
    while True:
        user_ids = await store.fetch_user_ids(after_id, batch_size)
        if not user_ids:
            break

        for user_id in user_ids:
            report.users += 1
            try:
                for event in report.events:
                    outcomes = await engine.process_activity(user_id, event, now)
                    report.evaluated += sum(1 for o in outcomes if o.skipped is None)
                    report.completed += sum(1 for o in outcomes if o.newly_completed)
            except Exception as e:
                report.failed += 1
                logger.error(f"Rollover failed for user {user_id}: {e}", exc_info=True)

        after_id = user_ids[-1]
        if len(user_ids) < batch_size:
            break

    logger.info(
        f"Achievement rollover finished: users={report.users} evaluated={report.evaluated} "
        f"completed={report.completed} failed={report.failed}"
    )
    return report
