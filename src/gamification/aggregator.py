"""
Activity Aggregator

Turns a user's raw financial and task activity into the integer metric each
requirement type is judged by:
- running counts (expenses recorded, tasks completed, categories created)
- consecutive-day and consecutive-month streaks
- percentages (savings rate, spending reduction, task completion rates),
  always floored and 0 when the denominator is 0
- filtered counts (tasks finished within N minutes, budgets within N% of plan)

Read-only: it reports what is true now and never writes.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union
from zoneinfo import ZoneInfo
import logging

from src import config
from src.db.queries import activity as activity_queries
from src.exceptions import InvalidRequirementError
from src.models.achievement import RequirementType as T

logger = logging.getLogger(__name__)

Number = Union[int, Decimal]


# ============================================
# Metric helpers
# ============================================

def day_streak(days: Iterable[date], today: date) -> int:
    """
    Length of the run of consecutive days ending today or yesterday

    A run whose last day is before yesterday is broken and counts as 0.
    """
    day_set = set(days)
    yesterday = today - timedelta(days=1)

    if today in day_set:
        cursor = today
    elif yesterday in day_set:
        cursor = yesterday
    else:
        return 0

    streak = 0
    while cursor in day_set:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def previous_month(month: date) -> date:
    return (month.replace(day=1) - timedelta(days=1)).replace(day=1)


def month_streak(months: Iterable[date], current: date, include_previous: bool = True) -> int:
    """
    Length of the run of consecutive calendar months ending at `current`

    With include_previous, a run ending the month before `current` still
    counts (the current month may simply not have activity yet).
    """
    month_set = {m.replace(day=1) for m in months}
    current = current.replace(day=1)

    if current in month_set:
        cursor = current
    elif include_previous and previous_month(current) in month_set:
        cursor = previous_month(current)
    else:
        return 0

    streak = 0
    while cursor in month_set:
        streak += 1
        cursor = previous_month(cursor)
    return streak


def savings_percentage(income: Number, expense: Number) -> int:
    """(income - expense) / income as a floored percentage; 0 when income <= 0"""
    if income <= 0:
        return 0
    return max(int((income - expense) * 100 // income), 0)


def reduction_percentage(previous: Number, current: Number) -> int:
    """Floored percentage drop from previous to current; 0 if nothing to compare or spending grew"""
    if previous <= 0 or current >= previous:
        return 0
    return int((previous - current) * 100 // previous)


def completion_rate(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(int(completed * 100 // total), 100)


def within_tolerance(planned: Number, spent: Number, percentage: int) -> bool:
    """Spending landed within `percentage`% of the planned amount"""
    if planned <= 0:
        return False
    return abs(spent - planned) * 100 <= planned * percentage


def has_zero_expense_day(expense_days: Iterable[date], today: date) -> bool:
    """A full past day without expenses since the first recorded one"""
    day_set = set(expense_days)
    if not day_set:
        return False

    first = min(day_set)
    yesterday = today - timedelta(days=1)
    if yesterday < first:
        return False

    span = (yesterday - first).days + 1
    recorded = sum(1 for d in day_set if first <= d <= yesterday)
    return recorded < span


# ============================================
# Period boundaries (local time)
# ============================================

def _start_of_day(local_now: datetime) -> datetime:
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_week(local_now: datetime) -> datetime:
    return _start_of_day(local_now) - timedelta(days=local_now.weekday())


def _start_of_month(local_now: datetime) -> datetime:
    return _start_of_day(local_now).replace(day=1)


def _shift_month(month_start: datetime, months: int) -> datetime:
    index = month_start.year * 12 + (month_start.month - 1) + months
    return month_start.replace(year=index // 12, month=index % 12 + 1)


class ActivityAggregator:
    """
    Measures requirement metrics from the activity tables

    Args:
        queries: Activity query module (or an object exposing the same coroutines)
        tz: IANA timezone for day/month boundaries (defaults to ACHIEVEMENT_TIMEZONE)
    """

    def __init__(self, queries=activity_queries, tz: Optional[str] = None):
        self._queries = queries
        self._tz_name = tz or config.ACHIEVEMENT_TIMEZONE
        self._zone = ZoneInfo(self._tz_name)
        self._handlers: Dict[str, Callable[[str, datetime, Optional[int]], Awaitable[Number]]] = {
            T.EXPENSE_COUNT.value: self._expense_count,
            T.EXPENSE_STREAK.value: self._expense_streak,
            T.SAVINGS_PERCENTAGE.value: self._savings_percentage,
            T.BUDGET_ACCURACY.value: self._budget_accuracy,
            T.PERFECT_BALANCE.value: self._perfect_balance,
            T.INCOME_EXCEEDS_EXPENSES.value: self._income_exceeds_expenses,
            T.EXPENSE_REDUCTION.value: self._expense_reduction,
            T.ZERO_EXPENSE_DAY.value: self._zero_expense_day,
            T.CATEGORY_COUNT.value: self._category_count,
            T.BUDGET_STREAK.value: self._budget_streak,
            T.TASK_COMPLETED.value: self._task_completed,
            T.TASK_STREAK.value: self._task_streak,
            T.DEADLINE_MET.value: self._deadline_met,
            T.FAST_TASK_COMPLETION.value: self._fast_task_completion,
            T.TASKS_PER_DAY.value: self._tasks_per_day,
            T.TASKS_PER_WEEK.value: self._tasks_per_week,
            T.TASKS_PER_MONTH.value: self._tasks_per_month,
            T.TASKS_COMPLETION_RATE.value: self._tasks_completion_rate,
            T.TASKS_COMPLETION_RATE_DAY.value: self._tasks_completion_rate_day,
            T.DEADLINE_STREAK_MONTH.value: self._deadline_streak_month,
        }

    def supports(self, requirement_type: str) -> bool:
        return requirement_type in self._handlers

    async def measure(
        self,
        user_id: str,
        requirement_type: str,
        parameter: Optional[int] = None,
        as_of: Optional[datetime] = None
    ) -> int:
        """
        Current metric for a requirement type

        Args:
            user_id: User UUID
            requirement_type: Upper-snake requirement token
            parameter: Filter value for filter-parameter types (minutes, tolerance %)
            as_of: Evaluation instant (defaults to now, UTC)

        Returns:
            Non-negative integer metric

        Raises:
            InvalidRequirementError: no metric is defined for the type, or a
                required filter parameter is missing
        """
        if isinstance(requirement_type, T):
            requirement_type = requirement_type.value
        handler = self._handlers.get(requirement_type)
        if handler is None:
            raise InvalidRequirementError(
                message=f"No activity metric defined for requirement type {requirement_type}",
                requirement_type=requirement_type,
                user_id=user_id
            )

        as_of = as_of or datetime.now(timezone.utc)
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)
        local_now = as_of.astimezone(self._zone)

        value = await handler(user_id, local_now, parameter)
        metric = max(int(value), 0)
        logger.debug(f"Measured {requirement_type} for user {user_id}: {metric}")
        return metric

    @staticmethod
    def _require(parameter: Optional[int], requirement_type: T) -> int:
        if parameter is None:
            raise InvalidRequirementError(
                message=f"{requirement_type.value} needs a filter parameter",
                requirement_type=requirement_type.value
            )
        return parameter

    # ---- financial ----

    async def _expense_count(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        return await self._queries.count_expenses(user_id)

    async def _expense_streak(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        days = await self._queries.fetch_expense_days(user_id, self._tz_name)
        return day_streak(days, local_now.date())

    async def _savings_percentage(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        # Judged on the last closed month; a month in progress would look artificially thrifty
        end = _start_of_month(local_now)
        start = _shift_month(end, -1)
        income = await self._queries.sum_income(user_id, start, end)
        expense = await self._queries.sum_expenses(user_id, start, end)
        return savings_percentage(income, expense)

    async def _budget_accuracy(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        tolerance = self._require(parameter, T.BUDGET_ACCURACY)
        last_closed = _shift_month(_start_of_month(local_now), -1)
        budgets = await self._queries.fetch_budgets(user_id, last_closed.year, last_closed.month)
        return sum(1 for b in budgets if within_tolerance(b["amount"], b["spent"], tolerance))

    async def _perfect_balance(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        last_closed = _shift_month(_start_of_month(local_now), -1)
        budgets = await self._queries.fetch_budgets(user_id, last_closed.year, last_closed.month)
        if not budgets:
            return 0
        return 1 if all(b["spent"] <= b["amount"] for b in budgets) else 0

    async def _income_exceeds_expenses(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        current = _start_of_month(local_now).date()
        last_closed = previous_month(current)
        balances = await self._queries.fetch_monthly_balances(user_id, self._tz_name)
        positive = [
            b["month"] for b in balances
            if b["month"] < current and b["income"] > b["expense"]
        ]
        return month_streak(positive, last_closed, include_previous=False)

    async def _expense_reduction(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        current = _start_of_month(local_now)
        last_closed = _shift_month(current, -1)
        before = _shift_month(current, -2)
        previous_total = await self._queries.sum_expenses(user_id, before, last_closed)
        last_total = await self._queries.sum_expenses(user_id, last_closed, current)
        return reduction_percentage(previous_total, last_total)

    async def _zero_expense_day(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        days = await self._queries.fetch_expense_days(user_id, self._tz_name)
        return 1 if has_zero_expense_day(days, local_now.date()) else 0

    async def _category_count(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        return await self._queries.count_categories(user_id)

    async def _budget_streak(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        months = await self._queries.fetch_budget_months(user_id)
        return month_streak(months, local_now.date())

    # ---- time ----

    async def _task_completed(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        return await self._queries.count_completed_tasks(user_id)

    async def _task_streak(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        days = await self._queries.fetch_on_time_completion_days(user_id, self._tz_name)
        return day_streak(days, local_now.date())

    async def _deadline_met(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        return await self._queries.count_tasks_met_deadline(user_id)

    async def _fast_task_completion(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        minutes = self._require(parameter, T.FAST_TASK_COMPLETION)
        return await self._queries.count_fast_tasks(user_id, minutes)

    async def _tasks_per_day(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        start = _start_of_day(local_now)
        return await self._queries.count_completed_tasks(user_id, start, start + timedelta(days=1))

    async def _tasks_per_week(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        start = _start_of_week(local_now)
        return await self._queries.count_completed_tasks(user_id, start, start + timedelta(days=7))

    async def _tasks_per_month(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        start = _start_of_month(local_now)
        return await self._queries.count_completed_tasks(user_id, start, _shift_month(start, 1))

    async def _tasks_completion_rate(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        start = _start_of_month(local_now)
        counts = await self._queries.task_counts_created_between(user_id, start, _shift_month(start, 1))
        return completion_rate(counts["completed"], counts["total"])

    async def _tasks_completion_rate_day(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        start = _start_of_day(local_now)
        counts = await self._queries.task_counts_due_between(user_id, start, start + timedelta(days=1))
        return completion_rate(counts["completed"], counts["total"])

    async def _deadline_streak_month(self, user_id: str, local_now: datetime, parameter: Optional[int]) -> int:
        counts = await self._queries.task_counts_due_between(user_id, local_now - timedelta(days=30), local_now)
        return completion_rate(counts["on_time"], counts["total"])
