"""
Read-only activity queries consumed by the achievement aggregator

Expenses, income, budgets, categories and tasks are owned by other parts of
the tracker; these queries only read them. Local dates are computed in the
timezone passed by the caller.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from src.db.connection import db
from src.exceptions import wraps_database_errors

logger = logging.getLogger(__name__)


# ==========================================
# Expenses & income
# ==========================================

@wraps_database_errors
async def count_expenses(user_id: str) -> int:
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                "SELECT COUNT(*) AS count FROM expenses WHERE user_id = %s",
                (user_id,)
            )
            row = await cur.fetchone()
            return row["count"] if row else 0


@wraps_database_errors
async def fetch_expense_days(user_id: str, tz: str) -> list[date]:
    """Distinct local days with at least one recorded expense, ascending"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT DISTINCT (date AT TIME ZONE %s)::date AS day
                FROM expenses
                WHERE user_id = %s
                ORDER BY day
                """,
                (tz, user_id)
            )
            rows = await cur.fetchall()
            return [row["day"] for row in rows]


@wraps_database_errors
async def sum_expenses(user_id: str, start: datetime, end: datetime) -> Decimal:
    """Total expense amount in [start, end)"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS total
                FROM expenses
                WHERE user_id = %s AND date >= %s AND date < %s
                """,
                (user_id, start, end)
            )
            row = await cur.fetchone()
            return Decimal(row["total"]) if row else Decimal(0)


@wraps_database_errors
async def sum_income(user_id: str, start: datetime, end: datetime) -> Decimal:
    """Total income amount in [start, end)"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS total
                FROM incomes
                WHERE user_id = %s AND date >= %s AND date < %s
                """,
                (user_id, start, end)
            )
            row = await cur.fetchone()
            return Decimal(row["total"]) if row else Decimal(0)


@wraps_database_errors
async def fetch_monthly_balances(user_id: str, tz: str) -> list[dict]:
    """
    Income and expense totals per local calendar month

    Returns:
        [{'month': date (first day), 'income': Decimal, 'expense': Decimal}]
        ascending by month
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                WITH inc AS (
                    SELECT date_trunc('month', date AT TIME ZONE %s)::date AS month,
                           SUM(amount) AS total
                    FROM incomes
                    WHERE user_id = %s
                    GROUP BY 1
                ),
                exp AS (
                    SELECT date_trunc('month', date AT TIME ZONE %s)::date AS month,
                           SUM(amount) AS total
                    FROM expenses
                    WHERE user_id = %s
                    GROUP BY 1
                )
                SELECT COALESCE(inc.month, exp.month) AS month,
                       COALESCE(inc.total, 0) AS income,
                       COALESCE(exp.total, 0) AS expense
                FROM inc
                FULL OUTER JOIN exp ON inc.month = exp.month
                ORDER BY month
                """,
                (tz, user_id, tz, user_id)
            )
            rows = await cur.fetchall()
            return [dict(row) for row in rows]


# ==========================================
# Budgets & categories
# ==========================================

@wraps_database_errors
async def fetch_budgets(user_id: str, year: int, month: int) -> list[dict]:
    """Budgets for one month: [{'category', 'amount', 'spent'}]"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT category, amount, spent
                FROM budgets
                WHERE user_id = %s AND year = %s AND month = %s
                """,
                (user_id, year, month)
            )
            rows = await cur.fetchall()
            return [dict(row) for row in rows]


@wraps_database_errors
async def fetch_budget_months(user_id: str) -> list[date]:
    """Distinct months (first day) with at least one budget, ascending"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT DISTINCT make_date(year, month, 1) AS month
                FROM budgets
                WHERE user_id = %s
                ORDER BY month
                """,
                (user_id,)
            )
            rows = await cur.fetchall()
            return [row["month"] for row in rows]


@wraps_database_errors
async def count_categories(user_id: str) -> int:
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                "SELECT COUNT(*) AS count FROM categories WHERE user_id = %s",
                (user_id,)
            )
            row = await cur.fetchone()
            return row["count"] if row else 0


# ==========================================
# Tasks
# ==========================================

@wraps_database_errors
async def count_completed_tasks(
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None
) -> int:
    """Tasks completed, optionally restricted to completed_at in [start, end)"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*) AS count
                FROM tasks
                WHERE user_id = %s
                  AND status = 'completed'
                  AND (%s::timestamptz IS NULL OR completed_at >= %s)
                  AND (%s::timestamptz IS NULL OR completed_at < %s)
                """,
                (user_id, start, start, end, end)
            )
            row = await cur.fetchone()
            return row["count"] if row else 0


@wraps_database_errors
async def count_tasks_met_deadline(user_id: str) -> int:
    """Tasks with a deadline that were completed no later than it"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*) AS count
                FROM tasks
                WHERE user_id = %s
                  AND status = 'completed'
                  AND deadline IS NOT NULL
                  AND completed_at <= deadline
                """,
                (user_id,)
            )
            row = await cur.fetchone()
            return row["count"] if row else 0


@wraps_database_errors
async def count_fast_tasks(user_id: str, minutes: int) -> int:
    """Tasks completed within `minutes` of creation and not after their deadline"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*) AS count
                FROM tasks
                WHERE user_id = %s
                  AND status = 'completed'
                  AND completed_at - created_at <= make_interval(mins => %s)
                  AND (deadline IS NULL OR completed_at <= deadline)
                """,
                (user_id, minutes)
            )
            row = await cur.fetchone()
            return row["count"] if row else 0


@wraps_database_errors
async def fetch_on_time_completion_days(user_id: str, tz: str) -> list[date]:
    """Distinct local days on which a task was completed on time, ascending"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT DISTINCT (completed_at AT TIME ZONE %s)::date AS day
                FROM tasks
                WHERE user_id = %s
                  AND status = 'completed'
                  AND (deadline IS NULL OR completed_at <= deadline)
                ORDER BY day
                """,
                (tz, user_id)
            )
            rows = await cur.fetchall()
            return [row["day"] for row in rows]


@wraps_database_errors
async def task_counts_created_between(user_id: str, start: datetime, end: datetime) -> dict:
    """
    Tasks created in [start, end)

    Returns:
        {'total': int, 'completed': int}
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE status = 'completed') AS completed
                FROM tasks
                WHERE user_id = %s AND created_at >= %s AND created_at < %s
                """,
                (user_id, start, end)
            )
            row = await cur.fetchone()
            return dict(row) if row else {"total": 0, "completed": 0}


@wraps_database_errors
async def task_counts_due_between(user_id: str, start: datetime, end: datetime) -> dict:
    """
    Tasks whose deadline falls in [start, end)

    Returns:
        {'total': int, 'completed': int, 'on_time': int}
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                       COUNT(*) FILTER (
                           WHERE status = 'completed' AND completed_at <= deadline
                       ) AS on_time
                FROM tasks
                WHERE user_id = %s AND deadline >= %s AND deadline < %s
                """,
                (user_id, start, end)
            )
            row = await cur.fetchone()
            return dict(row) if row else {"total": 0, "completed": 0, "on_time": 0}
