"""
Database query modules

- achievements: catalog definitions, per-user records, notifications
- activity: read-only expense, income, budget, category and task aggregates
"""

from src.db.queries import achievements, activity

__all__ = ["achievements", "activity"]
