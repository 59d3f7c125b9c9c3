"""
Service Layer Package

Business logic that sits between the tracker's request handlers and the
achievement engine.

Core Services:
- AchievementService: activity hooks, provisioning, listings, progress summaries
"""

from src.services.achievement_service import AchievementService

__all__ = [
    "AchievementService",
]
