"""
AchievementService - Achievement Business Logic

Entry point for the rest of the tracker:
- activity hooks (expense recorded, task completed, any other event)
- provisioning of achievement records for new users
- listing and progress summaries for display
"""

import logging
from typing import Dict, List, Any, Optional
from datetime import datetime

from src import config
from src.db.queries import achievements as achievement_queries
from src.gamification.catalog import FINANCIAL_ICON, TIME_ICON
from src.gamification.progress_engine import ProgressEngine
from src.models.achievement import AchievementCategory, AchievementRecord, ActivityEvent

logger = logging.getLogger(__name__)


def _family(record: AchievementRecord) -> Optional[AchievementCategory]:
    if record.category is not None:
        return record.category
    # Records created before categories were stored are told apart by icon
    if record.icon == FINANCIAL_ICON:
        return AchievementCategory.FINANCIAL
    if record.icon == TIME_ICON:
        return AchievementCategory.TIME
    return None


def _percent(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0


class AchievementService:
    """
    Service for achievement features.

    Responsibilities:
    - Forwarding domain activity to the progress engine
    - Materializing achievement records for users
    - Listing achievements and summarizing progress

    Activity hooks are best effort: a failure is logged and never reaches
    the caller, whose own write has already succeeded.
    """

    def __init__(self, engine: Optional[ProgressEngine] = None, store=achievement_queries):
        """
        Initialize AchievementService.

        Args:
            engine: Progress engine (defaults to one over the same store)
            store: Achievement persistence module
        """
        self.store = store
        self.engine = engine or ProgressEngine(store=store)
        logger.debug("AchievementService initialized")

    # ============================================
    # Activity hooks
    # ============================================

    async def on_expense_created(self, user_id: str, occurred_at: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.on_activity(user_id, ActivityEvent.EXPENSE_CREATED, occurred_at)

    async def on_task_completed(self, user_id: str, occurred_at: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.on_activity(user_id, ActivityEvent.TASK_COMPLETED, occurred_at)

    async def on_activity(
        self,
        user_id: str,
        event: ActivityEvent,
        occurred_at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Evaluate achievements affected by an activity event.

        Returns:
            {
                'evaluated': int,
                'achievements_unlocked': list,  # canonical keys
                'skipped': int
            }
        """
        try:
            outcomes = await self.engine.process_activity(user_id, event, occurred_at)

            result = {
                'evaluated': sum(1 for o in outcomes if o.skipped is None),
                'achievements_unlocked': [
                    o.canonical_key or o.record_id for o in outcomes if o.newly_completed
                ],
                'skipped': sum(1 for o in outcomes if o.skipped is not None),
            }

            if result['achievements_unlocked']:
                logger.info(
                    f"Achievements processed for {event.value}: user={user_id}, "
                    f"unlocked={result['achievements_unlocked']}"
                )
            return result

        except Exception as e:
            logger.error(f"Error processing achievements for {event}: {e}", exc_info=True)
            return self._empty_result()

    # ============================================
    # Provisioning & display
    # ============================================

    async def provision_user(self, user_id: str) -> int:
        """
        Create records for the whole catalog if the user has none yet.

        Returns:
            Number of records created (0 if the user was already provisioned)
        """
        if await self.store.count_user_records(user_id) > 0:
            logger.debug(f"User {user_id} already has achievements, skipping provisioning")
            return 0

        definitions = await self.store.get_definitions()
        created = await self.store.create_user_records(user_id, definitions)
        logger.info(f"Provisioned {created} achievement(s) for user {user_id}")
        return created

    async def list_achievements(
        self,
        user_id: str,
        category: Optional[AchievementCategory] = None
    ) -> List[AchievementRecord]:
        """
        List a user's achievements.

        Within a category, open achievements come first, then by title;
        without one, newest records first.
        """
        records = await self.store.get_user_records(user_id, category)
        if category is not None:
            return sorted(records, key=lambda r: (r.completed, r.title))
        return records

    async def summarize_progress(self, user_id: str) -> Dict[str, Any]:
        """
        Summarize a user's achievement progress.

        Returns:
            {
                'total': int,
                'completed': int,
                'progress': float,  # percent completed
                'categories': {
                    'financial': {'total', 'completed', 'progress'},
                    'time': {'total', 'completed', 'progress'}
                },
                'recent_unlocks': [{'id', 'title', 'description', 'icon', 'unlocked_at'}]
            }
        """
        records = await self.store.get_user_records(user_id)

        total = len(records)
        completed = sum(1 for r in records if r.completed)

        categories = {}
        for family in AchievementCategory:
            members = [r for r in records if _family(r) is family]
            done = sum(1 for r in members if r.completed)
            categories[family.value] = {
                'total': len(members),
                'completed': done,
                'progress': _percent(done, len(members)),
            }

        unlocked = sorted(
            (r for r in records if r.completed and r.completed_at),
            key=lambda r: r.completed_at,
            reverse=True
        )
        recent_unlocks = [
            {
                'id': r.id,
                'title': r.title,
                'description': r.description,
                'icon': r.icon,
                'unlocked_at': r.completed_at,
            }
            for r in unlocked[:config.RECENT_UNLOCKS_LIMIT]
        ]

        return {
            'total': total,
            'completed': completed,
            'progress': _percent(completed, total),
            'categories': categories,
            'recent_unlocks': recent_unlocks,
        }

    def _empty_result(self) -> Dict[str, Any]:
        return {
            'evaluated': 0,
            'achievements_unlocked': [],
            'skipped': 0,
        }
