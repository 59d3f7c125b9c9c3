"""Completion notifications for newly unlocked achievements"""

from typing import Protocol
import logging

from src.db.queries import achievements as achievement_queries
from src.models.achievement import CompletionEvent

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "ACHIEVEMENT"


class CompletionNotifier(Protocol):
    """Receives exactly one signal per record that transitions to completed"""

    async def notify_completion(self, event: CompletionEvent) -> None:
        ...


def format_completion_message(event: CompletionEvent) -> str:
    if event.title:
        return f'Achievement unlocked: "{event.title}"'
    return f"Achievement unlocked: {event.canonical_key or event.achievement_id}"


class DatabaseNotifier:
    """Stores completion signals in the notifications table for later delivery"""

    def __init__(self, store=achievement_queries):
        self._store = store

    async def notify_completion(self, event: CompletionEvent) -> None:
        message = format_completion_message(event)
        await self._store.insert_notification(event.user_id, message, NOTIFICATION_TYPE)
        logger.info(f"Queued achievement notification for user {event.user_id}: {event.canonical_key}")


class NullNotifier:
    """Drops completion signals (notifications disabled)"""

    async def notify_completion(self, event: CompletionEvent) -> None:
        logger.debug(f"Achievement notifications disabled, dropping {event.canonical_key}")
