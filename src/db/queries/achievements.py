"""Achievement catalog and per-user record queries"""
import logging
from datetime import datetime
from typing import Optional, Sequence

import psycopg
from psycopg.types.json import Jsonb

from src.db.connection import db
from src.exceptions import InvalidRequirementError, wrap_external_exception, wraps_database_errors
from src.resilience.retry import with_retry
from src.models.achievement import (
    AchievementCategory,
    AchievementDefinition,
    AchievementRecord,
)

logger = logging.getLogger(__name__)

_DEFINITION_COLUMNS = """
    id, title, description, icon, category, image_path,
    requirements, canonical_key, translation_key
"""

_RECORD_COLUMNS = """
    id, user_id, definition_id, title, description, icon, category,
    requirements, progress, completed, completed_at,
    canonical_key, translation_key, created_at
"""


def _definition_from_row(row: dict) -> AchievementDefinition:
    # Imported here: src.gamification imports this module while it loads
    from src.gamification.registry import DEFAULT_REGISTRY

    return AchievementDefinition(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        icon=row["icon"],
        category=row["category"],
        image_path=row.get("image_path"),
        requirement=DEFAULT_REGISTRY.parse(row["requirements"]),
        canonical_key=row["canonical_key"],
        translation_key=row.get("translation_key"),
    )


def _record_from_row(row: dict) -> AchievementRecord:
    return AchievementRecord(**row)


# ==========================================
# Catalog (achievement_definitions)
# ==========================================

@wraps_database_errors
async def get_definitions() -> list[AchievementDefinition]:
    """
    Get all published achievement definitions

    A row whose requirements cannot be interpreted is logged and left out,
    so one bad row never hides the rest of the catalog.

    Returns:
        Definitions ordered by category then title
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {_DEFINITION_COLUMNS}
                FROM achievement_definitions
                ORDER BY category, title
                """
            )
            rows = await cur.fetchall()

    definitions = []
    for row in rows:
        try:
            definitions.append(_definition_from_row(row))
        except InvalidRequirementError as e:
            logger.warning(f"Skipping achievement definition {row.get('id')}: {e.message}")
    return definitions


@wraps_database_errors
async def get_definition(definition_id: str) -> Optional[AchievementDefinition]:
    """Get one definition by id, or None if it was never published or was removed"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {_DEFINITION_COLUMNS}
                FROM achievement_definitions
                WHERE id = %s
                """,
                (definition_id,)
            )
            row = await cur.fetchone()
            return _definition_from_row(row) if row else None


async def insert_definition(definition: AchievementDefinition) -> bool:
    """
    Publish a definition

    Published rows are immutable, so an existing canonical key is left alone.

    Returns:
        True if inserted, False if the canonical key was already published
    """
    try:
        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO achievement_definitions
                        (title, description, icon, category, image_path,
                         requirements, canonical_key, translation_key)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (canonical_key) DO NOTHING
                    RETURNING id
                    """,
                    (
                        definition.title,
                        definition.description,
                        definition.icon,
                        definition.category.value,
                        definition.image_path,
                        Jsonb(definition.requirement.to_requirements()),
                        definition.canonical_key,
                        definition.translation_key,
                    )
                )
                result = await cur.fetchone()
                await conn.commit()
                return result is not None
    except psycopg.Error as e:
        raise wrap_external_exception(
            e,
            operation="insert_definition",
            context={"canonical_key": definition.canonical_key}
        )


# ==========================================
# Per-user records (user_achievements)
# ==========================================

@wraps_database_errors
async def get_user_records(
    user_id: str,
    category: Optional[AchievementCategory] = None
) -> list[AchievementRecord]:
    """
    Get all achievement records for a user

    Args:
        user_id: User UUID
        category: Optional family filter

    Returns:
        Records ordered by created_at DESC
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            if category is not None:
                await cur.execute(
                    f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM user_achievements
                    WHERE user_id = %s AND category = %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, category.value)
                )
            else:
                await cur.execute(
                    f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM user_achievements
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    """,
                    (user_id,)
                )
            rows = await cur.fetchall()
            return [_record_from_row(row) for row in rows]


@wraps_database_errors
async def get_user_record(user_id: str, definition_id: str) -> Optional[AchievementRecord]:
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {_RECORD_COLUMNS}
                FROM user_achievements
                WHERE user_id = %s AND definition_id = %s
                """,
                (user_id, definition_id)
            )
            row = await cur.fetchone()
            return _record_from_row(row) if row else None


@wraps_database_errors
async def get_record(record_id: str) -> Optional[AchievementRecord]:
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {_RECORD_COLUMNS}
                FROM user_achievements
                WHERE id = %s
                """,
                (record_id,)
            )
            row = await cur.fetchone()
            return _record_from_row(row) if row else None


@wraps_database_errors
async def count_user_records(user_id: str) -> int:
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                "SELECT COUNT(*) AS count FROM user_achievements WHERE user_id = %s",
                (user_id,)
            )
            row = await cur.fetchone()
            return row["count"] if row else 0


async def create_user_records(user_id: str, definitions: Sequence[AchievementDefinition]) -> int:
    """
    Materialize records for a user

    Uniqueness on (user_id, definition_id) makes this safe to call
    concurrently; existing records are left untouched.

    Returns:
        Number of records actually created
    """
    created = 0
    try:
        async with db.connection() as conn:
            async with conn.cursor() as cur:
                for definition in definitions:
                    await cur.execute(
                        """
                        INSERT INTO user_achievements
                            (user_id, definition_id, title, description, icon, category,
                             requirements, progress, completed, canonical_key, translation_key)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, 0, false, %s, %s)
                        ON CONFLICT (user_id, definition_id) DO NOTHING
                        RETURNING id
                        """,
                        (
                            user_id,
                            definition.id,
                            definition.title,
                            definition.description,
                            definition.icon,
                            definition.category.value,
                            Jsonb(definition.requirement.to_requirements()),
                            definition.canonical_key,
                            definition.translation_key,
                        )
                    )
                    if await cur.fetchone():
                        created += 1
                await conn.commit()
    except psycopg.Error as e:
        raise wrap_external_exception(
            e,
            operation="create_user_records",
            user_id=user_id,
            context={"definitions": len(definitions)}
        )

    if created:
        logger.info(f"Created {created} achievement record(s) for user {user_id}")
    return created


async def compare_and_set_progress(record_id: str, expected: int, progress: int) -> bool:
    """
    Write progress only if the stored value still equals `expected`

    Returns:
        True if written, False if another writer changed the record first
        (or it was completed meanwhile)
    """
    try:
        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE user_achievements
                    SET progress = %s,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                      AND progress = %s
                      AND completed = false
                    RETURNING id
                    """,
                    (progress, record_id, expected)
                )
                result = await cur.fetchone()
                await conn.commit()
                return result is not None
    except psycopg.Error as e:
        raise wrap_external_exception(
            e,
            operation="compare_and_set_progress",
            context={"record_id": record_id, "expected": expected, "progress": progress}
        )


async def complete_record(record_id: str, expected: int, progress: int, completed_at: datetime) -> bool:
    """
    Flip a record to completed

    Guarded by `completed = false`, so exactly one concurrent caller wins, and
    by the progress the caller read, so completion never overwrites a value
    written concurrently.

    Returns:
        True for the winning caller, False if the record was completed or its
        progress changed meanwhile
    """
    try:
        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE user_achievements
                    SET completed = true,
                        completed_at = %s,
                        progress = %s,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                      AND progress = %s
                      AND completed = false
                    RETURNING id
                    """,
                    (completed_at, progress, record_id, expected)
                )
                result = await cur.fetchone()
                await conn.commit()
                return result is not None
    except psycopg.Error as e:
        raise wrap_external_exception(
            e,
            operation="complete_record",
            context={"record_id": record_id, "expected": expected, "progress": progress}
        )


# ==========================================
# Backfill
# ==========================================

@wraps_database_errors
async def fetch_records_for_backfill(
    after_id: Optional[str],
    limit: int,
    force: bool = False
) -> list[AchievementRecord]:
    """
    Page through records by id (keyset pagination)

    Args:
        after_id: Last id of the previous page, None for the first page
        limit: Page size
        force: Include records that already have a canonical key
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {_RECORD_COLUMNS}
                FROM user_achievements
                WHERE (%s::uuid IS NULL OR id > %s::uuid)
                  AND (%s OR canonical_key IS NULL)
                ORDER BY id
                LIMIT %s
                """,
                (after_id, after_id, force, limit)
            )
            rows = await cur.fetchall()
            return [_record_from_row(row) for row in rows]


@with_retry()
async def set_record_keys(record_id: str, canonical_key: str, translation_key: Optional[str]) -> bool:
    """Persist derived keys; progress and completion columns are not touched"""
    try:
        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE user_achievements
                    SET canonical_key = %s,
                        translation_key = %s
                    WHERE id = %s
                    RETURNING id
                    """,
                    (canonical_key, translation_key, record_id)
                )
                result = await cur.fetchone()
                await conn.commit()
                return result is not None
    except psycopg.Error as e:
        raise wrap_external_exception(
            e,
            operation="set_record_keys",
            context={"record_id": record_id, "canonical_key": canonical_key}
        )


# ==========================================
# Users
# ==========================================

@with_retry()
@wraps_database_errors
async def fetch_user_ids(after_id: Optional[str], limit: int) -> list[str]:
    """
    Page through user ids in ascending order (keyset pagination)

    Args:
        after_id: Last id of the previous page, None for the first page
        limit: Page size
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT id
                FROM users
                WHERE (%s::uuid IS NULL OR id > %s::uuid)
                ORDER BY id
                LIMIT %s
                """,
                (after_id, after_id, limit)
            )
            rows = await cur.fetchall()
            return [str(row["id"]) for row in rows]


# ==========================================
# Notifications
# ==========================================

@wraps_database_errors
async def insert_notification(user_id: str, message: str, notification_type: str = "ACHIEVEMENT") -> None:
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO notifications (user_id, message, type, is_read)
                VALUES (%s, %s, %s, false)
                """,
                (user_id, message, notification_type)
            )
            await conn.commit()
