"""
Achievement Catalog

Published achievement definitions for the financial and time families,
plus catalog validation and seeding.

A published definition is never edited: changing a requirement parameter
changes its canonical key, which seeds as a new definition and leaves the
historical one (and the progress recorded against it) untouched.
"""

from typing import List, Sequence
import logging

from src.db.queries import achievements as achievement_queries
from src.gamification.keys import derive_key, lookup_translation_key
from src.gamification.registry import DEFAULT_REGISTRY, RequirementRegistry
from src.models.achievement import (
    AchievementCategory,
    AchievementDefinition,
    RequirementSpec,
    RequirementType as T,
)

logger = logging.getLogger(__name__)

FINANCIAL_ICON = "🏆"
TIME_ICON = "⏳"


def _financial(title: str, description: str, requirement: RequirementSpec) -> AchievementDefinition:
    return AchievementDefinition(
        title=title,
        description=description,
        icon=FINANCIAL_ICON,
        category=AchievementCategory.FINANCIAL,
        requirement=requirement,
    )


def _time(title: str, description: str, requirement: RequirementSpec) -> AchievementDefinition:
    return AchievementDefinition(
        title=title,
        description=description,
        icon=TIME_ICON,
        category=AchievementCategory.TIME,
        requirement=requirement,
    )


DEFAULT_CATALOG: Sequence[AchievementDefinition] = (
    # Financial
    _financial("First Note", "Record your first expense",
               RequirementSpec(requirement_type=T.EXPENSE_COUNT, count=1)),
    _financial("Finance Way Started", "Record expenses 7 days in a row",
               RequirementSpec(requirement_type=T.EXPENSE_STREAK, days=7)),
    _financial("Responsible", "Record expenses 30 days in a row",
               RequirementSpec(requirement_type=T.EXPENSE_STREAK, days=30)),
    _financial("Discipline", "Record expenses 90 days in a row",
               RequirementSpec(requirement_type=T.EXPENSE_STREAK, days=90)),
    _financial("Saver", "Save 20% of your income in a month",
               RequirementSpec(requirement_type=T.SAVINGS_PERCENTAGE, percentage=20)),
    _financial("Economist", "Close a month with a budget within 15% of plan",
               RequirementSpec(requirement_type=T.BUDGET_ACCURACY, percentage=15)),
    _financial("Clean Balance", "Close a month without exceeding any budget",
               RequirementSpec(requirement_type=T.PERFECT_BALANCE)),
    _financial("Stability", "Earn more than you spend 3 months in a row",
               RequirementSpec(requirement_type=T.INCOME_EXCEEDS_EXPENSES, months=3)),
    _financial("Expense Cut", "Spend 10% less than last month",
               RequirementSpec(requirement_type=T.EXPENSE_REDUCTION, percentage=10)),
    _financial("Budget Captain", "Spend 25% less than last month",
               RequirementSpec(requirement_type=T.EXPENSE_REDUCTION, percentage=25)),
    _financial("Zero Expense Day", "Go a whole day without spending",
               RequirementSpec(requirement_type=T.ZERO_EXPENSE_DAY)),
    _financial("Organizer", "Create 5 expense categories",
               RequirementSpec(requirement_type=T.CATEGORY_COUNT, count=5)),
    _financial("Budget Master", "Keep a budget 3 months in a row",
               RequirementSpec(requirement_type=T.BUDGET_STREAK, months=3)),
    # Time
    _time("First Task", "Complete your first task",
          RequirementSpec(requirement_type=T.TASK_COMPLETED, count=1)),
    _time("Task Streak", "Complete tasks on time 7 days in a row",
          RequirementSpec(requirement_type=T.TASK_STREAK, days=7)),
    _time("Month Without a Miss", "Complete tasks on time 30 days in a row",
          RequirementSpec(requirement_type=T.TASK_STREAK, days=30)),
    _time("Deadline Met", "Complete a task before its deadline",
          RequirementSpec(requirement_type=T.DEADLINE_MET)),
    _time("Quick Finish", "Complete a task within 30 minutes",
          RequirementSpec(requirement_type=T.FAST_TASK_COMPLETION, minutes=30)),
    _time("Productive Day", "Complete 5 tasks in one day",
          RequirementSpec(requirement_type=T.TASKS_PER_DAY, count=5)),
    _time("Breakthrough", "Complete 10 tasks in one day",
          RequirementSpec(requirement_type=T.TASKS_PER_DAY, count=10)),
    _time("Productive Week", "Complete 20 tasks in one week",
          RequirementSpec(requirement_type=T.TASKS_PER_WEEK, count=20)),
    _time("Flow Week", "Complete 50 tasks in one week",
          RequirementSpec(requirement_type=T.TASKS_PER_WEEK, count=50)),
    _time("Productive Month", "Complete 200 tasks in one month",
          RequirementSpec(requirement_type=T.TASKS_PER_MONTH, count=200)),
    _time("Reliable", "Complete 90% of this month's tasks",
          RequirementSpec(requirement_type=T.TASKS_COMPLETION_RATE, percentage=90)),
    _time("Perfect Day", "Complete every task due today",
          RequirementSpec(requirement_type=T.TASKS_COMPLETION_RATE_DAY, percentage=100)),
    _time("Punctual Month", "Meet every deadline for a month",
          RequirementSpec(requirement_type=T.DEADLINE_STREAK_MONTH, percentage=100)),
)


def build_catalog(
    definitions: Sequence[AchievementDefinition] = DEFAULT_CATALOG,
    registry: RequirementRegistry = DEFAULT_REGISTRY
) -> List[AchievementDefinition]:
    """
    Derive canonical and translation keys for every definition

    Any invalid requirement or duplicate canonical key aborts the build;
    a broken catalog must never be seeded.

    Raises:
        InvalidRequirementError: a definition has an invalid requirement
        ValueError: two definitions derive the same canonical key
    """
    built: List[AchievementDefinition] = []
    seen: dict[str, str] = {}

    for definition in definitions:
        key = derive_key(definition.requirement, registry)
        # Target/filter parameters must be present for the rule to be evaluable
        rule = registry.rule_for(definition.requirement.requirement_type)
        rule.target_for(definition.requirement)
        rule.filter_for(definition.requirement)

        if key in seen:
            raise ValueError(
                f"Duplicate canonical key {key}: '{seen[key]}' and '{definition.title}'"
            )
        seen[key] = definition.title

        built.append(definition.model_copy(update={
            "canonical_key": key,
            "translation_key": definition.translation_key or lookup_translation_key(key),
        }))

    logger.debug(f"Built catalog with {len(built)} definitions (registry v{registry.version})")
    return built


async def seed_catalog(
    store=achievement_queries,
    definitions: Sequence[AchievementDefinition] = DEFAULT_CATALOG,
    registry: RequirementRegistry = DEFAULT_REGISTRY
) -> int:
    """
    Validate and insert catalog definitions that are not yet published

    Returns:
        Number of newly inserted definitions
    """
    catalog = build_catalog(definitions, registry)

    inserted = 0
    for definition in catalog:
        if await store.insert_definition(definition):
            inserted += 1
            logger.info(f"Published achievement definition {definition.canonical_key} ({definition.title})")

    logger.info(f"Catalog seeded: {inserted} new, {len(catalog) - inserted} already published")
    return inserted

