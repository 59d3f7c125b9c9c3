"""
Canonical key derivation for requirement specifications

A canonical key is the durable identity of a concrete requirement
(type + parameter value), e.g. EXPENSE_STREAK_7. It joins catalog rows and
per-user records to externally maintained display/localization content.

Derivation contract:
- base token is the upper-snake requirement type
- the parameter is chosen by PARAMETER_PRECEDENCE; only the first populated
  field contributes "_<value>"
- a field is populated when it is not None, so an explicit 0 yields
  "<TYPE>_0" while an absent parameter yields the bare "<TYPE>"
"""

from types import MappingProxyType
from typing import Optional, Tuple
import logging

from src.exceptions import InvalidRequirementError
from src.gamification.registry import DEFAULT_REGISTRY, RequirementRegistry
from src.models.achievement import ParameterKind, RequirementSpec

logger = logging.getLogger(__name__)

PARAMETER_PRECEDENCE: Tuple[ParameterKind, ...] = (
    ParameterKind.COUNT,
    ParameterKind.DAYS,
    ParameterKind.THRESHOLD,
    ParameterKind.PERCENTAGE,
    ParameterKind.MONTHS,
    ParameterKind.MINUTES,
)

# Canonical key -> localization table key
TRANSLATION_KEYS = MappingProxyType({
    # Financial achievements
    "EXPENSE_COUNT_1": "financial.first_note",
    "EXPENSE_STREAK_7": "financial.finance_way_started",
    "EXPENSE_STREAK_30": "financial.responsible",
    "EXPENSE_STREAK_90": "financial.discipline",
    "BUDGET_ACCURACY_15": "financial.economist",
    "PERFECT_BALANCE": "financial.clean_balance",
    "INCOME_EXCEEDS_EXPENSES_3": "financial.stability",
    "EXPENSE_REDUCTION_10": "financial.expense_cut",
    "EXPENSE_REDUCTION_25": "financial.budget_captain",
    "ZERO_EXPENSE_DAY": "financial.zero_expense_day",
    "SAVINGS_PERCENTAGE_20": "financial.saver",
    "CATEGORY_COUNT_5": "financial.organizer",
    "BUDGET_STREAK_3": "financial.budget_master",

    # Time achievements
    "TASK_COMPLETED_1": "time.first_task",
    "TASK_STREAK_7": "time.task_streak",
    "TASK_STREAK_30": "time.month_without_miss",
    "DEADLINE_MET": "time.deadline_met",
    "FAST_TASK_COMPLETION_30": "time.fast_task_completion",
    "TASKS_PER_DAY_5": "time.tasks_per_day",
    "TASKS_PER_DAY_10": "time.breakthrough",
    "TASKS_PER_WEEK_20": "time.tasks_per_week",
    "TASKS_PER_WEEK_50": "time.flow_week",
    "TASKS_PER_MONTH_200": "time.tasks_per_month",
    "TASKS_COMPLETION_RATE_90": "time.tasks_completion_rate",
    "TASKS_COMPLETION_RATE_DAY_100": "time.tasks_completion_rate_day",
    "DEADLINE_STREAK_MONTH_100": "time.deadline_streak_month",
})


def select_parameter(spec: RequirementSpec) -> Optional[Tuple[ParameterKind, int]]:
    """Return the (kind, value) that contributes to the key, or None"""
    for kind in PARAMETER_PRECEDENCE:
        value = spec.parameter_value(kind)
        if value is not None:
            return kind, value
    return None


def derive_key(spec: RequirementSpec, registry: RequirementRegistry = DEFAULT_REGISTRY) -> str:
    """
    Derive the canonical key for a requirement specification

    Args:
        spec: Requirement to identify
        registry: Registry whose version defines the known types

    Returns:
        Canonical key, e.g. "EXPENSE_COUNT_1" or "PERFECT_BALANCE"

    Raises:
        InvalidRequirementError: unknown type or negative parameter value
    """
    registry.rule_for(spec.requirement_type)

    for kind, value in spec.populated_parameters().items():
        if value < 0:
            raise InvalidRequirementError(
                message=f"Parameter '{kind.value}' must be non-negative, got {value}",
                requirement_type=spec.requirement_type,
                requirements=spec.to_requirements()
            )

    selected = select_parameter(spec)
    if selected is None:
        return spec.requirement_type

    _, value = selected
    return f"{spec.requirement_type}_{value}"


def lookup_translation_key(canonical_key: Optional[str]) -> Optional[str]:
    if not canonical_key:
        return None
    return TRANSLATION_KEYS.get(canonical_key)
