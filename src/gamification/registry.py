"""
Requirement Type Registry

Immutable, versioned mapping from requirement type token to the rule that
governs it:
- family (financial / time)
- progress policy (accumulate / streak / comparison)
- which parameter kind parameterizes the type, and whether it is the
  completion target or a metric filter
- which activity events make the rule worth re-evaluating

New requirement types are added by extending a registry into a new version;
existing rules are never redefined in place.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging

from src.exceptions import InvalidRequirementError
from src.models.achievement import (
    AchievementCategory,
    ActivityEvent,
    ParameterKind,
    ParameterRole,
    ProgressPolicy,
    RequirementSpec,
    RequirementType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequirementRule:
    """How one requirement type is measured and completed"""
    requirement_type: str
    family: AchievementCategory
    policy: ProgressPolicy
    parameter_kind: Optional[ParameterKind] = None
    parameter_role: ParameterRole = ParameterRole.TARGET
    triggers: frozenset = field(default_factory=frozenset)

    def target_for(self, spec: RequirementSpec) -> int:
        """
        Completion target for a concrete spec

        Parameterless rules and filter-parameter rules complete at 1.

        Raises:
            InvalidRequirementError: the declared parameter is missing
        """
        if self.parameter_kind is None or self.parameter_role is ParameterRole.FILTER:
            return 1
        return self._declared_value(spec)

    def filter_for(self, spec: RequirementSpec) -> Optional[int]:
        """Parameter passed to the aggregator, for filter-parameter rules"""
        if self.parameter_kind is None or self.parameter_role is not ParameterRole.FILTER:
            return None
        return self._declared_value(spec)

    def next_progress(self, stored: int, metric: int) -> int:
        if self.policy is ProgressPolicy.STREAK:
            return metric
        return max(stored, metric)

    def is_satisfied(self, progress: int, metric: int, target: int) -> bool:
        if self.policy is ProgressPolicy.ACCUMULATE:
            return progress >= target
        # Streaks and point-in-time comparisons judge the fresh metric
        return metric >= target

    def _declared_value(self, spec: RequirementSpec) -> int:
        value = spec.parameter_value(self.parameter_kind)
        if value is None:
            raise InvalidRequirementError(
                message=(
                    f"{self.requirement_type} requires a '{self.parameter_kind.value}' parameter"
                ),
                requirement_type=self.requirement_type,
                requirements=spec.to_requirements()
            )
        return value


class RequirementRegistry:
    """Closed, versioned set of requirement rules"""

    def __init__(self, version: int, rules: Iterable[RequirementRule]):
        mapping: Dict[str, RequirementRule] = {}
        for rule in rules:
            if rule.requirement_type in mapping:
                raise ValueError(f"Duplicate requirement type: {rule.requirement_type}")
            mapping[rule.requirement_type] = rule
        self._version = version
        self._rules = MappingProxyType(mapping)

    @property
    def version(self) -> int:
        return self._version

    def __contains__(self, requirement_type: object) -> bool:
        if isinstance(requirement_type, RequirementType):
            requirement_type = requirement_type.value
        return requirement_type in self._rules

    def __iter__(self) -> Iterator[RequirementRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def rule_for(self, requirement_type: Any) -> RequirementRule:
        """
        Look up the rule for a requirement type

        Raises:
            InvalidRequirementError: type is not part of this registry version
        """
        if isinstance(requirement_type, RequirementType):
            requirement_type = requirement_type.value
        rule = self._rules.get(requirement_type)
        if rule is None:
            raise InvalidRequirementError(
                message=(
                    f"Unknown requirement type: {requirement_type} "
                    f"(registry version {self._version})"
                ),
                requirement_type=str(requirement_type)
            )
        return rule

    def rules_triggered_by(self, event: ActivityEvent) -> List[RequirementRule]:
        return [rule for rule in self._rules.values() if event in rule.triggers]

    def extend(self, version: int, rules: Iterable[RequirementRule]) -> "RequirementRegistry":
        """
        Build a newer registry with additional rules

        Existing rules are carried over unchanged; redefining one is an error.
        """
        if version <= self._version:
            raise ValueError(
                f"Registry version must increase (current {self._version}, got {version})"
            )
        new_rules = list(rules)
        for rule in new_rules:
            if rule.requirement_type in self._rules:
                raise ValueError(
                    f"Requirement type {rule.requirement_type} already defined "
                    f"in registry version {self._version}"
                )
        logger.info(f"Extending requirement registry v{self._version} -> v{version} with {len(new_rules)} rule(s)")
        return RequirementRegistry(version, list(self._rules.values()) + new_rules)

    def parse(self, requirements: Any) -> RequirementSpec:
        """
        Parse a persisted requirements snapshot against this registry

        Accepts the legacy {"type": ..., "value": n} form by reading the value
        as the parameter kind the rule declares.

        Raises:
            InvalidRequirementError: malformed snapshot or unknown type
        """
        if isinstance(requirements, dict) and "value" in requirements and requirements.get("type"):
            token = str(requirements["type"]).strip().upper()
            rule = self.rule_for(token)
            converted = {k: v for k, v in requirements.items() if k != "value"}
            if rule.parameter_kind is not None and converted.get(rule.parameter_kind.value) is None:
                converted[rule.parameter_kind.value] = requirements["value"]
            requirements = converted

        spec = RequirementSpec.from_requirements(requirements)
        self.rule_for(spec.requirement_type)
        return spec


_E = ActivityEvent

# Expense and income activity can both move balance-derived metrics
_BALANCE_EVENTS = frozenset({_E.EXPENSE_CREATED, _E.INCOME_CREATED, _E.BUDGET_PERIOD_CLOSED, _E.DAILY_ROLLOVER})
_TASK_EVENTS = frozenset({_E.TASK_CREATED, _E.TASK_COMPLETED, _E.DAILY_ROLLOVER})

_V1_RULES = [
    # Financial
    RequirementRule(
        RequirementType.EXPENSE_COUNT.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.ACCUMULATE, ParameterKind.COUNT,
        triggers=frozenset({_E.EXPENSE_CREATED}),
    ),
    RequirementRule(
        RequirementType.EXPENSE_STREAK.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.STREAK, ParameterKind.DAYS,
        triggers=frozenset({_E.EXPENSE_CREATED, _E.DAILY_ROLLOVER}),
    ),
    RequirementRule(
        RequirementType.SAVINGS_PERCENTAGE.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.COMPARISON, ParameterKind.PERCENTAGE,
        triggers=_BALANCE_EVENTS,
    ),
    RequirementRule(
        RequirementType.BUDGET_ACCURACY.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.COMPARISON, ParameterKind.PERCENTAGE, ParameterRole.FILTER,
        triggers=frozenset({_E.BUDGET_PERIOD_CLOSED, _E.BUDGET_UPDATED}),
    ),
    RequirementRule(
        RequirementType.PERFECT_BALANCE.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.COMPARISON,
        triggers=frozenset({_E.BUDGET_PERIOD_CLOSED, _E.BUDGET_UPDATED}),
    ),
    RequirementRule(
        RequirementType.INCOME_EXCEEDS_EXPENSES.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.STREAK, ParameterKind.MONTHS,
        triggers=_BALANCE_EVENTS,
    ),
    RequirementRule(
        RequirementType.EXPENSE_REDUCTION.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.COMPARISON, ParameterKind.PERCENTAGE,
        triggers=frozenset({_E.BUDGET_PERIOD_CLOSED, _E.DAILY_ROLLOVER}),
    ),
    RequirementRule(
        RequirementType.ZERO_EXPENSE_DAY.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.COMPARISON,
        triggers=frozenset({_E.EXPENSE_CREATED, _E.DAILY_ROLLOVER}),
    ),
    RequirementRule(
        RequirementType.CATEGORY_COUNT.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.ACCUMULATE, ParameterKind.COUNT,
        triggers=frozenset({_E.CATEGORY_CREATED}),
    ),
    RequirementRule(
        RequirementType.BUDGET_STREAK.value, AchievementCategory.FINANCIAL,
        ProgressPolicy.STREAK, ParameterKind.MONTHS,
        triggers=frozenset({_E.BUDGET_UPDATED, _E.BUDGET_PERIOD_CLOSED}),
    ),
    # Time
    RequirementRule(
        RequirementType.TASK_COMPLETED.value, AchievementCategory.TIME,
        ProgressPolicy.ACCUMULATE, ParameterKind.COUNT,
        triggers=frozenset({_E.TASK_COMPLETED}),
    ),
    RequirementRule(
        RequirementType.TASK_STREAK.value, AchievementCategory.TIME,
        ProgressPolicy.STREAK, ParameterKind.DAYS,
        triggers=frozenset({_E.TASK_COMPLETED, _E.DAILY_ROLLOVER}),
    ),
    RequirementRule(
        RequirementType.DEADLINE_MET.value, AchievementCategory.TIME,
        ProgressPolicy.ACCUMULATE,
        triggers=frozenset({_E.TASK_COMPLETED}),
    ),
    RequirementRule(
        RequirementType.FAST_TASK_COMPLETION.value, AchievementCategory.TIME,
        ProgressPolicy.ACCUMULATE, ParameterKind.MINUTES, ParameterRole.FILTER,
        triggers=frozenset({_E.TASK_COMPLETED}),
    ),
    RequirementRule(
        RequirementType.TASKS_PER_DAY.value, AchievementCategory.TIME,
        ProgressPolicy.ACCUMULATE, ParameterKind.COUNT,
        triggers=frozenset({_E.TASK_COMPLETED}),
    ),
    RequirementRule(
        RequirementType.TASKS_PER_WEEK.value, AchievementCategory.TIME,
        ProgressPolicy.ACCUMULATE, ParameterKind.COUNT,
        triggers=frozenset({_E.TASK_COMPLETED}),
    ),
    RequirementRule(
        RequirementType.TASKS_PER_MONTH.value, AchievementCategory.TIME,
        ProgressPolicy.ACCUMULATE, ParameterKind.COUNT,
        triggers=frozenset({_E.TASK_COMPLETED}),
    ),
    RequirementRule(
        RequirementType.TASKS_COMPLETION_RATE.value, AchievementCategory.TIME,
        ProgressPolicy.COMPARISON, ParameterKind.PERCENTAGE,
        triggers=_TASK_EVENTS,
    ),
    RequirementRule(
        RequirementType.TASKS_COMPLETION_RATE_DAY.value, AchievementCategory.TIME,
        ProgressPolicy.COMPARISON, ParameterKind.PERCENTAGE,
        triggers=_TASK_EVENTS,
    ),
    RequirementRule(
        RequirementType.DEADLINE_STREAK_MONTH.value, AchievementCategory.TIME,
        ProgressPolicy.COMPARISON, ParameterKind.PERCENTAGE,
        triggers=_TASK_EVENTS,
    ),
]

DEFAULT_REGISTRY = RequirementRegistry(version=1, rules=_V1_RULES)
