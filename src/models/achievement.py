"""Achievement models for the progress engine"""
import re
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing import Optional, Any
from datetime import datetime

from src.exceptions import InvalidRequirementError

_TOKEN_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


class RequirementType(str, Enum):
    """Requirement types known to the version 1 registry"""
    # Financial
    EXPENSE_COUNT = "EXPENSE_COUNT"
    EXPENSE_STREAK = "EXPENSE_STREAK"
    SAVINGS_PERCENTAGE = "SAVINGS_PERCENTAGE"
    BUDGET_ACCURACY = "BUDGET_ACCURACY"
    PERFECT_BALANCE = "PERFECT_BALANCE"
    INCOME_EXCEEDS_EXPENSES = "INCOME_EXCEEDS_EXPENSES"
    EXPENSE_REDUCTION = "EXPENSE_REDUCTION"
    ZERO_EXPENSE_DAY = "ZERO_EXPENSE_DAY"
    CATEGORY_COUNT = "CATEGORY_COUNT"
    BUDGET_STREAK = "BUDGET_STREAK"
    # Time
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_STREAK = "TASK_STREAK"
    DEADLINE_MET = "DEADLINE_MET"
    FAST_TASK_COMPLETION = "FAST_TASK_COMPLETION"
    TASKS_PER_DAY = "TASKS_PER_DAY"
    TASKS_PER_WEEK = "TASKS_PER_WEEK"
    TASKS_PER_MONTH = "TASKS_PER_MONTH"
    TASKS_COMPLETION_RATE = "TASKS_COMPLETION_RATE"
    TASKS_COMPLETION_RATE_DAY = "TASKS_COMPLETION_RATE_DAY"
    DEADLINE_STREAK_MONTH = "DEADLINE_STREAK_MONTH"


class ParameterKind(str, Enum):
    """Parameter fields a requirement may carry"""
    COUNT = "count"
    DAYS = "days"
    THRESHOLD = "threshold"
    PERCENTAGE = "percentage"
    MONTHS = "months"
    MINUTES = "minutes"


class AchievementCategory(str, Enum):
    """Achievement families"""
    FINANCIAL = "financial"
    TIME = "time"


class ProgressPolicy(str, Enum):
    """How a fresh metric is folded into stored progress"""
    ACCUMULATE = "accumulate"   # best-seen value, never decreases
    STREAK = "streak"           # current run length, resets when broken
    COMPARISON = "comparison"   # point-in-time metric compared with the target


class ParameterRole(str, Enum):
    """What the requirement parameter means for its rule"""
    TARGET = "target"   # completion target
    FILTER = "filter"   # narrows the metric; completion target is 1


class AchievementStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ActivityEvent(str, Enum):
    """Domain events that trigger an evaluation tick"""
    EXPENSE_CREATED = "EXPENSE_CREATED"
    INCOME_CREATED = "INCOME_CREATED"
    BUDGET_UPDATED = "BUDGET_UPDATED"
    BUDGET_PERIOD_CLOSED = "BUDGET_PERIOD_CLOSED"
    CATEGORY_CREATED = "CATEGORY_CREATED"
    TASK_CREATED = "TASK_CREATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    DAILY_ROLLOVER = "DAILY_ROLLOVER"


def _stringify_id(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


class RequirementSpec(BaseModel):
    """
    Immutable requirement: a type token plus at most one parameter.

    A parameter field is populated when it is not None; 0 is a populated
    value and is distinct from an absent parameter.
    """
    model_config = ConfigDict(frozen=True)

    requirement_type: str
    count: Optional[int] = None
    days: Optional[int] = None
    threshold: Optional[int] = None
    percentage: Optional[int] = None
    months: Optional[int] = None
    minutes: Optional[int] = None

    @field_validator("requirement_type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> str:
        if isinstance(value, Enum):
            value = value.value
        if not isinstance(value, str):
            raise ValueError("requirement type must be a string")
        token = value.strip().upper()
        if not _TOKEN_PATTERN.match(token):
            raise ValueError(f"malformed requirement type token: {value!r}")
        return token

    def parameter_value(self, kind: ParameterKind) -> Optional[int]:
        return getattr(self, kind.value)

    def populated_parameters(self) -> dict[ParameterKind, int]:
        return {
            kind: getattr(self, kind.value)
            for kind in ParameterKind
            if getattr(self, kind.value) is not None
        }

    @classmethod
    def from_requirements(cls, requirements: Any) -> "RequirementSpec":
        """
        Parse a persisted requirements snapshot

        Args:
            requirements: Dict like {"type": "EXPENSE_COUNT", "count": 1}

        Raises:
            InvalidRequirementError: snapshot is not a dict, has no type,
                or carries a non-integer parameter
        """
        if not isinstance(requirements, dict):
            raise InvalidRequirementError(
                message="Requirements snapshot must be an object",
                requirements=requirements
            )

        requirement_type = requirements.get("type")
        if not requirement_type:
            raise InvalidRequirementError(
                message="Requirements snapshot has no type",
                requirements=requirements
            )

        fields = {"requirement_type": requirement_type}
        for kind in ParameterKind:
            value = requirements.get(kind.value)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidRequirementError(
                    message=f"Parameter '{kind.value}' must be an integer",
                    requirement_type=str(requirement_type),
                    requirements=requirements
                )
            fields[kind.value] = value

        try:
            return cls(**fields)
        except ValidationError as e:
            raise InvalidRequirementError(
                message=f"Malformed requirements snapshot: {e.errors()[0]['msg']}",
                requirement_type=str(requirement_type),
                requirements=requirements,
                cause=e
            )

    def to_requirements(self) -> dict[str, Any]:
        """Snapshot form stored alongside each user record"""
        snapshot: dict[str, Any] = {"type": self.requirement_type}
        for kind, value in self.populated_parameters().items():
            snapshot[kind.value] = value
        return snapshot


class AchievementDefinition(BaseModel):
    """Published catalog entry"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    title: str
    description: str
    icon: str
    category: AchievementCategory
    image_path: Optional[str] = None
    requirement: RequirementSpec
    canonical_key: Optional[str] = None
    translation_key: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, value: Any) -> Any:
        return _stringify_id(value)


class AchievementRecord(BaseModel):
    """Per-user instantiation of a definition"""
    id: str
    user_id: str
    definition_id: Optional[str] = None
    title: str = ""
    description: str = ""
    icon: str = ""
    category: Optional[AchievementCategory] = None
    requirements: Any = None
    progress: int = Field(default=0, ge=0)
    completed: bool = False
    completed_at: Optional[datetime] = None
    canonical_key: Optional[str] = None
    translation_key: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("id", "user_id", "definition_id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _stringify_id(value)

    @property
    def status(self) -> AchievementStatus:
        return AchievementStatus.COMPLETED if self.completed else AchievementStatus.IN_PROGRESS


class CompletionEvent(BaseModel):
    """Signal handed to the notification collaborator"""
    user_id: str
    achievement_id: str
    definition_id: Optional[str] = None
    canonical_key: Optional[str] = None
    translation_key: Optional[str] = None
    title: str = ""
    completed_at: datetime


class EvaluationOutcome(BaseModel):
    """Result of one evaluation tick for one record"""
    record_id: str
    user_id: str
    requirement_type: Optional[str] = None
    canonical_key: Optional[str] = None
    previous_progress: int = 0
    progress: int = 0
    metric: Optional[int] = None
    completed: bool = False
    newly_completed: bool = False
    skipped: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.newly_completed or self.progress != self.previous_progress


class BackfillReport(BaseModel):
    """Counts reported by the canonical key backfill"""
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


class RolloverReport(BaseModel):
    """Counts reported by a scheduled rollover run"""
    users: int = 0
    evaluated: int = 0
    completed: int = 0
    failed: int = 0
    events: list[ActivityEvent] = Field(default_factory=list)
