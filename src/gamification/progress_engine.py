"""
Progress Engine

Evaluates per-user achievement records against live activity:
- measures the metric for the record's requirement snapshot
- folds it into stored progress by the rule's policy
- completes the record at most once, guarded by compare-and-set writes
- hands exactly one completion signal per unlock to the notifier

Ticks hold no locks; the database row is the only contended resource.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional
import asyncio
import logging
import time

from src import config
from src.db.queries import achievements as achievement_queries
from src.exceptions import (
    ConcurrentCompletionConflict,
    DatabaseError,
    InvalidRequirementError,
    RecordNotFoundError,
    UnknownDefinitionError,
)
from src.gamification.aggregator import ActivityAggregator
from src.gamification.notifications import DatabaseNotifier, NullNotifier
from src.gamification.registry import DEFAULT_REGISTRY, RequirementRegistry, RequirementRule
from src.models.achievement import (
    AchievementRecord,
    ActivityEvent,
    CompletionEvent,
    EvaluationOutcome,
    RequirementSpec,
)
from src.observability.metrics import (
    achievement_cas_conflicts_total,
    achievement_completions_total,
    achievement_evaluation_duration_seconds,
    achievement_evaluations_skipped_total,
    achievement_evaluations_total,
    get_evaluation_outcome,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot_type(record: AchievementRecord) -> Optional[str]:
    requirements = record.requirements
    if isinstance(requirements, dict) and requirements.get("type"):
        return str(requirements["type"]).strip().upper()
    return None


class ProgressEngine:
    """
    Drives evaluation ticks for achievement records

    Args:
        store: Persistence module (or object) exposing the achievement queries
        aggregator: Metric source, defaults to ActivityAggregator()
        notifier: Completion collaborator; defaults to DatabaseNotifier when
            ENABLE_ACHIEVEMENT_NOTIFICATIONS is set
        registry: Requirement registry used to interpret snapshots
        clock: Callable returning the current aware datetime
        max_retries: Re-read/recompute attempts after a lost progress write
    """

    def __init__(
        self,
        store=achievement_queries,
        aggregator=None,
        notifier=None,
        registry: RequirementRegistry = DEFAULT_REGISTRY,
        clock: Optional[Callable[[], datetime]] = None,
        max_retries: Optional[int] = None
    ):
        self.store = store
        self.aggregator = aggregator or ActivityAggregator()
        if notifier is None:
            notifier = DatabaseNotifier(store) if config.ENABLE_ACHIEVEMENT_NOTIFICATIONS else NullNotifier()
        self.notifier = notifier
        self.registry = registry
        self.clock = clock or _utcnow
        self.max_retries = config.PROGRESS_CAS_MAX_RETRIES if max_retries is None else max_retries

    # ============================================
    # Single record
    # ============================================

    async def evaluate_record(
        self,
        record: AchievementRecord,
        now: Optional[datetime] = None,
        spec: Optional[RequirementSpec] = None
    ) -> EvaluationOutcome:
        """
        Run one evaluation tick for a record

        Args:
            record: Stored record (as last read)
            now: Evaluation instant, also used as completed_at
            spec: Pre-parsed requirement; parsed from the record snapshot if omitted

        Returns:
            EvaluationOutcome describing what (if anything) changed

        Raises:
            InvalidRequirementError: snapshot cannot be interpreted
            DatabaseError: persistence failed
        """
        if record.completed:
            outcome = self._unchanged(record)
            outcome.requirement_type = _snapshot_type(record)
            self._record_outcome(outcome)
            return outcome

        spec = spec or self.registry.parse(record.requirements)
        rule = self.registry.rule_for(spec.requirement_type)
        target = rule.target_for(spec)
        parameter = rule.filter_for(spec)
        now = now or self.clock()

        metric = await self.aggregator.measure(
            record.user_id, spec.requirement_type, parameter, as_of=now
        )
        metric = max(metric, 0)

        outcome = await self._apply(record, rule, metric, target, now)
        outcome.requirement_type = spec.requirement_type
        self._record_outcome(outcome)
        return outcome

    async def _apply(
        self,
        record: AchievementRecord,
        rule: RequirementRule,
        metric: int,
        target: int,
        now: datetime
    ) -> EvaluationOutcome:
        previous = record.progress
        current = record

        for _ in range(self.max_retries + 1):
            progress = rule.next_progress(current.progress, metric)

            if rule.is_satisfied(progress, metric, target):
                try:
                    fresh = await self._claim_completion(current, progress, now)
                except ConcurrentCompletionConflict as conflict:
                    achievement_cas_conflicts_total.labels(operation="completion").inc()
                    return self._outcome(current, previous, conflict.progress, metric, completed=True)
                if fresh is None:
                    await self._notify(current, now)
                    return self._outcome(
                        current, previous, progress, metric, completed=True, newly_completed=True
                    )
                # Progress moved underneath us; recompute from the stored value
                achievement_cas_conflicts_total.labels(operation="completion").inc()
                current = fresh
                continue

            if progress == current.progress:
                return self._outcome(current, previous, progress, metric)

            if await self.store.compare_and_set_progress(current.id, current.progress, progress):
                logger.debug(
                    f"Record {current.id} progress {current.progress} -> {progress} "
                    f"(metric {metric}, target {target})"
                )
                return self._outcome(current, previous, progress, metric)

            achievement_cas_conflicts_total.labels(operation="progress").inc()
            fresh = await self._reread(current)
            if fresh.completed:
                return self._outcome(fresh, previous, fresh.progress, metric, completed=True)
            current = fresh

        logger.warning(
            f"Gave up writing progress for record {record.id} after "
            f"{self.max_retries} concurrent update(s)"
        )
        return self._outcome(current, previous, current.progress, metric)

    async def _reread(self, record: AchievementRecord) -> AchievementRecord:
        fresh = await self.store.get_record(record.id)
        if fresh is None:
            raise RecordNotFoundError(
                message=f"Achievement record {record.id} disappeared during evaluation",
                record_type="user_achievement",
                record_id=record.id,
                user_id=record.user_id
            )
        return fresh

    async def _claim_completion(
        self,
        record: AchievementRecord,
        progress: int,
        now: datetime
    ) -> Optional[AchievementRecord]:
        """
        Flip the record to completed if its progress is still what we read

        Returns:
            None when this tick completed the record, otherwise the re-read
            record whose progress changed concurrently

        Raises:
            ConcurrentCompletionConflict: another tick completed it first
        """
        won = await self.store.complete_record(record.id, record.progress, progress, now)
        if not won:
            fresh = await self._reread(record)
            if fresh.completed:
                raise ConcurrentCompletionConflict(
                    record_id=record.id, user_id=record.user_id, progress=fresh.progress
                )
            return fresh

        category = record.category.value if record.category else "unknown"
        achievement_completions_total.labels(category=category).inc()
        logger.info(f"User {record.user_id} completed achievement {record.canonical_key or record.id}")
        return None

    async def _notify(self, record: AchievementRecord, now: datetime) -> None:
        event = CompletionEvent(
            user_id=record.user_id,
            achievement_id=record.id,
            definition_id=record.definition_id,
            canonical_key=record.canonical_key,
            translation_key=record.translation_key,
            title=record.title,
            completed_at=now,
        )
        try:
            await self.notifier.notify_completion(event)
        except Exception as e:
            # The completion is already committed
            logger.error(
                f"Failed to notify user {record.user_id} about {record.canonical_key}: {e}",
                exc_info=True
            )

    # ============================================
    # By definition / by activity
    # ============================================

    async def evaluate(
        self,
        user_id: str,
        definition_id: str,
        now: Optional[datetime] = None
    ) -> EvaluationOutcome:
        """
        Evaluate one definition for one user, creating the record if needed

        Raises:
            UnknownDefinitionError: definition does not exist
        """
        definition = await self.store.get_definition(definition_id)
        if definition is None:
            raise UnknownDefinitionError(
                message=f"Achievement definition {definition_id} not found",
                definition_id=definition_id,
                user_id=user_id
            )

        record = await self.store.get_user_record(user_id, definition_id)
        if record is None:
            await self.store.create_user_records(user_id, [definition])
            record = await self.store.get_user_record(user_id, definition_id)
            if record is None:
                raise RecordNotFoundError(
                    message=f"Achievement record for definition {definition_id} could not be created",
                    record_type="user_achievement",
                    user_id=user_id
                )

        return await self.evaluate_record(record, now)

    async def process_activity(
        self,
        user_id: str,
        event: ActivityEvent,
        now: Optional[datetime] = None
    ) -> List[EvaluationOutcome]:
        """
        Evaluate every record an activity event can affect

        Records are materialized lazily for definitions the user has none
        for yet. Each record is evaluated independently; one failing record
        never blocks the others.

        Returns:
            One outcome per evaluated or skipped record
        """
        now = now or self.clock()
        triggered = {rule.requirement_type for rule in self.registry.rules_triggered_by(event)}
        if not triggered:
            return []

        started = time.perf_counter()
        try:
            records = await self._load_records(user_id, triggered)
        except Exception as e:
            logger.error(
                f"Could not load achievements for user {user_id} on {event.value}: {e}",
                exc_info=not isinstance(e, DatabaseError)
            )
            return []

        outcomes = await asyncio.gather(
            *(self._evaluate_safely(record, now, reason) for record, reason in records)
        )

        achievement_evaluation_duration_seconds.labels(event=event.value).observe(
            time.perf_counter() - started
        )
        completed = sum(1 for o in outcomes if o.newly_completed)
        logger.debug(
            f"Processed {event.value} for user {user_id}: "
            f"{len(outcomes)} record(s), {completed} newly completed"
        )
        return list(outcomes)

    async def _load_records(self, user_id: str, triggered: set) -> list:
        """
        Pair each affected record with a skip reason (None if it should be evaluated)
        """
        definitions = await self.store.get_definitions()
        relevant = [d for d in definitions if d.requirement.requirement_type in triggered]
        known_ids = {d.id for d in definitions}

        records = await self.store.get_user_records(user_id)
        present = {r.definition_id for r in records}
        missing = [d for d in relevant if d.id not in present]
        if missing:
            await self.store.create_user_records(user_id, missing)
            records = await self.store.get_user_records(user_id)

        relevant_ids = {d.id for d in relevant}
        paired = []
        for record in records:
            if record.completed:
                continue
            if record.definition_id in relevant_ids:
                paired.append((record, None))
            elif _snapshot_type(record) not in triggered:
                continue
            elif record.definition_id is None:
                # Standalone records carry everything needed in their snapshot
                paired.append((record, None))
            elif record.definition_id not in known_ids:
                paired.append((record, "unknown_definition"))

        return paired

    async def _evaluate_safely(
        self,
        record: AchievementRecord,
        now: datetime,
        reason: Optional[str] = None
    ) -> EvaluationOutcome:
        if reason is None:
            try:
                return await self.evaluate_record(record, now)
            except InvalidRequirementError:
                reason = "invalid_requirement"
            except DatabaseError:
                reason = "database_error"
            except Exception as e:
                logger.error(f"Unexpected error evaluating record {record.id}: {e}", exc_info=True)
                reason = "error"
        else:
            logger.warning(
                f"Record {record.id} references missing definition {record.definition_id}, skipping"
            )

        achievement_evaluations_skipped_total.labels(reason=reason).inc()
        outcome = self._unchanged(record)
        outcome.skipped = reason
        outcome.requirement_type = _snapshot_type(record)
        self._record_outcome(outcome)
        return outcome

    # ============================================
    # Outcomes
    # ============================================

    @staticmethod
    def _outcome(
        record: AchievementRecord,
        previous: int,
        progress: int,
        metric: Optional[int],
        completed: bool = False,
        newly_completed: bool = False
    ) -> EvaluationOutcome:
        return EvaluationOutcome(
            record_id=record.id,
            user_id=record.user_id,
            canonical_key=record.canonical_key,
            previous_progress=previous,
            progress=progress,
            metric=metric,
            completed=completed,
            newly_completed=newly_completed,
        )

    def _unchanged(self, record: AchievementRecord) -> EvaluationOutcome:
        return self._outcome(
            record, record.progress, record.progress, None, completed=record.completed
        )

    @staticmethod
    def _record_outcome(outcome: EvaluationOutcome) -> None:
        achievement_evaluations_total.labels(
            requirement_type=outcome.requirement_type or "unknown",
            outcome=get_evaluation_outcome(
                outcome.newly_completed,
                outcome.progress != outcome.previous_progress,
                skipped=outcome.skipped is not None,
            ),
        ).inc()
