"""
Prometheus metrics definitions for the achievement engine.

This module defines all metrics collected by the engine, organized by category:
- Evaluation metrics: ticks per requirement type and outcome, tick latency
- Completion metrics: unlocks and lost completion races
- Backfill metrics: canonical key recompute results
- Database metrics: retried reads

Exposition (an HTTP /metrics endpoint) is left to the host application.
"""

import logging
from prometheus_client import Counter, Histogram, Info

logger = logging.getLogger(__name__)

# =============================================================================
# Evaluation Metrics
# =============================================================================

achievement_evaluations_total = Counter(
    "achievement_evaluations_total",
    "Total achievement evaluation ticks",
    ["requirement_type", "outcome"],  # outcome: unchanged/progressed/completed/skipped
)

achievement_evaluation_duration_seconds = Histogram(
    "achievement_evaluation_duration_seconds",
    "Time spent evaluating all records affected by one activity event",
    ["event"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

achievement_evaluations_skipped_total = Counter(
    "achievement_evaluations_skipped_total",
    "Evaluations skipped because a definition or requirement could not be resolved",
    ["reason"],  # reason: unknown_definition/invalid_requirement/database_error/error
)

# =============================================================================
# Completion Metrics
# =============================================================================

achievement_completions_total = Counter(
    "achievement_completions_total",
    "Total achievements completed",
    ["category"],  # category: financial/time
)

achievement_cas_conflicts_total = Counter(
    "achievement_cas_conflicts_total",
    "Compare-and-set writes lost to a concurrent writer",
    ["operation"],  # operation: progress/completion
)

# =============================================================================
# Backfill Metrics
# =============================================================================

achievement_backfill_records_total = Counter(
    "achievement_backfill_records_total",
    "Records processed by the canonical key backfill",
    ["result"],  # result: updated/skipped/failed
)

# =============================================================================
# Database Metrics
# =============================================================================

db_retries_total = Counter(
    "db_retries_total",
    "Total retried database calls",
    ["operation"],
)

# =============================================================================
# Application Info
# =============================================================================

app_info = Info(
    "achievement_engine",
    "Achievement engine information",
)


def init_metrics(registry_version: int):
    """
    Initialize metrics with engine information.

    Called once at startup to set static metadata.
    """
    import os
    import sys

    app_info.info(
        {
            "version": os.getenv("GIT_COMMIT_SHA", "dev")[:7],
            "registry_version": str(registry_version),
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}",
        }
    )

    logger.info("Prometheus metrics initialized")


# =============================================================================
# Helper Functions
# =============================================================================


def get_evaluation_outcome(newly_completed: bool, progressed: bool, skipped: bool = False) -> str:
    """
    Collapse an evaluation result into a metric label.

    Returns:
        Outcome label: 'skipped', 'completed', 'progressed' or 'unchanged'
    """
    if skipped:
        return "skipped"
    elif newly_completed:
        return "completed"
    elif progressed:
        return "progressed"
    else:
        return "unchanged"
