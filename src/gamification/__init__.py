"""
Achievement engine for the expense & task tracker

This module implements achievement progress and completion with:
- Requirement registry (versioned rules per requirement type)
- Canonical key derivation
- Achievement catalog and seeding
- Activity aggregation
- Progress engine with at-most-once completion
- Canonical key backfill
"""

from src.gamification.registry import DEFAULT_REGISTRY, RequirementRegistry, RequirementRule
from src.gamification.keys import derive_key, lookup_translation_key
from src.gamification.catalog import DEFAULT_CATALOG, build_catalog, seed_catalog
from src.gamification.aggregator import ActivityAggregator
from src.gamification.progress_engine import ProgressEngine
from src.gamification.backfill import recompute_canonical_keys

__all__ = [
    "DEFAULT_REGISTRY",
    "RequirementRegistry",
    "RequirementRule",
    "derive_key",
    "lookup_translation_key",
    "DEFAULT_CATALOG",
    "build_catalog",
    "seed_catalog",
    "ActivityAggregator",
    "ProgressEngine",
    "recompute_canonical_keys",
]
