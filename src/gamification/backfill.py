"""
Canonical key backfill

Recomputes canonical and translation keys for stored achievement records
from their requirements snapshots.

Key Features:
- Idempotent: a second run finds nothing to change
- Keyset pagination by record id, so an interrupted run can simply be restarted
- A record whose snapshot cannot be interpreted is logged and counted, never
  aborts the batch
- Only key columns are written; progress and completion are left alone
"""

from typing import Optional
import logging

from src import config
from src.db.queries import achievements as achievement_queries
from src.exceptions import InvalidRequirementError
from src.gamification.keys import derive_key, lookup_translation_key
from src.gamification.registry import DEFAULT_REGISTRY, RequirementRegistry
from src.models.achievement import AchievementRecord, BackfillReport
from src.observability.metrics import achievement_backfill_records_total
from src.resilience.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# Log progress every N records
PROGRESS_INTERVAL = 1000


async def _backfill_record(
    record: AchievementRecord,
    store,
    registry: RequirementRegistry,
    report: BackfillReport
) -> None:
    try:
        spec = registry.parse(record.requirements)
        canonical_key = derive_key(spec, registry)
    except InvalidRequirementError as e:
        report.failed += 1
        achievement_backfill_records_total.labels(result="failed").inc()
        logger.warning(f"Skipping record {record.id}: {e.message}")
        return

    translation_key = lookup_translation_key(canonical_key) or record.translation_key

    if canonical_key == record.canonical_key and translation_key == record.translation_key:
        report.skipped += 1
        achievement_backfill_records_total.labels(result="skipped").inc()
        return

    await store.set_record_keys(record.id, canonical_key, translation_key)
    report.updated += 1
    achievement_backfill_records_total.labels(result="updated").inc()
    logger.debug(f"Record {record.id}: {record.canonical_key} -> {canonical_key}")


async def recompute_canonical_keys(
    force: bool = False,
    store=achievement_queries,
    registry: RequirementRegistry = DEFAULT_REGISTRY,
    batch_size: Optional[int] = None
) -> BackfillReport:
    """
    Recompute canonical keys for stored records

    Args:
        force: Also revisit records that already carry a canonical key
        store: Persistence module (or object) exposing the backfill queries
        registry: Registry used to parse snapshots and derive keys
        batch_size: Page size (defaults to BACKFILL_BATCH_SIZE)

    Returns:
        BackfillReport with scanned/updated/skipped/failed counts
    """
    batch_size = batch_size or config.BACKFILL_BATCH_SIZE
    report = BackfillReport()
    after_id: Optional[str] = None

    logger.info("=" * 60)
    logger.info(f"RECOMPUTING CANONICAL KEYS (force={force}, batch_size={batch_size})")
    logger.info("=" * 60)

    while True:
        page = await retry_with_backoff(
            store.fetch_records_for_backfill, after_id, batch_size, force
        )
        if not page:
            break

        for record in page:
            report.scanned += 1
            await _backfill_record(record, store, registry, report)

            if report.scanned % PROGRESS_INTERVAL == 0:
                logger.info(
                    f"Progress: {report.scanned} scanned, {report.updated} updated, "
                    f"{report.failed} failed"
                )

        after_id = page[-1].id
        if len(page) < batch_size:
            break

    logger.info(
        f"Backfill complete: {report.scanned} scanned, {report.updated} updated, "
        f"{report.skipped} unchanged, {report.failed} failed"
    )
    return report
