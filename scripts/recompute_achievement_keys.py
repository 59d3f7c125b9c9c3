#!/usr/bin/env python3
"""
Canonical Key Backfill Script

Recomputes canonical and translation keys for stored user achievement
records from their requirements snapshots.

Key Features:
- Idempotent: Can run multiple times safely
- Resumable: keyset pagination by record id, restart after interruption
- Per-record failures are logged and counted, never abort the run
- Progress and completion columns are never touched

Usage:
    python scripts/recompute_achievement_keys.py [--force]

Requirements:
    - Database connection configured (DATABASE_URL env var)
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import LOG_LEVEL, validate_config
from src.db.connection import db
from src.gamification.registry import DEFAULT_REGISTRY
from src.observability.metrics import init_metrics
from src.gamification.backfill import recompute_canonical_keys

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(force: bool) -> int:
    validate_config()
    init_metrics(DEFAULT_REGISTRY.version)
    async with db:
        report = await recompute_canonical_keys(force=force)

    print(
        f"scanned={report.scanned} updated={report.updated} "
        f"skipped={report.skipped} failed={report.failed}"
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Recompute achievement canonical keys")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Revisit records that already have a canonical key"
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.force)))
