#!/usr/bin/env python3
"""
Achievement Rollover Script

Re-evaluates time-driven achievements for every user: daily streaks and
day-based metrics every run, closed budget months on the 1st.

Run once a day shortly after midnight in ACHIEVEMENT_TIMEZONE, e.g.:
    5 0 * * *  python scripts/run_achievement_rollover.py

Usage:
    python scripts/run_achievement_rollover.py [--as-of 2024-04-01T00:05:00+00:00]
"""
import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import LOG_LEVEL, validate_config
from src.db.connection import db
from src.gamification.registry import DEFAULT_REGISTRY
from src.gamification.rollover import run_rollover
from src.observability.metrics import init_metrics

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(as_of: Optional[datetime]) -> int:
    validate_config()
    init_metrics(DEFAULT_REGISTRY.version)
    async with db:
        report = await run_rollover(as_of=as_of)

    print(
        f"users={report.users} evaluated={report.evaluated} "
        f"completed={report.completed} failed={report.failed}"
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the daily achievement rollover")
    parser.add_argument(
        "--as-of",
        type=datetime.fromisoformat,
        default=None,
        help="ISO timestamp the run represents (defaults to now)"
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.as_of)))
