#!/usr/bin/env python3
"""
Achievement Catalog Seeding Script

Publishes catalog definitions that are not yet in achievement_definitions.
Published definitions are immutable and are left as they are.

Usage:
    python scripts/seed_achievement_catalog.py
"""
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
from src.gamification.catalog import seed_catalog

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main() -> None:
    validate_config()
    init_metrics(DEFAULT_REGISTRY.version)
    async with db:
        inserted = await seed_catalog()
    logger.info(f"Seeding finished, {inserted} definition(s) published")


if __name__ == "__main__":
    asyncio.run(main())
