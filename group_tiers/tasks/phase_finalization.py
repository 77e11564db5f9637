"""
group_tiers/tasks/phase_finalization.py
Periodic sweep that evaluates and completes expired ACTIVE phases
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from group_tiers.config.settings import settings
from group_tiers.database import AsyncSessionLocal
from group_tiers.errors import APIError
from group_tiers.services import phase_service

logger = logging.getLogger(__name__)


async def run_finalization_once(session_factory=AsyncSessionLocal, now: Optional[datetime] = None) -> List[str]:
    """Run a single finalization cycle on a fresh session."""
    async with session_factory() as db:
        try:
            finalized = await phase_service.finalize_expired_active_phases(db, now=now)
        except (APIError, SQLAlchemyError) as e:
            logger.error(f"Phase finalization failed: {type(e).__name__}: {e}")
            return []
    if finalized:
        logger.info(f"Phase finalization completed: {len(finalized)} phase(s) finalized")
    return finalized


async def finalization_loop(interval_seconds: int = settings.PHASE_FINALIZER_INTERVAL_SECONDS, session_factory=AsyncSessionLocal):
    """
    Background finalization loop.
    Runs every interval_seconds until cancelled.
    """
    logger.info(f"Starting phase finalization loop with interval {interval_seconds}s")

    while True:
        try:
            await run_finalization_once(session_factory)
        except Exception as e:
            logger.error(f"Phase finalization loop error: {str(e)}")
        await asyncio.sleep(interval_seconds)


def start_finalization_task(interval_seconds: int = settings.PHASE_FINALIZER_INTERVAL_SECONDS) -> asyncio.Task:
    """Start the finalization loop as a background coroutine."""
    return asyncio.create_task(finalization_loop(interval_seconds))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_finalization_once())
