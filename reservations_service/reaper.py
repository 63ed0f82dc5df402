"""
Background reaper for expired review holds.

Runs ``review_lock.sweep_expired`` on a fixed interval from an asyncio task
owned by the application lifespan. Each sweep uses its own session in a
worker thread so the event loop never blocks on the database.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from . import config, review_lock
from .clock import utcnow
from .database import SessionLocal

logger = logging.getLogger(__name__)


def run_once(now: Optional[datetime] = None) -> int:
    """
    Sweep expired holds once.

    Returns
    -------
    int
        Number of holds released.
    """
    db = SessionLocal()
    try:
        return review_lock.sweep_expired(db, now or utcnow())
    finally:
        db.close()


async def run_forever(interval_seconds: float = config.REAPER_INTERVAL_SECONDS) -> None:
    logger.info("Review hold reaper started (interval %ss)", interval_seconds)
    try:
        while True:
            try:
                await asyncio.to_thread(run_once)
            except Exception:
                logger.exception("Review hold sweep failed")
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Review hold reaper stopped")
        raise


def start(interval_seconds: float = config.REAPER_INTERVAL_SECONDS) -> asyncio.Task:
    return asyncio.create_task(run_forever(interval_seconds), name="review-hold-reaper")


async def stop(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
