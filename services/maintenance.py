"""Periodic housekeeping: expired sessions and retention-window deletion."""

import asyncio
import logging
from typing import Dict, Optional

from db.database import DB_ERRORS
from services.registry import get_services

logger = logging.getLogger(__name__)

_maintenance_task: Optional[asyncio.Task] = None


async def run_maintenance() -> Dict[str, int]:
    """One pass: drop expired sessions, then purge rows past their retention window."""
    services = get_services()
    async with services.session_factory() as db:
        sessions_removed = await services.sessions(db).cleanup_expired()
    purged = await services.audit().purge_expired()
    return {"sessions": sessions_removed, **purged}


async def _periodic_maintenance(interval_seconds: int):
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            counts = await run_maintenance()
            if any(counts.values()):
                logger.info(f"Maintenance removed {counts}")
        except asyncio.CancelledError:
            logger.info("Maintenance task cancelled")
            break
        except DB_ERRORS as e:
            # Keep running; the next pass retries
            logger.error(f"Maintenance pass failed: {e}")


def start_maintenance_task(interval_seconds: int) -> None:
    global _maintenance_task
    if _maintenance_task is None or _maintenance_task.done():
        _maintenance_task = asyncio.create_task(_periodic_maintenance(interval_seconds))
        logger.debug("Started periodic maintenance task")


def stop_maintenance_task() -> None:
    global _maintenance_task
    if _maintenance_task and not _maintenance_task.done():
        _maintenance_task.cancel()
        logger.debug("Stopped periodic maintenance task")
    _maintenance_task = None
