"""
Tour Scheduler - background sweep of active sols.

Payments normally advance a sol as soon as they are validated; the sweep
catches sols whose last payment landed while a check failed or was skipped.
"""
import asyncio
import logging

from app.db import connection
from app.services.tour_detection_service import TourDetectionService

logger = logging.getLogger(__name__)


async def run_tour_check() -> dict:
    """One sweep in its own session, committed when it finishes."""
    async with connection.session_scope() as db:
        summary = await TourDetectionService.check_all_active_sols(db)
    return summary


async def periodic_tour_check_task(interval_seconds: int):
    """
    Run the tour sweep forever, every `interval_seconds`.

    Cancelled by the application lifespan on shutdown.
    """
    logger.info(f"📅 Tour check task started - runs every {interval_seconds}s")

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            summary = await run_tour_check()
            if summary["advanced"]:
                logger.info(f"🔄 Tour sweep advanced {summary['advanced']}/{summary['checked']} sol(s)")
        except Exception as e:
            logger.error(f"Tour check task error: {e}", exc_info=True)
