import asyncio
import logging
from datetime import UTC, datetime, timedelta

from gateway_webhooks.config import Settings
from gateway_webhooks.metrics import STUCK_EVENTS
from gateway_webhooks.store import SQLiteIdempotencyStore

logger = logging.getLogger(__name__)


async def report_stuck(store: SQLiteIdempotencyStore, settings: Settings) -> list[str]:
    cutoff = datetime.now(UTC) - timedelta(minutes=settings.stuck_processing_minutes)
    stuck = await store.get_stuck(cutoff.isoformat())
    STUCK_EVENTS.set(len(stuck))
    if stuck:
        logger.warning(
            "%d events still processing after %d minutes: %s",
            len(stuck),
            settings.stuck_processing_minutes,
            ", ".join(stuck[:20]),
        )
    return stuck


async def cleanup_task(store: SQLiteIdempotencyStore, settings: Settings) -> None:
    while True:
        cutoff = datetime.now(UTC) - timedelta(days=settings.retention_days)
        deleted = await store.delete_expired(cutoff.isoformat())
        if deleted:
            logger.info("Cleanup deleted %d expired event records", deleted)
        await report_stuck(store, settings)
        await asyncio.sleep(settings.cleanup_interval_hours * 3600)
