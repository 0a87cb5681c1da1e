from __future__ import annotations

import asyncio
import logging

from leadflow.core import dependencies
from leadflow.core.config import get_settings
from leadflow.services.fallback import sweep_expired_leads
from leadflow.services.geolocation import geocode_pending_businesses

logger = logging.getLogger(__name__)


async def run_fallback_sweep_once() -> dict:
    if dependencies.AsyncSessionLocal is None:
        return {"skipped": "database not configured"}
    async with dependencies.AsyncSessionLocal() as db:
        result = await sweep_expired_leads(db)
    return {
        "expired_leads": result.expired_leads,
        "promoted_leads": result.promoted_leads,
        "skipped_leads": result.skipped_leads,
    }


async def run_geocode_backfill_once(*, batch_size: int) -> dict:
    if dependencies.AsyncSessionLocal is None:
        return {"skipped": "database not configured"}
    async with dependencies.AsyncSessionLocal() as db:
        resolved = await geocode_pending_businesses(db, batch_size=batch_size)
        await db.commit()
    return {"resolved": resolved}


async def _fallback_sweep_loop(*, interval_seconds: int) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs:
                await asyncio.sleep(interval_seconds)
                continue

            summary = await run_fallback_sweep_once()
            if summary.get("expired_leads"):
                logger.info("Fallback sweep worker: %s", summary)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Fallback sweep worker error")
            await asyncio.sleep(error_sleep)


def start_fallback_sweep_worker() -> asyncio.Task | None:
    """
    Starts the in-process fallback sweep. Callers keep the task reference
    and cancel it on shutdown.
    """
    settings = get_settings()
    interval = int(max(30, min(3600, settings.fallback_sweep_interval_seconds or 300)))
    return asyncio.create_task(_fallback_sweep_loop(interval_seconds=interval))


async def _geocode_backfill_loop(*, interval_seconds: int, batch_size: int) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or not settings.enable_geocoding:
                await asyncio.sleep(interval_seconds)
                continue

            await run_geocode_backfill_once(batch_size=batch_size)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Geocode backfill worker error")
            await asyncio.sleep(error_sleep)


def start_geocode_backfill_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(60, min(86400, settings.geocode_backfill_interval_seconds or 900)))
    batch_size = int(max(1, min(200, settings.geocode_backfill_batch_size or 25)))
    return asyncio.create_task(_geocode_backfill_loop(interval_seconds=interval, batch_size=batch_size))
