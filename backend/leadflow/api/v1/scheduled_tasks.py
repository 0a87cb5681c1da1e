from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.auth import require_task_caller
from leadflow.core.config import get_settings
from leadflow.core.dependencies import get_db
from leadflow.schemas.marketplace import TaskRunOut
from leadflow.services.fallback import sweep_expired_leads
from leadflow.services.geolocation import geocode_pending_businesses

router = APIRouter()


@router.post("/tasks/fallback-sweep", response_model=TaskRunOut)
async def fallback_sweep_task(
    caller: str = Depends(require_task_caller),
    db: AsyncSession = Depends(get_db),
):
    """Cron entry point for the fallback sweep (same work as the in-process worker)."""
    result = await sweep_expired_leads(db)
    return TaskRunOut(
        task="fallback-sweep",
        result={
            "caller": caller,
            "expired_leads": result.expired_leads,
            "promoted_leads": result.promoted_leads,
            "skipped_leads": result.skipped_leads,
        },
    )


@router.post("/tasks/geocode-backfill", response_model=TaskRunOut)
async def geocode_backfill_task(
    caller: str = Depends(require_task_caller),
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    resolved = await geocode_pending_businesses(db, batch_size=settings.geocode_backfill_batch_size)
    await db.commit()
    return TaskRunOut(task="geocode-backfill", result={"caller": caller, "resolved": resolved})
