from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.auth import CurrentUser, get_current_user
from leadflow.core.dependencies import get_db
from leadflow.models.marketplace import NotificationPreference
from leadflow.schemas.marketplace import NotificationPreferenceOut, NotificationPreferenceUpdate
from leadflow.services.notifications import get_or_create_preferences, unsubscribe

router = APIRouter()


def preferences_to_out(prefs: NotificationPreference) -> NotificationPreferenceOut:
    return NotificationPreferenceOut(
        email_enabled=prefs.email_enabled,
        new_lead_alerts=prefs.new_lead_alerts,
        lead_updates=prefs.lead_updates,
        proposal_updates=prefs.proposal_updates,
        work_order_updates=prefs.work_order_updates,
        review_requests=prefs.review_requests,
    )


@router.get("/notifications/preferences", response_model=NotificationPreferenceOut)
async def get_preferences(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    prefs = await get_or_create_preferences(db, current_user.user_id)
    await db.commit()
    return preferences_to_out(prefs)


@router.put("/notifications/preferences", response_model=NotificationPreferenceOut)
async def update_preferences(
    payload: NotificationPreferenceUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    prefs = await get_or_create_preferences(db, current_user.user_id)
    for key, value in payload.model_dump(exclude_none=True).items():
        setattr(prefs, key, value)
    await db.commit()
    return preferences_to_out(prefs)


@router.api_route("/notifications/unsubscribe/{token}", methods=["GET", "POST"])
async def unsubscribe_route(token: str, db: AsyncSession = Depends(get_db)):
    """Public one-click unsubscribe link from email footers."""
    await unsubscribe(db, token)
    return {"unsubscribed": True}
