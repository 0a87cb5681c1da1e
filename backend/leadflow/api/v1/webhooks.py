import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.core.dependencies import get_db
from leadflow.services.audit import create_audit_log
from leadflow.services.payment_reconciler import RetryableError, payment_event_from_stripe, reconcile_payment_event
from leadflow.utils.rate_limit import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter()


async def _record_invalid_signature(db: AsyncSession, request: Request) -> None:
    create_audit_log(
        db,
        entity_type="system",
        entity_id="stripe_webhook",
        action="WEBHOOK_SIGNATURE_INVALID",
        old_value=None,
        new_value=None,
        actor_type="SYSTEM_STRIPE",
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    await db.commit()


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    sig_header = request.headers.get("stripe-signature")
    payload = await request.body()

    if settings.allow_insecure_webhooks and not sig_header:
        # Local development only: accept unsigned events as-is.
        try:
            event = json.loads(payload or b"{}")
        except ValueError as exc:
            raise HTTPException(400, "Invalid payload") from exc
        if not isinstance(event, dict):
            raise HTTPException(400, "Invalid payload")
    else:
        if not settings.stripe_webhook_secret:
            raise HTTPException(500, "Stripe webhook is not configured")
        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
        except ValueError as exc:
            raise HTTPException(400, "Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            await _record_invalid_signature(db, request)
            raise HTTPException(400, "Invalid signature") from exc

    payment_event = payment_event_from_stripe(event)
    if payment_event is None:
        return {"received": True}

    result = await reconcile_payment_event(db, payment_event)
    if isinstance(result, RetryableError):
        # A 5xx makes Stripe redeliver the event later.
        logger.warning("Stripe event %s will be retried: %s", payment_event.event_id, result.reason)
        raise HTTPException(500, "Temporary failure processing event")
    return {"received": True}
