"""
Fallback scheduler: hand a request to the next alternative provider.

Runs on an explicit failure signal (lead payment failed), on an admin
command, or from the periodic sweep over leads past the fallback window.
At most one alternative is promoted per invocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.models.marketplace import AlternativeSelection, Business, Lead, ServiceRequest, User
from leadflow.schemas.marketplace import OPEN_LEAD_STATUSES, LeadStatus
from leadflow.services.assignment import alternatives_for_request, request_notification_data
from leadflow.services.audit import create_audit_log
from leadflow.services.email_templates import NotificationType
from leadflow.services.errors import NotFound
from leadflow.services.lead_lifecycle import (
    accepted_sibling_exists,
    cancel_lead,
    create_lead,
    find_leads_for_request,
    leads_with_open_status_older_than,
    parse_lead_metadata,
    resolve_service_request_id,
    update_lead_metadata,
)
from leadflow.services.notifications import NotificationRequest, deliver_all
from leadflow.services.stripe_gateway import cancel_payment_intent
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)


@dataclass
class PromotionResult:
    service_request_id: int
    lead: Optional[Lead] = None
    notifications: list[NotificationRequest] = field(default_factory=list)

    @property
    def promoted(self) -> bool:
        return self.lead is not None


@dataclass
class SweepResult:
    expired_leads: int = 0
    promoted_leads: int = 0
    skipped_leads: int = 0


async def _next_candidate(db: AsyncSession, service_request_id: int) -> Optional[AlternativeSelection]:
    """First alternative, by position, whose provider holds no lead for this request yet."""
    if await accepted_sibling_exists(db, service_request_id):
        return None
    taken = {int(lead.provider_id) for lead in await find_leads_for_request(db, service_request_id)}
    for alternative in await alternatives_for_request(db, service_request_id):
        if int(alternative.provider_id) in taken:
            continue
        business = await db.get(Business, alternative.business_id)
        if business is None or not business.is_active:
            continue
        return alternative
    return None


async def promote_next_alternative(db: AsyncSession, service_request_id: int, *, reason: str) -> PromotionResult:
    """Create a ``routed`` lead for the next eligible alternative. Does not commit."""
    service_request = await db.get(ServiceRequest, service_request_id)
    if service_request is None:
        raise NotFound(f"Service request {service_request_id} not found")
    result = PromotionResult(service_request_id=service_request_id)

    alternative = await _next_candidate(db, service_request_id)
    if alternative is None:
        logger.info("No alternative left to promote for service_request=%s (%s)", service_request_id, reason)
        return result

    business = await db.get(Business, alternative.business_id)
    try:
        async with db.begin_nested():
            lead = await create_lead(
                db,
                service_request=service_request,
                business=business,
                status=LeadStatus.ROUTED,
                lead_cost_cents=get_settings().lead_default_cost_cents,
                extra_metadata={"position": alternative.position, "promotedBecause": reason},
            )
    except IntegrityError:
        # A concurrent scheduler already created this provider's lead.
        logger.info(
            "Alternative provider %s already promoted for service_request=%s",
            alternative.provider_id,
            service_request_id,
        )
        return result

    previous_primary = service_request.primary_provider_id
    service_request.primary_provider_id = alternative.provider_id
    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=service_request.id,
        action="ALTERNATIVE_PROMOTED",
        old_value={"primary_provider_id": previous_primary},
        new_value={"primary_provider_id": alternative.provider_id, "lead_id": lead.id},
        actor_type="SYSTEM",
        metadata={"reason": reason, "position": alternative.position},
    )

    provider = await db.get(User, alternative.provider_id)
    customer = await db.get(User, service_request.customer_id)
    result.lead = lead
    result.notifications.extend(
        [
            NotificationRequest(
                notification_type=NotificationType.NEW_LEAD,
                recipient_email=provider.email if provider else None,
                user_id=alternative.provider_id,
                data=request_notification_data(
                    service_request,
                    lead_id=lead.id,
                    provider_name=provider.name if provider else None,
                ),
            ),
            NotificationRequest(
                notification_type=NotificationType.LEAD_MOVED_TO_ALTERNATIVE,
                recipient_email=customer.email if customer else None,
                user_id=service_request.customer_id,
                data=request_notification_data(
                    service_request,
                    customer_name=customer.name if customer else None,
                ),
            ),
        ]
    )
    return result


async def run_fallback_for_request(db: AsyncSession, service_request_id: int, *, reason: str) -> PromotionResult:
    result = await promote_next_alternative(db, service_request_id, reason=reason)
    await db.commit()
    await deliver_all(db, result.notifications)
    return result


def _checkout_started_at(meta: dict) -> Optional[datetime]:
    raw = meta.get("paymentStartedAt")
    if not isinstance(raw, str):
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _payment_in_flight(lead: Lead, now: datetime, ttl_minutes: float) -> bool:
    """A pending checkout younger than the TTL. Older or undated ones count as abandoned."""
    meta = parse_lead_metadata(lead.lead_metadata)
    if meta.get("paymentState") != "pending":
        return False
    started = _checkout_started_at(meta)
    if started is None:
        return False
    if (started.tzinfo is None) != (now.tzinfo is None):
        started = started.replace(tzinfo=now.tzinfo)
    return now - started < timedelta(minutes=float(ttl_minutes))


def _abandoned_checkout_intent(lead: Lead) -> Optional[str]:
    if parse_lead_metadata(lead.lead_metadata).get("paymentState") != "pending":
        return None
    return lead.stripe_payment_intent_id


async def sweep_expired_leads(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    window_hours: Optional[float] = None,
) -> SweepResult:
    """Supersede open leads older than the fallback window with the next alternative.

    Each lead is handled in its own transaction and its notifications go out
    right after that commit. A request gets at most one promotion per sweep;
    a storage error on one lead is logged and the sweep moves on. A checkout
    left pending past ``LEAD_CHECKOUT_TTL_MINUTES`` does not hold the lead,
    and its PaymentIntent is cancelled once the lead is superseded.
    """
    settings = get_settings()
    now = now or now_utc()
    hours = settings.fallback_window_hours if window_hours is None else window_hours
    ttl_minutes = settings.lead_checkout_ttl_minutes
    cutoff = now - timedelta(hours=float(hours))

    outcome = SweepResult()
    handled_requests: set[int] = set()
    lead_ids = [lead.id for lead in await leads_with_open_status_older_than(db, cutoff)]
    for lead_id in lead_ids:
        lead = await db.get(Lead, lead_id, populate_existing=True)
        if lead is None or lead.status not in OPEN_LEAD_STATUSES:
            continue
        sr_id = resolve_service_request_id(lead)
        if sr_id is None:
            logger.warning("Lead %s has no resolvable service request; skipped by sweep", lead.id)
            outcome.skipped_leads += 1
            continue
        if sr_id in handled_requests:
            # Another lead of this request was superseded earlier in this sweep.
            outcome.skipped_leads += 1
            continue

        try:
            if _payment_in_flight(lead, now, ttl_minutes) or await _next_candidate(db, sr_id) is None:
                outcome.skipped_leads += 1
                continue
            stale_intent = _abandoned_checkout_intent(lead)
            if not await cancel_lead(db, lead, reason="fallback_timeout"):
                outcome.skipped_leads += 1
                continue
            if stale_intent:
                update_lead_metadata(lead, paymentState="abandoned")
            promotion = await promote_next_alternative(db, sr_id, reason="fallback_timeout")
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Fallback sweep failed for lead %s; left for the next sweep", lead_id)
            outcome.skipped_leads += 1
            continue

        handled_requests.add(sr_id)
        outcome.expired_leads += 1
        if stale_intent:
            await cancel_payment_intent(stale_intent)
        if promotion.promoted:
            outcome.promoted_leads += 1
            await deliver_all(db, promotion.notifications)

    if outcome.expired_leads:
        logger.info(
            "Fallback sweep: expired=%s promoted=%s skipped=%s",
            outcome.expired_leads,
            outcome.promoted_leads,
            outcome.skipped_leads,
        )
    return outcome
