"""
Provider side of lead acceptance: price the lead, open a PaymentIntent,
stage the proposal draft. The lead only flips to ``accepted`` when the
payment processor reports success (see ``payment_reconciler``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.schemas.marketplace import dollars_to_cents
from leadflow.services.audit import create_audit_log
from leadflow.services.errors import AlreadyAccepted, PreconditionFailed
from leadflow.services.lead_lifecycle import (
    accepted_sibling_exists,
    get_lead_for_provider,
    lead_is_open,
    parse_lead_metadata,
    resolve_service_request_id,
    update_lead_metadata,
)
from leadflow.services.stripe_gateway import create_payment_intent, reuse_payment_intent
from leadflow.services.subscriptions import calculate_lead_cost, ensure_lead_quota, get_subscription_benefits
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

LEAD_ACCEPTANCE = "lead_acceptance"


@dataclass(frozen=True)
class LeadCheckout:
    lead_id: int
    payment_intent_id: str
    client_secret: Optional[str]
    amount_cents: int
    discount_percent: int = 0


async def start_lead_acceptance(
    db: AsyncSession,
    *,
    lead_id: int,
    provider_id: int,
    description: str,
    price: float,
) -> LeadCheckout:
    description = (description or "").strip()
    if not description:
        raise PreconditionFailed("Proposal description is required")
    price_cents = dollars_to_cents(price)
    if price_cents <= 0:
        raise PreconditionFailed("Proposal price must be greater than 0")

    lead = await get_lead_for_provider(db, lead_id, provider_id)
    if not lead_is_open(lead):
        raise PreconditionFailed(f"Lead {lead_id} cannot be accepted from status {lead.status}")
    sr_id = resolve_service_request_id(lead)
    if sr_id is None:
        raise PreconditionFailed(f"Lead {lead_id} is not linked to a service request")
    if await accepted_sibling_exists(db, sr_id):
        raise AlreadyAccepted()

    benefits = await get_subscription_benefits(db, provider_id)
    await ensure_lead_quota(db, provider_id, benefits)

    base_cost = int(lead.lead_cost_cents or get_settings().lead_default_cost_cents)
    amount_cents = calculate_lead_cost(base_cost, benefits.lead_discount_percent)

    intent_metadata = {
        "leadId": str(lead.id),
        "serviceRequestId": str(sr_id),
        "providerId": str(provider_id),
        "type": LEAD_ACCEPTANCE,
        "proposalDescription": description[:450],
        "proposalPrice": f"{price_cents / 100:.2f}",
    }
    intent = await reuse_payment_intent(
        lead.stripe_payment_intent_id,
        amount_cents=amount_cents,
        metadata=intent_metadata,
    )
    if intent is None:
        intent = await create_payment_intent(
            amount_cents=amount_cents,
            metadata=intent_metadata,
            description=f"Lead #{lead.id}",
        )

    previous_state = parse_lead_metadata(lead.lead_metadata).get("paymentState")
    update_lead_metadata(
        lead,
        pendingProposal={"description": description, "price_cents": price_cents},
        paymentState="pending",
        paymentStartedAt=now_utc().isoformat(),
    )
    lead.stripe_payment_intent_id = intent.get("id")
    lead.lead_cost_cents = base_cost

    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead.id,
        action="LEAD_CHECKOUT_STARTED",
        old_value={"payment_state": previous_state},
        new_value={"payment_state": "pending", "amount_cents": amount_cents},
        actor_type="PROVIDER",
        actor_id=provider_id,
        metadata={"payment_intent_id": intent.get("id"), "discount_percent": benefits.lead_discount_percent},
    )
    await db.commit()
    logger.info("Lead %s checkout started (intent=%s amount=%s)", lead.id, intent.get("id"), amount_cents)

    return LeadCheckout(
        lead_id=lead.id,
        payment_intent_id=intent.get("id"),
        client_secret=intent.get("client_secret"),
        amount_cents=amount_cents,
        discount_percent=benefits.lead_discount_percent,
    )
