"""
Provider payouts for paid proposals.

The split is computed once, when the customer's payment succeeds, and
frozen as soon as the payout completes. The transfer itself only runs
after the customer approves the finished work.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.models.marketplace import Business, Proposal, ServiceRequest
from leadflow.schemas.marketplace import PaymentStatus, PayoutStatus, ServiceRequestStatus
from leadflow.services.audit import create_audit_log
from leadflow.services.errors import PreconditionFailed
from leadflow.services.stripe_gateway import create_transfer
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

PAYOUT_METHOD_STRIPE = "stripe"
PAYOUT_METHOD_MANUAL = "manual"


def compute_payout_split(price_cents: int, fee_rate: float, fee_minimum: float = 0.0) -> tuple[int, int]:
    """Return ``(provider_payout_cents, platform_fee_cents)``; the two always sum to the price."""
    price = int(price_cents)
    if price <= 0:
        raise ValueError("price_cents must be positive")
    fee = int((Decimal(price) * Decimal(str(fee_rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    minimum = int((Decimal(str(fee_minimum)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    fee = min(price, max(fee, minimum, 0))
    return price - fee, fee


def apply_payout_split(proposal: Proposal) -> bool:
    """Stage the split on a freshly paid proposal. False once the payout is final."""
    if proposal.payout_status == PayoutStatus.COMPLETED.value:
        return False
    settings = get_settings()
    provider_cents, fee_cents = compute_payout_split(
        proposal.price_cents,
        settings.platform_fee_rate,
        settings.platform_fee_minimum,
    )
    proposal.provider_payout_cents = provider_cents
    proposal.platform_fee_cents = fee_cents
    proposal.payout_status = PayoutStatus.PENDING.value
    return True


async def _close_request(db: AsyncSession, proposal: Proposal) -> None:
    service_request = await db.get(ServiceRequest, proposal.service_request_id)
    if service_request is None or service_request.status != ServiceRequestStatus.APPROVED.value:
        return
    service_request.status = ServiceRequestStatus.CLOSED.value
    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=service_request.id,
        action="SERVICE_REQUEST_CLOSED",
        old_value={"status": ServiceRequestStatus.APPROVED.value},
        new_value={"status": service_request.status},
        actor_type="SYSTEM",
        metadata={"proposal_id": proposal.id},
    )


async def process_payout(
    db: AsyncSession,
    proposal: Proposal,
    *,
    actor_type: str = "SYSTEM",
    actor_id: Optional[str] = None,
) -> Proposal:
    """Pay the provider's share. Does not commit.

    A completed payout is never repeated. A Stripe failure leaves the
    proposal in ``failed`` with the error recorded so an admin can retry.
    """
    if proposal.payout_status == PayoutStatus.COMPLETED.value:
        return proposal
    if proposal.payment_status != PaymentStatus.SUCCEEDED.value:
        raise PreconditionFailed(f"Proposal {proposal.id} has not been paid (payment status {proposal.payment_status})")
    if proposal.provider_payout_cents is None or proposal.platform_fee_cents is None:
        apply_payout_split(proposal)

    business = await db.get(Business, proposal.business_id) if proposal.business_id else None
    destination = business.stripe_account_id if business is not None else None
    old_status = proposal.payout_status

    if destination and get_settings().stripe_enabled:
        try:
            transfer = await create_transfer(
                amount_cents=proposal.provider_payout_cents,
                destination=destination,
                metadata={"proposalId": proposal.id, "serviceRequestId": proposal.service_request_id},
                idempotency_key=f"payout-{proposal.id}",
            )
        except stripe.StripeError as exc:
            proposal.payout_status = PayoutStatus.FAILED.value
            proposal.payout_method = PAYOUT_METHOD_STRIPE
            proposal.payout_error = str(exc)[:2000]
            create_audit_log(
                db,
                entity_type="proposal",
                entity_id=proposal.id,
                action="PAYOUT_FAILED",
                old_value={"payout_status": old_status},
                new_value={"payout_status": proposal.payout_status},
                actor_type=actor_type,
                actor_id=actor_id,
                metadata={"error": proposal.payout_error, "amount_cents": proposal.provider_payout_cents},
            )
            logger.warning("Payout for proposal %s failed: %s", proposal.id, exc)
            return proposal
        proposal.stripe_transfer_id = transfer.get("id")
        proposal.payout_method = PAYOUT_METHOD_STRIPE
    else:
        proposal.payout_method = PAYOUT_METHOD_MANUAL

    proposal.payout_status = PayoutStatus.COMPLETED.value
    proposal.payout_processed_at = now_utc()
    proposal.payout_error = None
    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PAYOUT_COMPLETED",
        old_value={"payout_status": old_status},
        new_value={
            "payout_status": proposal.payout_status,
            "payout_method": proposal.payout_method,
            "provider_payout_cents": proposal.provider_payout_cents,
            "platform_fee_cents": proposal.platform_fee_cents,
        },
        actor_type=actor_type,
        actor_id=actor_id,
        metadata={"stripe_transfer_id": proposal.stripe_transfer_id},
    )
    await _close_request(db, proposal)
    return proposal
