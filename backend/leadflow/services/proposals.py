"""
Proposal, work order and approval flow after a lead has been won.

    SENT --customer pays--> ACCEPTED (+ work order IN_PROGRESS)
    SENT --customer rejects--> REJECTED
    work order IN_PROGRESS --provider completes--> COMPLETED
    COMPLETED --customer approves--> payout --> request CLOSED
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.models.marketplace import Business, Lead, Proposal, ServiceRequest, User, WorkOrder
from leadflow.schemas.marketplace import (
    PaymentStatus,
    PayoutStatus,
    ProposalStatus,
    ServiceRequestStatus,
    WorkOrderStatus,
)
from leadflow.services.assignment import request_notification_data
from leadflow.services.audit import create_audit_log
from leadflow.services.email_templates import NotificationType
from leadflow.services.errors import Forbidden, NotFound, PreconditionFailed
from leadflow.services.lead_lifecycle import correlation_id_for
from leadflow.services.notifications import NotificationRequest, deliver_all
from leadflow.services.payouts import apply_payout_split, process_payout
from leadflow.services.stripe_gateway import create_payment_intent, reuse_payment_intent
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

PROPOSAL_PAYMENT = "proposal"

# Request statuses a paid proposal may move into IN_PROGRESS from.
_PRE_WORK_STATUSES = {ServiceRequestStatus.REQUEST_CREATED.value, ServiceRequestStatus.LEAD_ASSIGNED.value}


@dataclass(frozen=True)
class ProposalCheckout:
    proposal_id: int
    payment_intent_id: str
    client_secret: Optional[str]
    amount_cents: int


def cents_to_dollars(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return round(int(cents) / 100, 2)


async def find_proposal_by_correlation(db: AsyncSession, correlation_id: str) -> Optional[Proposal]:
    return (
        await db.execute(select(Proposal).where(Proposal.correlation_id == correlation_id))
    ).scalar_one_or_none()


async def create_or_get_lead_proposal(
    db: AsyncSession,
    *,
    lead: Lead,
    service_request_id: int,
    description: str,
    price_cents: int,
) -> tuple[Proposal, bool]:
    """Proposal keyed by the lead's correlation id; created at most once."""
    correlation_id = correlation_id_for(lead.id)
    existing = await find_proposal_by_correlation(db, correlation_id)
    if existing is not None:
        return existing, False

    proposal = Proposal(
        service_request_id=service_request_id,
        lead_id=lead.id,
        provider_id=lead.provider_id,
        customer_id=lead.customer_id,
        business_id=lead.business_id,
        correlation_id=correlation_id,
        description=description,
        price_cents=int(price_cents),
        status=ProposalStatus.SENT.value,
        payment_status=PaymentStatus.NONE.value,
    )
    db.add(proposal)
    await db.flush()
    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PROPOSAL_CREATED",
        old_value=None,
        new_value={"status": proposal.status, "price_cents": proposal.price_cents},
        actor_type="SYSTEM_STRIPE",
        metadata={"lead_id": lead.id, "correlation_id": correlation_id},
    )
    return proposal, True


async def _get_proposal_for_customer(db: AsyncSession, proposal_id: int, customer_id: int) -> Proposal:
    proposal = await db.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFound(f"Proposal {proposal_id} not found")
    if int(proposal.customer_id) != int(customer_id):
        raise Forbidden("This proposal belongs to another customer")
    return proposal


async def create_proposal_checkout(db: AsyncSession, *, proposal_id: int, customer_id: int) -> ProposalCheckout:
    proposal = await _get_proposal_for_customer(db, proposal_id, customer_id)
    if proposal.status != ProposalStatus.SENT.value:
        raise PreconditionFailed(f"Proposal {proposal_id} cannot be paid from status {proposal.status}")
    if proposal.payment_status == PaymentStatus.SUCCEEDED.value:
        raise PreconditionFailed(f"Proposal {proposal_id} is already paid")

    metadata = {
        "proposalId": str(proposal.id),
        "serviceRequestId": str(proposal.service_request_id),
        "type": PROPOSAL_PAYMENT,
    }
    intent = await reuse_payment_intent(
        proposal.stripe_payment_intent_id,
        amount_cents=proposal.price_cents,
        metadata=metadata,
    )
    if intent is None:
        intent = await create_payment_intent(
            amount_cents=proposal.price_cents,
            metadata=metadata,
            description=f"Proposal #{proposal.id}",
        )

    old_status = proposal.payment_status
    proposal.payment_status = PaymentStatus.PENDING.value
    proposal.stripe_payment_intent_id = intent.get("id")
    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PROPOSAL_CHECKOUT_STARTED",
        old_value={"payment_status": old_status},
        new_value={"payment_status": proposal.payment_status},
        actor_type="CUSTOMER",
        actor_id=customer_id,
        metadata={"payment_intent_id": proposal.stripe_payment_intent_id},
    )
    await db.commit()
    return ProposalCheckout(
        proposal_id=proposal.id,
        payment_intent_id=proposal.stripe_payment_intent_id,
        client_secret=intent.get("client_secret"),
        amount_cents=proposal.price_cents,
    )


async def reject_proposal(
    db: AsyncSession,
    *,
    proposal_id: int,
    customer_id: int,
    reason: str,
    reason_other: Optional[str] = None,
) -> Proposal:
    proposal = await _get_proposal_for_customer(db, proposal_id, customer_id)
    if proposal.payment_status == PaymentStatus.SUCCEEDED.value:
        raise PreconditionFailed("A paid proposal cannot be rejected")
    result = await db.execute(
        update(Proposal)
        .where(Proposal.id == proposal.id, Proposal.status == ProposalStatus.SENT.value)
        .values(
            status=ProposalStatus.REJECTED.value,
            rejection_reason=reason,
            rejection_reason_other=reason_other,
            rejected_at=now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(proposal)
    if result.rowcount != 1:
        raise PreconditionFailed(f"Proposal {proposal_id} cannot be rejected from status {proposal.status}")
    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PROPOSAL_REJECTED",
        old_value={"status": ProposalStatus.SENT.value},
        new_value={"status": proposal.status, "reason": reason},
        actor_type="CUSTOMER",
        actor_id=customer_id,
    )
    await db.commit()
    return proposal


def mark_proposal_paid(proposal: Proposal, payment_intent_id: Optional[str]) -> bool:
    """First successful charge wins; later deliveries are no-ops."""
    if proposal.payment_status == PaymentStatus.SUCCEEDED.value:
        return False
    proposal.payment_status = PaymentStatus.SUCCEEDED.value
    if payment_intent_id:
        proposal.stripe_payment_intent_id = payment_intent_id
    apply_payout_split(proposal)
    return True


def mark_proposal_payment_failed(proposal: Proposal, payment_intent_id: Optional[str]) -> bool:
    """Record a failed charge. A late failure never overrides a success."""
    if proposal.payment_status == PaymentStatus.SUCCEEDED.value:
        return False
    if (
        proposal.payment_status == PaymentStatus.FAILED.value
        and payment_intent_id
        and proposal.stripe_payment_intent_id == payment_intent_id
    ):
        return False
    proposal.payment_status = PaymentStatus.FAILED.value
    if payment_intent_id:
        proposal.stripe_payment_intent_id = payment_intent_id
    return True


async def accept_proposal_after_payment(db: AsyncSession, proposal: Proposal) -> tuple[WorkOrder, bool]:
    """SENT -> ACCEPTED, one work order, request -> IN_PROGRESS. Safe to re-run."""
    if proposal.payment_status != PaymentStatus.SUCCEEDED.value:
        raise PreconditionFailed(f"Proposal {proposal.id} has not been paid")
    if proposal.status == ProposalStatus.REJECTED.value:
        raise PreconditionFailed(f"Proposal {proposal.id} was rejected")

    if proposal.status == ProposalStatus.SENT.value:
        proposal.status = ProposalStatus.ACCEPTED.value
        proposal.accepted_at = now_utc()

    work_order = (
        await db.execute(select(WorkOrder).where(WorkOrder.proposal_id == proposal.id))
    ).scalar_one_or_none()
    created = False
    if work_order is None:
        work_order = WorkOrder(
            proposal_id=proposal.id,
            service_request_id=proposal.service_request_id,
            provider_id=proposal.provider_id,
            customer_id=proposal.customer_id,
            status=WorkOrderStatus.IN_PROGRESS.value,
        )
        db.add(work_order)
        created = True

    service_request = await db.get(ServiceRequest, proposal.service_request_id)
    if service_request is not None and service_request.status in _PRE_WORK_STATUSES:
        old_status = service_request.status
        service_request.status = ServiceRequestStatus.IN_PROGRESS.value
        service_request.primary_provider_id = proposal.provider_id
        create_audit_log(
            db,
            entity_type="service_request",
            entity_id=service_request.id,
            action="SERVICE_REQUEST_IN_PROGRESS",
            old_value={"status": old_status},
            new_value={"status": service_request.status},
            actor_type="SYSTEM_STRIPE",
            metadata={"proposal_id": proposal.id},
        )
    await db.flush()

    if created:
        create_audit_log(
            db,
            entity_type="work_order",
            entity_id=work_order.id,
            action="WORK_ORDER_CREATED",
            old_value=None,
            new_value={"status": work_order.status, "proposal_id": proposal.id},
            actor_type="SYSTEM_STRIPE",
        )
    return work_order, created


async def proposal_notification_data(db: AsyncSession, proposal: Proposal, **extra) -> dict:
    service_request = await db.get(ServiceRequest, proposal.service_request_id)
    business = await db.get(Business, proposal.business_id) if proposal.business_id else None
    data = request_notification_data(service_request) if service_request is not None else {}
    data.update(
        proposal_id=proposal.id,
        price=cents_to_dollars(proposal.price_cents),
        proposal_description=proposal.description,
        provider_payout=cents_to_dollars(proposal.provider_payout_cents),
        platform_fee=cents_to_dollars(proposal.platform_fee_cents),
        business_name=business.name if business is not None else None,
    )
    data.update(extra)
    return data


async def _get_work_order(db: AsyncSession, work_order_id: int) -> WorkOrder:
    work_order = await db.get(WorkOrder, work_order_id)
    if work_order is None:
        raise NotFound(f"Work order {work_order_id} not found")
    return work_order


async def complete_work_order(db: AsyncSession, *, work_order_id: int, provider_id: int) -> WorkOrder:
    work_order = await _get_work_order(db, work_order_id)
    if int(work_order.provider_id) != int(provider_id):
        raise Forbidden("This work order belongs to another provider")
    if work_order.status != WorkOrderStatus.IN_PROGRESS.value:
        raise PreconditionFailed(f"Work order {work_order_id} cannot be completed from status {work_order.status}")

    work_order.status = WorkOrderStatus.COMPLETED.value
    work_order.completed_at = now_utc()
    service_request = await db.get(ServiceRequest, work_order.service_request_id)
    if service_request is not None and service_request.status == ServiceRequestStatus.IN_PROGRESS.value:
        service_request.status = ServiceRequestStatus.COMPLETED.value
    create_audit_log(
        db,
        entity_type="work_order",
        entity_id=work_order.id,
        action="WORK_ORDER_COMPLETED",
        old_value={"status": WorkOrderStatus.IN_PROGRESS.value},
        new_value={"status": work_order.status},
        actor_type="PROVIDER",
        actor_id=provider_id,
    )

    proposal = await db.get(Proposal, work_order.proposal_id)
    customer = await db.get(User, work_order.customer_id)
    data = await proposal_notification_data(
        db,
        proposal,
        work_order_id=work_order.id,
        customer_name=customer.name if customer else None,
    )
    await db.commit()
    await deliver_all(
        db,
        [
            NotificationRequest(
                notification_type=NotificationType.WORK_COMPLETED,
                recipient_email=customer.email if customer else None,
                user_id=work_order.customer_id,
                data=data,
            )
        ],
    )
    return work_order


async def approve_work(db: AsyncSession, *, work_order_id: int, customer_id: int) -> Proposal:
    """Customer sign-off: request APPROVED, provider payout, request CLOSED once paid out."""
    work_order = await _get_work_order(db, work_order_id)
    if int(work_order.customer_id) != int(customer_id):
        raise Forbidden("This work order belongs to another customer")
    if work_order.status != WorkOrderStatus.COMPLETED.value:
        raise PreconditionFailed(f"Work order {work_order_id} is not completed (status {work_order.status})")
    if work_order.approved_at is not None:
        raise PreconditionFailed(f"Work order {work_order_id} is already approved")

    work_order.approved_at = now_utc()
    service_request = await db.get(ServiceRequest, work_order.service_request_id)
    if service_request is not None and service_request.status == ServiceRequestStatus.COMPLETED.value:
        service_request.status = ServiceRequestStatus.APPROVED.value
        create_audit_log(
            db,
            entity_type="service_request",
            entity_id=service_request.id,
            action="WORK_APPROVED",
            old_value={"status": ServiceRequestStatus.COMPLETED.value},
            new_value={"status": service_request.status},
            actor_type="CUSTOMER",
            actor_id=customer_id,
            metadata={"work_order_id": work_order.id},
        )
    await db.flush()

    proposal = await db.get(Proposal, work_order.proposal_id)
    await process_payout(db, proposal, actor_type="CUSTOMER", actor_id=str(customer_id))

    customer = await db.get(User, customer_id)
    data = await proposal_notification_data(
        db,
        proposal,
        work_order_id=work_order.id,
        customer_name=customer.name if customer else None,
    )
    await db.commit()
    await deliver_all(
        db,
        [
            NotificationRequest(
                notification_type=NotificationType.REVIEW_REQUEST,
                recipient_email=customer.email if customer else None,
                user_id=customer_id,
                data=data,
            )
        ],
    )
    return proposal


async def retry_payout(db: AsyncSession, *, proposal_id: int, actor_id: Optional[str] = None) -> Proposal:
    proposal = await db.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFound(f"Proposal {proposal_id} not found")
    if proposal.payout_status == PayoutStatus.COMPLETED.value:
        raise PreconditionFailed(f"Payout for proposal {proposal_id} is already completed")
    work_order = (
        await db.execute(select(WorkOrder).where(WorkOrder.proposal_id == proposal.id))
    ).scalar_one_or_none()
    if work_order is None or work_order.approved_at is None:
        raise PreconditionFailed(f"Work for proposal {proposal_id} has not been approved yet")

    await process_payout(db, proposal, actor_type="ADMIN", actor_id=actor_id)
    await db.commit()
    logger.info("Admin payout retry for proposal %s -> %s", proposal.id, proposal.payout_status)
    return proposal
