"""
Payment event reconciler.

Turns a payment-processor event into state changes on the Lead, Proposal
or UserSubscription it refers to. Events may be redelivered or arrive out
of order, so every handler re-derives "is this already done?" from stored
state before writing anything.

The outcome is explicit: ``Handled`` (done, or nothing to do),
``RetryableError`` (roll back, ask the processor to redeliver) or
``FatalError`` (the event can never be applied; do not retry).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.models.marketplace import Lead, Proposal, ServiceRequest, SubscriptionPlan, User
from leadflow.schemas.marketplace import PaymentStatus, ProposalStatus, ServiceRequestStatus
from leadflow.services.assignment import request_notification_data
from leadflow.services.audit import create_audit_log
from leadflow.services.email_templates import NotificationType
from leadflow.services.errors import AlreadyAccepted, MarketplaceError
from leadflow.services.fallback import promote_next_alternative
from leadflow.services.lead_lifecycle import (
    accept_lead,
    find_accepted_sibling,
    lead_is_open,
    metadata_service_request_id,
    pending_proposal,
    record_failed_payment,
    resolve_service_request_id,
    update_lead_metadata,
)
from leadflow.services.notifications import NotificationRequest, deliver_all
from leadflow.services.proposals import (
    accept_proposal_after_payment,
    cents_to_dollars,
    create_or_get_lead_proposal,
    mark_proposal_paid,
    mark_proposal_payment_failed,
    proposal_notification_data,
)
from leadflow.services.subscriptions import activate_subscription

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"

LEAD_ACCEPTANCE = "lead_acceptance"
PROPOSAL = "proposal"
SUBSCRIPTION = "subscription"

STRIPE_EVENT_OUTCOMES = {
    "payment_intent.succeeded": SUCCEEDED,
    "payment_intent.payment_failed": FAILED,
    "payment_intent.canceled": CANCELED,
}


@dataclass(frozen=True)
class PaymentEvent:
    event_type: str
    purpose: Optional[str]
    metadata: dict[str, Any] = field(default_factory=dict)
    payment_intent_id: Optional[str] = None
    amount_cents: Optional[int] = None
    event_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class Handled:
    detail: str
    duplicate: bool = False


@dataclass(frozen=True)
class RetryableError:
    reason: str


@dataclass(frozen=True)
class FatalError:
    reason: str


ReconcileResult = Union[Handled, RetryableError, FatalError]
_HandlerOutput = tuple[ReconcileResult, list[NotificationRequest]]


def payment_event_from_stripe(event: Any) -> Optional[PaymentEvent]:
    """Map a verified Stripe event onto a ``PaymentEvent``; None for event types we ignore."""
    event_type = STRIPE_EVENT_OUTCOMES.get(event.get("type"))
    if event_type is None:
        return None
    data_object = (event.get("data") or {}).get("object") or {}
    metadata = dict(data_object.get("metadata") or {})
    last_error = data_object.get("last_payment_error") or {}
    amount = data_object.get("amount_received") or data_object.get("amount")
    return PaymentEvent(
        event_type=event_type,
        purpose=metadata.get("type"),
        metadata=metadata,
        payment_intent_id=data_object.get("id"),
        amount_cents=int(amount) if amount is not None else None,
        event_id=event.get("id"),
        error_message=last_error.get("message") if isinstance(last_error, dict) else None,
    )


def _int_meta(metadata: dict[str, Any], key: str) -> Optional[int]:
    value = metadata.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _proposal_draft(lead: Lead, metadata: dict[str, Any]) -> Optional[tuple[str, int]]:
    """Description and price staged at checkout; event metadata is the fallback copy."""
    staged = pending_proposal(lead)
    if staged and str(staged.get("description") or "").strip():
        try:
            price_cents = int(staged.get("price_cents"))
        except (TypeError, ValueError):
            price_cents = 0
        if price_cents > 0:
            return str(staged["description"]).strip(), price_cents

    description = str(metadata.get("proposalDescription") or "").strip()
    try:
        price_cents = int(round(float(metadata.get("proposalPrice")) * 100))
    except (TypeError, ValueError):
        return None
    if description and price_cents > 0:
        return description, price_cents
    return None


def _orphaned_payment(db: AsyncSession, event: PaymentEvent, lead_id: int, reason: str) -> FatalError:
    # Money was captured for a lead that can no longer be accepted; needs a manual refund.
    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead_id,
        action="LEAD_PAYMENT_ORPHANED",
        old_value=None,
        new_value={"reason": reason},
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": event.payment_intent_id, "amount_cents": event.amount_cents},
    )
    logger.warning("Lead %s payment %s orphaned: %s", lead_id, event.payment_intent_id, reason)
    return FatalError(f"lead {lead_id}: {reason}")


async def _handle_lead_succeeded(db: AsyncSession, event: PaymentEvent) -> _HandlerOutput:
    lead_id = _int_meta(event.metadata, "leadId")
    if lead_id is None:
        return FatalError("lead_acceptance event without leadId"), []
    lead = await db.get(Lead, lead_id)
    if lead is None:
        return FatalError(f"lead {lead_id} not found"), []
    sr_id = resolve_service_request_id(lead) or metadata_service_request_id(event.metadata)
    if sr_id is None or await db.get(ServiceRequest, sr_id) is None:
        return FatalError(f"lead {lead_id} has no service request"), []
    provider_id = int(lead.provider_id)

    winner = await find_accepted_sibling(db, sr_id)
    if winner is not None and winner.id == lead.id:
        logger.info("Duplicate lead_acceptance success for lead %s ignored", lead_id)
        return Handled("lead already accepted", duplicate=True), []
    if winner is not None:
        return _orphaned_payment(db, event, lead_id, f"lead {winner.id} was accepted first"), []
    if not lead_is_open(lead):
        return _orphaned_payment(db, event, lead_id, f"lead is {lead.status}"), []

    draft = _proposal_draft(lead, event.metadata)
    try:
        outcome = await accept_lead(db, lead_id=lead_id, provider_id=provider_id)
    except AlreadyAccepted:
        await db.rollback()
        return _orphaned_payment(db, event, lead_id, "a sibling lead was accepted concurrently"), []

    service_request = await db.get(ServiceRequest, sr_id)
    old_status = service_request.status
    service_request.primary_provider_id = provider_id
    if service_request.status == ServiceRequestStatus.REQUEST_CREATED.value:
        service_request.status = ServiceRequestStatus.LEAD_ASSIGNED.value

    proposal = None
    if draft is not None:
        proposal, _ = await create_or_get_lead_proposal(
            db,
            lead=lead,
            service_request_id=sr_id,
            description=draft[0],
            price_cents=draft[1],
        )
    else:
        logger.warning("Lead %s accepted without a proposal draft; no proposal created", lead_id)

    update_lead_metadata(
        lead,
        paymentState=SUCCEEDED,
        paidPaymentIntentId=event.payment_intent_id,
        proposalId=proposal.id if proposal is not None else None,
    )
    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead_id,
        action="LEAD_PAYMENT_SUCCEEDED",
        old_value={"service_request_status": old_status},
        new_value={"status": lead.status, "service_request_status": service_request.status},
        actor_type="SYSTEM_STRIPE",
        metadata={
            "payment_intent_id": event.payment_intent_id,
            "amount_cents": event.amount_cents,
            "correlation_id": outcome.correlation_id,
        },
    )

    customer = await db.get(User, lead.customer_id)
    provider = await db.get(User, provider_id)
    base = request_notification_data(
        service_request,
        lead_id=lead_id,
        customer_name=lead.customer_name,
        customer_email=lead.customer_email,
        customer_phone=lead.customer_phone,
        provider_name=provider.name if provider else None,
    )
    notifications = [
        NotificationRequest(
            notification_type=NotificationType.LEAD_ACCEPTED_CUSTOMER,
            recipient_email=customer.email if customer else None,
            user_id=lead.customer_id,
            data=base,
        ),
        NotificationRequest(
            notification_type=NotificationType.LEAD_ACCEPTED_PROVIDER,
            recipient_email=provider.email if provider else None,
            user_id=provider_id,
            data=base,
        ),
    ]
    if proposal is not None:
        notifications.append(
            NotificationRequest(
                notification_type=NotificationType.NEW_PROPOSAL,
                recipient_email=customer.email if customer else None,
                user_id=lead.customer_id,
                data=await proposal_notification_data(
                    db,
                    proposal,
                    customer_name=customer.name if customer else None,
                ),
            )
        )
    logger.info("Lead %s accepted by provider %s for service_request=%s", lead_id, provider_id, sr_id)
    return Handled("lead accepted"), notifications


async def _handle_lead_failed(db: AsyncSession, event: PaymentEvent) -> _HandlerOutput:
    lead_id = _int_meta(event.metadata, "leadId")
    if lead_id is None:
        return FatalError("lead_acceptance event without leadId"), []
    lead = await db.get(Lead, lead_id)
    if lead is None:
        return FatalError(f"lead {lead_id} not found"), []
    if not lead_is_open(lead):
        return Handled(f"lead is {lead.status}; failure ignored"), []
    if not record_failed_payment(lead, event.payment_intent_id, event.event_id):
        return Handled("failure already recorded", duplicate=True), []

    sr_id = resolve_service_request_id(lead) or metadata_service_request_id(event.metadata)
    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead_id,
        action="LEAD_PAYMENT_FAILED",
        old_value=None,
        new_value={"status": lead.status, "outcome": event.event_type},
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": event.payment_intent_id, "error": event.error_message},
    )

    provider = await db.get(User, lead.provider_id)
    service_request = await db.get(ServiceRequest, sr_id) if sr_id is not None else None
    data = request_notification_data(service_request) if service_request is not None else {}
    data.update(
        lead_id=lead_id,
        provider_name=provider.name if provider else None,
        error_message=event.error_message,
    )
    notifications = [
        NotificationRequest(
            notification_type=NotificationType.LEAD_PAYMENT_FAILED,
            recipient_email=provider.email if provider else None,
            user_id=lead.provider_id,
            data=data,
        )
    ]
    if service_request is not None:
        promotion = await promote_next_alternative(db, service_request.id, reason="payment_failed")
        notifications.extend(promotion.notifications)
    else:
        logger.warning("Lead %s payment failed but its service request cannot be resolved", lead_id)
    return Handled("lead payment failure recorded"), notifications


def _orphaned_proposal_payment(db: AsyncSession, proposal: Proposal, event: PaymentEvent) -> _HandlerOutput:
    # The charge is real even though the customer rejected the proposal; keep it on record for a refund.
    if proposal.payment_status == PaymentStatus.SUCCEEDED.value:
        return Handled("orphaned proposal payment already recorded", duplicate=True), []
    proposal.payment_status = PaymentStatus.SUCCEEDED.value
    if event.payment_intent_id:
        proposal.stripe_payment_intent_id = event.payment_intent_id
    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PROPOSAL_PAYMENT_ORPHANED",
        old_value={"status": proposal.status},
        new_value={"payment_status": proposal.payment_status},
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": event.payment_intent_id, "amount_cents": event.amount_cents},
    )
    logger.warning("Proposal %s payment %s orphaned: proposal was rejected", proposal.id, event.payment_intent_id)
    return FatalError(f"proposal {proposal.id} was rejected before its payment succeeded"), []


async def _handle_proposal_succeeded(db: AsyncSession, event: PaymentEvent) -> _HandlerOutput:
    proposal_id = _int_meta(event.metadata, "proposalId")
    if proposal_id is None:
        return FatalError("proposal event without proposalId"), []
    proposal = await db.get(Proposal, proposal_id)
    if proposal is None:
        return FatalError(f"proposal {proposal_id} not found"), []

    if proposal.status == ProposalStatus.REJECTED.value:
        return _orphaned_proposal_payment(db, proposal, event)

    first_success = mark_proposal_paid(proposal, event.payment_intent_id)
    work_order, created = await accept_proposal_after_payment(db, proposal)
    if not first_success and not created:
        return Handled("proposal already paid", duplicate=True), []

    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PROPOSAL_PAYMENT_SUCCEEDED",
        old_value=None,
        new_value={
            "payment_status": proposal.payment_status,
            "payout_status": proposal.payout_status,
            "provider_payout_cents": proposal.provider_payout_cents,
            "platform_fee_cents": proposal.platform_fee_cents,
        },
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": event.payment_intent_id, "work_order_id": work_order.id},
    )

    customer = await db.get(User, proposal.customer_id)
    provider = await db.get(User, proposal.provider_id)
    data = await proposal_notification_data(
        db,
        proposal,
        work_order_id=work_order.id,
        customer_name=customer.name if customer else None,
        provider_name=provider.name if provider else None,
    )
    return Handled("proposal paid"), [
        NotificationRequest(
            notification_type=NotificationType.PROPOSAL_ACCEPTED_CUSTOMER,
            recipient_email=customer.email if customer else None,
            user_id=proposal.customer_id,
            data=data,
        ),
        NotificationRequest(
            notification_type=NotificationType.PROPOSAL_ACCEPTED_PROVIDER,
            recipient_email=provider.email if provider else None,
            user_id=proposal.provider_id,
            data=data,
        ),
    ]


async def _handle_proposal_failed(db: AsyncSession, event: PaymentEvent) -> _HandlerOutput:
    proposal_id = _int_meta(event.metadata, "proposalId")
    if proposal_id is None:
        return FatalError("proposal event without proposalId"), []
    proposal = await db.get(Proposal, proposal_id)
    if proposal is None:
        return FatalError(f"proposal {proposal_id} not found"), []
    if not mark_proposal_payment_failed(proposal, event.payment_intent_id):
        return Handled(f"proposal payment is {proposal.payment_status}; failure ignored", duplicate=True), []

    create_audit_log(
        db,
        entity_type="proposal",
        entity_id=proposal.id,
        action="PROPOSAL_PAYMENT_FAILED",
        old_value=None,
        new_value={"payment_status": proposal.payment_status, "outcome": event.event_type},
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": event.payment_intent_id, "error": event.error_message},
    )
    customer = await db.get(User, proposal.customer_id)
    data = await proposal_notification_data(
        db,
        proposal,
        customer_name=customer.name if customer else None,
        error_message=event.error_message,
    )
    return Handled("proposal payment failure recorded"), [
        NotificationRequest(
            notification_type=NotificationType.PROPOSAL_PAYMENT_FAILED,
            recipient_email=customer.email if customer else None,
            user_id=proposal.customer_id,
            data=data,
        )
    ]


async def _handle_subscription_succeeded(db: AsyncSession, event: PaymentEvent) -> _HandlerOutput:
    user_id = _int_meta(event.metadata, "userId")
    plan_id = _int_meta(event.metadata, "planId")
    if user_id is None or plan_id is None:
        return FatalError("subscription event without userId/planId"), []
    user = await db.get(User, user_id)
    plan = await db.get(SubscriptionPlan, plan_id)
    if user is None or plan is None:
        return FatalError(f"subscription user {user_id} or plan {plan_id} not found"), []

    subscription, changed = await activate_subscription(
        db,
        user_id=user_id,
        plan_id=plan_id,
        payment_intent_id=event.payment_intent_id,
    )
    if not changed:
        return Handled("subscription already activated", duplicate=True), []
    return Handled("subscription activated"), [
        NotificationRequest(
            notification_type=NotificationType.SUBSCRIPTION_ACTIVATED,
            recipient_email=user.email,
            user_id=user_id,
            data={
                "user_name": user.name,
                "plan_name": plan.name,
                "price": cents_to_dollars(plan.price_cents),
                "period_end": subscription.current_period_end.date().isoformat(),
            },
        )
    ]


async def _handle_subscription_failed(db: AsyncSession, event: PaymentEvent) -> _HandlerOutput:
    user_id = _int_meta(event.metadata, "userId")
    if user_id is None:
        return FatalError("subscription event without userId"), []
    user = await db.get(User, user_id)
    if user is None:
        return FatalError(f"subscription user {user_id} not found"), []
    create_audit_log(
        db,
        entity_type="user",
        entity_id=user_id,
        action="SUBSCRIPTION_PAYMENT_FAILED",
        old_value=None,
        new_value={"outcome": event.event_type},
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": event.payment_intent_id, "plan_id": event.metadata.get("planId")},
    )
    return Handled("subscription payment failure recorded"), [
        NotificationRequest(
            notification_type=NotificationType.SUBSCRIPTION_PAYMENT_FAILED,
            recipient_email=user.email,
            user_id=user_id,
            data={"user_name": user.name, "error_message": event.error_message},
        )
    ]


_Handler = Callable[[AsyncSession, PaymentEvent], Awaitable[_HandlerOutput]]

_HANDLERS: dict[tuple[str, str], _Handler] = {
    (LEAD_ACCEPTANCE, SUCCEEDED): _handle_lead_succeeded,
    (LEAD_ACCEPTANCE, FAILED): _handle_lead_failed,
    (LEAD_ACCEPTANCE, CANCELED): _handle_lead_failed,
    (PROPOSAL, SUCCEEDED): _handle_proposal_succeeded,
    (PROPOSAL, FAILED): _handle_proposal_failed,
    (PROPOSAL, CANCELED): _handle_proposal_failed,
    (SUBSCRIPTION, SUCCEEDED): _handle_subscription_succeeded,
    (SUBSCRIPTION, FAILED): _handle_subscription_failed,
    (SUBSCRIPTION, CANCELED): _handle_subscription_failed,
}


async def reconcile_payment_event(db: AsyncSession, event: PaymentEvent) -> ReconcileResult:
    """Apply one payment event in a single transaction, then send its notifications."""
    handler = _HANDLERS.get((event.purpose or "", event.event_type))
    if handler is None:
        logger.info("Ignoring payment event purpose=%s outcome=%s", event.purpose, event.event_type)
        return Handled("ignored")

    try:
        result, notifications = await handler(db, event)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Storage error reconciling %s/%s: %s", event.purpose, event.event_type, exc)
        return RetryableError(f"storage error: {exc.__class__.__name__}")
    except MarketplaceError as exc:
        await db.rollback()
        logger.warning("Payment event %s/%s rejected: %s", event.purpose, event.event_type, exc.message)
        return FatalError(exc.message)
    except Exception as exc:
        await db.rollback()
        logger.exception("Unexpected error reconciling %s/%s", event.purpose, event.event_type)
        return RetryableError(f"unexpected error: {exc.__class__.__name__}")

    if isinstance(result, FatalError):
        logger.warning("Payment event %s not applicable: %s", event.payment_intent_id, result.reason)

    try:
        await deliver_all(db, notifications)
    except Exception:
        # State is committed; a redelivery would be a no-op, so do not ask for one.
        logger.exception("Notification dispatch failed after reconciling %s", event.payment_intent_id)
    return result
