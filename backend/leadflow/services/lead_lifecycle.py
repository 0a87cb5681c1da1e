"""
Lead aggregate: creation, acceptance, rejection, cancellation.

State machine::

    submitted | routed --accept--> accepted
    submitted | routed --reject--> rejected
    submitted | routed --fallback timeout--> cancelled

Every transition is a conditional UPDATE on the current status, so two
writers can never both move the same lead, and acceptance additionally
requires that no sibling lead for the same service request is accepted.
None of these functions commit; callers own the unit of work.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.models.marketplace import Business, Lead, ServiceRequest, User
from leadflow.schemas.marketplace import OPEN_LEAD_STATUSES, LeadRejectionReason, LeadStatus
from leadflow.services.audit import create_audit_log
from leadflow.services.errors import AlreadyAccepted, Forbidden, NotFound, PreconditionFailed
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

_leads = Lead.__table__


@dataclass(frozen=True)
class AcceptOutcome:
    lead_id: int
    service_request_id: int
    correlation_id: str
    already_accepted: bool = False


def correlation_id_for(lead_id: int) -> str:
    return f"pending-{lead_id}"


def parse_lead_metadata(raw: Any) -> dict[str, Any]:
    """Lead metadata as a dict; anything unparsable reads as empty."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def metadata_service_request_id(raw: Any) -> Optional[int]:
    value = parse_lead_metadata(raw).get("serviceRequestId")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def update_lead_metadata(lead: Lead, **changes: Any) -> dict[str, Any]:
    # JSON columns are not mutation-tracked; always assign a fresh dict.
    merged = parse_lead_metadata(lead.lead_metadata)
    merged.update(changes)
    lead.lead_metadata = merged
    return merged


def resolve_service_request_id(lead: Lead) -> Optional[int]:
    if lead.service_request_id is not None:
        return int(lead.service_request_id)
    return metadata_service_request_id(lead.lead_metadata)


async def _legacy_leads_for_request(
    db: AsyncSession,
    service_request_id: int,
    *,
    statuses: Optional[set[str]] = None,
) -> list[Lead]:
    # Rows from before the FK existed only carry the id inside metadata; match them in Python.
    stmt = select(Lead).where(Lead.service_request_id.is_(None))
    if statuses:
        stmt = stmt.where(Lead.status.in_(sorted(statuses)))
    rows = (await db.execute(stmt)).scalars().all()
    return [lead for lead in rows if metadata_service_request_id(lead.lead_metadata) == service_request_id]


async def find_leads_for_request(
    db: AsyncSession,
    service_request_id: int,
    *,
    statuses: Optional[set[str]] = None,
) -> list[Lead]:
    stmt = select(Lead).where(Lead.service_request_id == service_request_id).order_by(Lead.id.asc())
    if statuses:
        stmt = stmt.where(Lead.status.in_(sorted(statuses)))
    linked = list((await db.execute(stmt)).scalars().all())
    return linked + await _legacy_leads_for_request(db, service_request_id, statuses=statuses)


async def find_accepted_sibling(db: AsyncSession, service_request_id: int) -> Optional[Lead]:
    leads = await find_leads_for_request(db, service_request_id, statuses={LeadStatus.ACCEPTED.value})
    return leads[0] if leads else None


async def accepted_sibling_exists(db: AsyncSession, service_request_id: int) -> bool:
    return await find_accepted_sibling(db, service_request_id) is not None


async def create_lead(
    db: AsyncSession,
    *,
    service_request: ServiceRequest,
    business: Business,
    status: LeadStatus = LeadStatus.SUBMITTED,
    lead_cost_cents: Optional[int] = None,
    extra_metadata: Optional[dict[str, Any]] = None,
    actor_type: str = "SYSTEM",
) -> Lead:
    if status.value not in OPEN_LEAD_STATUSES:
        raise ValueError(f"Leads are created open, not {status.value}")

    now = now_utc()
    metadata = {"serviceRequestId": service_request.id}
    metadata.update(extra_metadata or {})
    lead = Lead(
        service_request_id=service_request.id,
        customer_id=service_request.customer_id,
        provider_id=business.owner_id,
        business_id=business.id,
        category=service_request.category,
        zip_code=service_request.zip_code,
        city=service_request.city,
        state=service_request.state,
        description=service_request.description,
        status=status.value,
        lead_metadata=metadata,
        lead_cost_cents=lead_cost_cents,
        routed_at=now if status == LeadStatus.ROUTED else None,
    )
    db.add(lead)
    await db.flush()

    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead.id,
        action="LEAD_CREATED",
        old_value=None,
        new_value={"status": lead.status, "provider_id": lead.provider_id},
        actor_type=actor_type,
        metadata={"service_request_id": service_request.id},
    )
    return lead


async def get_lead_for_provider(db: AsyncSession, lead_id: int, provider_id: int) -> Lead:
    lead = await db.get(Lead, lead_id)
    if lead is None:
        raise NotFound(f"Lead {lead_id} not found")
    if int(lead.provider_id) != int(provider_id):
        raise Forbidden("This lead belongs to another provider")
    return lead


async def _link_legacy_lead(db: AsyncSession, lead: Lead) -> Optional[int]:
    if lead.service_request_id is not None:
        return int(lead.service_request_id)
    sr_id = metadata_service_request_id(lead.lead_metadata)
    if sr_id is None or await db.get(ServiceRequest, sr_id) is None:
        return None
    lead.service_request_id = sr_id
    await db.flush()
    return sr_id


async def accept_lead(db: AsyncSession, *, lead_id: int, provider_id: int) -> AcceptOutcome:
    """Move an open lead to ``accepted`` and reveal the customer's contact.

    Re-accepting a lead this provider already holds is a no-op success so
    that payment-event redelivery is harmless. Raises ``AlreadyAccepted``
    when a sibling lead won; the caller must then roll back its unit of work.
    """
    lead = await db.get(Lead, lead_id)
    if lead is None:
        raise NotFound(f"Lead {lead_id} not found")
    if int(lead.provider_id) != int(provider_id):
        raise Forbidden("This lead belongs to another provider")

    sr_id = await _link_legacy_lead(db, lead)
    if sr_id is None:
        raise NotFound(f"Lead {lead_id} is not linked to a service request")

    if lead.status == LeadStatus.ACCEPTED.value:
        return AcceptOutcome(lead.id, sr_id, correlation_id_for(lead.id), already_accepted=True)

    sibling = _leads.alias("sibling")
    now = now_utc()
    stmt = (
        update(_leads)
        .where(
            _leads.c.id == lead_id,
            _leads.c.status.in_(sorted(OPEN_LEAD_STATUSES)),
            ~exists().where(
                and_(
                    sibling.c.service_request_id == _leads.c.service_request_id,
                    sibling.c.status == LeadStatus.ACCEPTED.value,
                    sibling.c.id != _leads.c.id,
                )
            ),
        )
        .values(status=LeadStatus.ACCEPTED.value, accepted_at=now, updated_at=now)
    )
    try:
        result = await db.execute(stmt)
    except IntegrityError as exc:
        # Partial unique index caught a concurrent winner the NOT EXISTS could not see.
        raise AlreadyAccepted() from exc

    if result.rowcount != 1:
        await db.refresh(lead)
        # A winning sibling also cancels this lead, so either state means we lost the race.
        if lead.status in OPEN_LEAD_STATUSES or await accepted_sibling_exists(db, sr_id):
            raise AlreadyAccepted()
        raise PreconditionFailed(f"Lead {lead_id} cannot be accepted from status {lead.status}")

    await db.refresh(lead)
    await _legacy_sibling_guard(db, lead, sr_id)

    customer = await db.get(User, lead.customer_id)
    if customer is not None:
        lead.customer_name = customer.name
        lead.customer_email = customer.email
        lead.customer_phone = customer.phone

    superseded = await _cancel_open_siblings(db, lead, sr_id)

    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead.id,
        action="LEAD_ACCEPTED",
        old_value=None,
        new_value={"status": lead.status},
        actor_type="SYSTEM_STRIPE",
        actor_id=provider_id,
        metadata={"service_request_id": sr_id, "superseded_lead_ids": superseded},
    )
    return AcceptOutcome(lead.id, sr_id, correlation_id_for(lead.id))


async def _legacy_sibling_guard(db: AsyncSession, lead: Lead, sr_id: int) -> None:
    legacy = await _legacy_leads_for_request(db, sr_id, statuses={LeadStatus.ACCEPTED.value})
    if any(other.id != lead.id for other in legacy):
        raise AlreadyAccepted()


async def _cancel_open_siblings(db: AsyncSession, lead: Lead, sr_id: int) -> list[int]:
    siblings = await find_leads_for_request(db, sr_id, statuses=OPEN_LEAD_STATUSES)
    now = now_utc()
    cancelled = []
    for sibling in siblings:
        if sibling.id == lead.id:
            continue
        sibling.status = LeadStatus.CANCELLED.value
        sibling.cancelled_at = now
        update_lead_metadata(sibling, supersededByLeadId=lead.id)
        cancelled.append(sibling.id)
    return cancelled


async def reject_lead(
    db: AsyncSession,
    *,
    lead_id: int,
    provider_id: int,
    reason: LeadRejectionReason,
    reason_other: Optional[str] = None,
) -> Lead:
    if reason == LeadRejectionReason.OTHER and not (reason_other or "").strip():
        raise PreconditionFailed("reason_other is required when reason is OTHER")

    lead = await get_lead_for_provider(db, lead_id, provider_id)
    other_text = None
    if reason == LeadRejectionReason.OTHER:
        other_text = reason_other.strip()
    now = now_utc()
    result = await db.execute(
        update(_leads)
        .where(_leads.c.id == lead_id, _leads.c.status.in_(sorted(OPEN_LEAD_STATUSES)))
        .values(
            status=LeadStatus.REJECTED.value,
            rejected_at=now,
            rejection_reason=reason.value,
            rejection_reason_other=other_text,
            updated_at=now,
        )
    )
    await db.refresh(lead)
    if result.rowcount != 1:
        raise PreconditionFailed(f"Lead {lead_id} cannot be rejected from status {lead.status}")

    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead.id,
        action="LEAD_REJECTED",
        old_value=None,
        new_value={"status": lead.status, "reason": lead.rejection_reason},
        actor_type="PROVIDER",
        actor_id=provider_id,
    )
    return lead


async def cancel_lead(db: AsyncSession, lead: Lead, *, reason: str) -> bool:
    """Supersede an open lead. Returns False if it was no longer open."""
    sr_id = resolve_service_request_id(lead)
    if sr_id is not None and await accepted_sibling_exists(db, sr_id):
        return False
    now = now_utc()
    result = await db.execute(
        update(_leads)
        .where(_leads.c.id == lead.id, _leads.c.status.in_(sorted(OPEN_LEAD_STATUSES)))
        .values(status=LeadStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
    )
    await db.refresh(lead)
    if result.rowcount != 1:
        return False
    update_lead_metadata(lead, cancelReason=reason)
    create_audit_log(
        db,
        entity_type="lead",
        entity_id=lead.id,
        action="LEAD_CANCELLED",
        old_value=None,
        new_value={"status": lead.status},
        actor_type="SYSTEM",
        metadata={"reason": reason, "service_request_id": sr_id},
    )
    return True


def lead_is_open(lead: Lead) -> bool:
    return lead.status in OPEN_LEAD_STATUSES


def pending_proposal(lead: Lead) -> Optional[dict[str, Any]]:
    draft = parse_lead_metadata(lead.lead_metadata).get("pendingProposal")
    return draft if isinstance(draft, dict) else None


def record_failed_payment(lead: Lead, payment_intent_id: Optional[str], event_id: Optional[str] = None) -> bool:
    """Remember a failed payment attempt; False if this delivery was already recorded.

    A reused intent can fail more than once, so deliveries are told apart by
    the processor's event id. Without one the intent id is the key.
    """
    meta = parse_lead_metadata(lead.lead_metadata)
    intents = list(meta.get("failedPaymentIntents") or [])
    events = list(meta.get("failedPaymentEvents") or [])
    intent_key = payment_intent_id or "unknown"
    if event_id:
        if event_id in events:
            return False
        events.append(event_id)
    elif intent_key in intents:
        return False
    if intent_key not in intents:
        intents.append(intent_key)
    changes = {"failedPaymentIntents": intents, "paymentState": "failed"}
    if events:
        changes["failedPaymentEvents"] = events
    update_lead_metadata(lead, **changes)
    return True


async def provider_leads(db: AsyncSession, provider_id: int, *, status: Optional[str] = None) -> list[Lead]:
    stmt = select(Lead).where(Lead.provider_id == provider_id).order_by(Lead.created_at.desc(), Lead.id.desc())
    if status:
        stmt = stmt.where(Lead.status == status)
    return list((await db.execute(stmt)).scalars().all())


def contact_visible(lead: Lead) -> bool:
    return lead.status == LeadStatus.ACCEPTED.value


async def leads_with_open_status_older_than(db: AsyncSession, cutoff) -> list[Lead]:
    return list(
        (
            await db.execute(
                select(Lead)
                .where(
                    Lead.status.in_(sorted(OPEN_LEAD_STATUSES)),
                    Lead.created_at < cutoff,
                )
                .order_by(Lead.created_at.asc(), Lead.id.asc())
            )
        ).scalars().all()
    )
