"""
Assignment orchestrator: primary lead plus ranked alternatives for a request.

Also carries the admin reassignment, which clears every lead and alternative
of a request and routes it again while it is still reassignable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.models.marketplace import AlternativeSelection, ServiceRequest, User
from leadflow.schemas.marketplace import REASSIGNABLE_REQUEST_STATUSES, LeadStatus, ServiceRequestStatus
from leadflow.services.audit import create_audit_log
from leadflow.services.eligibility import Candidate, resolve_eligible_providers
from leadflow.services.email_templates import NotificationType
from leadflow.services.errors import NotFound, PreconditionFailed
from leadflow.services.lead_lifecycle import create_lead, find_accepted_sibling, find_leads_for_request
from leadflow.services.notifications import NotificationRequest, deliver_all
from leadflow.services.ranking import rank_candidates

logger = logging.getLogger(__name__)


@dataclass
class AssignmentResult:
    service_request_id: int
    primary_lead_id: Optional[int] = None
    primary_provider_id: Optional[int] = None
    alternative_provider_ids: list[int] = field(default_factory=list)
    notifications: list[NotificationRequest] = field(default_factory=list)

    @property
    def no_provider_available(self) -> bool:
        return self.primary_lead_id is None


def request_notification_data(service_request: ServiceRequest, **extra) -> dict:
    data = {
        "service_request_id": service_request.id,
        "project_title": service_request.title or f"{service_request.category} request",
        "category": service_request.category,
        "zip_code": service_request.zip_code,
        "city": service_request.city,
        "description": service_request.description,
    }
    data.update(extra)
    return data


async def _claim_request(db: AsyncSession, service_request: ServiceRequest, *, allowed: set[str]) -> None:
    """Compare-and-swap on row_version so two assignment runs cannot interleave."""
    observed = int(service_request.row_version or 1)
    result = await db.execute(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == service_request.id,
            ServiceRequest.row_version == observed,
            ServiceRequest.status.in_(sorted(allowed)),
        )
        .values(row_version=observed + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PreconditionFailed(
            f"Service request {service_request.id} changed while assigning providers; retry the operation"
        )
    await db.refresh(service_request)


async def _load_request(db: AsyncSession, service_request_id: int) -> ServiceRequest:
    service_request = await db.get(ServiceRequest, service_request_id)
    if service_request is None:
        raise NotFound(f"Service request {service_request_id} not found")
    return service_request


async def _route(
    db: AsyncSession,
    service_request: ServiceRequest,
    candidates: list[Candidate],
    *,
    actor_type: str,
) -> AssignmentResult:
    settings = get_settings()
    result = AssignmentResult(service_request_id=service_request.id)
    customer = await db.get(User, service_request.customer_id)

    if not candidates:
        result.notifications.append(
            NotificationRequest(
                notification_type=NotificationType.NO_PROVIDER_AVAILABLE,
                recipient_email=customer.email if customer else None,
                user_id=service_request.customer_id,
                data=request_notification_data(
                    service_request,
                    customer_name=customer.name if customer else None,
                ),
            )
        )
        create_audit_log(
            db,
            entity_type="service_request",
            entity_id=service_request.id,
            action="NO_PROVIDER_AVAILABLE",
            old_value=None,
            new_value={"status": service_request.status},
            actor_type=actor_type,
        )
        return result

    primary, alternatives = candidates[0], candidates[1 : 1 + settings.alternative_provider_count]

    lead = await create_lead(
        db,
        service_request=service_request,
        business=primary.business,
        status=LeadStatus.SUBMITTED,
        lead_cost_cents=settings.lead_default_cost_cents,
        extra_metadata={"position": 0},
        actor_type=actor_type,
    )
    for position, candidate in enumerate(alternatives, start=1):
        db.add(
            AlternativeSelection(
                service_request_id=service_request.id,
                provider_id=candidate.provider_id,
                business_id=candidate.business_id,
                position=position,
            )
        )

    old_status = service_request.status
    service_request.primary_provider_id = primary.provider_id
    service_request.status = ServiceRequestStatus.LEAD_ASSIGNED.value
    await db.flush()

    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=service_request.id,
        action="PROVIDERS_ASSIGNED",
        old_value={"status": old_status},
        new_value={
            "status": service_request.status,
            "primary_provider_id": primary.provider_id,
            "alternative_provider_ids": [c.provider_id for c in alternatives],
        },
        actor_type=actor_type,
    )

    result.primary_lead_id = lead.id
    result.primary_provider_id = primary.provider_id
    result.alternative_provider_ids = [c.provider_id for c in alternatives]
    result.notifications.append(
        NotificationRequest(
            notification_type=NotificationType.NEW_LEAD,
            recipient_email=primary.owner.email,
            user_id=primary.provider_id,
            data=request_notification_data(
                service_request,
                lead_id=lead.id,
                provider_name=primary.owner.name,
            ),
        )
    )
    return result


async def _resolve_and_route(db: AsyncSession, service_request: ServiceRequest, *, actor_type: str) -> AssignmentResult:
    candidates = rank_candidates(
        await resolve_eligible_providers(db, service_request),
        featured_weight=get_settings().featured_priority_weight,
    )
    return await _route(db, service_request, candidates, actor_type=actor_type)


async def assign_providers_for_request(
    db: AsyncSession,
    service_request_id: int,
    *,
    actor_type: str = "SYSTEM",
) -> AssignmentResult:
    """Create the primary lead and the alternative selections for a fresh request.

    Commits, then sends the new-lead (or no-provider) notification.
    """
    service_request = await _load_request(db, service_request_id)
    if service_request.status != ServiceRequestStatus.REQUEST_CREATED.value:
        raise PreconditionFailed(
            f"Providers can only be assigned to a new request (status is {service_request.status})"
        )
    if await find_leads_for_request(db, service_request.id):
        raise PreconditionFailed(f"Service request {service_request.id} already has leads; use reassignment")

    await _claim_request(db, service_request, allowed={ServiceRequestStatus.REQUEST_CREATED.value})
    result = await _resolve_and_route(db, service_request, actor_type=actor_type)
    await db.commit()

    logger.info(
        "Assigned service_request=%s primary_provider=%s alternatives=%s",
        service_request.id,
        result.primary_provider_id,
        result.alternative_provider_ids,
    )
    await deliver_all(db, result.notifications)
    return result


async def reassign_providers_for_request(
    db: AsyncSession,
    service_request_id: int,
    *,
    actor_id: Optional[str] = None,
) -> AssignmentResult:
    """Admin re-run of assignment: drops existing leads and alternatives first."""
    service_request = await _load_request(db, service_request_id)
    if service_request.status not in REASSIGNABLE_REQUEST_STATUSES:
        raise PreconditionFailed(
            f"Cannot reassign providers: request status is {service_request.status}; "
            f"allowed statuses are {', '.join(sorted(REASSIGNABLE_REQUEST_STATUSES))}"
        )
    if await find_accepted_sibling(db, service_request.id) is not None:
        raise PreconditionFailed(
            f"Cannot reassign providers: request status is {service_request.status} "
            f"and request {service_request.id} already has an accepted lead"
        )

    await _claim_request(db, service_request, allowed=REASSIGNABLE_REQUEST_STATUSES)

    removed = await find_leads_for_request(db, service_request.id)
    for lead in removed:
        await db.delete(lead)
    await db.execute(
        delete(AlternativeSelection).where(AlternativeSelection.service_request_id == service_request.id)
    )
    old_status = service_request.status
    service_request.primary_provider_id = None
    service_request.status = ServiceRequestStatus.REQUEST_CREATED.value
    await db.flush()

    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=service_request.id,
        action="PROVIDERS_RESET",
        old_value={"status": old_status},
        new_value={"status": service_request.status},
        actor_type="ADMIN",
        actor_id=actor_id,
        metadata={"removed_lead_ids": [lead.id for lead in removed]},
    )

    result = await _resolve_and_route(db, service_request, actor_type="ADMIN")
    await db.commit()
    await deliver_all(db, result.notifications)
    return result


async def alternatives_for_request(db: AsyncSession, service_request_id: int) -> list[AlternativeSelection]:
    return list(
        (
            await db.execute(
                select(AlternativeSelection)
                .where(AlternativeSelection.service_request_id == service_request_id)
                .order_by(AlternativeSelection.position.asc())
            )
        ).scalars().all()
    )
