import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.auth import CurrentUser, get_current_user, require_roles
from leadflow.core.config import get_settings
from leadflow.core.dependencies import get_db
from leadflow.models.marketplace import Proposal, ServiceRequest, User
from leadflow.schemas.marketplace import (
    ProposalCheckoutOut,
    ProposalOut,
    ProposalRejectRequest,
    ServiceRequestCreate,
    ServiceRequestOut,
    ServiceRequestStatus,
)
from leadflow.services.assignment import assign_providers_for_request, request_notification_data
from leadflow.services.audit import create_audit_log
from leadflow.services.email_templates import NotificationType
from leadflow.services.errors import Forbidden, NotFound
from leadflow.services.geolocation import geocode_zip
from leadflow.services.notifications import send_notification
from leadflow.services.proposals import approve_work, cents_to_dollars, create_proposal_checkout, reject_proposal

logger = logging.getLogger(__name__)

router = APIRouter()


def service_request_to_out(service_request: ServiceRequest) -> ServiceRequestOut:
    return ServiceRequestOut(
        id=service_request.id,
        customer_id=service_request.customer_id,
        category=service_request.category,
        sub_category=service_request.sub_category,
        title=service_request.title,
        description=service_request.description,
        zip_code=service_request.zip_code,
        city=service_request.city,
        state=service_request.state,
        status=service_request.status,
        primary_provider_id=service_request.primary_provider_id,
        created_at=service_request.created_at,
    )


def proposal_to_out(proposal: Proposal) -> ProposalOut:
    return ProposalOut(
        id=proposal.id,
        service_request_id=proposal.service_request_id,
        provider_id=proposal.provider_id,
        description=proposal.description,
        price=cents_to_dollars(proposal.price_cents),
        status=proposal.status,
        payment_status=proposal.payment_status,
        provider_payout_amount=cents_to_dollars(proposal.provider_payout_cents),
        platform_fee_amount=cents_to_dollars(proposal.platform_fee_cents),
        payout_status=proposal.payout_status,
    )


@router.post("/service-requests", response_model=ServiceRequestOut, status_code=201)
async def create_service_request(
    payload: ServiceRequestCreate,
    current_user: CurrentUser = Depends(require_roles("CUSTOMER")),
    db: AsyncSession = Depends(get_db),
):
    """Create a request and route it to the best-ranked local providers."""
    customer = await db.get(User, current_user.user_id)
    if customer is None or not customer.is_active:
        raise Forbidden("Customer account is not active")

    latitude, longitude = payload.latitude, payload.longitude
    if payload.radius_miles and (latitude is None or longitude is None) and get_settings().enable_geocoding:
        coords = await geocode_zip(payload.zip_code)
        if coords is not None:
            latitude, longitude = coords

    service_request = ServiceRequest(
        customer_id=customer.id,
        category=payload.category.strip(),
        sub_category=(payload.sub_category or "").strip() or None,
        title=payload.title,
        description=payload.description,
        zip_code=payload.zip_code.strip(),
        city=payload.city,
        state=payload.state,
        latitude=latitude,
        longitude=longitude,
        radius_miles=payload.radius_miles,
        status=ServiceRequestStatus.REQUEST_CREATED.value,
    )
    db.add(service_request)
    await db.flush()
    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=service_request.id,
        action="SERVICE_REQUEST_CREATED",
        old_value=None,
        new_value={"status": service_request.status, "category": service_request.category},
        actor_type="CUSTOMER",
        actor_id=customer.id,
    )
    await db.commit()

    await send_notification(
        db,
        recipient_email=customer.email,
        notification_type=NotificationType.REQUEST_CREATED,
        template_data=request_notification_data(service_request, customer_name=customer.name),
        user_id=customer.id,
    )
    await assign_providers_for_request(db, service_request.id, actor_type="SYSTEM")
    await db.refresh(service_request)
    return service_request_to_out(service_request)


@router.get("/service-requests/{service_request_id}", response_model=ServiceRequestOut)
async def get_service_request(
    service_request_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service_request = await db.get(ServiceRequest, service_request_id)
    if service_request is None:
        raise NotFound(f"Service request {service_request_id} not found")
    if current_user.role != "ADMIN" and service_request.customer_id != current_user.user_id:
        raise Forbidden("This request belongs to another customer")
    return service_request_to_out(service_request)


@router.post("/proposals/{proposal_id}/checkout", response_model=ProposalCheckoutOut)
async def checkout_proposal(
    proposal_id: int,
    current_user: CurrentUser = Depends(require_roles("CUSTOMER")),
    db: AsyncSession = Depends(get_db),
):
    checkout = await create_proposal_checkout(db, proposal_id=proposal_id, customer_id=current_user.user_id)
    return ProposalCheckoutOut(
        proposal_id=checkout.proposal_id,
        payment_intent_id=checkout.payment_intent_id,
        client_secret=checkout.client_secret,
        amount_cents=checkout.amount_cents,
    )


@router.post("/proposals/{proposal_id}/reject", response_model=ProposalOut)
async def reject_proposal_route(
    proposal_id: int,
    payload: ProposalRejectRequest,
    current_user: CurrentUser = Depends(require_roles("CUSTOMER")),
    db: AsyncSession = Depends(get_db),
):
    proposal = await reject_proposal(
        db,
        proposal_id=proposal_id,
        customer_id=current_user.user_id,
        reason=payload.reason,
        reason_other=payload.reason_other,
    )
    return proposal_to_out(proposal)


@router.post("/work-orders/{work_order_id}/approve", response_model=ProposalOut)
async def approve_work_order(
    work_order_id: int,
    current_user: CurrentUser = Depends(require_roles("CUSTOMER")),
    db: AsyncSession = Depends(get_db),
):
    """Approve finished work; triggers the provider payout."""
    proposal = await approve_work(db, work_order_id=work_order_id, customer_id=current_user.user_id)
    return proposal_to_out(proposal)
