from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.auth import CurrentUser, require_roles
from leadflow.core.dependencies import get_db
from leadflow.models.marketplace import Lead, WorkOrder
from leadflow.schemas.marketplace import (
    LeadAcceptRequest,
    LeadCheckoutOut,
    LeadListResponse,
    LeadOut,
    LeadRejectRequest,
    LeadStatus,
    WorkOrderOut,
)
from leadflow.services.lead_checkout import start_lead_acceptance
from leadflow.services.lead_lifecycle import contact_visible, provider_leads, reject_lead
from leadflow.services.proposals import complete_work_order

router = APIRouter()


def lead_to_out(lead: Lead) -> LeadOut:
    visible = contact_visible(lead)
    return LeadOut(
        id=lead.id,
        service_request_id=lead.service_request_id,
        provider_id=lead.provider_id,
        business_id=lead.business_id,
        category=lead.category,
        zip_code=lead.zip_code,
        city=lead.city,
        state=lead.state,
        description=lead.description,
        status=lead.status,
        customer_name=lead.customer_name if visible else None,
        customer_email=lead.customer_email if visible else None,
        customer_phone=lead.customer_phone if visible else None,
        lead_cost_cents=lead.lead_cost_cents,
        created_at=lead.created_at,
        accepted_at=lead.accepted_at,
    )


def work_order_to_out(work_order: WorkOrder) -> WorkOrderOut:
    return WorkOrderOut(
        id=work_order.id,
        proposal_id=work_order.proposal_id,
        service_request_id=work_order.service_request_id,
        status=work_order.status,
        completed_at=work_order.completed_at,
        approved_at=work_order.approved_at,
    )


@router.get("/provider/leads", response_model=LeadListResponse)
async def list_provider_leads(
    status: Optional[LeadStatus] = Query(None),
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    leads = await provider_leads(db, current_user.user_id, status=status.value if status else None)
    return LeadListResponse(items=[lead_to_out(lead) for lead in leads])


@router.post("/provider/leads/{lead_id}/accept", response_model=LeadCheckoutOut)
async def accept_lead_route(
    lead_id: int,
    payload: LeadAcceptRequest,
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    """Start acceptance: returns the PaymentIntent the provider must confirm."""
    checkout = await start_lead_acceptance(
        db,
        lead_id=lead_id,
        provider_id=current_user.user_id,
        description=payload.description,
        price=payload.price,
    )
    return LeadCheckoutOut(
        lead_id=checkout.lead_id,
        payment_intent_id=checkout.payment_intent_id,
        client_secret=checkout.client_secret,
        amount_cents=checkout.amount_cents,
        discount_percent=checkout.discount_percent,
    )


@router.post("/provider/leads/{lead_id}/reject", response_model=LeadOut)
async def reject_lead_route(
    lead_id: int,
    payload: LeadRejectRequest,
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    lead = await reject_lead(
        db,
        lead_id=lead_id,
        provider_id=current_user.user_id,
        reason=payload.reason,
        reason_other=payload.reason_other,
    )
    await db.commit()
    return lead_to_out(lead)


@router.post("/provider/work-orders/{work_order_id}/complete", response_model=WorkOrderOut)
async def complete_work_order_route(
    work_order_id: int,
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    work_order = await complete_work_order(db, work_order_id=work_order_id, provider_id=current_user.user_id)
    return work_order_to_out(work_order)
