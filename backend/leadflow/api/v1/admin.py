from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.api.v1.service_requests import proposal_to_out
from leadflow.core.auth import CurrentUser, require_roles
from leadflow.core.dependencies import get_db
from leadflow.models.marketplace import NotificationAudit
from leadflow.schemas.marketplace import (
    AssignmentOut,
    FallbackOut,
    NotificationAuditListResponse,
    NotificationAuditOut,
    ProposalOut,
)
from leadflow.services.assignment import reassign_providers_for_request
from leadflow.services.fallback import run_fallback_for_request
from leadflow.services.notifications import list_failed_notifications, retry_failed_notification
from leadflow.services.proposals import retry_payout

router = APIRouter()


def notification_to_out(audit: NotificationAudit) -> NotificationAuditOut:
    return NotificationAuditOut(
        id=audit.id,
        user_id=audit.user_id,
        notification_type=audit.notification_type,
        recipient_email=audit.recipient_email,
        subject=audit.subject,
        status=audit.status,
        retry_count=audit.retry_count,
        max_retries=audit.max_retries,
        error_message=audit.error_message,
        created_at=audit.created_at,
    )


@router.post("/admin/service-requests/{service_request_id}/assign-providers", response_model=AssignmentOut)
async def assign_providers(
    service_request_id: int,
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    db: AsyncSession = Depends(get_db),
):
    """(Re)run provider assignment. Only while the request is REQUEST_CREATED or LEAD_ASSIGNED."""
    result = await reassign_providers_for_request(db, service_request_id, actor_id=current_user.id)
    return AssignmentOut(
        service_request_id=result.service_request_id,
        primary_lead_id=result.primary_lead_id,
        primary_provider_id=result.primary_provider_id,
        alternative_provider_ids=result.alternative_provider_ids,
        no_provider_available=result.no_provider_available,
    )


@router.post("/admin/service-requests/{service_request_id}/fallback", response_model=FallbackOut)
async def trigger_fallback(
    service_request_id: int,
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    db: AsyncSession = Depends(get_db),
):
    result = await run_fallback_for_request(db, service_request_id, reason="admin")
    return FallbackOut(
        service_request_id=service_request_id,
        promoted_lead_id=result.lead.id if result.lead is not None else None,
        promoted_provider_id=result.lead.provider_id if result.lead is not None else None,
    )


@router.get("/admin/notifications/failed", response_model=NotificationAuditListResponse)
async def failed_notifications(
    limit: int = Query(100, ge=1, le=500),
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    db: AsyncSession = Depends(get_db),
):
    audits = await list_failed_notifications(db, limit=limit)
    return NotificationAuditListResponse(items=[notification_to_out(audit) for audit in audits])


@router.post("/admin/notifications/{audit_id}/retry", response_model=NotificationAuditOut)
async def retry_notification(
    audit_id: int,
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    db: AsyncSession = Depends(get_db),
):
    await retry_failed_notification(db, audit_id)
    audit = await db.get(NotificationAudit, audit_id)
    return notification_to_out(audit)


@router.post("/admin/proposals/{proposal_id}/payout", response_model=ProposalOut)
async def retry_proposal_payout(
    proposal_id: int,
    current_user: CurrentUser = Depends(require_roles("ADMIN")),
    db: AsyncSession = Depends(get_db),
):
    proposal = await retry_payout(db, proposal_id=proposal_id, actor_id=current_user.id)
    return proposal_to_out(proposal)
