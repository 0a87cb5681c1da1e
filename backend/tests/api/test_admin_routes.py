from __future__ import annotations

import pytest

from conftest import add_provider, add_request, add_user, auth_header

ADMIN = auth_header(1, "ADMIN")


async def _request_with_providers(session_factory, providers=3, status="REQUEST_CREATED"):
    async with session_factory() as db:
        customer = await add_user(db)
        businesses = [await add_provider(db, rating=4.9 - i * 0.4) for i in range(providers)]
        request = await add_request(db, customer, status=status)
        await db.commit()
        return request.id, [b.owner_id for b in businesses]


@pytest.mark.asyncio
async def test_admin_assign_providers(api_client, session_factory):
    sr_id, owners = await _request_with_providers(session_factory)

    resp = await api_client.post(f"/api/v1/admin/service-requests/{sr_id}/assign-providers", headers=ADMIN)

    assert resp.status_code == 200
    body = resp.json()
    assert body["primary_provider_id"] == owners[0]
    assert body["alternative_provider_ids"] == owners[1:]
    assert body["no_provider_available"] is False

    # Re-running replaces the open assignment instead of failing.
    again = await api_client.post(f"/api/v1/admin/service-requests/{sr_id}/assign-providers", headers=ADMIN)
    assert again.status_code == 200
    assert again.json()["primary_provider_id"] == owners[0]


@pytest.mark.asyncio
async def test_admin_assign_refused_once_work_started(api_client, session_factory):
    sr_id, _ = await _request_with_providers(session_factory, status="IN_PROGRESS")

    resp = await api_client.post(f"/api/v1/admin/service-requests/{sr_id}/assign-providers", headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["code"] == "precondition_failed"


@pytest.mark.asyncio
async def test_admin_routes_reject_other_roles(api_client, session_factory):
    sr_id, owners = await _request_with_providers(session_factory, providers=1)
    url = f"/api/v1/admin/service-requests/{sr_id}/assign-providers"

    assert (await api_client.post(url)).status_code == 401
    assert (await api_client.post(url, headers=auth_header(owners[0], "PROVIDER"))).status_code == 403
    assert (await api_client.get("/api/v1/admin/notifications/failed", headers=auth_header(5, "CUSTOMER"))).status_code == 403


@pytest.mark.asyncio
async def test_admin_fallback_promotes_next_alternative(api_client, session_factory):
    sr_id, owners = await _request_with_providers(session_factory)
    await api_client.post(f"/api/v1/admin/service-requests/{sr_id}/assign-providers", headers=ADMIN)

    resp = await api_client.post(f"/api/v1/admin/service-requests/{sr_id}/fallback", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["promoted_provider_id"] == owners[1]

    unknown = await api_client.post("/api/v1/admin/service-requests/999999/fallback", headers=ADMIN)
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_admin_lists_and_retries_failed_notifications(api_client, session_factory, email_outbox):
    from leadflow.services.notifications import send_notification

    email_outbox.side_effect = RuntimeError("smtp down")
    async with session_factory() as db:
        failed = await send_notification(
            db,
            recipient_email="lost@test.local",
            notification_type="work_completed",
            template_data={"project_title": "Patio"},
        )

    listing = await api_client.get("/api/v1/admin/notifications/failed", headers=ADMIN)
    assert listing.status_code == 200
    items = listing.json()["items"]
    assert [item["id"] for item in items] == [failed.audit_id]
    assert items[0]["status"] == "failed"
    assert items[0]["error_message"] == "smtp down"

    email_outbox.side_effect = None
    retried = await api_client.post(f"/api/v1/admin/notifications/{failed.audit_id}/retry", headers=ADMIN)
    assert retried.status_code == 200
    assert retried.json()["status"] == "sent"

    twice = await api_client.post(f"/api/v1/admin/notifications/{failed.audit_id}/retry", headers=ADMIN)
    assert twice.status_code == 400


@pytest.mark.asyncio
async def test_admin_payout_retry_requires_approved_work(api_client, session_factory):
    from leadflow.models.marketplace import Proposal
    from leadflow.services.lead_lifecycle import create_lead

    async with session_factory() as db:
        customer = await add_user(db)
        business = await add_provider(db)
        request = await add_request(db, customer, status="IN_PROGRESS")
        lead = await create_lead(db, service_request=request, business=business)
        proposal = Proposal(
            service_request_id=request.id,
            lead_id=lead.id,
            provider_id=business.owner_id,
            customer_id=customer.id,
            business_id=business.id,
            correlation_id=f"pending-{lead.id}",
            description="Repipe",
            price_cents=50000,
            status="ACCEPTED",
            payment_status="succeeded",
        )
        db.add(proposal)
        await db.commit()
        proposal_id = proposal.id

    resp = await api_client.post(f"/api/v1/admin/proposals/{proposal_id}/payout", headers=ADMIN)
    assert resp.status_code == 400
    assert "not been approved" in resp.json()["detail"]
