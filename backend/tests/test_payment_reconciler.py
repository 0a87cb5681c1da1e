"""
Payment event reconciliation: lead acceptance, proposal payment and
subscription activation, including redelivery and out-of-order events.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import add_plan, add_provider, add_request, add_user


def _event(purpose, event_type="succeeded", *, pi="pi_test", error=None, amount=None, event_id=None, **metadata):
    from leadflow.services.payment_reconciler import PaymentEvent

    metadata = {key: str(value) for key, value in metadata.items()}
    metadata["type"] = purpose
    return PaymentEvent(
        event_type=event_type,
        purpose=purpose,
        metadata=metadata,
        payment_intent_id=pi,
        amount_cents=amount,
        event_id=event_id,
        error_message=error,
    )


async def _assigned_lead(session_factory, *, providers=3, proposal_price_cents=15000):
    """Assign a fresh request and stage a proposal draft on its primary lead, as checkout does."""
    from leadflow.models.marketplace import Lead
    from leadflow.services.assignment import assign_providers_for_request
    from leadflow.services.lead_lifecycle import update_lead_metadata

    async with session_factory() as db:
        customer = await add_user(db, name="Casey", email="casey@test.local", phone="+14155550123")
        businesses = [await add_provider(db, rating=4.9 - i * 0.5) for i in range(providers)]
        request = await add_request(db, customer)
        await db.commit()
        result = await assign_providers_for_request(db, request.id)

        lead = await db.get(Lead, result.primary_lead_id)
        update_lead_metadata(
            lead,
            pendingProposal={"description": "Replace trap and supply lines", "price_cents": proposal_price_cents},
            paymentState="pending",
        )
        await db.commit()
    return request.id, result.primary_lead_id, [b.owner_id for b in businesses]


async def _count(session_factory, column, *criteria):
    async with session_factory() as db:
        return (await db.execute(select(func.count(column)).where(*criteria))).scalar_one()


# ── Lead acceptance ────────────────────────────────────────


@pytest.mark.asyncio
async def test_lead_payment_success_accepts_lead_and_creates_proposal(session_factory, email_outbox):
    from leadflow.models.marketplace import Lead, Proposal
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    sr_id, lead_id, owners = await _assigned_lead(session_factory)
    email_outbox.reset_mock()

    async with session_factory() as db:
        result = await reconcile_payment_event(db, _event("lead_acceptance", pi="pi_lead", leadId=lead_id))
    assert result == Handled("lead accepted")

    async with session_factory() as db:
        lead = await db.get(Lead, lead_id)
        assert lead.status == "accepted"
        assert lead.customer_phone == "+14155550123"
        assert lead.lead_metadata["paymentState"] == "succeeded"
        assert lead.lead_metadata["paidPaymentIntentId"] == "pi_lead"

        proposal = (await db.execute(select(Proposal).where(Proposal.lead_id == lead_id))).scalar_one()
        assert proposal.correlation_id == f"pending-{lead_id}"
        assert proposal.price_cents == 15000
        assert proposal.status == "SENT"
        assert proposal.provider_id == owners[0]
        assert proposal.service_request_id == sr_id
        assert lead.lead_metadata["proposalId"] == proposal.id

    recipients = [call.args[0]["to"] for call in email_outbox.await_args_list]
    assert len(recipients) == 3
    assert recipients.count("casey@test.local") == 2


@pytest.mark.asyncio
async def test_redelivered_lead_success_is_a_duplicate(session_factory, email_outbox):
    from leadflow.models.marketplace import Proposal
    from leadflow.services.payment_reconciler import reconcile_payment_event

    _, lead_id, _ = await _assigned_lead(session_factory)
    async with session_factory() as db:
        await reconcile_payment_event(db, _event("lead_acceptance", leadId=lead_id))
    email_outbox.reset_mock()

    async with session_factory() as db:
        again = await reconcile_payment_event(db, _event("lead_acceptance", leadId=lead_id))

    assert again.duplicate is True
    assert await _count(session_factory, Proposal.id, Proposal.lead_id == lead_id) == 1
    email_outbox.assert_not_awaited()


@pytest.mark.asyncio
async def test_proposal_draft_falls_back_to_event_metadata(session_factory):
    from leadflow.models.marketplace import Lead, Proposal
    from leadflow.services.payment_reconciler import reconcile_payment_event

    _, lead_id, _ = await _assigned_lead(session_factory)
    async with session_factory() as db:
        lead = await db.get(Lead, lead_id)
        lead.lead_metadata = {"serviceRequestId": lead.service_request_id}
        await db.commit()

        await reconcile_payment_event(
            db,
            _event(
                "lead_acceptance",
                leadId=lead_id,
                proposalDescription="Snake the drain",
                proposalPrice="89.50",
            ),
        )

    async with session_factory() as db:
        proposal = (await db.execute(select(Proposal).where(Proposal.lead_id == lead_id))).scalar_one()
        assert proposal.description == "Snake the drain"
        assert proposal.price_cents == 8950


@pytest.mark.asyncio
async def test_success_for_lead_whose_sibling_won_is_orphaned(session_factory):
    from leadflow.models.marketplace import AuditLog, Lead
    from leadflow.services.lead_lifecycle import accept_lead, create_lead
    from leadflow.services.payment_reconciler import FatalError, reconcile_payment_event

    async with session_factory() as db:
        customer = await add_user(db)
        first = await add_provider(db)
        second = await add_provider(db)
        request = await add_request(db, customer, status="LEAD_ASSIGNED")
        winner = await create_lead(db, service_request=request, business=first)
        loser = await create_lead(db, service_request=request, business=second)
        await db.commit()
        await accept_lead(db, lead_id=winner.id, provider_id=first.owner_id)
        await db.commit()
        loser_id = loser.id

    async with session_factory() as db:
        result = await reconcile_payment_event(
            db, _event("lead_acceptance", pi="pi_late", amount=2000, leadId=loser_id)
        )

    assert isinstance(result, FatalError)
    assert "accepted first" in result.reason
    async with session_factory() as db:
        assert (await db.get(Lead, loser_id)).status == "cancelled"
    assert await _count(session_factory, AuditLog.id, AuditLog.action == "LEAD_PAYMENT_ORPHANED") == 1


@pytest.mark.asyncio
async def test_success_event_without_lead_id_is_fatal(session_factory):
    from leadflow.services.payment_reconciler import FatalError, reconcile_payment_event

    async with session_factory() as db:
        result = await reconcile_payment_event(db, _event("lead_acceptance"))
        missing = await reconcile_payment_event(db, _event("lead_acceptance", leadId=999))

    assert isinstance(result, FatalError)
    assert missing == FatalError("lead 999 not found")


@pytest.mark.asyncio
async def test_lead_payment_failure_promotes_alternative_once(session_factory, email_outbox):
    from leadflow.models.marketplace import Lead
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    sr_id, lead_id, owners = await _assigned_lead(session_factory)
    email_outbox.reset_mock()
    failed = _event("lead_acceptance", "failed", pi="pi_declined", error="Card declined", leadId=lead_id)

    async with session_factory() as db:
        result = await reconcile_payment_event(db, failed)
    assert result == Handled("lead payment failure recorded")

    async with session_factory() as db:
        leads = (
            await db.execute(select(Lead).where(Lead.service_request_id == sr_id).order_by(Lead.id))
        ).scalars().all()
        assert [(lead.provider_id, lead.status) for lead in leads] == [
            (owners[0], "submitted"),
            (owners[1], "routed"),
        ]
        assert leads[0].lead_metadata["failedPaymentIntents"] == ["pi_declined"]
        assert leads[0].lead_metadata["paymentState"] == "failed"
    assert email_outbox.await_count == 3

    async with session_factory() as db:
        again = await reconcile_payment_event(db, failed)
    assert again.duplicate is True
    assert await _count(session_factory, Lead.id, Lead.service_request_id == sr_id) == 2


@pytest.mark.asyncio
async def test_canceled_intent_is_handled_like_a_failure(session_factory):
    from leadflow.models.marketplace import Lead
    from leadflow.services.payment_reconciler import reconcile_payment_event

    _, lead_id, _ = await _assigned_lead(session_factory)
    async with session_factory() as db:
        await reconcile_payment_event(db, _event("lead_acceptance", "canceled", pi="pi_gone", leadId=lead_id))
        lead = await db.get(Lead, lead_id)
        assert lead.lead_metadata["failedPaymentIntents"] == ["pi_gone"]


@pytest.mark.asyncio
async def test_second_failure_on_a_reused_intent_is_not_swallowed(session_factory):
    from leadflow.models.marketplace import Lead, NotificationAudit
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    sr_id, lead_id, owners = await _assigned_lead(session_factory)

    results = []
    for event_id in ("evt_a", "evt_b", "evt_b"):
        async with session_factory() as db:
            results.append(
                await reconcile_payment_event(
                    db, _event("lead_acceptance", "failed", pi="pi_reused", event_id=event_id, leadId=lead_id)
                )
            )

    assert results[0] == results[1] == Handled("lead payment failure recorded")
    assert results[2].duplicate is True

    async with session_factory() as db:
        lead = await db.get(Lead, lead_id)
        assert lead.lead_metadata["failedPaymentIntents"] == ["pi_reused"]
        assert lead.lead_metadata["failedPaymentEvents"] == ["evt_a", "evt_b"]
        routed = (
            await db.execute(select(Lead.provider_id).where(Lead.service_request_id == sr_id, Lead.status == "routed"))
        ).scalars().all()
        assert sorted(routed) == sorted(owners[1:])

    notices = await _count(
        session_factory,
        NotificationAudit.id,
        NotificationAudit.notification_type == "lead_payment_failed",
        NotificationAudit.user_id == owners[0],
    )
    assert notices == 2


@pytest.mark.asyncio
async def test_failure_after_acceptance_is_ignored(session_factory):
    from leadflow.models.marketplace import Lead
    from leadflow.services.payment_reconciler import reconcile_payment_event

    sr_id, lead_id, _ = await _assigned_lead(session_factory)
    async with session_factory() as db:
        await reconcile_payment_event(db, _event("lead_acceptance", pi="pi_ok", leadId=lead_id))
    async with session_factory() as db:
        late = await reconcile_payment_event(db, _event("lead_acceptance", "failed", pi="pi_old", leadId=lead_id))

    assert "failure ignored" in late.detail
    assert await _count(session_factory, Lead.id, Lead.service_request_id == sr_id) == 1


# ── Proposal payment ───────────────────────────────────────


async def _paid_lead_with_proposal(session_factory, price_cents=15000):
    from leadflow.models.marketplace import Proposal
    from leadflow.services.payment_reconciler import reconcile_payment_event

    sr_id, lead_id, owners = await _assigned_lead(session_factory, proposal_price_cents=price_cents)
    async with session_factory() as db:
        await reconcile_payment_event(db, _event("lead_acceptance", pi="pi_lead", leadId=lead_id))
        proposal = (await db.execute(select(Proposal).where(Proposal.lead_id == lead_id))).scalar_one()
    return sr_id, proposal.id, owners


@pytest.mark.asyncio
async def test_proposal_payment_creates_work_order_and_split(session_factory, email_outbox):
    from leadflow.models.marketplace import Proposal, ServiceRequest, WorkOrder
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    sr_id, proposal_id, owners = await _paid_lead_with_proposal(session_factory)
    email_outbox.reset_mock()

    async with session_factory() as db:
        result = await reconcile_payment_event(db, _event("proposal", pi="pi_job", proposalId=proposal_id))
    assert result == Handled("proposal paid")

    async with session_factory() as db:
        proposal = await db.get(Proposal, proposal_id)
        assert proposal.status == "ACCEPTED"
        assert proposal.payment_status == "succeeded"
        assert proposal.stripe_payment_intent_id == "pi_job"
        assert (proposal.provider_payout_cents, proposal.platform_fee_cents) == (13500, 1500)
        assert proposal.payout_status == "pending"

        work_order = (await db.execute(select(WorkOrder).where(WorkOrder.proposal_id == proposal_id))).scalar_one()
        assert work_order.status == "IN_PROGRESS"
        assert work_order.provider_id == owners[0]
        assert (await db.get(ServiceRequest, sr_id)).status == "IN_PROGRESS"

    assert email_outbox.await_count == 2


@pytest.mark.asyncio
async def test_proposal_success_redelivery_creates_no_second_work_order(session_factory):
    from leadflow.models.marketplace import WorkOrder
    from leadflow.services.payment_reconciler import reconcile_payment_event

    _, proposal_id, _ = await _paid_lead_with_proposal(session_factory)
    for _ in range(2):
        async with session_factory() as db:
            last = await reconcile_payment_event(db, _event("proposal", pi="pi_job", proposalId=proposal_id))

    assert last.duplicate is True
    assert await _count(session_factory, WorkOrder.id, WorkOrder.proposal_id == proposal_id) == 1


@pytest.mark.asyncio
async def test_late_proposal_failure_never_overrides_success(session_factory, email_outbox):
    from leadflow.models.marketplace import Proposal
    from leadflow.services.payment_reconciler import reconcile_payment_event

    _, proposal_id, _ = await _paid_lead_with_proposal(session_factory)
    async with session_factory() as db:
        await reconcile_payment_event(db, _event("proposal", pi="pi_job", proposalId=proposal_id))
    email_outbox.reset_mock()

    async with session_factory() as db:
        late = await reconcile_payment_event(db, _event("proposal", "failed", pi="pi_retry", proposalId=proposal_id))
        assert late.duplicate is True
        assert (await db.get(Proposal, proposal_id)).payment_status == "succeeded"
    email_outbox.assert_not_awaited()


@pytest.mark.asyncio
async def test_proposal_failure_is_recorded_once_per_intent(session_factory, email_outbox):
    from leadflow.models.marketplace import Proposal
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    _, proposal_id, _ = await _paid_lead_with_proposal(session_factory)
    email_outbox.reset_mock()
    failed = _event("proposal", "failed", pi="pi_nsf", error="Insufficient funds", proposalId=proposal_id)

    async with session_factory() as db:
        first = await reconcile_payment_event(db, failed)
        second = await reconcile_payment_event(db, failed)
        proposal = await db.get(Proposal, proposal_id)
        assert proposal.payment_status == "failed"
        assert proposal.status == "SENT"

    assert first == Handled("proposal payment failure recorded")
    assert second.duplicate is True
    payload = email_outbox.await_args.args[0]
    assert payload["to"] == "casey@test.local"
    assert "Insufficient funds" in payload["body_text"]


@pytest.mark.asyncio
async def test_payment_after_proposal_rejection_is_kept_on_record(session_factory, email_outbox):
    from leadflow.models.marketplace import AuditLog, Proposal, WorkOrder
    from leadflow.services.payment_reconciler import FatalError, reconcile_payment_event
    from leadflow.services.proposals import reject_proposal

    _, proposal_id, _ = await _paid_lead_with_proposal(session_factory)
    async with session_factory() as db:
        proposal = await db.get(Proposal, proposal_id)
        proposal.payment_status = "pending"
        await db.commit()
        await reject_proposal(db, proposal_id=proposal_id, customer_id=proposal.customer_id, reason="TOO_EXPENSIVE")
    email_outbox.reset_mock()

    succeeded = _event("proposal", pi="pi_late", proposalId=proposal_id)
    async with session_factory() as db:
        first = await reconcile_payment_event(db, succeeded)
    async with session_factory() as db:
        again = await reconcile_payment_event(db, succeeded)

    assert isinstance(first, FatalError)
    assert "was rejected" in first.reason
    assert again.duplicate is True

    async with session_factory() as db:
        proposal = await db.get(Proposal, proposal_id)
        assert proposal.status == "REJECTED"
        assert proposal.payment_status == "succeeded"
        assert proposal.stripe_payment_intent_id == "pi_late"
        assert proposal.payout_status is None
    assert await _count(session_factory, AuditLog.id, AuditLog.action == "PROPOSAL_PAYMENT_ORPHANED") == 1
    assert await _count(session_factory, WorkOrder.id, WorkOrder.proposal_id == proposal_id) == 0
    email_outbox.assert_not_awaited()


@pytest.mark.asyncio
async def test_completed_payout_is_not_recomputed_by_redelivery(session_factory, monkeypatch):
    from leadflow.core.config import get_settings
    from leadflow.models.marketplace import Proposal, WorkOrder
    from leadflow.services.payment_reconciler import reconcile_payment_event
    from leadflow.services.proposals import approve_work, complete_work_order
    from leadflow.services.payouts import apply_payout_split

    _, proposal_id, owners = await _paid_lead_with_proposal(session_factory)
    paid = _event("proposal", pi="pi_job", proposalId=proposal_id)
    async with session_factory() as db:
        await reconcile_payment_event(db, paid)
        work_order = (await db.execute(select(WorkOrder).where(WorkOrder.proposal_id == proposal_id))).scalar_one()
        customer_id = work_order.customer_id
        await complete_work_order(db, work_order_id=work_order.id, provider_id=owners[0])
        proposal = await approve_work(db, work_order_id=work_order.id, customer_id=customer_id)
        assert proposal.payout_status == "completed"
        assert (proposal.provider_payout_cents, proposal.platform_fee_cents) == (13500, 1500)

    monkeypatch.setenv("PLATFORM_FEE_PERCENTAGE", "0.25")
    get_settings.cache_clear()
    async with session_factory() as db:
        replay = await reconcile_payment_event(db, paid)
    assert replay.duplicate is True

    async with session_factory() as db:
        proposal = await db.get(Proposal, proposal_id)
        assert proposal.payout_status == "completed"
        assert (proposal.provider_payout_cents, proposal.platform_fee_cents) == (13500, 1500)

    async with session_factory() as db:
        assert apply_payout_split(await db.get(Proposal, proposal_id)) is False


# ── Subscriptions ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_subscription_payment_activates_once(session_factory, email_outbox):
    from leadflow.models.marketplace import UserSubscription
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    async with session_factory() as db:
        provider = await add_user(db, role="PROVIDER", email="pro@test.local")
        plan = await add_plan(db, tier="PREMIUM", lead_discount_percent=20)
        await db.commit()
        event = _event("subscription", pi="pi_sub", userId=provider.id, planId=plan.id)

        first = await reconcile_payment_event(db, event)
        second = await reconcile_payment_event(db, event)

        subscription = (
            await db.execute(select(UserSubscription).where(UserSubscription.user_id == provider.id))
        ).scalar_one()
        assert subscription.status == "ACTIVE"
        assert subscription.last_payment_intent_id == "pi_sub"

    assert first == Handled("subscription activated")
    assert second.duplicate is True
    assert [call.args[0]["to"] for call in email_outbox.await_args_list] == ["pro@test.local"]


@pytest.mark.asyncio
async def test_subscription_failure_notifies_user(session_factory, email_outbox):
    from leadflow.models.marketplace import AuditLog
    from leadflow.services.payment_reconciler import reconcile_payment_event

    async with session_factory() as db:
        provider = await add_user(db, role="PROVIDER")
        await db.commit()
        await reconcile_payment_event(db, _event("subscription", "failed", userId=provider.id, planId=1))

    assert await _count(session_factory, AuditLog.id, AuditLog.action == "SUBSCRIPTION_PAYMENT_FAILED") == 1
    assert email_outbox.await_count == 1


# ── Dispatch ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unknown_purpose_is_ignored(session_factory):
    from leadflow.services.payment_reconciler import Handled, reconcile_payment_event

    async with session_factory() as db:
        assert await reconcile_payment_event(db, _event("gift_card")) == Handled("ignored")
        assert await reconcile_payment_event(db, _event(None)) == Handled("ignored")


@pytest.mark.asyncio
async def test_storage_error_is_retryable(session_factory, monkeypatch):
    from leadflow.services import payment_reconciler
    from leadflow.services.payment_reconciler import RetryableError, reconcile_payment_event

    async def _locked(db, event):
        raise OperationalError("UPDATE leads", {}, Exception("database is locked"))

    monkeypatch.setitem(payment_reconciler._HANDLERS, ("lead_acceptance", "succeeded"), _locked)

    async with session_factory() as db:
        result = await reconcile_payment_event(db, _event("lead_acceptance", leadId=1))
    assert result == RetryableError("storage error: OperationalError")


def test_payment_event_from_stripe_maps_failure():
    from leadflow.services.payment_reconciler import payment_event_from_stripe

    event = {
        "id": "evt_1",
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "id": "pi_9",
                "amount": 2000,
                "metadata": {"type": "lead_acceptance", "leadId": "17"},
                "last_payment_error": {"message": "Your card was declined."},
            }
        },
    }
    mapped = payment_event_from_stripe(event)

    assert mapped.event_type == "failed"
    assert mapped.purpose == "lead_acceptance"
    assert mapped.metadata["leadId"] == "17"
    assert mapped.payment_intent_id == "pi_9"
    assert mapped.amount_cents == 2000
    assert mapped.event_id == "evt_1"
    assert mapped.error_message == "Your card was declined."


def test_payment_event_from_stripe_ignores_other_types():
    from leadflow.services.payment_reconciler import payment_event_from_stripe

    assert payment_event_from_stripe({"type": "charge.refunded", "data": {"object": {}}}) is None
