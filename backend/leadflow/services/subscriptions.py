from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.models.marketplace import Lead, SubscriptionPlan, UserSubscription
from leadflow.schemas.marketplace import BillingCycle, LeadStatus, SubscriptionStatus
from leadflow.services.audit import create_audit_log
from leadflow.services.errors import NotFound, PreconditionFailed
from leadflow.services.stripe_gateway import create_payment_intent
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

SUBSCRIPTION_PAYMENT = "subscription"

BILLING_PERIOD_DAYS = {
    BillingCycle.MONTHLY.value: 30,
    BillingCycle.YEARLY.value: 365,
}

_LIVE_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value}


@dataclass(frozen=True)
class SubscriptionBenefits:
    has_active_subscription: bool = False
    tier: Optional[str] = None
    lead_discount_percent: int = 0
    priority_boost_points: int = 0
    is_featured: bool = False
    max_leads_per_month: Optional[int] = None
    # Status as observed after applying the period-end check.
    effective_status: Optional[str] = None


FREE_TIER = SubscriptionBenefits()


def _is_past(moment: Optional[datetime], now: datetime) -> bool:
    if moment is None:
        return False
    if (moment.tzinfo is None) != (now.tzinfo is None):
        moment = moment.replace(tzinfo=now.tzinfo)
    return moment < now


def derive_benefits(
    subscription: Optional[UserSubscription],
    plan: Optional[SubscriptionPlan],
    now: datetime,
) -> SubscriptionBenefits:
    """Pure read-time view of a subscription. ACTIVE is not trusted past its period end."""
    if subscription is None or plan is None:
        return FREE_TIER
    status = subscription.status
    if status in _LIVE_STATUSES and _is_past(subscription.current_period_end, now):
        status = SubscriptionStatus.EXPIRED.value
    if status not in _LIVE_STATUSES:
        return SubscriptionBenefits(effective_status=status)
    return SubscriptionBenefits(
        has_active_subscription=True,
        tier=plan.tier,
        lead_discount_percent=int(plan.lead_discount_percent or 0),
        priority_boost_points=int(plan.priority_boost_points or 0),
        is_featured=bool(plan.is_featured),
        max_leads_per_month=plan.max_leads_per_month,
        effective_status=status,
    )


async def load_benefits_for_users(db: AsyncSession, user_ids: Iterable[int]) -> dict[int, SubscriptionBenefits]:
    """Derived benefits for many users at once, without writing anything."""
    ids = sorted({int(uid) for uid in user_ids})
    if not ids:
        return {}
    rows = (
        await db.execute(
            select(UserSubscription, SubscriptionPlan)
            .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.plan_id)
            .where(UserSubscription.user_id.in_(ids))
        )
    ).all()
    now = now_utc()
    benefits = {uid: FREE_TIER for uid in ids}
    for subscription, plan in rows:
        benefits[subscription.user_id] = derive_benefits(subscription, plan, now)
    return benefits


async def get_subscription_benefits(db: AsyncSession, user_id: int) -> SubscriptionBenefits:
    """Benefits for quota and pricing decisions.

    An ACTIVE subscription whose period has ended is flipped to EXPIRED on the
    caller's transaction before the benefits are returned.
    """
    row = (
        await db.execute(
            select(UserSubscription, SubscriptionPlan)
            .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.plan_id)
            .where(UserSubscription.user_id == user_id)
        )
    ).first()
    if row is None:
        return FREE_TIER
    subscription, plan = row
    benefits = derive_benefits(subscription, plan, now_utc())
    if (
        subscription.status in _LIVE_STATUSES
        and benefits.effective_status == SubscriptionStatus.EXPIRED.value
    ):
        old_status = subscription.status
        subscription.status = SubscriptionStatus.EXPIRED.value
        create_audit_log(
            db,
            entity_type="user_subscription",
            entity_id=subscription.id,
            action="SUBSCRIPTION_EXPIRED",
            old_value={"status": old_status},
            new_value={"status": subscription.status},
            actor_type="SYSTEM",
        )
        logger.info("Subscription %s for user %s expired lazily", subscription.id, user_id)
    return benefits


def calculate_lead_cost(base_cost_cents: int, discount_percent: int = 0) -> int:
    """Discounted lead price in cents; never free once a discount applies."""
    base = int(base_cost_cents)
    pct = max(0, min(100, int(discount_percent or 0)))
    if pct == 0:
        return base
    discounted = Decimal(base) - Decimal(base) * Decimal(pct) / Decimal(100)
    return max(1, int(discounted.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def count_leads_accepted_this_month(db: AsyncSession, provider_id: int) -> int:
    now = now_utc()
    return int(
        (
            await db.execute(
                select(func.count(Lead.id)).where(
                    Lead.provider_id == provider_id,
                    Lead.status == LeadStatus.ACCEPTED.value,
                    Lead.accepted_at >= _month_start(now),
                )
            )
        ).scalar_one()
    )


async def ensure_lead_quota(db: AsyncSession, provider_id: int, benefits: SubscriptionBenefits) -> None:
    limit = benefits.max_leads_per_month
    if limit is None:
        return
    used = await count_leads_accepted_this_month(db, provider_id)
    if used >= int(limit):
        raise PreconditionFailed(
            f"Monthly lead limit reached ({used}/{limit}). Upgrade your plan to accept more leads."
        )


def period_end_for(billing_cycle: str, start: datetime) -> datetime:
    days = BILLING_PERIOD_DAYS.get((billing_cycle or "").upper(), BILLING_PERIOD_DAYS[BillingCycle.MONTHLY.value])
    return start + timedelta(days=days)


async def activate_subscription(
    db: AsyncSession,
    *,
    user_id: int,
    plan_id: int,
    payment_intent_id: Optional[str],
) -> tuple[UserSubscription, bool]:
    """Upsert the user's subscription for a successful charge.

    Returns ``(subscription, changed)``; ``changed`` is False when this charge
    was already applied.
    """
    plan = await db.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise NotFound(f"Subscription plan {plan_id} not found")

    subscription = (
        await db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
    ).scalar_one_or_none()
    if (
        subscription is not None
        and payment_intent_id
        and subscription.last_payment_intent_id == payment_intent_id
    ):
        return subscription, False

    now = now_utc()
    old_value = None
    if subscription is None:
        subscription = UserSubscription(user_id=user_id, plan_id=plan.id)
        db.add(subscription)
    else:
        old_value = {"status": subscription.status, "plan_id": subscription.plan_id}

    subscription.plan_id = plan.id
    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.current_period_start = now
    subscription.current_period_end = period_end_for(plan.billing_cycle, now)
    subscription.cancelled_at = None
    subscription.last_payment_intent_id = payment_intent_id
    await db.flush()

    create_audit_log(
        db,
        entity_type="user_subscription",
        entity_id=subscription.id,
        action="SUBSCRIPTION_ACTIVATED",
        old_value=old_value,
        new_value={"status": subscription.status, "plan_id": plan.id, "tier": plan.tier},
        actor_type="SYSTEM_STRIPE",
        metadata={"payment_intent_id": payment_intent_id},
    )
    return subscription, True


@dataclass(frozen=True)
class SubscriptionCheckout:
    plan_id: int
    payment_intent_id: str
    client_secret: Optional[str]
    amount_cents: int


@dataclass(frozen=True)
class SubscriptionOverview:
    subscription: Optional[UserSubscription]
    plan: Optional[SubscriptionPlan]
    benefits: SubscriptionBenefits
    leads_used_this_month: int


async def list_active_plans(db: AsyncSession, *, billing_cycle: Optional[str] = None) -> list[SubscriptionPlan]:
    stmt = select(SubscriptionPlan).where(SubscriptionPlan.is_active.is_(True))
    if billing_cycle:
        stmt = stmt.where(SubscriptionPlan.billing_cycle == billing_cycle.upper())
    stmt = stmt.order_by(SubscriptionPlan.price_cents.asc(), SubscriptionPlan.id.asc())
    return list((await db.execute(stmt)).scalars().all())


async def get_subscription_overview(db: AsyncSession, user_id: int) -> SubscriptionOverview:
    """Current subscription with its corrected status and this month's usage.

    Lazy expiry runs on the caller's transaction; the caller commits.
    """
    benefits = await get_subscription_benefits(db, user_id)
    row = (
        await db.execute(
            select(UserSubscription, SubscriptionPlan)
            .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.plan_id)
            .where(UserSubscription.user_id == user_id)
        )
    ).first()
    subscription, plan = row if row is not None else (None, None)
    return SubscriptionOverview(
        subscription=subscription,
        plan=plan,
        benefits=benefits,
        leads_used_this_month=await count_leads_accepted_this_month(db, user_id),
    )


async def start_subscription_checkout(db: AsyncSession, *, user_id: int, plan_id: int) -> SubscriptionCheckout:
    """Open a PaymentIntent for a plan. The subscription changes only when the charge succeeds."""
    plan = await db.get(SubscriptionPlan, plan_id)
    if plan is None or not plan.is_active:
        raise NotFound(f"Subscription plan {plan_id} not found")
    if int(plan.price_cents or 0) <= 0:
        raise PreconditionFailed("Free plans do not require payment")

    intent = await create_payment_intent(
        amount_cents=plan.price_cents,
        metadata={
            "type": SUBSCRIPTION_PAYMENT,
            "userId": str(user_id),
            "planId": str(plan.id),
            "planTier": plan.tier or "",
            "billingCycle": plan.billing_cycle or BillingCycle.MONTHLY.value,
        },
        description=f"Subscription payment for {plan.name}",
    )
    create_audit_log(
        db,
        entity_type="user",
        entity_id=user_id,
        action="SUBSCRIPTION_CHECKOUT_STARTED",
        old_value=None,
        new_value={"plan_id": plan.id, "amount_cents": plan.price_cents},
        actor_type="PROVIDER",
        actor_id=user_id,
        metadata={"payment_intent_id": intent.get("id")},
    )
    await db.commit()
    logger.info("Subscription checkout for user %s plan %s (intent=%s)", user_id, plan.id, intent.get("id"))
    return SubscriptionCheckout(
        plan_id=plan.id,
        payment_intent_id=intent.get("id"),
        client_secret=intent.get("client_secret"),
        amount_cents=plan.price_cents,
    )


async def cancel_subscription(db: AsyncSession, *, user_id: int) -> UserSubscription:
    """ACTIVE/TRIAL -> CANCELLED. An expired subscription cannot be cancelled."""
    await get_subscription_benefits(db, user_id)
    await db.flush()
    subscription = (
        await db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
    ).scalar_one_or_none()
    if subscription is None:
        raise NotFound("No active subscription found")

    old_status = subscription.status
    result = await db.execute(
        update(UserSubscription)
        .where(UserSubscription.id == subscription.id, UserSubscription.status.in_(sorted(_LIVE_STATUSES)))
        .values(status=SubscriptionStatus.CANCELLED.value, cancelled_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Keep the lazy expiry, if any, even though nothing was cancelled.
        await db.commit()
        raise NotFound("No active subscription found")
    await db.refresh(subscription)
    create_audit_log(
        db,
        entity_type="user_subscription",
        entity_id=subscription.id,
        action="SUBSCRIPTION_CANCELLED",
        old_value={"status": old_status},
        new_value={"status": subscription.status},
        actor_type="PROVIDER",
        actor_id=user_id,
    )
    await db.commit()
    logger.info("Subscription %s for user %s cancelled", subscription.id, user_id)
    return subscription
