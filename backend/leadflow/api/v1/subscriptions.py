from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.auth import CurrentUser, require_roles
from leadflow.core.dependencies import get_db
from leadflow.models.marketplace import SubscriptionPlan
from leadflow.schemas.marketplace import (
    BillingCycle,
    MonthlyUsageOut,
    SubscriptionCheckoutOut,
    SubscriptionCheckoutRequest,
    SubscriptionOut,
    SubscriptionPlanListResponse,
    SubscriptionPlanOut,
)
from leadflow.services.proposals import cents_to_dollars
from leadflow.services.subscriptions import (
    SubscriptionOverview,
    cancel_subscription,
    get_subscription_overview,
    list_active_plans,
    start_subscription_checkout,
)

router = APIRouter()


def plan_to_out(plan: SubscriptionPlan) -> SubscriptionPlanOut:
    return SubscriptionPlanOut(
        id=plan.id,
        name=plan.name,
        tier=plan.tier,
        billing_cycle=plan.billing_cycle,
        price=cents_to_dollars(plan.price_cents),
        lead_discount_percent=int(plan.lead_discount_percent or 0),
        priority_boost_points=int(plan.priority_boost_points or 0),
        is_featured=bool(plan.is_featured),
        max_leads_per_month=plan.max_leads_per_month,
    )


def overview_to_out(overview: SubscriptionOverview) -> SubscriptionOut:
    limit = overview.benefits.max_leads_per_month
    usage = MonthlyUsageOut(
        leads_accepted=overview.leads_used_this_month,
        max_leads_per_month=limit,
        is_unlimited=limit is None,
    )
    subscription = overview.subscription
    if subscription is None:
        return SubscriptionOut(usage=usage)
    return SubscriptionOut(
        id=subscription.id,
        status=subscription.status,
        plan=plan_to_out(overview.plan) if overview.plan is not None else None,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancelled_at=subscription.cancelled_at,
        usage=usage,
    )


@router.get("/subscriptions/plans", response_model=SubscriptionPlanListResponse)
async def list_plans(
    billing_cycle: Optional[BillingCycle] = Query(None),
    current_user: CurrentUser = Depends(require_roles("PROVIDER", "ADMIN")),
    db: AsyncSession = Depends(get_db),
):
    plans = await list_active_plans(db, billing_cycle=billing_cycle.value if billing_cycle else None)
    return SubscriptionPlanListResponse(items=[plan_to_out(plan) for plan in plans])


@router.get("/subscriptions/me", response_model=SubscriptionOut)
async def my_subscription(
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    overview = await get_subscription_overview(db, current_user.user_id)
    await db.commit()
    return overview_to_out(overview)


@router.post("/subscriptions/checkout", response_model=SubscriptionCheckoutOut)
async def subscription_checkout(
    payload: SubscriptionCheckoutRequest,
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    """Returns the PaymentIntent to confirm; the webhook activates the plan."""
    checkout = await start_subscription_checkout(db, user_id=current_user.user_id, plan_id=payload.plan_id)
    return SubscriptionCheckoutOut(
        plan_id=checkout.plan_id,
        payment_intent_id=checkout.payment_intent_id,
        client_secret=checkout.client_secret,
        amount_cents=checkout.amount_cents,
    )


@router.post("/subscriptions/cancel", response_model=SubscriptionOut)
async def cancel_my_subscription(
    current_user: CurrentUser = Depends(require_roles("PROVIDER")),
    db: AsyncSession = Depends(get_db),
):
    await cancel_subscription(db, user_id=current_user.user_id)
    return overview_to_out(await get_subscription_overview(db, current_user.user_id))
