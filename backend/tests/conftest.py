import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

_DB_DIR = tempfile.mkdtemp(prefix="leadflow-tests-")

# The engine is built when leadflow.core.dependencies is first imported, so the
# test database has to be configured before any leadflow import below.
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'leadflow.db'}")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("NOTIFICATION_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("ENABLE_RECURRING_JOBS", "false")
os.environ.setdefault("RATE_LIMIT_API_ENABLED", "false")

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from leadflow.core import dependencies  # noqa: E402
from leadflow.core.config import get_settings  # noqa: E402
from leadflow.models.marketplace import (  # noqa: E402
    Base,
    Business,
    ServiceRequest,
    SubscriptionPlan,
    User,
    UserSubscription,
)
from leadflow.utils.alerting import alert_tracker  # noqa: E402
from leadflow.utils.clock import now_utc  # noqa: E402
from leadflow.utils.rate_limit import rate_limiter  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance across tests.
    get_settings.cache_clear()
    rate_limiter.reset()
    alert_tracker.reset()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_engine():
    engine = dependencies.engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    # Pooled aiosqlite connections must not outlive the test's event loop.
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return dependencies.AsyncSessionLocal


@pytest.fixture(autouse=True)
def email_outbox(monkeypatch):
    """Every delivered payload lands here instead of an SMTP server."""
    sender = AsyncMock(return_value=None)
    monkeypatch.setattr("leadflow.services.notifications.deliver_email", sender)
    return sender


def make_token(user_id, role: str, *, secret: str = "test-jwt-secret") -> str:
    payload = {
        "sub": str(user_id),
        "email": f"user{user_id}@test.local",
        "app_metadata": {"role": role},
        "iat": int(datetime.now(timezone.utc).timestamp()),
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest_asyncio.fixture
async def api_client(db_engine):
    from leadflow.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ── Seed helpers ─────────────────────────────────────────────
# Each helper flushes so ids are available; callers commit.

_seq = itertools.count(1)


async def add_user(db, *, role="CUSTOMER", name=None, email=None, phone=None, is_active=True) -> User:
    n = next(_seq)
    user = User(
        role=role,
        name=name or f"{role.title()} {n}",
        email=email or f"{role.lower()}-{n}@test.local",
        phone=phone,
        is_active=is_active,
    )
    db.add(user)
    await db.flush()
    return user


async def add_provider(
    db,
    *,
    category="plumbing",
    zip_code="94103",
    rating=4.0,
    rating_count=10,
    latitude=None,
    longitude=None,
    is_featured=False,
    is_active=True,
    sub_category=None,
    stripe_account_id=None,
    name=None,
) -> Business:
    owner = await add_user(db, role="PROVIDER", name=name)
    business = Business(
        owner_id=owner.id,
        name=name or f"Business of {owner.name}",
        category=category,
        sub_category=sub_category,
        zip_code=zip_code,
        city="San Francisco",
        state="CA",
        latitude=latitude,
        longitude=longitude,
        rating=rating,
        rating_count=rating_count,
        is_featured=is_featured,
        is_active=is_active,
        stripe_account_id=stripe_account_id,
    )
    db.add(business)
    await db.flush()
    return business


async def add_request(
    db,
    customer: User,
    *,
    category="plumbing",
    zip_code="94103",
    latitude=None,
    longitude=None,
    radius_miles=None,
    status="REQUEST_CREATED",
    title="Leaky kitchen sink",
) -> ServiceRequest:
    service_request = ServiceRequest(
        customer_id=customer.id,
        category=category,
        title=title,
        description="Water under the sink every morning",
        zip_code=zip_code,
        city="San Francisco",
        state="CA",
        latitude=latitude,
        longitude=longitude,
        radius_miles=radius_miles,
        status=status,
    )
    db.add(service_request)
    await db.flush()
    return service_request


async def add_plan(
    db,
    *,
    tier="PRO",
    price_cents=4900,
    lead_discount_percent=0,
    priority_boost_points=0,
    is_featured=False,
    max_leads_per_month=None,
    billing_cycle="MONTHLY",
) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name=f"{tier.title()} plan",
        tier=tier,
        billing_cycle=billing_cycle,
        price_cents=price_cents,
        lead_discount_percent=lead_discount_percent,
        priority_boost_points=priority_boost_points,
        is_featured=is_featured,
        max_leads_per_month=max_leads_per_month,
    )
    db.add(plan)
    await db.flush()
    return plan


async def subscribe(db, user_id: int, plan: SubscriptionPlan, *, status="ACTIVE", days_left=20) -> UserSubscription:
    now = now_utc()
    subscription = UserSubscription(
        user_id=user_id,
        plan_id=plan.id,
        status=status,
        current_period_start=now - timedelta(days=5),
        current_period_end=now + timedelta(days=days_left),
    )
    db.add(subscription)
    await db.flush()
    return subscription
