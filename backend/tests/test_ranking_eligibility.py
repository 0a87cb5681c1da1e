from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import add_plan, add_provider, add_request, add_user, subscribe


def _candidate(business_id, *, rating=0.0, rating_count=0, is_featured=False, boost=0, plan_featured=False):
    from leadflow.services.eligibility import Candidate
    from leadflow.services.subscriptions import SubscriptionBenefits

    business = SimpleNamespace(
        id=business_id,
        rating=rating,
        rating_count=rating_count,
        is_featured=is_featured,
    )
    owner = SimpleNamespace(id=business_id * 10)
    benefits = SubscriptionBenefits(
        has_active_subscription=bool(boost or plan_featured),
        priority_boost_points=boost,
        is_featured=plan_featured,
    )
    return Candidate(business=business, owner=owner, benefits=benefits)


def test_score_combines_rating_volume_boost_and_featured():
    from leadflow.services.ranking import score_candidate

    candidate = _candidate(1, rating=4.5, rating_count=50, is_featured=True, boost=5)
    # 45 (rating) + 5 (volume) + 5 (boost) + 15 (featured)
    assert score_candidate(candidate, featured_weight=15.0) == pytest.approx(70.0)


def test_rating_count_bonus_is_capped():
    from leadflow.services.ranking import score_candidate

    busy = _candidate(1, rating=0, rating_count=10_000)
    assert score_candidate(busy, featured_weight=15.0) == pytest.approx(20.0)


def test_rank_orders_by_score_then_rating_count_then_business_id():
    from leadflow.services.ranking import rank_candidates

    low = _candidate(1, rating=3.0)
    high = _candidate(2, rating=4.8)
    tie_boosted = _candidate(3, rating=4.0, rating_count=0, boost=1)
    tie_reviewed = _candidate(4, rating=4.0, rating_count=10)
    tie_same_a = _candidate(6, rating=2.0)
    tie_same_b = _candidate(5, rating=2.0)

    ranked = rank_candidates(
        [low, tie_reviewed, tie_same_a, high, tie_boosted, tie_same_b],
        featured_weight=15.0,
    )
    ids = [c.business.id for c in ranked]
    # Candidates 3 and 4 both score 41; 4 has more ratings.
    assert ids == [2, 4, 3, 1, 5, 6]


def test_plan_featured_flag_counts_like_business_featured():
    from leadflow.services.ranking import rank_candidates

    plain = _candidate(1, rating=4.0)
    featured_by_plan = _candidate(2, rating=3.0, plan_featured=True)
    ranked = rank_candidates([plain, featured_by_plan], featured_weight=15.0)
    assert [c.business.id for c in ranked] == [2, 1]


def test_rank_empty_is_empty():
    from leadflow.services.ranking import rank_candidates

    assert rank_candidates([]) == []


@pytest.mark.asyncio
async def test_eligibility_by_zip_filters_category_activity_and_self(session_factory):
    from leadflow.services.eligibility import resolve_eligible_providers

    async with session_factory() as db:
        customer = await add_user(db)
        match = await add_provider(db, category="plumbing", zip_code="94103")
        await add_provider(db, category="electrical", zip_code="94103")
        await add_provider(db, category="plumbing", zip_code="10001")
        await add_provider(db, category="plumbing", zip_code="94103", is_active=False)
        request = await add_request(db, customer, category="plumbing", zip_code="94103")
        await db.commit()

        candidates = await resolve_eligible_providers(db, request)
        assert [c.business_id for c in candidates] == [match.id]
        assert candidates[0].distance_miles is None


@pytest.mark.asyncio
async def test_eligibility_by_radius_uses_distance_and_skips_ungeocoded(session_factory):
    from leadflow.services.eligibility import resolve_eligible_providers

    async with session_factory() as db:
        customer = await add_user(db)
        near = await add_provider(db, zip_code="94110", latitude=37.75, longitude=-122.41)
        # Inside the bounding box corner but outside the circle.
        corner = await add_provider(db, zip_code="94000", latitude=37.77 + 0.135, longitude=-122.42 + 0.17)
        await add_provider(db, zip_code="94103", latitude=None, longitude=None)
        await add_provider(db, zip_code="90001", latitude=34.05, longitude=-118.24)
        request = await add_request(db, customer, latitude=37.77, longitude=-122.42, radius_miles=10)
        await db.commit()

        candidates = await resolve_eligible_providers(db, request)
        ids = [c.business_id for c in candidates]
        assert ids == [near.id]
        assert corner.id not in ids
        assert candidates[0].distance_miles < 10


@pytest.mark.asyncio
async def test_eligibility_one_business_per_owner(session_factory):
    from leadflow.models.marketplace import Business
    from leadflow.services.eligibility import resolve_eligible_providers

    async with session_factory() as db:
        customer = await add_user(db)
        first = await add_provider(db)
        db.add(Business(owner_id=first.owner_id, name="Second shop", category="plumbing", zip_code="94103"))
        request = await add_request(db, customer)
        await db.commit()

        candidates = await resolve_eligible_providers(db, request)
        assert [c.business_id for c in candidates] == [first.id]


@pytest.mark.asyncio
async def test_eligibility_attaches_subscription_benefits(session_factory):
    from leadflow.services.eligibility import resolve_eligible_providers

    async with session_factory() as db:
        customer = await add_user(db)
        subscribed = await add_provider(db)
        free = await add_provider(db)
        plan = await add_plan(db, priority_boost_points=7, is_featured=True)
        await subscribe(db, subscribed.owner_id, plan)
        request = await add_request(db, customer)
        await db.commit()

        by_id = {c.business_id: c for c in await resolve_eligible_providers(db, request)}
        assert by_id[subscribed.id].benefits.priority_boost_points == 7
        assert by_id[subscribed.id].benefits.is_featured is True
        assert by_id[free.id].benefits.has_active_subscription is False


@pytest.mark.asyncio
async def test_no_eligible_providers_is_empty_list(session_factory):
    from leadflow.services.eligibility import resolve_eligible_providers

    async with session_factory() as db:
        customer = await add_user(db)
        request = await add_request(db, customer, category="roofing")
        await db.commit()
        assert await resolve_eligible_providers(db, request) == []
