from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.models.marketplace import Business, ServiceRequest, User
from leadflow.services.geolocation import bounding_box, haversine_miles
from leadflow.services.subscriptions import FREE_TIER, SubscriptionBenefits, load_benefits_for_users

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    business: Business
    owner: User
    benefits: SubscriptionBenefits = FREE_TIER
    distance_miles: Optional[float] = None

    @property
    def business_id(self) -> int:
        return int(self.business.id)

    @property
    def provider_id(self) -> int:
        return int(self.owner.id)


def _uses_radius(service_request: ServiceRequest) -> bool:
    return bool(
        service_request.radius_miles
        and service_request.latitude is not None
        and service_request.longitude is not None
    )


async def resolve_eligible_providers(db: AsyncSession, service_request: ServiceRequest) -> list[Candidate]:
    """Active, owned businesses that serve the request's category and area.

    With a radius and known request coordinates the match is by great-circle
    distance (businesses without coordinates are left out until geocoded);
    otherwise it is by exact zip code. An empty list is a normal outcome.
    Result order is ascending business id; ranking happens elsewhere.
    """
    stmt = (
        select(Business, User)
        .join(User, User.id == Business.owner_id)
        .where(
            Business.is_active.is_(True),
            User.is_active.is_(True),
            User.role == "PROVIDER",
            Business.category == service_request.category,
            # Customers never receive their own request as a lead.
            Business.owner_id != service_request.customer_id,
        )
        .order_by(Business.id.asc())
    )
    if service_request.sub_category:
        stmt = stmt.where(
            or_(Business.sub_category.is_(None), Business.sub_category == service_request.sub_category)
        )

    by_radius = _uses_radius(service_request)
    if by_radius:
        box = bounding_box(service_request.latitude, service_request.longitude, service_request.radius_miles)
        stmt = stmt.where(
            Business.latitude.is_not(None),
            Business.longitude.is_not(None),
            Business.latitude.between(box.min_lat, box.max_lat),
            Business.longitude.between(box.min_lng, box.max_lng),
        )
    else:
        stmt = stmt.where(Business.zip_code == service_request.zip_code)

    rows = (await db.execute(stmt)).all()

    candidates: list[Candidate] = []
    seen_owners: set[int] = set()
    for business, owner in rows:
        # One lead per provider per request: keep the owner's first business only.
        if owner.id in seen_owners:
            continue
        distance = None
        if by_radius:
            distance = haversine_miles(
                service_request.latitude,
                service_request.longitude,
                business.latitude,
                business.longitude,
            )
            if distance > service_request.radius_miles:
                continue
        seen_owners.add(owner.id)
        candidates.append(Candidate(business=business, owner=owner, distance_miles=distance))

    if not candidates:
        logger.info(
            "No eligible providers for service_request=%s category=%s zip=%s",
            service_request.id,
            service_request.category,
            service_request.zip_code,
        )
        return []

    benefits = await load_benefits_for_users(db, (c.provider_id for c in candidates))
    return [replace(c, benefits=benefits.get(c.provider_id, FREE_TIER)) for c in candidates]
