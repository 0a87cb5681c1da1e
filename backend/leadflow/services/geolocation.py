"""Distance math and zip/address geocoding.

Geocoding prefers the Google Geocoding API when a key is configured and
falls back to Nominatim. Lookups never raise: any transport or payload
problem is logged and reported as ``None``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.models.marketplace import Business
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
MILES_PER_DEGREE_LAT = 69.0
GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    values = (lat1, lng1, lat2, lng2)
    if any(v is None or isinstance(v, bool) or not isinstance(v, (int, float)) or math.isnan(v) for v in values):
        return math.inf

    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(lat: float, lng: float, radius_miles: float) -> BoundingBox:
    lat_delta = radius_miles / MILES_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(lat))
    # Near the poles the longitude span blows up; clamp to the full range.
    lng_delta = 180.0 if abs(cos_lat) < 1e-6 else radius_miles / (MILES_PER_DEGREE_LAT * abs(cos_lat))
    return BoundingBox(
        min_lat=lat - lat_delta,
        max_lat=lat + lat_delta,
        min_lng=lng - lng_delta,
        max_lng=lng + lng_delta,
    )


def _clean_zip(zip_code: str) -> str:
    return "".join(ch for ch in (zip_code or "") if ch not in " -")


def _parse_coordinates(lat, lng) -> Optional[tuple[float, float]]:
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if math.isnan(lat_f) or math.isnan(lng_f):
        return None
    return lat_f, lng_f


async def _geocode_google(client: httpx.AsyncClient, zip_code: str, api_key: str) -> Optional[tuple[float, float]]:
    resp = await client.get(
        GOOGLE_GEOCODE_URL,
        params={
            "address": zip_code,
            "components": f"country:US|postal_code:{zip_code}",
            "key": api_key,
        },
    )
    resp.raise_for_status()
    data = resp.json()
    if data.get("status") != "OK" or not data.get("results"):
        logger.warning("Google geocoding returned status=%s for zip=%s", data.get("status"), zip_code)
        return None
    location = data["results"][0].get("geometry", {}).get("location", {})
    return _parse_coordinates(location.get("lat"), location.get("lng"))


async def _geocode_nominatim(client: httpx.AsyncClient, zip_code: str) -> Optional[tuple[float, float]]:
    settings = get_settings()
    resp = await client.get(
        settings.nominatim_url,
        params={"postalcode": zip_code, "country": "USA", "format": "json", "limit": 1},
        headers={"User-Agent": settings.geocoding_user_agent},
    )
    resp.raise_for_status()
    data = resp.json()
    if not data:
        return None
    return _parse_coordinates(data[0].get("lat"), data[0].get("lon"))


async def geocode_zip(zip_code: str, *, client: Optional[httpx.AsyncClient] = None) -> Optional[tuple[float, float]]:
    cleaned = _clean_zip(zip_code)
    if len(cleaned) < 5:
        logger.warning("Refusing to geocode malformed zip=%r", zip_code)
        return None

    settings = get_settings()
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=settings.geocoding_timeout_seconds)
    try:
        if settings.google_maps_api_key:
            try:
                coords = await _geocode_google(client, cleaned, settings.google_maps_api_key)
                if coords:
                    return coords
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Google geocoding failed for zip=%s: %s", cleaned, exc)
        try:
            return await _geocode_nominatim(client, cleaned)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Nominatim geocoding failed for zip=%s: %s", cleaned, exc)
            return None
    finally:
        if owns_client:
            await client.aclose()


async def geocode_pending_businesses(
    db: AsyncSession,
    *,
    batch_size: int = 25,
    client: Optional[httpx.AsyncClient] = None,
) -> int:
    """Fill in coordinates for active businesses that have none yet.

    Businesses whose lookup failed are stamped with ``geocode_failed_at`` so
    the next batch moves on instead of retrying the same rows forever.
    Returns the number of businesses that gained coordinates.
    """
    rows = (
        await db.execute(
            select(Business.id, Business.zip_code)
            .where(
                Business.is_active.is_(True),
                Business.latitude.is_(None),
                Business.geocode_failed_at.is_(None),
                Business.zip_code.is_not(None),
            )
            .order_by(Business.id.asc())
            .limit(int(max(1, batch_size)))
        )
    ).all()
    # Release the write lock while the lookups are in flight.
    await db.commit()

    lookups = [(business_id, await geocode_zip(zip_code, client=client)) for business_id, zip_code in rows]

    resolved = 0
    for business_id, coords in lookups:
        business = await db.get(Business, business_id)
        if business is None:
            continue
        if coords is None:
            business.geocode_failed_at = now_utc()
            continue
        business.latitude, business.longitude = coords
        business.geocoded_at = now_utc()
        resolved += 1

    if rows:
        logger.info("Geocode backfill: resolved=%s attempted=%s", resolved, len(rows))
    return resolved
