# backend/app/router/search.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.entities import GeoPoint
from app.core.errors import ValidationError
from app.core.services.geo import KM_PER_MILE, to_miles, validate_point
from app.db.deps import get_container
from app.models.schemas import AddressOut, AddressSearchResponse, NearbyResponse, ProximityCheckResponse
from app.router.errors import to_http

import logging
logger = logging.getLogger("geo.api.search")

router = APIRouter(prefix="/api/v1", tags=["search"])


def _geo_filter(lat: Optional[float], lng: Optional[float], radius: Optional[float], unit: str):
    """(center, radius in miles) or (None, None) when no geo filter was given."""
    given = [v is not None for v in (lat, lng, radius)]
    if not any(given):
        return None, None
    if not all(given):
        raise ValidationError("lat, lng and radius must be given together")
    return validate_point(lat, lng), to_miles(radius, unit)


@router.get("/addresses", response_model=AddressSearchResponse)
def search_addresses(
    q: Optional[str] = None,
    street: Optional[str] = None,
    city: Optional[str] = None,
    sub_region: Optional[str] = None,
    postcode: Optional[str] = None,
    region: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: Optional[float] = None,
    unit: str = "km",
    limit: int = Query(50),
    offset: int = Query(0),
    container=Depends(get_container),
):
    """Token search: every word must match some address field. Optional field and radius filters."""
    try:
        center, radius_miles = _geo_filter(lat, lng, radius, unit)
        matches, total = container.search.search(
            q=q, street=street, city=city, sub_region=sub_region, postcode=postcode, region=region,
            center=center, radius_miles=radius_miles, limit=limit, offset=offset,
        )
    except Exception as e:
        raise to_http(e, "Address search")
    addresses = [AddressOut.from_match(m) for m in matches]
    return AddressSearchResponse(
        addresses=addresses,
        count=len(addresses),
        total=total,
        limit=container.search.clamp_limit(limit),
        offset=max(offset, 0),
    )


@router.get("/addresses/search", response_model=AddressSearchResponse)
def search_addresses_ranked(
    q: str = Query(..., min_length=1),
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: Optional[float] = None,
    unit: str = "km",
    limit: int = Query(50),
    container=Depends(get_container),
):
    """Phrase search ranked by relevance."""
    try:
        center, radius_miles = _geo_filter(lat, lng, radius, unit)
        matches, total = container.search.search_relevance(
            q, limit=limit, center=center, radius_miles=radius_miles
        )
    except Exception as e:
        raise to_http(e, "Ranked search")
    addresses = [AddressOut.from_match(m) for m in matches]
    return AddressSearchResponse(
        addresses=addresses, count=len(addresses), total=total, limit=container.search.clamp_limit(limit)
    )


@router.get("/addresses/nearby", response_model=NearbyResponse)
def nearby_addresses(
    lat: float,
    lng: float,
    radius: float = Query(1.0),
    unit: str = "km",
    limit: int = Query(50),
    offset: int = Query(0),
    container=Depends(get_container),
):
    try:
        limit = container.search.clamp_limit(limit)
        offset = max(offset, 0)
        hits, total = container.proximity.search(
            GeoPoint(lat=lat, lng=lng), to_miles(radius, unit), limit=limit, offset=offset
        )
    except Exception as e:
        raise to_http(e, "Nearby search")
    addresses = [AddressOut.from_hit(h) for h in hits]
    return NearbyResponse(
        addresses=addresses, count=len(addresses), total=total,
        radius=radius, unit=unit.lower(), limit=limit, offset=offset,
    )


@router.get("/proximity", response_model=ProximityCheckResponse)
def proximity_check(
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
    radius: float,
    unit: str = "km",
    container=Depends(get_container),
):
    """Is point 2 within ``radius`` of point 1."""
    try:
        a, b = validate_point(lat1, lng1), validate_point(lat2, lng2)
        within, miles = container.proximity.within_radius(a, b, to_miles(radius, unit))
    except Exception as e:
        raise to_http(e, "Proximity check")
    return ProximityCheckResponse(
        within_radius=within,
        distance_miles=miles,
        distance_km=miles * KM_PER_MILE,
        radius=radius,
        unit=unit.lower(),
    )
