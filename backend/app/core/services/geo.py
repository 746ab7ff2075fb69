from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import numpy as np

from app.core.entities import BoundingBox, GeoPoint, LocationRecord, ProximityHit, RecordQuery
from app.core.errors import ValidationError
from app.core.ports.store import ILocationStore
import logging

log = logging.getLogger("geo.search.proximity")

MILES_PER_DEGREE = 69.0
EARTH_RADIUS_MILES = 3959.0
KM_PER_MILE = 1.60934
DEFAULT_OVERSAMPLE = 3

UNITS = ("mi", "km")


def to_miles(radius: float, unit: str = "mi") -> float:
    unit = (unit or "mi").lower()
    if unit not in UNITS:
        raise ValidationError(f"unit must be one of {', '.join(UNITS)}")
    return radius / KM_PER_MILE if unit == "km" else radius


def validate_point(lat: float, lng: float) -> GeoPoint:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError("coordinates must be finite numbers")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise ValidationError(f"longitude out of range: {lng}")
    return GeoPoint(lat=lat, lng=lng)


def haversine_miles(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points, in miles."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


def haversine_many(center: GeoPoint, lats: Sequence[float], lngs: Sequence[float]) -> np.ndarray:
    """Vectorised haversine from ``center`` to each (lat, lng), in miles."""
    lat1 = np.radians(center.lat)
    lat2 = np.radians(np.asarray(lats, dtype=float))
    dlat = lat2 - lat1
    dlng = np.radians(np.asarray(lngs, dtype=float) - center.lng)
    h = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * np.arcsin(np.minimum(1.0, np.sqrt(h)))


def bounding_box(center: GeoPoint, radius_miles: float) -> BoundingBox:
    """Coarse box enclosing the radius.

    Longitude delta is widened by 1/cos(lat); near the poles, or when the box
    would wrap the antimeridian, the full longitude range is used instead.
    """
    dlat = radius_miles / MILES_PER_DEGREE
    min_lat = max(-90.0, center.lat - dlat)
    max_lat = min(90.0, center.lat + dlat)

    cos_lat = math.cos(math.radians(center.lat))
    if cos_lat < 1e-6 or min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    dlng = radius_miles / (MILES_PER_DEGREE * cos_lat)
    min_lng, max_lng = center.lng - dlng, center.lng + dlng
    if dlng >= 180.0 or min_lng < -180.0 or max_lng > 180.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


def rank_by_distance(
    center: GeoPoint, records: Sequence[LocationRecord], radius_miles: float
) -> List[ProximityHit]:
    """Exact-distance filter followed by a stable nearest-first sort."""
    if not records:
        return []
    dist = haversine_many(center, [r.latitude for r in records], [r.longitude for r in records])
    order = np.argsort(dist, kind="stable")
    return [
        ProximityHit(record=records[i], distance_miles=float(dist[i]), distance_km=float(dist[i]) * KM_PER_MILE)
        for i in order
        if dist[i] <= radius_miles
    ]


class ProximitySearchEngine:
    """Bounding-box prefilter against the store, then exact haversine ranking."""

    def __init__(self, store: ILocationStore, oversample: int = DEFAULT_OVERSAMPLE):
        self.store = store
        self.oversample = max(1, oversample)

    def candidate_query(
        self, center: GeoPoint, radius_miles: float, wanted: int, **filters
    ) -> RecordQuery:
        """Nearest-first candidates within the radius; the store counts every row in it."""
        return RecordQuery(
            bbox=bounding_box(center, radius_miles),
            center=center,
            radius_miles=radius_miles,
            limit=wanted * self.oversample,
            **filters,
        )

    def search(
        self, center: GeoPoint, radius_miles: float, limit: int = 50, offset: int = 0
    ) -> Tuple[List[ProximityHit], int]:
        """Nearest records within ``radius_miles``. Returns (page, total within radius)."""
        if radius_miles <= 0:
            raise ValidationError("radius must be positive")
        center = validate_point(center.lat, center.lng)

        query = self.candidate_query(center, radius_miles, limit + offset)
        candidates, total = self.store.search(query)
        hits = rank_by_distance(center, candidates, radius_miles)
        log.info(
            "📍 Proximity (%.5f, %.5f) r=%.3fmi | candidates=%d | within=%d",
            center.lat, center.lng, radius_miles, len(candidates), total,
        )
        return hits[offset:offset + limit], total

    @staticmethod
    def within_radius(a: GeoPoint, b: GeoPoint, radius_miles: float) -> Tuple[bool, float]:
        distance = haversine_miles(a, b)
        return distance <= radius_miles, distance
