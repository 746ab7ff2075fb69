from __future__ import annotations

from typing import List, Optional, Tuple

from app.core.entities import AddressMatch, GeoPoint, RecordQuery
from app.core.errors import ValidationError
from app.core.matching import phrase_score, plan_phrase, tokenize
from app.core.ports.store import ILocationStore
from app.core.services.geo import (
    ProximitySearchEngine,
    bounding_box,
    haversine_many,
    rank_by_distance,
    validate_point,
)
import logging

log = logging.getLogger("geo.search")


class AddressSearchService:
    """Token-AND search with field filters, and relevance-ranked phrase search.

    Both modes take an optional (center, radius) filter which the store applies
    exactly. Token mode then orders nearest first; phrase mode keeps score order
    and reports each hit's distance.
    """

    def __init__(
        self,
        store: ILocationStore,
        proximity: ProximitySearchEngine,
        default_limit: int = 50,
        max_limit: int = 500,
    ):
        self.store = store
        self.proximity = proximity
        self.default_limit = default_limit
        self.max_limit = max_limit

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            limit = self.default_limit
        return min(limit, self.max_limit)

    @staticmethod
    def _geo(center: Optional[GeoPoint], radius_miles: Optional[float]) -> Optional[GeoPoint]:
        if center is None and radius_miles is None:
            return None
        if center is None or radius_miles is None:
            raise ValidationError("lat, lng and radius must be given together")
        if radius_miles <= 0:
            raise ValidationError("radius must be positive")
        return validate_point(center.lat, center.lng)

    # ------------------------------------------------------
    # Token mode
    # ------------------------------------------------------
    def search(
        self,
        q: Optional[str] = None,
        street: Optional[str] = None,
        city: Optional[str] = None,
        sub_region: Optional[str] = None,
        postcode: Optional[str] = None,
        region: Optional[str] = None,
        center: Optional[GeoPoint] = None,
        radius_miles: Optional[float] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[AddressMatch], int]:
        """Every token must match at least one searchable field. Returns (page, total)."""
        limit = self.clamp_limit(limit)
        offset = max(offset, 0)
        center = self._geo(center, radius_miles)
        filters = dict(
            tokens=tuple(tokenize(q)),
            street=(street or "").strip() or None,
            city=(city or "").strip() or None,
            sub_region=(sub_region or "").strip() or None,
            postcode=(postcode or "").strip() or None,
            region=(region or "").strip().upper() or None,
        )

        if center is None:
            records, total = self.store.search(RecordQuery(limit=limit, offset=offset, **filters))
            log.info("🔎 Address search tokens=%s | total=%d", list(filters["tokens"]), total)
            return [AddressMatch(record=r) for r in records], total

        query = self.proximity.candidate_query(center, radius_miles, limit + offset, **filters)
        candidates, total = self.store.search(query)
        hits = rank_by_distance(center, candidates, radius_miles)
        log.info(
            "🔎 Address search tokens=%s within %.3fmi | candidates=%d | total=%d",
            list(filters["tokens"]), radius_miles, len(candidates), total,
        )
        page = hits[offset:offset + limit]
        return [AddressMatch(record=h.record, distance_miles=h.distance_miles) for h in page], total

    # ------------------------------------------------------
    # Phrase mode
    # ------------------------------------------------------
    def search_relevance(
        self,
        phrase: str,
        limit: Optional[int] = None,
        center: Optional[GeoPoint] = None,
        radius_miles: Optional[float] = None,
    ) -> Tuple[List[AddressMatch], int]:
        """Rank by phrase relevance, then city, street and house number.

        The store orders and counts by score, so ``total`` is every match and a
        page never skips a higher tier. Addresses on the phrase's street with a
        different house number follow all other matches.
        """
        plan = plan_phrase(phrase)
        if plan is None:
            raise ValidationError("q is required")
        limit = self.clamp_limit(limit)
        center = self._geo(center, radius_miles)

        if center is None:
            query = RecordQuery(phrase=plan, limit=limit)
        else:
            query = RecordQuery(
                phrase=plan,
                bbox=bounding_box(center, radius_miles),
                center=center,
                radius_miles=radius_miles,
                limit=limit,
            )
        records, total = self.store.search(query)
        log.info(
            "🔎 Phrase search %r | variants=%d | fallback=%d | total=%d",
            plan.variants[0], len(plan.variants), len(plan.fallback), total,
        )

        distances = [None] * len(records)
        if center is not None and records:
            miles = haversine_many(center, [r.latitude for r in records], [r.longitude for r in records])
            distances = [float(d) for d in miles]
        matches = [
            AddressMatch(record=r, score=phrase_score(r, plan), distance_miles=d)
            for r, d in zip(records, distances)
        ]
        return matches, total
