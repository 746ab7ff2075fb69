from __future__ import annotations

import hashlib
import math
from typing import Mapping, Optional, Tuple

from app.core.entities import Dataset, LocationRecord
from app.core.errors import GeometryError
from app.core.services.field_mapping import FieldMapping


def point_coordinates(feature: Mapping) -> Tuple[float, float]:
    """Return (lat, lng) of a Point feature or raise GeometryError."""
    geometry = feature.get("geometry")
    if not isinstance(geometry, dict) or geometry.get("type") != "Point":
        raise GeometryError("not a point geometry")
    coords = geometry.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        raise GeometryError("point must have exactly two coordinates")
    if any(isinstance(c, bool) or not isinstance(c, (int, float)) for c in coords):
        raise GeometryError("coordinates must be numeric")
    lng, lat = float(coords[0]), float(coords[1])
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise GeometryError("coordinates must be finite")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise GeometryError("coordinates out of range")
    return lat, lng


def derive_hash(sub_region: str, house_number: str, street: str, lat: float, lng: float) -> str:
    key = f"{sub_region}_{house_number}_{street}_{lat:.6f}_{lng:.6f}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class FeatureExtractor:
    """Turns raw feature objects into LocationRecords for one dataset."""

    def __init__(self, mapping: Optional[FieldMapping] = None, region_width: int = 2):
        self.mapping = mapping or FieldMapping()
        self.region_width = region_width

    def extract(self, feature: Mapping, dataset: Dataset) -> Optional[LocationRecord]:
        """None for features that are skipped (non-point or no street address)."""
        try:
            lat, lng = point_coordinates(feature)
        except GeometryError:
            return None

        props = feature.get("properties")
        if not isinstance(props, dict):
            props = {}
        pick = self.mapping.resolve

        house_number = pick(props, "house_number")
        street = pick(props, "street")
        if not house_number and not street:
            return None

        sub_region = pick(props, "sub_region") or dataset.sub_region
        region = (pick(props, "region") or dataset.region)[: self.region_width].upper()
        record_hash = pick(props, "hash") or derive_hash(dataset.sub_region, house_number, street, lat, lng)

        return LocationRecord(
            hash=record_hash,
            house_number=house_number,
            street=street,
            unit=pick(props, "unit"),
            city=pick(props, "city"),
            sub_region=sub_region,
            region=region,
            postcode=pick(props, "postcode"),
            latitude=lat,
            longitude=lng,
        )
