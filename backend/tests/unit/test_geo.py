import math

import numpy as np
import pytest

from app.core.entities import GeoPoint
from app.core.errors import ValidationError
from app.core.services.geo import (
    KM_PER_MILE,
    ProximitySearchEngine,
    bounding_box,
    haversine_many,
    haversine_miles,
    to_miles,
)
from app.models.store.inmemory_store import InMemoryLocationStore

CINCY = GeoPoint(39.1031, -84.5120)


def test_haversine_known_distance():
    # Cincinnati to Columbus, roughly 98 miles.
    d = haversine_miles(CINCY, GeoPoint(39.9612, -82.9988))
    assert 95 < d < 102


def test_vectorised_matches_scalar():
    lats, lngs = [39.2, 40.0, 39.1031], [-84.4, -83.0, -84.5120]
    vec = haversine_many(CINCY, lats, lngs)
    scalar = [haversine_miles(CINCY, GeoPoint(a, b)) for a, b in zip(lats, lngs)]
    assert np.allclose(vec, scalar)
    assert vec[2] == pytest.approx(0.0)


def test_bounding_box_widens_longitude_with_latitude():
    box = bounding_box(CINCY, 69.0)
    assert box.max_lat - box.min_lat == pytest.approx(2.0)
    expected = 1.0 / math.cos(math.radians(CINCY.lat))
    assert box.max_lng - CINCY.lng == pytest.approx(expected)


def test_bounding_box_near_pole_and_antimeridian():
    assert bounding_box(GeoPoint(89.9, 10.0), 50).min_lng == -180.0
    box = bounding_box(GeoPoint(0.0, 179.9), 50)
    assert (box.min_lng, box.max_lng) == (-180.0, 180.0)


def test_units():
    assert to_miles(1.60934, "km") == pytest.approx(1.0)
    assert to_miles(3, "MI") == 3
    with pytest.raises(ValidationError):
        to_miles(1, "ft")


def _store_with_ring(record_factory, n=30):
    store = InMemoryLocationStore()
    rows = []
    for i in range(n):
        ang = 2 * math.pi * i / n
        step = 0.001 * (i + 1)
        rows.append(record_factory(house=str(i), lat=CINCY.lat + step * math.sin(ang), lng=CINCY.lng + step * math.cos(ang)))
    store.upsert_batch(rows)
    return store


def test_results_within_radius_and_sorted(record_factory):
    engine = ProximitySearchEngine(_store_with_ring(record_factory))
    hits, total = engine.search(CINCY, radius_miles=1.0, limit=10)
    assert len(hits) <= 10
    distances = [h.distance_miles for h in hits]
    assert distances == sorted(distances)
    assert all(d <= 1.0 for d in distances)
    assert hits[0].distance_km == pytest.approx(hits[0].distance_miles * KM_PER_MILE)
    assert total >= len(hits)


def test_offset_pages_continue_order(record_factory):
    engine = ProximitySearchEngine(_store_with_ring(record_factory))
    first, _ = engine.search(CINCY, radius_miles=5.0, limit=5)
    second, _ = engine.search(CINCY, radius_miles=5.0, limit=5, offset=5)
    assert first[-1].distance_miles <= second[0].distance_miles


def test_exact_point_found_at_zero_distance(record_factory):
    store = InMemoryLocationStore()
    store.upsert_batch([record_factory(lat=CINCY.lat, lng=CINCY.lng)])
    hits, _ = ProximitySearchEngine(store).search(CINCY, to_miles(2, "km"))
    assert len(hits) == 1
    assert hits[0].distance_miles == pytest.approx(0.0, abs=1e-9)


def test_total_counts_every_record_in_radius(record_factory):
    store = InMemoryLocationStore()
    store.upsert_batch([
        record_factory(house=str(i), lat=CINCY.lat + i / 10000, lng=CINCY.lng - i / 10000) for i in range(100)
    ])
    hits, total = ProximitySearchEngine(store).search(CINCY, radius_miles=5.0, limit=5)
    assert total == 100
    assert [h.record.house_number for h in hits] == ["0", "1", "2", "3", "4"]


def test_total_excludes_bbox_corners(record_factory):
    store = InMemoryLocationStore()
    corner = bounding_box(CINCY, 1.0)
    store.upsert_batch([
        record_factory(house="in", lat=CINCY.lat, lng=CINCY.lng),
        record_factory(house="corner", lat=corner.max_lat - 1e-6, lng=corner.max_lng - 1e-6),
    ])
    hits, total = ProximitySearchEngine(store).search(CINCY, radius_miles=1.0)
    assert total == 1
    assert [h.record.house_number for h in hits] == ["in"]


def test_invalid_inputs(record_factory):
    engine = ProximitySearchEngine(InMemoryLocationStore())
    with pytest.raises(ValidationError):
        engine.search(CINCY, radius_miles=0)
    with pytest.raises(ValidationError):
        engine.search(GeoPoint(95.0, 0.0), radius_miles=1)


def test_within_radius():
    ok, d = ProximitySearchEngine.within_radius(CINCY, GeoPoint(39.1131, -84.5120), 1.0)
    assert ok and d == pytest.approx(0.69, abs=0.01)
    ok, _ = ProximitySearchEngine.within_radius(CINCY, GeoPoint(39.2031, -84.5120), 1.0)
    assert not ok
