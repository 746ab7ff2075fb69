from __future__ import annotations

import gzip
import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.container import build_container
from app.core.entities import Dataset, LocationRecord
from app.db.config import Settings


class GeoJSON:
    """Builders for point-feature payloads."""

    @staticmethod
    def feature(lng, lat, **props):
        return {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [lng, lat]},
            "properties": props,
        }

    @staticmethod
    def collection(features) -> bytes:
        return json.dumps({"type": "FeatureCollection", "features": list(features)}).encode()

    @staticmethod
    def ndjson(features) -> bytes:
        return "\n".join(json.dumps(f) for f in features).encode() + b"\n"

    @staticmethod
    def write(path: Path, data: bytes, gz: bool = False) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(gzip.compress(data) if gz else data)
        return path

    @classmethod
    def sample_features(cls):
        return [
            cls.feature(-84.4460, 39.1520, number="2525", street="Oakley Ave", city="Cincinnati", postcode="45209"),
            cls.feature(-84.4470, 39.1530, number="2600", street="Landsbrook Dr", city="Cincinnati", postcode="45209"),
            cls.feature(-83.5190, 38.7920, number="10", street="Main St", city="West Union", postcode="45693"),
        ]


@pytest.fixture
def geojson():
    return GeoJSON


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        store_backend="memory",
        upload_dir=str(tmp_path / "uploads"),
        upload_workers=2,
        processing_workers=2,
        batch_size=2,
        field_synonyms_path=None,
        upload_spool_max_bytes=64,
    )


@pytest.fixture
def container(settings):
    c = build_container(settings)
    yield c
    c.shutdown(wait=True)


@pytest.fixture
def client(settings):
    from app.main import create_app

    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture
def actor_headers():
    return {"X-User-Id": "7"}


def make_dataset(file_path="", **overrides) -> Dataset:
    fields = dict(
        name="Adams County Addresses",
        region="OH",
        sub_region="Adams",
        file_type="geojson",
        file_path=str(file_path),
        file_size=0,
        uploaded_by=7,
    )
    fields.update(overrides)
    return Dataset(**fields)


def make_record(house="2525", street="Oakley Ave", city="Cincinnati", lat=39.152, lng=-84.446, **overrides):
    fields = dict(
        hash=f"{house}-{street}-{lat}-{lng}",
        house_number=house,
        street=street,
        unit="",
        city=city,
        sub_region="Hamilton",
        region="OH",
        postcode="45209",
        latitude=lat,
        longitude=lng,
    )
    fields.update(overrides)
    return LocationRecord(**fields)


@pytest.fixture
def dataset_factory():
    return make_dataset


@pytest.fixture
def record_factory():
    return make_record
