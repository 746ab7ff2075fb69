from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from app.core.entities import AddressMatch, DatasetStatus, ProximityHit
from app.core.services.geo import KM_PER_MILE


class DatasetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    region: str
    sub_region: str
    file_type: str
    file_path: str
    file_size: int
    record_count: int
    status: DatasetStatus
    error_message: Optional[str] = None
    uploaded_by: int
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class DatasetListResponse(BaseModel):
    datasets: List[DatasetOut]
    total: int
    limit: int
    offset: int


class DatasetStatsResponse(BaseModel):
    total_datasets: int
    total_records: int
    total_storage_size: int
    region_breakdown: Dict[str, int] = Field(default_factory=dict)
    status_breakdown: Dict[str, int] = Field(default_factory=dict)


class UploadResponse(BaseModel):
    message: str
    dataset: DatasetOut


class FileResultOut(BaseModel):
    filename: str
    success: bool
    dataset: Optional[DatasetOut] = None
    error: Optional[str] = None


class BulkUploadResponse(BaseModel):
    message: str
    total: int
    success_count: int
    fail_count: int
    results: List[FileResultOut]


class ReprocessResponse(BaseModel):
    message: str
    dataset: DatasetOut


class DeleteResponse(BaseModel):
    message: str
    id: int


class AddressOut(BaseModel):
    id: Optional[int] = None
    hash: str
    house_number: str
    street: str
    unit: str
    city: str
    sub_region: str
    region: str
    postcode: str
    full_address: str
    latitude: float
    longitude: float
    score: Optional[int] = None
    distance_miles: Optional[float] = None
    distance_km: Optional[float] = None

    @classmethod
    def from_match(cls, match: AddressMatch) -> "AddressOut":
        r = match.record
        miles = match.distance_miles
        return cls(
            id=r.id, hash=r.hash, house_number=r.house_number, street=r.street, unit=r.unit,
            city=r.city, sub_region=r.sub_region, region=r.region, postcode=r.postcode,
            full_address=r.full_address, latitude=r.latitude, longitude=r.longitude,
            score=match.score,
            distance_miles=miles,
            distance_km=miles * KM_PER_MILE if miles is not None else None,
        )

    @classmethod
    def from_hit(cls, hit: ProximityHit) -> "AddressOut":
        out = cls.from_match(AddressMatch(record=hit.record, distance_miles=hit.distance_miles))
        out.distance_km = hit.distance_km
        return out


class AddressSearchResponse(BaseModel):
    addresses: List[AddressOut]
    count: int
    total: int
    limit: int
    offset: int = 0


class NearbyResponse(BaseModel):
    addresses: List[AddressOut]
    count: int
    total: int
    radius: float
    unit: str
    limit: int
    offset: int


class ProximityCheckResponse(BaseModel):
    within_radius: bool
    distance_miles: float
    distance_km: float
    radius: float
    unit: str


class HealthResponse(BaseModel):
    status: str
    store_backend: str
    records: Optional[int] = None
