from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import BinaryIO, List, Optional, Tuple


class DatasetStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# States from which a dataset may be processed again.
REPROCESSABLE = frozenset({DatasetStatus.COMPLETED, DatasetStatus.FAILED})


@dataclass
class Dataset:
    name: str
    region: str
    sub_region: str
    file_type: str
    file_path: str
    file_size: int = 0
    record_count: int = 0
    status: DatasetStatus = DatasetStatus.PENDING
    error_message: Optional[str] = None
    uploaded_by: int = 0
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("uploaded_at", "processed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class LocationRecord:
    hash: str
    house_number: str
    street: str
    unit: str
    city: str
    sub_region: str
    region: str
    postcode: str
    latitude: float
    longitude: float
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def full_address(self) -> str:
        line1 = " ".join(p for p in (self.house_number, self.street) if p)
        tail = " ".join(p for p in (self.region, self.postcode) if p)
        return ", ".join(p for p in (line1, self.city, tail) if p)


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


@dataclass(frozen=True)
class PhrasePlan:
    """Normalized forms of one search phrase.

    ``variants`` are the phrase with street types and directionals swapped for
    their other forms, the phrase itself first. ``fallback`` holds the same
    variants with a leading house number dropped.
    """
    variants: Tuple[str, ...]
    fallback: Tuple[str, ...] = ()

    @property
    def terms(self) -> Tuple[str, ...]:
        return self.variants + self.fallback


@dataclass(frozen=True)
class RecordQuery:
    """Predicate plan handed to the backing store.

    Tokens are AND-ed; each token must appear in at least one searchable field,
    either as a substring or as one of its abbreviation forms. Field filters are
    case-insensitive substrings, except postcode and region which compare for
    equality. With ``phrase`` the normalized full address must contain one of
    its terms, and rows come back by phrase score, then city, street and house
    number. Otherwise ``center`` orders rows nearest first. ``radius_miles``
    keeps only rows within that great-circle distance of ``center``.
    """
    tokens: Tuple[str, ...] = ()
    phrase: Optional[PhrasePlan] = None
    street: Optional[str] = None
    city: Optional[str] = None
    sub_region: Optional[str] = None
    postcode: Optional[str] = None
    region: Optional[str] = None
    bbox: Optional[BoundingBox] = None
    center: Optional[GeoPoint] = None
    radius_miles: Optional[float] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass(frozen=True)
class ProximityHit:
    record: LocationRecord
    distance_miles: float
    distance_km: float


@dataclass(frozen=True)
class AddressMatch:
    record: LocationRecord
    score: Optional[int] = None
    distance_miles: Optional[float] = None


@dataclass
class DatasetStats:
    total_datasets: int = 0
    total_records: int = 0
    total_storage_size: int = 0
    region_breakdown: dict = field(default_factory=dict)
    status_breakdown: dict = field(default_factory=dict)


@dataclass(frozen=True)
class UploadMetadata:
    name: Optional[str]
    region: Optional[str]
    sub_region: Optional[str]


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    stream: BinaryIO


@dataclass
class FileResult:
    filename: str
    success: bool
    dataset: Optional[Dataset] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    results: List[FileResult]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def fail_count(self) -> int:
        return self.total - self.success_count

    @property
    def dataset_ids(self) -> List[int]:
        return [r.dataset.id for r in self.results if r.success and r.dataset is not None]


@dataclass(frozen=True)
class IngestReport:
    dataset_id: int
    status: DatasetStatus
    record_count: int = 0
    inserted: int = 0
    skipped_features: int = 0
    error: Optional[str] = None
