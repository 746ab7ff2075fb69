from __future__ import annotations
import itertools
import math
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from app.core.entities import Dataset, DatasetStats, DatasetStatus, LocationRecord, RecordQuery
from app.core.matching import address_sort_key, matches_query, phrase_score
from app.core.ports.datasets import IDatasetRepository
from app.core.ports.store import ILocationStore


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _approx_distance_key(query: RecordQuery):
    """Planar ordering used by the prefilter; exact ranking happens in the engine."""
    c = query.center
    k = math.cos(math.radians(c.lat))
    return lambda r: (r.latitude - c.lat) ** 2 + ((r.longitude - c.lng) * k) ** 2


class InMemoryLocationStore(ILocationStore):
    """Process-local store with the same predicate semantics as the Postgres adapter."""

    def __init__(self) -> None:
        self._by_hash: Dict[str, LocationRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def upsert_batch(self, records: Sequence[LocationRecord]) -> int:
        inserted = 0
        with self._lock:
            for rec in records:
                if rec.hash in self._by_hash:
                    continue
                self._by_hash[rec.hash] = replace(rec, id=next(self._ids), created_at=_now())
                inserted += 1
        return inserted

    def search(self, query: RecordQuery) -> Tuple[List[LocationRecord], int]:
        with self._lock:
            rows = [r for r in self._by_hash.values() if matches_query(r, query)]
        if query.phrase is not None:
            plan = query.phrase
            rows.sort(key=lambda r: (-phrase_score(r, plan), address_sort_key(r)))
        else:
            rows.sort(key=_approx_distance_key(query) if query.center is not None else address_sort_key)
        total = len(rows)
        start = max(query.offset, 0)
        end = None if query.limit is None else start + query.limit
        return rows[start:end], total

    def count(self) -> int:
        with self._lock:
            return len(self._by_hash)

    def __len__(self) -> int:
        return self.count()


class InMemoryDatasetRepository(IDatasetRepository):
    def __init__(self) -> None:
        self._rows: Dict[int, Dataset] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, dataset: Dataset) -> Dataset:
        with self._lock:
            row = replace(
                dataset,
                id=next(self._ids),
                status=DatasetStatus.PENDING,
                uploaded_at=dataset.uploaded_at or _now(),
            )
            self._rows[row.id] = row
            return replace(row)

    def get(self, dataset_id: int) -> Optional[Dataset]:
        with self._lock:
            row = self._rows.get(dataset_id)
            return replace(row) if row else None

    def list(
        self,
        region: Optional[str] = None,
        status: Optional[DatasetStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dataset], int]:
        with self._lock:
            rows = [
                replace(r) for r in self._rows.values()
                if (region is None or r.region == region) and (status is None or r.status == status)
            ]
        rows.sort(key=lambda r: (r.uploaded_at, r.id), reverse=True)
        return rows[offset:offset + limit], len(rows)

    def stats(self) -> DatasetStats:
        stats = DatasetStats()
        with self._lock:
            for r in self._rows.values():
                stats.total_datasets += 1
                stats.total_records += r.record_count
                stats.total_storage_size += r.file_size
                stats.region_breakdown[r.region] = stats.region_breakdown.get(r.region, 0) + 1
                key = r.status.value
                stats.status_breakdown[key] = stats.status_breakdown.get(key, 0) + 1
        return stats

    def delete(self, dataset_id: int) -> Optional[Dataset]:
        with self._lock:
            return self._rows.pop(dataset_id, None)

    def _swap(self, dataset_id: int, expected: Iterable[DatasetStatus], **changes) -> Optional[Dataset]:
        with self._lock:
            row = self._rows.get(dataset_id)
            if row is None or row.status not in set(expected):
                return None
            row = replace(row, **changes)
            self._rows[dataset_id] = row
            return replace(row)

    def transition(
        self, dataset_id: int, expected: Iterable[DatasetStatus], target: DatasetStatus
    ) -> Optional[Dataset]:
        changes = {"status": target}
        if target is DatasetStatus.PROCESSING:
            changes["error_message"] = None
        return self._swap(dataset_id, expected, **changes)

    def complete(self, dataset_id: int, record_count: int) -> Optional[Dataset]:
        return self._swap(
            dataset_id,
            {DatasetStatus.PROCESSING},
            status=DatasetStatus.COMPLETED,
            record_count=record_count,
            error_message=None,
            processed_at=_now(),
        )

    def fail(self, dataset_id: int, error_message: str) -> Optional[Dataset]:
        return self._swap(
            dataset_id,
            {DatasetStatus.PROCESSING},
            status=DatasetStatus.FAILED,
            error_message=error_message,
            processed_at=_now(),
        )
