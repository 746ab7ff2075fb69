from __future__ import annotations
from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple
from app.core.entities import LocationRecord, RecordQuery

class ILocationStore(ABC):
    @abstractmethod
    def upsert_batch(self, records: Sequence[LocationRecord]) -> int:
        """Insert records, skipping any whose hash already exists. Returns rows inserted."""
        ...
    @abstractmethod
    def search(self, query: RecordQuery) -> Tuple[List[LocationRecord], int]:
        """Return (page of matching records, total matches before paging)."""
        ...
    @abstractmethod
    def count(self) -> int: ...
