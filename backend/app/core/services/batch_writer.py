from __future__ import annotations

from typing import Dict, List, Set

from app.core.entities import LocationRecord
from app.core.errors import PersistenceError
from app.core.ports.store import ILocationStore
import logging

log = logging.getLogger("geo.ingest.writer")


class BatchWriter:
    """Accumulates records and upserts them in fixed-size batches.

    A hash seen earlier in the run is counted as a duplicate and never written
    twice, whatever the batch size; rows whose hash already exists in the store
    are skipped by the store itself.
    Use as a context manager so the final partial batch is flushed.
    """

    def __init__(self, store: ILocationStore, batch_size: int = 1000):
        if batch_size <= 0:
            raise ValueError(f"Invalid batch_size: {batch_size}")
        self.store = store
        self.batch_size = batch_size
        self._batch: Dict[str, LocationRecord] = {}
        self._seen: Set[str] = set()
        self.accepted = 0
        self.inserted = 0
        self.duplicates = 0
        self.batches = 0

    def add(self, record: LocationRecord) -> None:
        if record.hash in self._seen:
            self.duplicates += 1
            return
        self._seen.add(record.hash)
        self._batch[record.hash] = record
        if len(self._batch) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._batch:
            return
        rows: List[LocationRecord] = list(self._batch.values())
        try:
            inserted = self.store.upsert_batch(rows)
        except Exception as e:
            raise PersistenceError(f"batch write failed: {e}") from e
        self.accepted += len(rows)
        self.inserted += inserted
        self.batches += 1
        self._batch.clear()
        log.debug("Flushed batch #%d | rows=%d | inserted=%d", self.batches, len(rows), inserted)

    @property
    def skipped_existing(self) -> int:
        return self.accepted - self.inserted

    def __enter__(self) -> "BatchWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.flush()
