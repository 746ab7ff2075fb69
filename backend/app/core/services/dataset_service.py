from __future__ import annotations

import os
from typing import List, Optional, Tuple

from app.core.entities import REPROCESSABLE, Dataset, DatasetStats, DatasetStatus
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.ports.datasets import IDatasetRepository
from app.core.services.scheduler import ProcessingScheduler
import logging

log = logging.getLogger("geo.datasets")


class DatasetService:
    """Listing, stats, deletion and reprocessing of datasets."""

    def __init__(self, datasets: IDatasetRepository, scheduler: ProcessingScheduler, max_limit: int = 500):
        self.datasets = datasets
        self.scheduler = scheduler
        self.max_limit = max_limit

    def list_datasets(
        self,
        region: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dataset], int]:
        parsed_status = None
        if status:
            try:
                parsed_status = DatasetStatus(status)
            except ValueError:
                raise ValidationError(f"unknown status: {status}")
        limit = min(max(limit, 1), self.max_limit)
        offset = max(offset, 0)
        region = region.upper() if region else None
        return self.datasets.list(region=region, status=parsed_status, limit=limit, offset=offset)

    def get(self, dataset_id: int) -> Dataset:
        dataset = self.datasets.get(dataset_id)
        if dataset is None:
            raise NotFoundError(f"dataset {dataset_id} not found")
        return dataset

    def stats(self) -> DatasetStats:
        return self.datasets.stats()

    def delete(self, dataset_id: int) -> Dataset:
        """Remove the row and any remaining source file, whatever the status."""
        dataset = self.datasets.delete(dataset_id)
        if dataset is None:
            raise NotFoundError(f"dataset {dataset_id} not found")
        if dataset.file_path:
            try:
                os.remove(dataset.file_path)
                log.info("🧹 Removed source file %s", dataset.file_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning("⚠️ Failed to delete file %s: %s", dataset.file_path, e)
        log.info("Deleted dataset %d (%s)", dataset_id, dataset.name)
        return dataset

    def resume_pending(self) -> List[int]:
        """Queue every dataset still pending, e.g. left over from a crash. Returns the ids queued."""
        ids: List[int] = []
        offset = 0
        while True:
            page, total = self.datasets.list(status=DatasetStatus.PENDING, limit=self.max_limit, offset=offset)
            ids.extend(d.id for d in page)
            offset += len(page)
            if not page or offset >= total:
                break
        if ids:
            self.scheduler.schedule_many(ids)
            log.info("🔁 Resumed %d pending dataset(s)", len(ids))
        return ids

    def reprocess(self, dataset_id: int) -> Dataset:
        dataset = self.get(dataset_id)
        if dataset.status not in REPROCESSABLE:
            raise ConflictError(f"dataset {dataset_id} is {dataset.status.value}; cannot reprocess")
        if not dataset.file_path or not os.path.exists(dataset.file_path):
            raise ConflictError(
                f"source file for dataset {dataset_id} is no longer available; upload it again"
            )
        claimed = self.datasets.transition(dataset_id, REPROCESSABLE, DatasetStatus.PROCESSING)
        if claimed is None:
            # Lost the race against another reprocess or a delete.
            current = self.get(dataset_id)
            raise ConflictError(f"dataset {dataset_id} is {current.status.value}; cannot reprocess")
        self.scheduler.schedule_claimed(claimed)
        log.info("🔁 Reprocessing dataset %d", dataset_id)
        return claimed
