from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Optional

from app.core.entities import Dataset, DatasetStatus, IngestReport
from app.core.errors import IngestCancelled, IngestError
from app.core.ports.datasets import IDatasetRepository
from app.core.ports.store import ILocationStore
from app.core.services.batch_writer import BatchWriter
from app.core.services.extractor import FeatureExtractor
from app.core.services.feature_reader import iter_features
import logging

log = logging.getLogger("geo.ingest")

CANCELLED_MESSAGE = "processing cancelled"


# ================================================================
# Dataset processor: the interpret-and-persist pass
# ================================================================
class DatasetProcessor:
    """Streams one dataset's source file into the location store.

    The processor owns the processing -> {completed, failed} half of the status
    lifecycle; the pending -> processing claim is an atomic transition so two
    runs can never work the same dataset.
    """

    def __init__(
        self,
        datasets: IDatasetRepository,
        store: ILocationStore,
        extractor: FeatureExtractor,
        batch_size: int = 1000,
        sniff_bytes: int = 100,
        delete_source_on_success: bool = True,
    ):
        self.datasets = datasets
        self.store = store
        self.extractor = extractor
        self.batch_size = batch_size
        self.sniff_bytes = sniff_bytes
        self.delete_source_on_success = delete_source_on_success

    def process_pending(
        self, dataset_id: int, cancel: Optional[threading.Event] = None
    ) -> Optional[IngestReport]:
        claimed = self.datasets.transition(dataset_id, {DatasetStatus.PENDING}, DatasetStatus.PROCESSING)
        if claimed is None:
            log.warning("Dataset %d is not pending (deleted or already claimed); skipping", dataset_id)
            return None
        return self.run(claimed, cancel)

    def abandon(self, dataset_id: int, claimed: bool = False) -> Optional[Dataset]:
        """Fail a dataset whose queued run was cancelled before it started.

        An unclaimed dataset is failed only if it is still pending, so a run
        another worker already claimed is left alone.
        """
        if not claimed and self.datasets.transition(
            dataset_id, {DatasetStatus.PENDING}, DatasetStatus.PROCESSING
        ) is None:
            return None
        failed = self.datasets.fail(dataset_id, CANCELLED_MESSAGE)
        if failed is not None:
            log.warning("🛑 Dataset %d cancelled before processing started", dataset_id)
        return failed

    def run(self, dataset: Dataset, cancel: Optional[threading.Event] = None) -> IngestReport:
        """Process a dataset already in status=processing. Never raises."""
        start_time = time.time()
        path = Path(dataset.file_path)
        skipped = 0
        log.info("📥 Processing dataset %d | file=%s", dataset.id, path.name)

        try:
            with BatchWriter(self.store, self.batch_size) as writer:
                for feature in iter_features(path, self.sniff_bytes):
                    if cancel is not None and cancel.is_set():
                        raise IngestCancelled(CANCELLED_MESSAGE)
                    record = self.extractor.extract(feature, dataset)
                    if record is None:
                        skipped += 1
                        continue
                    writer.add(record)
        except (IngestError, OSError) as e:
            return self._fail(dataset, str(e) or type(e).__name__)
        except Exception as e:
            log.exception("❌ Unexpected error while processing dataset %d", dataset.id)
            return self._fail(dataset, f"{type(e).__name__}: {e}")

        record_count = writer.accepted
        if self.datasets.complete(dataset.id, record_count) is None:
            log.warning("Dataset %d vanished or changed state before completion", dataset.id)
        if self.delete_source_on_success:
            self._cleanup_source(path)

        duration = round(time.time() - start_time, 3)
        log.info(
            "✅ Dataset %d completed | records=%d | inserted=%d | existing=%d | skipped=%d | took=%.3fs",
            dataset.id, record_count, writer.inserted, writer.skipped_existing, skipped, duration,
        )
        return IngestReport(
            dataset_id=dataset.id,
            status=DatasetStatus.COMPLETED,
            record_count=record_count,
            inserted=writer.inserted,
            skipped_features=skipped,
        )

    def _fail(self, dataset: Dataset, message: str) -> IngestReport:
        log.error("❌ Dataset %d failed: %s (source kept at %s)", dataset.id, message, dataset.file_path)
        self.datasets.fail(dataset.id, message)
        return IngestReport(dataset_id=dataset.id, status=DatasetStatus.FAILED, error=message)

    @staticmethod
    def _cleanup_source(path: Path) -> None:
        try:
            os.remove(path)
            log.info("🧹 Removed processed upload %s", path.name)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("⚠️ Failed to remove processed upload %s: %s", path, e)
