from __future__ import annotations

import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from app.core.entities import BatchResult, Dataset, FileResult, UploadedFile, UploadMetadata
from app.core.errors import IngestError, ParseError, PersistenceError, StorageError, ValidationError
from app.core.ports.datasets import IDatasetRepository
from app.core.services.feature_reader import detect_format
from app.core.services.progress import ProgressNotifier
from app.core.services.scheduler import BatchRunner, ProcessingScheduler
import logging

log = logging.getLogger("geo.gateway")

# Point-feature payloads; each is also accepted with a trailing .gz.
ALLOWED_EXTENSIONS = (".geojson", ".json", ".ndjson", ".geojsonl")
_FILE_TYPES = {".geojson": "geojson", ".json": "json", ".ndjson": "ndjson", ".geojsonl": "ndjson"}
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")
_COPY_CHUNK = 1 << 20


def split_extension(filename: str) -> Optional[str]:
    """The allowed (possibly compound) extension of ``filename``, or None."""
    lower = filename.lower()
    for ext in ALLOWED_EXTENSIONS:
        for candidate in (ext + ".gz", ext):
            if lower.endswith(candidate) and len(lower) > len(candidate):
                return filename[-len(candidate):]
    return None


def file_type_for(ext: str) -> str:
    base = ext.lower()
    if base.endswith(".gz"):
        base = base[:-3]
    return _FILE_TYPES.get(base, "geojson")


def sanitize(name: str) -> str:
    return _UNSAFE.sub("_", name.strip()).strip("_") or "dataset"


def sub_region_from_filename(filename: str) -> str:
    """``adams-addresses-county.geojson.gz`` -> ``Adams``."""
    ext = split_extension(filename) or ""
    stem = Path(filename[: len(filename) - len(ext)]).name
    parts = [p for p in re.split(r"[-_\s.]+", stem) if p]
    return parts[0].lower().title() if parts else ""


@dataclass(frozen=True)
class _PlannedFile:
    index: int
    upload: UploadedFile
    ext: str
    meta: Optional[UploadMetadata] = None
    error: Optional[str] = None


class UploadGateway:
    """Validates uploads, stores raw bytes, creates pending datasets and hands off processing."""

    def __init__(
        self,
        datasets: IDatasetRepository,
        scheduler: ProcessingScheduler,
        upload_dir: str | Path,
        upload_workers: int = 4,
        sniff_bytes: int = 100,
        region_width: int = 2,
    ):
        self.datasets = datasets
        self.scheduler = scheduler
        self.upload_dir = Path(upload_dir)
        self.runner = BatchRunner(cap=upload_workers, name="geo_upload")
        self.sniff_bytes = sniff_bytes
        self.region_width = region_width

    # ------------------------------------------------------
    # Validation
    # ------------------------------------------------------
    def _normalize_region(self, region: Optional[str]) -> str:
        region = (region or "").strip().upper()
        if not region:
            raise ValidationError("region is required")
        if not region.isalpha() or len(region) > self.region_width:
            raise ValidationError(f"region must be a {self.region_width}-letter code")
        return region

    def _validate_metadata(self, meta: UploadMetadata) -> UploadMetadata:
        missing = [f for f in ("name", "region", "sub_region") if not (getattr(meta, f) or "").strip()]
        if missing:
            raise ValidationError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")
        return UploadMetadata(
            name=meta.name.strip(),
            region=self._normalize_region(meta.region),
            sub_region=meta.sub_region.strip().lower().title(),
        )

    @staticmethod
    def _check_extension(filename: str) -> str:
        ext = split_extension(filename or "")
        if ext is None:
            allowed = ", ".join(e for base in ALLOWED_EXTENSIONS for e in (base, base + ".gz"))
            raise ValidationError(f"{filename or '<unnamed>'}: file must be one of {allowed}")
        return ext

    def _plan_bulk(
        self, files: Sequence[UploadedFile], region: Optional[str], sub_region: Optional[str]
    ) -> List[_PlannedFile]:
        region = self._normalize_region(region)
        if not files:
            raise ValidationError("no files provided")
        exts = [self._check_extension(f.filename) for f in files]

        plan: List[_PlannedFile] = []
        for index, (upload, ext) in enumerate(zip(files, exts)):
            label = (sub_region or "").strip().lower().title() or sub_region_from_filename(upload.filename)
            if not label:
                plan.append(_PlannedFile(index, upload, ext, error="could not derive sub-region from filename"))
                continue
            meta = UploadMetadata(name=f"{label} County Addresses", region=region, sub_region=label)
            plan.append(_PlannedFile(index, upload, ext, meta=meta))
        return plan

    # ------------------------------------------------------
    # Raw storage
    # ------------------------------------------------------
    def ensure_upload_dir(self) -> Path:
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"failed to create upload directory: {e}") from e
        return self.upload_dir

    def _open_destination(self, meta: UploadMetadata, ext: str):
        base = f"{meta.region}_{sanitize(meta.sub_region)}_{sanitize(meta.name)}"
        while True:
            dest = self.upload_dir / f"{time.time_ns()}_{base}{ext}"
            try:
                return dest, dest.open("xb")
            except FileExistsError:
                continue

    def _save(self, upload: UploadedFile, meta: UploadMetadata, ext: str, actor_id: int) -> Dataset:
        try:
            dest, out = self._open_destination(meta, ext)
        except OSError as e:
            raise StorageError(f"failed to create destination file: {e}") from e
        try:
            with out:
                shutil.copyfileobj(upload.stream, out, _COPY_CHUNK)
                written = out.tell()
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise StorageError(f"failed to save file: {e}") from e
        log.info("Written %d bytes to %s", written, dest)

        try:
            detect_format(dest, self.sniff_bytes)
        except ParseError:
            dest.unlink(missing_ok=True)
            raise

        dataset = Dataset(
            name=meta.name,
            region=meta.region,
            sub_region=meta.sub_region,
            file_type=file_type_for(ext),
            file_path=str(dest),
            file_size=written,
            uploaded_by=actor_id,
            uploaded_at=datetime.now(timezone.utc),
        )
        try:
            created = self.datasets.create(dataset)
        except Exception as e:
            dest.unlink(missing_ok=True)
            raise PersistenceError(f"failed to create dataset record: {e}") from e
        log.info("Created dataset %s for %s", created.id, upload.filename)
        return created

    def _save_planned(self, item: _PlannedFile, actor_id: int) -> FileResult:
        name = item.upload.filename
        if item.error:
            return FileResult(filename=name, success=False, error=item.error)
        try:
            dataset = self._save(item.upload, item.meta, item.ext, actor_id)
        except IngestError as e:
            log.warning("Upload of %s failed: %s", name, e)
            return FileResult(filename=name, success=False, error=str(e))
        return FileResult(filename=name, success=True, dataset=dataset)

    @staticmethod
    def _unexpected(item: _PlannedFile, exc: Exception) -> FileResult:
        return FileResult(filename=item.upload.filename, success=False, error=f"{type(exc).__name__}: {exc}")

    # ------------------------------------------------------
    # Public operations
    # ------------------------------------------------------
    def upload(self, upload: UploadedFile, meta: UploadMetadata, actor_id: int) -> Dataset:
        """Single-file upload. Returns the pending dataset; processing runs in the background."""
        meta = self._validate_metadata(meta)
        ext = self._check_extension(upload.filename)
        self.ensure_upload_dir()
        dataset = self._save(upload, meta, ext, actor_id)
        self.scheduler.schedule(dataset.id)
        return dataset

    def upload_many(
        self,
        files: Sequence[UploadedFile],
        region: Optional[str],
        actor_id: int,
        sub_region: Optional[str] = None,
    ) -> BatchResult:
        plan = self._plan_bulk(files, region, sub_region)
        self.ensure_upload_dir()
        log.info("[BulkUpload] Saving %d file(s) for region %s", len(plan), region)

        by_index = {}
        handle = self.runner.start(
            plan,
            fn=lambda item: self._save_planned(item, actor_id),
            on_error=self._unexpected,
            on_result=lambda item, res: by_index.__setitem__(item.index, res),
        )
        handle.wait()
        result = BatchResult([by_index[i] for i in sorted(by_index)])
        log.info(
            "[BulkUpload] Upload complete: %d success, %d failed out of %d total",
            result.success_count, result.fail_count, result.total,
        )
        if result.dataset_ids:
            self.scheduler.schedule_many(result.dataset_ids)
        return result

    def stream_upload(
        self,
        files: Sequence[UploadedFile],
        region: Optional[str],
        actor_id: int,
        sub_region: Optional[str] = None,
    ) -> ProgressNotifier:
        """Validate synchronously, then save files in the background while emitting progress events.

        Work continues if the consumer stops reading; the import phase is
        dispatched by the batch itself once every file reached a terminal state.
        Once the plan is accepted the gateway owns the file streams and closes
        each after its file is saved or rejected.
        """
        plan = self._plan_bulk(files, region, sub_region)
        self.ensure_upload_dir()
        notifier = ProgressNotifier()
        notifier.start(len(plan))

        def on_result(item: _PlannedFile, result: FileResult) -> None:
            if result.success:
                notifier.file_saved(result.filename, result.dataset.to_dict())
            else:
                notifier.file_error(result.filename, result.error or "upload failed")

        def on_finished(results: List[FileResult]) -> None:
            batch = BatchResult(results)
            try:
                if batch.dataset_ids:
                    notifier.processing_started(batch.dataset_ids)
                    self.scheduler.schedule_many(batch.dataset_ids)
            finally:
                notifier.complete(batch.total, batch.success_count, batch.fail_count)
                log.info(
                    "[BulkUpload] Batch %s complete: %d success, %d failed",
                    notifier.batch_id, batch.success_count, batch.fail_count,
                )

        def save(item: _PlannedFile) -> FileResult:
            try:
                return self._save_planned(item, actor_id)
            finally:
                item.upload.stream.close()

        self.runner.start(
            plan,
            fn=save,
            on_error=self._unexpected,
            on_start=lambda item: notifier.processing(item.upload.filename, item.index),
            on_result=on_result,
            on_finished=on_finished,
        )
        return notifier
