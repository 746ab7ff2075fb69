# backend/app/router/datasets.py
from __future__ import annotations

import shutil
import tempfile
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse

from app.core.entities import FileResult, UploadedFile, UploadMetadata
from app.db.deps import get_actor_id, get_container
from app.models.schemas import (
    BulkUploadResponse,
    DatasetListResponse,
    DatasetOut,
    DatasetStatsResponse,
    DeleteResponse,
    FileResultOut,
    ReprocessResponse,
    UploadResponse,
)
from app.router.errors import to_http

import logging
logger = logging.getLogger("geo.api.datasets")

router = APIRouter(prefix="/api/v1/admin/datasets", tags=["datasets"])

SPOOL_CHUNK = 1 << 20


def _file_result(r: FileResult) -> FileResultOut:
    return FileResultOut(
        filename=r.filename,
        success=r.success,
        dataset=DatasetOut.model_validate(r.dataset) if r.dataset else None,
        error=r.error,
    )


@router.post("/upload", response_model=UploadResponse, status_code=201)
def upload_dataset(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    region: Optional[str] = Form(None),
    sub_region: Optional[str] = Form(None),
    actor_id: int = Depends(get_actor_id),
    container=Depends(get_container),
):
    try:
        dataset = container.gateway.upload(
            UploadedFile(filename=file.filename or "", stream=file.file),
            UploadMetadata(name=name, region=region, sub_region=sub_region),
            actor_id,
        )
    except Exception as e:
        raise to_http(e, "Upload")
    logger.info("✅ Upload accepted | dataset=%s | file=%s", dataset.id, file.filename)
    return UploadResponse(
        message="File uploaded; processing started",
        dataset=DatasetOut.model_validate(dataset),
    )


@router.post("/upload-bulk", response_model=BulkUploadResponse)
def upload_bulk(
    files: List[UploadFile] = File(...),
    region: Optional[str] = Form(None),
    sub_region: Optional[str] = Form(None),
    actor_id: int = Depends(get_actor_id),
    container=Depends(get_container),
):
    uploads = [UploadedFile(filename=f.filename or "", stream=f.file) for f in files]
    try:
        result = container.gateway.upload_many(uploads, region, actor_id, sub_region=sub_region)
    except Exception as e:
        raise to_http(e, "Bulk upload")
    return BulkUploadResponse(
        message=f"Uploaded {result.success_count} of {result.total} file(s)",
        total=result.total,
        success_count=result.success_count,
        fail_count=result.fail_count,
        results=[_file_result(r) for r in result.results],
    )


def _spool(file: UploadFile, max_bytes: int) -> UploadedFile:
    """Copy an upload into memory, spilling to a temp file past ``max_bytes``."""
    spooled = tempfile.SpooledTemporaryFile(max_size=max_bytes)
    shutil.copyfileobj(file.file, spooled, SPOOL_CHUNK)
    spooled.seek(0)
    return UploadedFile(filename=file.filename or "", stream=spooled)


@router.post("/upload-bulk-stream")
def upload_bulk_stream(
    files: List[UploadFile] = File(...),
    region: Optional[str] = Form(None),
    sub_region: Optional[str] = Form(None),
    actor_id: int = Depends(get_actor_id),
    container=Depends(get_container),
):
    # Copied out: the request's temp files close once this handler returns.
    uploads = [_spool(f, container.settings.upload_spool_max_bytes) for f in files]
    try:
        notifier = container.gateway.stream_upload(uploads, region, actor_id, sub_region=sub_region)
    except Exception as e:
        for upload in uploads:
            upload.stream.close()
        raise to_http(e, "Bulk upload")
    logger.info("📡 Streaming batch %s (%d file(s))", notifier.batch_id, len(uploads))
    return StreamingResponse(
        notifier.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("", response_model=DatasetListResponse)
def list_datasets(
    region: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50),
    offset: int = Query(0),
    container=Depends(get_container),
):
    try:
        datasets, total = container.datasets.list_datasets(region=region, status=status, limit=limit, offset=offset)
    except Exception as e:
        raise to_http(e, "List datasets")
    return DatasetListResponse(
        datasets=[DatasetOut.model_validate(d) for d in datasets],
        total=total,
        limit=min(max(limit, 1), container.datasets.max_limit),
        offset=max(offset, 0),
    )


@router.get("/stats", response_model=DatasetStatsResponse)
def dataset_stats(container=Depends(get_container)):
    try:
        stats = container.datasets.stats()
    except Exception as e:
        raise to_http(e, "Dataset stats")
    return DatasetStatsResponse(
        total_datasets=stats.total_datasets,
        total_records=stats.total_records,
        total_storage_size=stats.total_storage_size,
        region_breakdown=stats.region_breakdown,
        status_breakdown=stats.status_breakdown,
    )


@router.get("/{dataset_id}", response_model=DatasetOut)
def get_dataset(dataset_id: int, container=Depends(get_container)):
    try:
        return DatasetOut.model_validate(container.datasets.get(dataset_id))
    except Exception as e:
        raise to_http(e, "Get dataset")


@router.delete("/{dataset_id}", response_model=DeleteResponse)
def delete_dataset(dataset_id: int, container=Depends(get_container)):
    try:
        container.datasets.delete(dataset_id)
    except Exception as e:
        raise to_http(e, "Delete dataset")
    return DeleteResponse(message="Dataset deleted", id=dataset_id)


@router.post("/{dataset_id}/reprocess", response_model=ReprocessResponse, status_code=202)
def reprocess_dataset(dataset_id: int, container=Depends(get_container)):
    try:
        dataset = container.datasets.reprocess(dataset_id)
    except Exception as e:
        raise to_http(e, "Reprocess")
    return ReprocessResponse(message="Reprocessing started", dataset=DatasetOut.model_validate(dataset))
