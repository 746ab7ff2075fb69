# backend/app/client/uploader.py
from __future__ import annotations
import io
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Sequence

import httpx

logger = logging.getLogger("geo.client")

BULK_UPLOAD_PATH = "/api/v1/admin/datasets/upload-bulk"

ProgressCallback = Callable[[str, int, int], None]


class ProgressFile:
    """Binary file wrapper reporting bytes handed to the transport."""

    def __init__(self, raw: BinaryIO, name: str, total: int, on_progress: Optional[ProgressCallback] = None):
        self.raw = raw
        self.name = name
        self.total = total
        self.sent = 0
        self.on_progress = on_progress

    def read(self, size: int = -1) -> bytes:
        chunk = self.raw.read(size)
        if chunk:
            self.sent += len(chunk)
            if self.on_progress:
                self.on_progress(self.name, self.sent, self.total)
        return chunk

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        pos = self.raw.seek(offset, whence)
        if whence == io.SEEK_SET and offset == 0:
            self.sent = 0
        return pos

    def tell(self) -> int:
        return self.raw.tell()


@dataclass
class FileUploadResult:
    filename: str
    success: bool
    attempts: int = 0
    dataset_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class UploadSummary:
    results: List[FileUploadResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def fail_count(self) -> int:
        return self.total - self.success_count


class BatchUploader:
    """
    Uploads files one at a time to the bulk endpoint.

    A transfer with no bytes sent or received for ``stall_timeout`` seconds
    is aborted and retried, up to ``max_retries`` extra attempts; the rest of
    the batch is unaffected.
    """

    def __init__(
        self,
        base_url: str,
        actor_id: int,
        region: str,
        sub_region: str | None = None,
        stall_timeout: float = 60.0,
        max_retries: int = 3,
        on_progress: Optional[ProgressCallback] = None,
        on_file_done: Optional[Callable[[FileUploadResult], None]] = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.region = region
        self.sub_region = sub_region
        self.max_retries = max_retries
        self.on_progress = on_progress
        self.on_file_done = on_file_done
        self.client = httpx.Client(
            base_url=base_url,
            headers={"X-User-Id": str(actor_id)},
            timeout=httpx.Timeout(stall_timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, base_url: str, actor_id: int, region: str, settings=None, **kwargs) -> "BatchUploader":
        """Uploader using the configured stall timeout and retry budget."""
        if settings is None:
            from app.db.config import settings
        kwargs.setdefault("stall_timeout", settings.stall_timeout_seconds)
        kwargs.setdefault("max_retries", settings.upload_max_retries)
        return cls(base_url, actor_id, region, **kwargs)

    def __enter__(self) -> "BatchUploader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    def _post_once(self, path: Path) -> httpx.Response:
        data = {"region": self.region}
        if self.sub_region:
            data["sub_region"] = self.sub_region
        with path.open("rb") as raw:
            body = ProgressFile(raw, path.name, os.path.getsize(path), self.on_progress)
            files = [("files", (path.name, body, "application/octet-stream"))]
            return self.client.post(BULK_UPLOAD_PATH, data=data, files=files)

    def upload_file(self, path: str | Path) -> FileUploadResult:
        path = Path(path)
        result = FileUploadResult(filename=path.name, success=False)

        for attempt in range(1, self.max_retries + 2):
            result.attempts = attempt
            try:
                r = self._post_once(path)
            except httpx.TimeoutException as e:
                result.error = f"stalled: {type(e).__name__}"
                logger.warning(f"⚠️ Upload of {path.name} stalled (Attempt {attempt}/{self.max_retries + 1})")
                continue
            except httpx.TransportError as e:
                result.error = f"{type(e).__name__}: {e}"
                logger.warning(f"⚠️ Upload of {path.name} failed: {e} (Attempt {attempt}/{self.max_retries + 1})")
                continue

            if r.status_code >= 400:
                try:
                    result.error = r.json().get("detail") or r.text
                except ValueError:
                    result.error = r.text
                logger.error(f"❌ Upload of {path.name} rejected ({r.status_code}): {result.error}")
                return result

            outcome = (r.json().get("results") or [{}])[0]
            result.success = bool(outcome.get("success"))
            result.error = outcome.get("error")
            if outcome.get("dataset"):
                result.dataset_id = outcome["dataset"].get("id")
            return result

        logger.error(f"❌ Giving up on {path.name} after {result.attempts} attempt(s)")
        return result

    def upload_files(self, paths: Sequence[str | Path]) -> UploadSummary:
        summary = UploadSummary()
        for p in paths:
            result = self.upload_file(p)
            summary.results.append(result)
            if self.on_file_done:
                self.on_file_done(result)
        logger.info(
            "📤 Upload finished: %d success, %d failed out of %d",
            summary.success_count, summary.fail_count, summary.total,
        )
        return summary
