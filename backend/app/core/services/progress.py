from __future__ import annotations

import json
import queue
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional


class EventKind(str, Enum):
    START = "start"
    PROCESSING = "processing"
    FILE_SAVED = "file_saved"
    FILE_ERROR = "file_error"
    PROCESSING_STARTED = "processing_started"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    batch_id: str
    payload: dict = field(default_factory=dict)

    def to_frame(self) -> str:
        """``event: <kind>`` and ``data: <json>`` lines, terminated by a blank line."""
        body = {"batch_id": self.batch_id, **self.payload}
        return f"event: {self.kind.value}\ndata: {json.dumps(body, default=str)}\n\n"


class ProgressNotifier:
    """Thread-safe event channel for one upload batch.

    Producers are pool workers; the single consumer is the streaming response.
    The channel is closed by the ``complete`` event, which is always the last one.
    """

    def __init__(self, batch_id: Optional[str] = None):
        self.batch_id = batch_id or uuid.uuid4().hex[:12]
        self._events: "queue.Queue[ProgressEvent]" = queue.Queue()
        self._completed = False

    def emit(self, kind: EventKind, **payload) -> None:
        if self._completed:
            raise RuntimeError(f"batch {self.batch_id} already completed")
        if kind is EventKind.COMPLETE:
            self._completed = True
        self._events.put(ProgressEvent(kind, self.batch_id, payload))

    def start(self, total: int) -> None:
        self.emit(EventKind.START, total=total, message=f"Uploading {total} file(s)")

    def processing(self, filename: str, index: int) -> None:
        self.emit(EventKind.PROCESSING, filename=filename, index=index)

    def file_saved(self, filename: str, dataset: dict) -> None:
        self.emit(EventKind.FILE_SAVED, filename=filename, dataset=dataset)

    def file_error(self, filename: str, error: str) -> None:
        self.emit(EventKind.FILE_ERROR, filename=filename, error=error)

    def processing_started(self, dataset_ids: list) -> None:
        self.emit(
            EventKind.PROCESSING_STARTED,
            dataset_ids=dataset_ids,
            message=f"Import started for {len(dataset_ids)} dataset(s)",
        )

    def complete(self, total: int, success_count: int, fail_count: int) -> None:
        self.emit(
            EventKind.COMPLETE,
            total=total,
            success_count=success_count,
            fail_count=fail_count,
            message=f"Uploaded {success_count} of {total} file(s)",
        )

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield events in emission order until ``complete`` has been yielded."""
        while True:
            event = self._events.get(timeout=timeout)
            yield event
            if event.kind is EventKind.COMPLETE:
                return

    def frames(self) -> Iterator[str]:
        for event in self.events():
            yield event.to_frame()
