from __future__ import annotations

import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Generic, List, Optional, Sequence, Set, TypeVar

from app.core.entities import Dataset
import logging

log = logging.getLogger("geo.scheduler")

T = TypeVar("T")
R = TypeVar("R")


class BatchHandle(Generic[T, R]):
    """Observable state of one batch running on a BatchRunner."""

    def __init__(self, total: int):
        self.total = total
        self.results: List[R] = []
        self.cancel_event = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Stop dispatching items that have not started; running items finish."""
        self.cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def done(self) -> bool:
        return self._done.is_set()


class BatchRunner:
    """Bounded pool of min(cap, len(items)) workers draining a queue of independent jobs.

    A failing job never stops its siblings: ``fn`` is expected to turn its own
    errors into a result value, and anything it lets escape is handed to
    ``on_error`` to build one. ``on_finished`` runs exactly once, on a worker
    thread, after every dispatched item reached a terminal result.
    """

    def __init__(self, cap: int = 4, name: str = "geo_batch"):
        if cap <= 0:
            raise ValueError(f"Invalid worker cap: {cap}")
        self.cap = cap
        self.name = name

    def start(
        self,
        items: Sequence[T],
        fn: Callable[[T], R],
        on_error: Callable[[T, Exception], R],
        on_start: Optional[Callable[[T], None]] = None,
        on_result: Optional[Callable[[T, R], None]] = None,
        on_finished: Optional[Callable[[List[R]], None]] = None,
    ) -> BatchHandle[T, R]:
        handle: BatchHandle[T, R] = BatchHandle(len(items))
        if not items:
            self._finish(handle, on_finished)
            return handle

        jobs: "queue.Queue[T]" = queue.Queue()
        for item in items:
            jobs.put(item)

        workers = min(self.cap, len(items))
        remaining = [workers]
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.name)

        def worker_loop() -> None:
            try:
                while not handle.cancel_event.is_set():
                    try:
                        item = jobs.get_nowait()
                    except queue.Empty:
                        break
                    if on_start:
                        on_start(item)
                    try:
                        result = fn(item)
                    except Exception as e:
                        log.exception("Job failed for %r", item)
                        result = on_error(item, e)
                    with handle._lock:
                        handle.results.append(result)
                    if on_result:
                        on_result(item, result)
            finally:
                with handle._lock:
                    remaining[0] -= 1
                    last = remaining[0] == 0
                if last:
                    self._finish(handle, on_finished)
                    executor.shutdown(wait=False)

        log.info("Starting %d worker(s) for %d job(s)", workers, len(items))
        for _ in range(workers):
            executor.submit(worker_loop)
        return handle

    @staticmethod
    def _finish(handle: BatchHandle, on_finished) -> None:
        try:
            if on_finished:
                on_finished(list(handle.results))
        finally:
            handle._done.set()


class ProcessingScheduler:
    """Long-lived bounded pool running the interpret-and-persist pass per dataset.

    Decoupled from request handling: uploads only enqueue dataset ids here.
    ``cancel`` stops queued runs and signals in-flight runs to stop between records.
    A run cancelled before it started, by ``cancel`` or ``shutdown``, leaves its
    dataset failed so it can be reprocessed.
    """

    def __init__(self, processor, max_workers: int = 4):
        self.processor = processor
        self.max_workers = max_workers
        self.cancel_event = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="geo_ingest")
        self._futures: Set[Future] = set()
        self._lock = threading.Lock()

    def _track(self, future: Future, dataset_id: int, claimed: bool) -> Future:
        with self._lock:
            self._futures.add(future)

        def _forget(f: Future) -> None:
            with self._lock:
                self._futures.discard(f)
            if not f.cancelled():
                return
            try:
                self.processor.abandon(dataset_id, claimed=claimed)
            except Exception:
                log.exception("Failed to mark cancelled dataset %d", dataset_id)

        future.add_done_callback(_forget)
        return future

    def schedule(self, dataset_id: int) -> Future:
        """Queue a pending dataset; the run claims it pending -> processing."""
        log.info("Queued dataset %d for processing", dataset_id)
        return self._track(
            self._executor.submit(self.processor.process_pending, dataset_id, self.cancel_event),
            dataset_id,
            claimed=False,
        )

    def schedule_claimed(self, dataset: Dataset) -> Future:
        """Queue a dataset already moved to processing by the caller."""
        log.info("Queued dataset %s for reprocessing", dataset.id)
        return self._track(
            self._executor.submit(self.processor.run, dataset, self.cancel_event), dataset.id, claimed=True
        )

    def schedule_many(self, dataset_ids: Sequence[int]) -> List[Future]:
        return [self.schedule(i) for i in dataset_ids]

    def active_count(self) -> int:
        with self._lock:
            return len(self._futures)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Await every queued and running job. True when all finished."""
        with self._lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def cancel(self) -> int:
        """Stop dispatch of queued runs and signal running ones. Returns runs cancelled before start."""
        self.cancel_event.set()
        with self._lock:
            pending = list(self._futures)
        cancelled = sum(1 for f in pending if f.cancel())
        log.info("🛑 Cancelled %d queued dataset run(s)", cancelled)
        return cancelled

    def shutdown(self, wait_for_running: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_running, cancel_futures=True)
