from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Tuple
from app.core.entities import Dataset, DatasetStats, DatasetStatus

class IDatasetRepository(ABC):
    @abstractmethod
    def create(self, dataset: Dataset) -> Dataset: ...
    @abstractmethod
    def get(self, dataset_id: int) -> Optional[Dataset]: ...
    @abstractmethod
    def list(
        self,
        region: Optional[str] = None,
        status: Optional[DatasetStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dataset], int]: ...
    @abstractmethod
    def stats(self) -> DatasetStats: ...
    @abstractmethod
    def delete(self, dataset_id: int) -> Optional[Dataset]:
        """Remove the row and return it, or None when it did not exist."""
        ...
    @abstractmethod
    def transition(
        self, dataset_id: int, expected: Iterable[DatasetStatus], target: DatasetStatus
    ) -> Optional[Dataset]:
        """Atomically move to ``target`` only if the current status is in ``expected``.

        Returns the updated dataset, or None if the row is missing or the status
        did not match.
        """
        ...
    @abstractmethod
    def complete(self, dataset_id: int, record_count: int) -> Optional[Dataset]:
        """processing -> completed, setting record_count and processed_at."""
        ...
    @abstractmethod
    def fail(self, dataset_id: int, error_message: str) -> Optional[Dataset]:
        """processing -> failed, capturing the error message."""
        ...
