from __future__ import annotations
import logging
from dataclasses import dataclass

from app.core.ports.datasets import IDatasetRepository
from app.core.ports.store import ILocationStore
from app.core.services.dataset_service import DatasetService
from app.core.services.extractor import FeatureExtractor
from app.core.services.field_mapping import FieldMapping
from app.core.services.gateway import UploadGateway
from app.core.services.geo import ProximitySearchEngine
from app.core.services.ingest_service import DatasetProcessor
from app.core.services.scheduler import ProcessingScheduler
from app.core.services.text_search import AddressSearchService
from app.db.config import Settings
from app.models.store.inmemory_store import InMemoryDatasetRepository, InMemoryLocationStore

logger = logging.getLogger("geo.container")


@dataclass
class AppContainer:
    settings: Settings
    store: ILocationStore
    dataset_repo: IDatasetRepository
    processor: DatasetProcessor
    scheduler: ProcessingScheduler
    gateway: UploadGateway
    datasets: DatasetService
    proximity: ProximitySearchEngine
    search: AddressSearchService

    def shutdown(self, wait: bool = False) -> None:
        """Stop queued runs, signal in-flight ones, release the pool threads."""
        self.scheduler.cancel()
        self.scheduler.shutdown(wait_for_running=wait)


def _build_stores(settings: Settings) -> tuple[ILocationStore, IDatasetRepository]:
    backend = settings.store_backend.lower()
    if backend == "memory":
        logger.info("📂 Using in-memory store backend")
        return InMemoryLocationStore(), InMemoryDatasetRepository()
    if backend == "postgres":
        from app.models.store.postgres_store import PostgresDatasetRepository, PostgresLocationStore

        logger.info("🔗 Using Postgres store backend")
        return PostgresLocationStore(), PostgresDatasetRepository()
    raise ValueError(f"Unknown store_backend: {settings.store_backend}")


def build_container(settings: Settings) -> AppContainer:
    """Wire stores, the processing pipeline and the query engines from settings."""
    store, dataset_repo = _build_stores(settings)

    if settings.field_synonyms_path:
        mapping = FieldMapping.from_file(settings.field_synonyms_path)
        logger.info(f"🔧 Field synonyms loaded from {settings.field_synonyms_path}")
    else:
        mapping = FieldMapping()
    extractor = FeatureExtractor(mapping, region_width=settings.region_width)

    processor = DatasetProcessor(
        datasets=dataset_repo,
        store=store,
        extractor=extractor,
        batch_size=settings.batch_size,
        sniff_bytes=settings.sniff_bytes,
        delete_source_on_success=settings.delete_source_on_success,
    )
    scheduler = ProcessingScheduler(processor, max_workers=settings.processing_workers)
    gateway = UploadGateway(
        datasets=dataset_repo,
        scheduler=scheduler,
        upload_dir=settings.upload_dir,
        upload_workers=settings.upload_workers,
        sniff_bytes=settings.sniff_bytes,
        region_width=settings.region_width,
    )
    proximity = ProximitySearchEngine(store, oversample=settings.proximity_oversample)
    search = AddressSearchService(
        store,
        proximity,
        default_limit=settings.search_default_limit,
        max_limit=settings.search_max_limit,
    )

    logger.info(
        "✅ Container built | backend=%s | upload_workers=%d | processing_workers=%d | batch_size=%d",
        settings.store_backend, settings.upload_workers, settings.processing_workers, settings.batch_size,
    )
    return AppContainer(
        settings=settings,
        store=store,
        dataset_repo=dataset_repo,
        processor=processor,
        scheduler=scheduler,
        gateway=gateway,
        datasets=DatasetService(dataset_repo, scheduler, max_limit=settings.search_max_limit),
        proximity=proximity,
        search=search,
    )
