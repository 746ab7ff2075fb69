# backend/app/db/config.py
from __future__ import annotations
import logging
import math
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv

# Load .env before reading settings
load_dotenv()

# Create dedicated logger for this module
logger = logging.getLogger("geo.db.config")

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev")
    log_level: str = Field("INFO")

    # --- backing store ---
    store_backend: str = Field("postgres", description="postgres | memory")
    db_host: str = Field("localhost")
    db_port: int = Field(5432)
    db_user: str = Field("postgres")
    db_password: str = Field("postgres")
    db_name: str = Field("geocoding")
    db_pool_max_size: int = Field(10, ge=1)
    ingest_pool_fraction: float = Field(0.5, gt=0.0, le=1.0)

    # --- ingestion ---
    upload_dir: str = Field("./uploads")
    upload_workers: int = Field(4, ge=1)
    processing_workers: int = Field(4, ge=1)
    batch_size: int = Field(1000, ge=1)
    sniff_bytes: int = Field(100, ge=16)
    region_width: int = Field(2, ge=1)
    field_synonyms_path: str | None = Field(None)
    delete_source_on_success: bool = Field(True)
    upload_spool_max_bytes: int = Field(1 << 20, ge=1, description="streamed uploads larger than this spill to disk")

    # --- search ---
    search_default_limit: int = Field(50, ge=1)
    search_max_limit: int = Field(500, ge=1)
    proximity_oversample: int = Field(3, ge=1)

    # --- upload client ---
    stall_timeout_seconds: float = Field(60.0, gt=0)
    upload_max_retries: int = Field(3, ge=0)

    @property
    def database_url(self) -> str:
        return (
            f"postgresql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def ingest_connection_slots(self) -> int:
        """Connections the ingestion pipeline may hold at once."""
        slots = math.ceil(self.db_pool_max_size * self.ingest_pool_fraction)
        return max(1, min(slots, self.db_pool_max_size))

# Instantiate settings once
settings = Settings()
