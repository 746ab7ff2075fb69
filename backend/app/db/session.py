# backend/app/db/session.py
from __future__ import annotations
import threading
from psycopg_pool import ConnectionPool
from app.db.config import Settings, settings as default_settings
import logging

logger = logging.getLogger("geo.db")

class DatabasePool:
    """Global psycopg3 connection pool shared by ingestion workers and query traffic."""
    pool: ConnectionPool | None = None
    # Bounds how many pooled connections ingestion writes may occupy.
    ingest_slots: threading.BoundedSemaphore | None = None
    settings: Settings | None = None

    @classmethod
    def init(cls, settings: Settings | None = None):
        if cls.pool:
            logger.info("Database pool already initialized.")
            return

        cls.settings = settings or default_settings
        dsn = cls.settings.database_url
        masked = dsn.replace(cls.settings.db_password, "*****")
        logger.info(f"Connecting to database using DSN: {masked}")
        cls.pool = ConnectionPool(
            conninfo=dsn,
            min_size=1,
            max_size=cls.settings.db_pool_max_size,
            num_workers=2,
            timeout=30,
            open=True,
        )
        cls.ingest_slots = threading.BoundedSemaphore(cls.settings.ingest_connection_slots)
        logger.info(
            "✅ Database connection pool initialized (max=%d, ingest slots=%d).",
            cls.settings.db_pool_max_size, cls.settings.ingest_connection_slots,
        )

    @classmethod
    def close(cls):
        if cls.pool:
            cls.pool.close()
            cls.pool = None
            cls.ingest_slots = None
            logger.info("🧹 Database pool closed.")

def ping_db(timeout: float = 5.0) -> tuple[bool, str]:
    """Check DB connectivity without waiting on an exhausted pool for long."""
    if not DatabasePool.pool:
        return False, "Pool not initialized"
    cfg = DatabasePool.settings or default_settings
    try:
        with DatabasePool.pool.connection(timeout=timeout) as conn:
            row = conn.execute("SHOW server_version").fetchone()
    except Exception as e:
        logger.warning(f"⚠️ DB ping failed against {cfg.db_host}:{cfg.db_port}: {e}")
        return False, str(e)
    return True, f"Postgres {row[0]} at {cfg.db_host}:{cfg.db_port}/{cfg.db_name}"
