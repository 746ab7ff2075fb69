from __future__ import annotations
import logging
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# ============================================================
# 📦 Core Imports (DB + Dependency Injection)
# ============================================================
from app.db.config import Settings, settings as default_settings
from app.db.session import DatabasePool, ping_db
from app.container import build_container

# ============================================================
# 🪵 Logging Setup
# ============================================================
logging.basicConfig(
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(filename)s:%(lineno)d | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger("geo.app")

# ============================================================
# 🌐 Routers
# ============================================================
from app.router.health import router as health_router
from app.router.datasets import router as datasets_router
from app.router.search import router as search_router

VERSION = "1.0.0"


# ============================================================
# 🚀 Startup / Shutdown Lifecycle
# ============================================================
def _lifespan_for(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Initializing Geo Ingest API (backend=%s)...", settings.store_backend)
        app.state.startup_time = time.time()

        # --- Database connection ---
        if settings.store_backend == "postgres":
            from app.models.store.postgres_store import ensure_schema

            DatabasePool.init(settings)
            ok, msg = ping_db()
            if ok:
                logger.info(f"✅ Database OK: {msg}")
                ensure_schema()
            else:
                logger.warning(f"⚠️ DB ping failed: {msg}")

        # --- Build container ---
        try:
            app.state.container = build_container(settings)
        except Exception as e:
            logger.error(f"❌ Container init failed: {e}", exc_info=True)
            DatabasePool.close()
            raise
        try:
            app.state.container.datasets.resume_pending()
        except Exception as e:
            logger.warning(f"⚠️ Could not resume pending datasets: {e}")
        logger.info("🎯 API is ready and accepting requests")

        try:
            yield
        finally:
            container = app.state.container
            app.state.container = None
            container.shutdown(wait=False)
            DatabasePool.close()
            logger.info("🧹 Application shutdown complete")

    return lifespan


# ============================================================
# 🌍 FastAPI App Definition
# ============================================================
def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings
    app = FastAPI(
        title="Geo Ingest API",
        description="Bulk ingestion of geocoded address datasets with proximity and text search",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_lifespan_for(settings),
    )
    app.state.container = None

    # CORS Setup
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(datasets_router)
    app.include_router(search_router)

    @app.get("/status")
    def get_app_status(request: Request):
        """Processing pool and store status"""
        container = request.app.state.container
        if container is None:
            return {"system_status": "initializing", "timestamp": time.time()}
        started = getattr(request.app.state, "startup_time", time.time())
        return {
            "system_status": "healthy",
            "timestamp": time.time(),
            "uptime_seconds": time.time() - started,
            "app_env": settings.app_env,
            "store_backend": settings.store_backend,
            "active_processing_jobs": container.scheduler.active_count(),
            "processing_workers": settings.processing_workers,
            "upload_workers": settings.upload_workers,
        }

    @app.get("/")
    def root():
        return {
            "app": "Geo Ingest API",
            "version": VERSION,
            "store_backend": settings.store_backend,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "readiness": "/health/ready",
                "status": "/status",
                "datasets": "/api/v1/admin/datasets",
                "addresses": "/api/v1/addresses",
                "ranked_search": "/api/v1/addresses/search",
                "nearby": "/api/v1/addresses/nearby",
                "proximity": "/api/v1/proximity",
            },
        }

    return app


app = create_app()

# ============================================================
# 🏁 Entrypoint
# ============================================================
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Geo Ingest API on port 8080...")
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8080,
        reload=False,
        log_config=None,
    )
