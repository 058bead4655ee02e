"""
Tally Sync FastAPI application.

Run with:
    python -m tally_sync serve
or:
    uvicorn --factory tally_sync.api.app:create_app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .. import __version__
from ..config import TallySyncConfig
from ..loaders import ALL_COLLECTIONS, DocumentStore
from ..logs import setup_logging
from ..scheduler import SyncScheduler
from .routes import router


def create_app(
    config: Optional[TallySyncConfig] = None,
    store: Optional[DocumentStore] = None,
    scheduler: Optional[SyncScheduler] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the API around one document store and one scheduler."""
    config = config or TallySyncConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown hooks."""
        if configure_logging:
            setup_logging(config)
        logger.info(f"Starting Tally Sync API for tenant {config.tenant_id}...")
        try:
            app.state.store.ensure_schema(ALL_COLLECTIONS)
        except Exception as e:
            logger.error(f"Could not initialize schema: {e}")
        if config.scheduler_enabled:
            app.state.scheduler.start()
        yield
        app.state.scheduler.stop()
        app.state.store.close()
        logger.info("Tally Sync API shut down")

    app = FastAPI(
        title="Tally Sync API",
        description="Sync control and read views over data pulled from Tally",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store or DocumentStore(config)
    app.state.scheduler = scheduler or SyncScheduler(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.get("/")
    def root():
        return {"message": "Tally Sync API", "docs": "/docs"}

    return app
