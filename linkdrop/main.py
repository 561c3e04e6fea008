import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from linkdrop import config
from linkdrop.api.routes import router
from linkdrop.cleaner import Reaper, ReaperOptions
from linkdrop.core.exceptions import register_exception_handlers
from linkdrop.core.metrics import MetricsStore
from linkdrop.core.rate_limit import RateLimiter
from linkdrop.db import create_db_engine, init_db
from linkdrop.registry import SQLRegistry
from linkdrop.services.files import FileService
from linkdrop.storage.factory import build_storage

logger = logging.getLogger("linkdrop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=config.LOG_LEVEL)

    engine = create_db_engine()
    init_db(engine)
    if config.STAGING_DIR:
        os.makedirs(config.STAGING_DIR, exist_ok=True)

    registry = SQLRegistry(engine)
    storage = build_storage()
    metrics = MetricsStore()
    reaper = Reaper(registry, storage, ReaperOptions.from_config(), metrics)

    app.state.engine = engine
    app.state.registry = registry
    app.state.storage = storage
    app.state.metrics = metrics
    app.state.file_service = FileService.from_config(registry, storage, metrics)
    app.state.reaper = reaper
    app.state.rate_limiters = {
        "api": RateLimiter(config.RATE_LIMIT_PER_MINUTE, namespace="api", redis_url=config.REDIS_URL),
        "upload": RateLimiter(config.UPLOAD_RATE_LIMIT_PER_MINUTE, namespace="upload", redis_url=config.REDIS_URL),
        "download": RateLimiter(
            config.DOWNLOAD_RATE_LIMIT_PER_MINUTE, namespace="download", redis_url=config.REDIS_URL
        ),
    }
    app.state.draining = False

    if config.ENABLE_CLEANER:
        reaper.start()
    else:
        logger.info("event=reaper_disabled")

    logger.info("event=startup storage_type=%s", config.STORAGE_TYPE)
    try:
        yield
    finally:
        app.state.draining = True
        if reaper.started:
            reaper.stop(config.CLEANUP_SHUTDOWN_TIMEOUT_SECONDS)
        engine.dispose()
        logger.info("event=shutdown")


def create_app() -> FastAPI:
    app = FastAPI(title="Linkdrop API", version="1.0.0", lifespan=lifespan)

    origins = [origin.strip() for origin in config.CORS_ORIGINS.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "Retry-After"],
    )

    app.include_router(router)
    register_exception_handlers(app)
    return app


app = create_app()
