from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from datastore.reading_cache import build_default_cache
from logging_config import configure_logging
from services.ingestion import build_default_ingestion
from services.reconciler import build_default_reconciler
from storage.mock_ledger import build_default_ledger


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    cache = build_default_cache()
    reconciler = build_default_reconciler()
    reconciler.start()
    try:
        yield
    finally:
        reconciler.stop()
        cache.close()
        build_default_reconciler.cache_clear()
        build_default_ingestion.cache_clear()
        build_default_cache.cache_clear()
        build_default_ledger.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Sensor Ledger Gateway",
        description="Commits sensor reading digests to a ledger and serves the verified plaintext.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
