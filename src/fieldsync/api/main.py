"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from fieldsync.api.routes import records, sync as sync_routes
from fieldsync.service import OfflineDataService, build_service


def create_app(service: Optional[OfflineDataService] = None) -> FastAPI:
    """Build and return the FastAPI app around an OfflineDataService."""

    service = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.init()  # idempotent
        yield
        await service.wait_for_background()
        close = getattr(service.engine.remote, "close", None)
        if close is not None:
            await close()

    app = FastAPI(
        title="fieldsync",
        description="Offline-first record store with background sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.include_router(records.router, prefix="/records", tags=["records"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app
