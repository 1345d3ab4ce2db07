"""
FastAPI application entry point for the replication service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from replication.config import get_settings
from replication.routes import router
from replication.service import ReplicationService


def create_app(service: Optional[ReplicationService] = None) -> FastAPI:
    settings = get_settings()
    service = service or ReplicationService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.start()
        yield
        service.stop()

    app = FastAPI(title="Family Data Replication", version="0.1.0", lifespan=lifespan)
    app.state.replication = service
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
