from __future__ import annotations

from fastapi import APIRouter, FastAPI

from . import booking, manual, system


def register_routes(app: FastAPI) -> None:
    """Attach all routers to FastAPI application."""
    api_router = APIRouter(prefix="/api")

    for router in (system.router, booking.router, manual.router):
        api_router.include_router(router)

    app.include_router(api_router)
