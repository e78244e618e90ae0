from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from museum_booking.errors import (
    InvalidBookingRequest,
    ManualRecordAlreadyCompleted,
    ManualRecordNotFound,
    OrchestrationTimeout,
)

from .routes import register_routes

logger = logging.getLogger(__name__)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidBookingRequest)
    async def invalid_request(_: Request, exc: InvalidBookingRequest):
        return _error(400, exc)

    @app.exception_handler(ManualRecordNotFound)
    async def record_not_found(_: Request, exc: ManualRecordNotFound):
        return _error(404, exc)

    @app.exception_handler(ManualRecordAlreadyCompleted)
    async def record_completed(_: Request, exc: ManualRecordAlreadyCompleted):
        return _error(409, exc)

    @app.exception_handler(OrchestrationTimeout)
    async def orchestration_timeout(_: Request, exc: OrchestrationTimeout):
        logger.warning("预约请求超时: %s", exc)
        return _error(504, exc)


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Museum Booking API",
        description="API gateway for the museum ticket booking engine",
        version="0.1.0",
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    register_routes(app)
    return app


app = create_app()
