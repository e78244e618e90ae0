from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from museum_booking.service import MuseumBookingService, get_booking_service

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
async def health_check(service: MuseumBookingService = Depends(get_booking_service)) -> Dict[str, Any]:
    """Return basic application health information."""
    settings = service.settings
    return {
        "status": "ok",
        "tiers": service.orchestrator.tiers,
        "base_url": settings.base_url,
        "verify_after_booking": settings.verify_after_booking,
        "enforce_release_window": settings.enforce_release_window,
        "running": service.running,
    }
