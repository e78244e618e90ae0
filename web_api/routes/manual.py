from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from museum_booking.models import MANUAL_COMPLETED, MANUAL_PENDING
from museum_booking.service import MuseumBookingService, get_booking_service

router = APIRouter(prefix="/manual-bookings", tags=["manual-bookings"])


class CompletePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    official_reference: str = Field(alias="officialReference", min_length=1)


@router.get("")
async def list_manual_bookings(
    status: Optional[str] = Query(None, pattern=f"^({MANUAL_PENDING}|{MANUAL_COMPLETED})$"),
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    records = await service.list_manual_bookings(status)
    return {"records": [record.to_dict() for record in records]}


@router.post("/{record_id}/complete")
async def complete_manual_booking(
    record_id: str,
    payload: CompletePayload,
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    record = await service.complete_manual_booking(record_id, payload.official_reference)
    return record.to_dict()
