from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

import config as CFG
from museum_booking.models import BookingRequest, VerificationRecord
from museum_booking.service import MuseumBookingService, get_booking_service

router = APIRouter(prefix="/booking", tags=["booking"])


class VisitorPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    id_number: str = Field(alias="idNumber")
    id_type: str = Field(default="id_card", alias="idType")
    age: Optional[int] = None


class BookingAttemptPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    visitor_name: str = Field(alias="visitorName")
    id_number: str = Field(alias="idNumber")
    id_type: str = Field(default="id_card", alias="idType")
    museum: str
    visit_date: str = Field(alias="visitDate", description="YYYY-MM-DD")
    time_slot: str = Field(alias="timeSlot", description="e.g. 8:30-10:30")
    visitor_details: List[VisitorPayload] = Field(default_factory=list, alias="visitorDetails")
    number_of_visitors: Optional[int] = Field(default=None, alias="numberOfVisitors")

    def to_request(self) -> BookingRequest:
        return BookingRequest.from_dict(self.model_dump(by_alias=True))


class VerifyPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId")
    visitor_name: str = Field(alias="visitorName")
    id_number: str = Field(alias="idNumber")


def _serialize_verification(record: VerificationRecord) -> Dict[str, Any]:
    return {
        "booking_id": record.booking_id,
        "visitor_name": record.visitor_name,
        "found": record.found,
        "attempts": record.attempts,
        "last_attempt_at": record.last_attempt_at.isoformat() if record.last_attempt_at else None,
        "found_at": record.found_at.isoformat() if record.found_at else None,
        "last_endpoint": record.last_endpoint,
    }


@router.get("/timing")
async def timing_status(service: MuseumBookingService = Depends(get_booking_service)) -> Dict[str, Any]:
    """当前是否处于放票窗口"""
    return service.timing_status().to_dict()


@router.get("/availability")
async def check_availability(
    date: str = Query(..., description="YYYY-MM-DD"),
    slot: str = Query(..., alias="timeSlot", description="e.g. 8:30-10:30"),
    museum: str = Query("main"),
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    """通过预约页面查询余票，查询失败时 available 为 false"""
    available = await service.check_availability(date, slot, museum)
    return {"available": available, "date": date, "timeSlot": slot, "museum": museum}


@router.post("/attempt")
async def attempt_booking(
    payload: BookingAttemptPayload,
    timeout: Optional[float] = Query(None, gt=0, description="Seconds to wait before answering 504"),
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    request = payload.to_request()
    result = await service.attempt_booking(request, timeout=timeout or CFG.BOOKING_TIMEOUT)
    return result.to_dict()


@router.post("/verify")
async def verify_booking(
    payload: VerifyPayload,
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    found = await service.verify(payload.booking_id, payload.visitor_name, payload.id_number)
    record = await service.verification_status(payload.booking_id)
    return {
        "booking_id": payload.booking_id,
        "verified": found,
        "record": _serialize_verification(record) if record else None,
    }


@router.get("/verify/{booking_id}")
async def verification_status(
    booking_id: str,
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    record = await service.verification_status(booking_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"没有预约 {booking_id} 的核验记录")
    return _serialize_verification(record)


@router.get("/verify")
async def pending_verifications(
    service: MuseumBookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    """尚未确认的核验记录"""
    records = await service.pending_verifications()
    return {"records": [_serialize_verification(record) for record in records]}
