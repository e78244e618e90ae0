"""Museum ticket booking automation engine."""

from .errors import (
    ConfigurationError,
    InvalidBookingRequest,
    ManualRecordAlreadyCompleted,
    ManualRecordNotFound,
    MuseumBookingError,
    OrchestrationTimeout,
)
from .idcard import is_valid_id_number
from .models import BookingAttemptResult, BookingRequest, EngineSettings, TimingStatus, VisitorDetail
from .timing import TimingGate

__all__ = [
    "BookingAttemptResult",
    "BookingRequest",
    "ConfigurationError",
    "EngineSettings",
    "InvalidBookingRequest",
    "ManualRecordAlreadyCompleted",
    "ManualRecordNotFound",
    "MuseumBookingError",
    "OrchestrationTimeout",
    "TimingGate",
    "TimingStatus",
    "VisitorDetail",
    "is_valid_id_number",
]
