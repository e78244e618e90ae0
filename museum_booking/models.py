from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidBookingRequest


MAX_VISITORS = 5

# 策略来源标签
DIRECT_API = "direct_api"
ENHANCED_API = "enhanced_api"
MOBILE_API = "mobile_api"
WECHAT_API = "wechat_api"
BROWSER = "browser"
MANUAL = "manual"

VERIFIED = "verified"
PENDING_VERIFICATION = "pending"

MANUAL_PENDING = "pending"
MANUAL_COMPLETED = "completed"


@dataclass(frozen=True)
class MuseumSite:
    code: str
    prefix: str
    name: str
    address: str


MUSEUM_SITES: Dict[str, MuseumSite] = {
    "main": MuseumSite(
        code="main",
        prefix="SM",
        name="陕西历史博物馆",
        address="西安市雁塔区小寨东路91号",
    ),
    "qin_han": MuseumSite(
        code="qin_han",
        prefix="QH",
        name="陕西历史博物馆秦汉馆",
        address="西咸新区秦汉新城兰池三路东段",
    ),
}


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return default


@dataclass
class VisitorDetail:
    name: str
    id_number: str
    id_type: str = "id_card"
    age: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisitorDetail":
        age = _pick(data, "age")
        return cls(
            name=str(_pick(data, "name", "visitorName", "visitor_name", default="")),
            id_number=str(_pick(data, "idNumber", "id_number", default="")),
            id_type=str(_pick(data, "idType", "id_type", default="id_card")),
            age=int(age) if age is not None else None,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "idNumber": self.id_number,
            "idType": self.id_type,
        }
        if self.age is not None:
            payload["age"] = self.age
        return payload


@dataclass
class BookingRequest:
    """一次预约请求（调用方已完成业务规则校验）"""

    visitor_name: str
    id_number: str
    museum: str
    visit_date: str
    time_slot: str
    visitor_details: List[VisitorDetail] = field(default_factory=list)
    id_type: str = "id_card"
    number_of_visitors: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.visit_date, (date, datetime)):
            self.visit_date = self.visit_date.strftime("%Y-%m-%d")
        self.visitor_details = [
            item if isinstance(item, VisitorDetail) else VisitorDetail.from_dict(item)
            for item in self.visitor_details
        ]
        if self.number_of_visitors is None:
            self.number_of_visitors = len(self.visitor_details)
        self.validate()

    def validate(self) -> None:
        if not self.visitor_name or not self.visitor_name.strip():
            raise InvalidBookingRequest("visitor_name 不能为空")
        if not self.id_number:
            raise InvalidBookingRequest("id_number 不能为空")
        if self.museum not in MUSEUM_SITES:
            raise InvalidBookingRequest(f"未知场馆: {self.museum}")
        try:
            datetime.strptime(self.visit_date, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise InvalidBookingRequest(f"visit_date 格式应为 YYYY-MM-DD: {self.visit_date}") from None
        if not self.time_slot:
            raise InvalidBookingRequest("time_slot 不能为空")
        count = len(self.visitor_details)
        if not 1 <= count <= MAX_VISITORS:
            raise InvalidBookingRequest(f"参观人数必须在 1-{MAX_VISITORS} 之间，当前 {count}")
        if self.number_of_visitors != count:
            raise InvalidBookingRequest(
                f"参观人数 {self.number_of_visitors} 与游客明细数量 {count} 不一致"
            )

    @property
    def site(self) -> MuseumSite:
        return MUSEUM_SITES[self.museum]

    @property
    def visit_day(self) -> date:
        return datetime.strptime(self.visit_date, "%Y-%m-%d").date()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookingRequest":
        details = _pick(data, "visitorDetails", "visitor_details", default=[]) or []
        count = _pick(data, "numberOfVisitors", "number_of_visitors")
        return cls(
            visitor_name=str(_pick(data, "visitorName", "visitor_name", default="")),
            id_number=str(_pick(data, "idNumber", "id_number", default="")),
            id_type=str(_pick(data, "idType", "id_type", default="id_card")),
            museum=str(_pick(data, "museum", default="")),
            visit_date=_pick(data, "visitDate", "visit_date", default=""),
            time_slot=str(_pick(data, "timeSlot", "time_slot", default="")),
            visitor_details=list(details),
            number_of_visitors=int(count) if count is not None else None,
        )

    def to_payload(self) -> Dict[str, Any]:
        """平台常见的 camelCase 载荷"""
        return {
            "visitorName": self.visitor_name,
            "idNumber": self.id_number,
            "idType": self.id_type,
            "museum": self.museum,
            "visitDate": self.visit_date,
            "timeSlot": self.time_slot,
            "numberOfVisitors": self.number_of_visitors,
            "visitorDetails": [item.to_payload() for item in self.visitor_details],
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BookingAttemptResult:
    """单个策略（或整个编排）的结果，生成后不可变"""

    success: bool
    provenance: str
    booking_reference: Optional[str] = None
    confirmation_code: Optional[str] = None
    error: Optional[str] = None
    endpoint: Optional[str] = None
    verification: Optional[str] = None
    instructions: Optional[str] = None
    deadline: Optional[datetime] = None
    manual_record_id: Optional[str] = None
    failures: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def failed(cls, provenance: str, error: str, *, endpoint: Optional[str] = None) -> "BookingAttemptResult":
        return cls(success=False, provenance=provenance, error=error, endpoint=endpoint)

    @property
    def is_manual(self) -> bool:
        return self.provenance == MANUAL

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["deadline"] = self.deadline.isoformat() if self.deadline else None
        payload["failures"] = [{"strategy": name, "reason": reason} for name, reason in self.failures]
        return payload


@dataclass
class VerificationRecord:
    booking_id: str
    visitor_name: str
    id_number: str
    found: bool = False
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    found_at: Optional[datetime] = None
    last_endpoint: Optional[str] = None


@dataclass(frozen=True)
class TimingStatus:
    current_time: str
    release_time: str
    status: str
    can_book: bool
    next_release: str
    minutes_until_release: int
    timezone: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ManualBookingRecord:
    id: str
    status: str
    data: Dict[str, Any]
    instructions: str
    deadline: Optional[datetime] = None
    official_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "data": self.data,
            "instructions": self.instructions,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "official_reference": self.official_reference,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class EndpointSet:
    """候选接口路径，按优先级排列；平台真实契约未知，全部视为配置"""

    direct_booking: List[str] = field(
        default_factory=lambda: [
            "/api/v1/booking",
            "/api/v2/booking",
            "/quickticket/api/booking",
            "/api/booking/create",
            "/api/bookings",
        ]
    )
    enhanced_booking: List[str] = field(
        default_factory=lambda: [
            "/quickticket/api/reserve",
            "/api/reservation/submit",
            "/api/booking/create",
        ]
    )
    mobile_booking: List[str] = field(
        default_factory=lambda: [
            "/mobile/api/booking",
            "/api/mobile/booking",
            "/app/api/booking",
        ]
    )
    wechat_booking: List[str] = field(
        default_factory=lambda: [
            "/wechat/api/booking",
            "/api/wechat/booking",
            "/wx/api/booking",
        ]
    )
    verification: List[str] = field(
        default_factory=lambda: [
            "/api/bookings/verify",
            "/api/booking/verify",
            "/quickticket/api/verify",
            "/api/verify/{booking_id}",
        ]
    )
    session_prime: str = "/quickticket/index.html"
    direct_payload: str = "camel"
    enhanced_payload: str = "camel"
    mobile_payload: str = "camel"
    wechat_payload: str = "camel"


@dataclass
class EngineSettings:
    """引擎运行参数，由根目录 config.py 从环境变量装配"""

    base_url: str = "http://127.0.0.1:8080"
    booking_urls: List[str] = field(default_factory=list)
    endpoints: EndpointSet = field(default_factory=EndpointSet)
    request_timeout: float = 15.0
    browser_timeout: float = 30.0
    tier_timeout: float = 60.0
    navigation_retries: int = 2
    browser_headless: bool = True
    browser_stealth: bool = True
    action_delay: Tuple[float, float] = (0.2, 0.8)
    enable_browser: bool = True
    enable_impersonation: bool = False
    synthesize_tokens: bool = False
    verify_after_booking: bool = True
    enforce_release_window: bool = False
    release_time: str = "17:00"
    release_window_minutes: int = 5
    timezone: str = "Asia/Shanghai"
    manual_deadline_minutes: int = 30
    db_path: str = "data/museum.db"
