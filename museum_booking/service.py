from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import httpx

from .api import MuseumAPI
from .automation import BrowserStrategy, SessionFactory
from .database import DatabaseManager
from .errors import InvalidBookingRequest, OrchestrationTimeout
from .idcard import is_valid_id_number
from .manual import ManualFallbackStrategy
from .models import (
    BookingAttemptResult,
    BookingRequest,
    EngineSettings,
    ManualBookingRecord,
    MUSEUM_SITES,
    TimingStatus,
    VerificationRecord,
)
from .orchestrator import EscalationOrchestrator
from .strategies import BookingStrategy, api_strategies
from .timing import TimingGate, parse_release_time
from .verification import VerificationService


logger = logging.getLogger(__name__)


def build_strategies(
    settings: EngineSettings,
    api: MuseumAPI,
    browser_session_factory: Optional[SessionFactory] = None,
) -> List[BookingStrategy]:
    """direct_api → enhanced_api → [mobile_api → wechat_api] → browser"""
    strategies = api_strategies(settings, api)
    if settings.enable_browser:
        strategies.append(BrowserStrategy.from_settings(settings, browser_session_factory))
    return strategies


class MuseumBookingService:
    """预约引擎的对外入口，CLI 与 Web API 共用"""

    def __init__(
        self,
        settings: EngineSettings,
        *,
        db: Optional[DatabaseManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        browser_session_factory: Optional[SessionFactory] = None,
        strategies: Optional[Sequence[BookingStrategy]] = None,
    ) -> None:
        self.settings = settings
        self.browser_session_factory = browser_session_factory
        self.db = db or DatabaseManager(settings.db_path)
        self.api = MuseumAPI(
            settings.base_url,
            timeout=settings.request_timeout,
            synthesize_tokens=settings.synthesize_tokens,
            transport=transport,
        )
        self.timing_gate = TimingGate(
            parse_release_time(settings.release_time),
            window_minutes=settings.release_window_minutes,
            timezone=settings.timezone,
        )
        self.verifier = VerificationService(self.api, settings.endpoints, self.db)
        self.manual = ManualFallbackStrategy(
            self.db,
            deadline_minutes=settings.manual_deadline_minutes,
            timezone=settings.timezone,
        )
        if strategies is None:
            strategies = build_strategies(settings, self.api, browser_session_factory)
        self.orchestrator = EscalationOrchestrator(
            strategies,
            self.manual,
            verifier=self.verifier if settings.verify_after_booking else None,
            timing_gate=self.timing_gate,
            enforce_release_window=settings.enforce_release_window,
            tier_timeout=settings.tier_timeout,
        )
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, **kwargs: Any) -> "MuseumBookingService":
        import config as CFG  # pylint: disable=import-outside-toplevel

        return cls(CFG.SETTINGS, **kwargs)

    # -------------------- 预约 --------------------

    def _on_run_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("预约流程被取消")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("预约流程异常结束: %s", exc, exc_info=exc)
            return
        result: BookingAttemptResult = task.result()
        logger.info(
            "预约流程结束 provenance=%s reference=%s verification=%s",
            result.provenance,
            result.booking_reference,
            result.verification,
        )

    async def attempt_booking(
        self,
        request: Union[BookingRequest, Dict[str, Any]],
        *,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> BookingAttemptResult:
        """执行一次完整的预约流程

        调用方超时或被取消时流程本身不会中断，会在后台继续跑完并记录结果；
        超时以 OrchestrationTimeout 通知调用方。
        """
        if not isinstance(request, BookingRequest):
            request = BookingRequest.from_dict(request)

        task = asyncio.ensure_future(self.orchestrator.run(request, now=now))
        self._background.add(task)
        task.add_done_callback(self._on_run_done)

        if timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            raise OrchestrationTimeout(f"预约流程 {timeout:g} 秒内未完成，已转入后台继续执行") from None

    async def drain(self) -> None:
        """等待所有后台预约流程结束"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @property
    def running(self) -> int:
        return len(self._background)

    # -------------------- 放票时间 / 证件 --------------------

    def timing_status(self, now: Optional[datetime] = None) -> TimingStatus:
        return self.timing_gate.status(now)

    @staticmethod
    def check_id_number(value: str) -> bool:
        return is_valid_id_number(value)

    # -------------------- 余票 --------------------

    async def check_availability(self, visit_date: str, time_slot: str, museum: str = "main") -> bool:
        """用浏览器查询某场馆某时段是否还有票，查询失败按无票处理"""
        if museum not in MUSEUM_SITES:
            raise InvalidBookingRequest(f"未知场馆: {museum}")
        try:
            datetime.strptime(visit_date, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise InvalidBookingRequest(f"visit_date 格式应为 YYYY-MM-DD: {visit_date}") from None
        if not time_slot:
            raise InvalidBookingRequest("time_slot 不能为空")
        checker = BrowserStrategy.from_settings(self.settings, self.browser_session_factory)
        return await checker.check_availability(visit_date, time_slot, museum)

    # -------------------- 核验 --------------------

    async def verify(self, booking_id: str, visitor_name: str, id_number: str) -> bool:
        return await self.verifier.verify(booking_id, visitor_name, id_number)

    async def verification_status(self, booking_id: str) -> Optional[VerificationRecord]:
        return await self.verifier.status(booking_id)

    async def pending_verifications(self) -> List[VerificationRecord]:
        return await self.verifier.pending()

    # -------------------- 人工预约单 --------------------

    async def list_manual_bookings(self, status: Optional[str] = None) -> List[ManualBookingRecord]:
        return await self.db.list_manual_bookings(status)

    async def get_manual_booking(self, record_id: str) -> Optional[ManualBookingRecord]:
        return await self.db.load_manual_booking(record_id)

    async def complete_manual_booking(self, record_id: str, official_reference: str) -> ManualBookingRecord:
        record = await self.db.complete_manual_booking(record_id, official_reference)
        logger.info("人工预约单 %s 已回填官方预约号 %s", record_id, official_reference)
        return record


_service: Optional[MuseumBookingService] = None


def get_booking_service() -> MuseumBookingService:
    """获取进程内共享的服务实例"""
    global _service
    if _service is None:
        _service = MuseumBookingService.from_config()
    return _service


def set_booking_service(service: Optional[MuseumBookingService]) -> None:
    global _service
    _service = service
