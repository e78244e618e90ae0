"""逐级升级的预约编排

按固定顺序尝试各个策略，第一个成功即停止；全部失败时交给人工兜底，
因此每次运行都恰好产出一个成功的终态结果。
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from .idcard import mask_id_number
from .manual import ManualFallbackStrategy
from .models import PENDING_VERIFICATION, VERIFIED, BookingAttemptResult, BookingRequest
from .strategies import BookingStrategy
from .timing import TimingGate
from .verification import VerificationService


logger = logging.getLogger(__name__)

TIMING_GATE = "timing_gate"


class EscalationOrchestrator:
    def __init__(
        self,
        strategies: Sequence[BookingStrategy],
        manual: ManualFallbackStrategy,
        *,
        verifier: Optional[VerificationService] = None,
        timing_gate: Optional[TimingGate] = None,
        enforce_release_window: bool = False,
        tier_timeout: float = 60.0,
    ) -> None:
        self.strategies = list(strategies)
        self.manual = manual
        self.verifier = verifier
        self.timing_gate = timing_gate
        self.enforce_release_window = enforce_release_window
        self.tier_timeout = tier_timeout

    @property
    def tiers(self) -> List[str]:
        return [strategy.name for strategy in self.strategies] + [self.manual.name]

    async def _guarded(self, strategy: BookingStrategy, request: BookingRequest) -> BookingAttemptResult:
        try:
            return await asyncio.wait_for(strategy.attempt(request), timeout=self.tier_timeout)
        except asyncio.TimeoutError:
            return BookingAttemptResult.failed(strategy.name, f"超过 {self.tier_timeout:g} 秒未完成")
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("[%s] 策略异常", strategy.name)
            return BookingAttemptResult.failed(strategy.name, f"{type(exc).__name__}: {exc}")

    async def run(self, request: BookingRequest, *, now: Optional[datetime] = None) -> BookingAttemptResult:
        failures: List[Tuple[str, str]] = []
        logger.info(
            "开始预约 visitor=%s id=%s museum=%s date=%s slot=%s tiers=%s",
            request.visitor_name,
            mask_id_number(request.id_number),
            request.museum,
            request.visit_date,
            request.time_slot,
            ",".join(self.tiers),
        )

        strategies = self.strategies
        if self.enforce_release_window and self.timing_gate is not None:
            status = self.timing_gate.status(now)
            if not status.can_book:
                logger.info("放票窗口未开放（%s），直接转人工", status.status)
                failures.append((TIMING_GATE, f"{status.status}: 下次放票 {status.next_release}"))
                strategies = []

        for strategy in strategies:
            logger.info("-> %s", strategy.name)
            result = await self._guarded(strategy, request)
            if result.success:
                return await self._finish(result, request, failures)
            reason = result.error or "未知错误"
            logger.info("<- %s 失败: %s", strategy.name, reason)
            failures.append((strategy.name, reason))

        logger.info("-> %s", self.manual.name)
        result = await self.manual.attempt(request)
        return dataclasses.replace(result, failures=tuple(failures))

    async def _finish(
        self,
        result: BookingAttemptResult,
        request: BookingRequest,
        failures: List[Tuple[str, str]],
    ) -> BookingAttemptResult:
        result = dataclasses.replace(result, failures=tuple(failures))
        if self.verifier is None:
            return result
        verified = await self.verifier.verify(
            result.booking_reference or "", request.visitor_name, request.id_number
        )
        return dataclasses.replace(result, verification=VERIFIED if verified else PENDING_VERIFICATION)
