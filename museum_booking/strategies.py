"""预约策略

每个策略实现同一个 ``attempt(request)`` 协议，并带有来源标签与能力集合；
编排器只依赖这个协议，按固定顺序逐个尝试。
"""

from __future__ import annotations

import logging
from typing import FrozenSet, List, Optional, Sequence

import httpx

from .api import MuseumAPI, resolve_payload_builder
from .fingerprints import DESKTOP, ENHANCED_DESKTOP, MOBILE_APP, WECHAT_MINIPROGRAM, ClientProfile
from .idcard import mask_id_number
from .models import (
    DIRECT_API,
    ENHANCED_API,
    MOBILE_API,
    WECHAT_API,
    BookingAttemptResult,
    BookingRequest,
    EngineSettings,
)


logger = logging.getLogger(__name__)

NETWORK_CALL = "network-call"
FORM_AUTOMATION = "form-automation"
IDENTITY_IMPERSONATION = "identity-impersonation"


class BookingStrategy:
    """策略基类；失败以结果返回，不抛异常"""

    name: str = ""
    capabilities: FrozenSet[str] = frozenset()

    async def attempt(self, request: BookingRequest) -> BookingAttemptResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class ApiStrategy(BookingStrategy):
    """对一组候选接口依次提交，命中第一个带成功标记的响应即返回"""

    def __init__(
        self,
        name: str,
        api: MuseumAPI,
        profile: ClientProfile,
        paths: Sequence[str],
        *,
        payload_format: str = "camel",
        form: bool = False,
        prime_path: Optional[str] = None,
        capabilities: FrozenSet[str] = frozenset({NETWORK_CALL}),
    ) -> None:
        self.name = name
        self.api = api
        self.profile = profile
        self.paths = list(paths)
        self.payload_builder = resolve_payload_builder(payload_format)
        self.form = form
        self.prime_path = prime_path
        self.capabilities = capabilities

    async def attempt(self, request: BookingRequest) -> BookingAttemptResult:
        if not self.paths:
            return BookingAttemptResult.failed(self.name, "没有配置候选接口")

        payload = self.payload_builder(request)
        logger.debug(
            "[%s] 提交预约 visitor=%s id=%s endpoints=%d",
            self.name,
            request.visitor_name,
            mask_id_number(request.id_number),
            len(self.paths),
        )
        try:
            async with self.api.open_client(self.profile) as client:
                if self.prime_path:
                    await self.api.prime_session(client, self.prime_path)
                outcome = await self.api.submit_booking(client, self.paths, payload, form=self.form)
        except httpx.HTTPError as exc:
            return BookingAttemptResult.failed(self.name, f"{type(exc).__name__}: {exc}")

        if not outcome.matched:
            logger.info("[%s] 所有候选接口均未成功: %s", self.name, outcome.summary())
            return BookingAttemptResult.failed(self.name, outcome.summary())

        logger.info("[%s] 预约成功 booking=%s endpoint=%s", self.name, outcome.booking_id, outcome.endpoint)
        return BookingAttemptResult(
            success=True,
            provenance=self.name,
            booking_reference=outcome.booking_id,
            confirmation_code=outcome.confirmation_code,
            endpoint=outcome.endpoint,
        )


def api_strategies(settings: EngineSettings, api: MuseumAPI) -> List[BookingStrategy]:
    """按固定顺序构造接口类策略；身份模拟类策略只在显式开启时注册"""
    endpoints = settings.endpoints
    strategies: List[BookingStrategy] = [
        ApiStrategy(
            DIRECT_API,
            api,
            DESKTOP,
            endpoints.direct_booking,
            payload_format=endpoints.direct_payload,
        ),
        ApiStrategy(
            ENHANCED_API,
            api,
            ENHANCED_DESKTOP,
            endpoints.enhanced_booking,
            payload_format=endpoints.enhanced_payload,
            form=True,
            prime_path=endpoints.session_prime,
        ),
    ]
    if settings.enable_impersonation:
        impersonating = frozenset({NETWORK_CALL, IDENTITY_IMPERSONATION})
        strategies.append(
            ApiStrategy(
                MOBILE_API,
                api,
                MOBILE_APP,
                endpoints.mobile_booking,
                payload_format=endpoints.mobile_payload,
                capabilities=impersonating,
            )
        )
        strategies.append(
            ApiStrategy(
                WECHAT_API,
                api,
                WECHAT_MINIPROGRAM,
                endpoints.wechat_booking,
                payload_format=endpoints.wechat_payload,
                capabilities=impersonating,
            )
        )
    return strategies
