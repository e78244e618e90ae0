"""预约核验：确认平台上确实能查到声称成功的预约"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from .api import MuseumAPI
from .database import DatabaseManager
from .fingerprints import DESKTOP
from .idcard import is_valid_id_number, mask_id_number
from .models import EndpointSet, VerificationRecord


logger = logging.getLogger(__name__)


class VerificationService:
    def __init__(self, api: MuseumAPI, endpoints: EndpointSet, db: DatabaseManager) -> None:
        self.api = api
        self.endpoints = endpoints
        self.db = db

    async def verify(self, booking_id: str, visitor_name: str, id_number: str) -> bool:
        """查询候选核验接口；任何失败都返回 False，每次调用计一次尝试"""
        found = False
        endpoint: Optional[str] = None

        if not booking_id:
            logger.warning("核验跳过：缺少预约号")
        elif not is_valid_id_number(id_number):
            logger.warning("核验跳过：证件号校验失败 booking=%s id=%s", booking_id, mask_id_number(id_number))
        else:
            try:
                async with self.api.open_client(DESKTOP) as client:
                    outcome = await self.api.query_verification(
                        client,
                        self.endpoints.verification,
                        booking_id=booking_id,
                        visitor_name=visitor_name,
                        id_number=id_number,
                    )
            except httpx.HTTPError as exc:
                logger.warning("核验请求失败 booking=%s: %s", booking_id, exc)
            else:
                found = outcome.matched
                endpoint = outcome.endpoint
                if not found:
                    logger.info("核验未找到 booking=%s: %s", booking_id, outcome.summary())

        if booking_id:
            try:
                record = await self.db.record_verification_attempt(
                    booking_id, visitor_name, id_number, found=found, endpoint=endpoint
                )
            except Exception:
                logger.exception("保存核验记录失败 booking=%s", booking_id)
            else:
                logger.info(
                    "核验 booking=%s found=%s attempts=%d", booking_id, record.found, record.attempts
                )
                # 已确认过的预约不会因为一次查询失败而被视为未找到
                found = record.found
        return found

    async def status(self, booking_id: str) -> Optional[VerificationRecord]:
        return await self.db.load_verification(booking_id)

    async def pending(self) -> List[VerificationRecord]:
        """尚未确认的记录，供人工决定是否重试"""
        return await self.db.list_pending_verifications()
