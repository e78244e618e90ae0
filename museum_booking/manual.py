"""人工兜底

自动化全部失败时，生成一个待人工处理的预约单：本地参考号 + 操作说明，
写入数据库供值班人员在官方渠道完成预约后回填官方预约号。
"""

from __future__ import annotations

import logging
import random
import string
from datetime import datetime, timedelta
from typing import Optional

import pytz

from .database import DatabaseManager
from .idcard import mask_id_number
from .models import MANUAL, MANUAL_PENDING, BookingAttemptResult, BookingRequest, ManualBookingRecord
from .strategies import BookingStrategy


logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

ID_TYPE_LABELS = {
    "id_card": "居民身份证",
    "passport": "护照",
    "hk_macau_pass": "港澳居民来往内地通行证",
    "taiwan_pass": "台湾居民来往大陆通行证",
}


def generate_reference(request: BookingRequest, rng: Optional[random.Random] = None) -> str:
    """MANUAL-<场馆前缀><YYMMDD>-<6 位随机大写字母数字>"""
    chooser = rng or random.SystemRandom()
    suffix = "".join(chooser.choice(REFERENCE_ALPHABET) for _ in range(6))
    return f"MANUAL-{request.site.prefix}{request.visit_day.strftime('%y%m%d')}-{suffix}"


def build_instructions(request: BookingRequest, reference: str, deadline: datetime) -> str:
    site = request.site
    lines = [
        "人工预约操作说明",
        "=" * 16,
        "",
        f"场馆：{site.name}（{site.address}）",
        f"参观日期：{request.visit_date}",
        f"时段：{request.time_slot}",
        f"参观人数：{request.number_of_visitors}",
        "",
        "联系人：",
        f"  姓名：{request.visitor_name}",
        f"  证件：{ID_TYPE_LABELS.get(request.id_type, request.id_type)} {request.id_number}",
        "",
        "游客明细：",
    ]
    for index, visitor in enumerate(request.visitor_details, start=1):
        age = f"，{visitor.age}岁" if visitor.age is not None else ""
        lines.append(
            f"  {index}. {visitor.name}，{ID_TYPE_LABELS.get(visitor.id_type, visitor.id_type)} {visitor.id_number}{age}"
        )
    lines += [
        "",
        "操作步骤：",
        "  1. 打开陕西历史博物馆官方微信公众号或小程序",
        "  2. 进入门票预约",
        f"  3. 选择参观日期 {request.visit_date}",
        f"  4. 选择时段 {request.time_slot}",
        "  5. 按上方明细逐一添加游客信息",
        "  6. 提交预约并记下官方预约号",
        f"  7. 在系统中为本单回填官方预约号（本地单号 {reference}）",
        "",
        f"本地单号：{reference}",
        f"处理截止：{deadline.strftime('%Y-%m-%d %H:%M')}",
        "状态：等待人工处理",
    ]
    return "\n".join(lines)


class ManualFallbackStrategy(BookingStrategy):
    """永远返回成功；持久化失败只记日志"""

    name = MANUAL
    capabilities = frozenset()

    def __init__(
        self,
        db: Optional[DatabaseManager],
        *,
        deadline_minutes: int = 30,
        timezone: str = "Asia/Shanghai",
        rng: Optional[random.Random] = None,
    ) -> None:
        self.db = db
        self.deadline_minutes = deadline_minutes
        self.tz = pytz.timezone(timezone)
        self.rng = rng

    async def attempt(self, request: BookingRequest) -> BookingAttemptResult:
        now = datetime.now(self.tz)
        deadline = now + timedelta(minutes=self.deadline_minutes)
        reference = generate_reference(request, self.rng)
        instructions = build_instructions(request, reference, deadline)

        record = ManualBookingRecord(
            id=reference,
            status=MANUAL_PENDING,
            data=request.to_payload(),
            instructions=instructions,
            deadline=deadline,
            created_at=now,
            updated_at=now,
        )
        record_id: Optional[str] = None
        if self.db is not None:
            try:
                await self.db.save_manual_booking(record)
                record_id = record.id
            except Exception:
                logger.exception("保存人工预约记录失败 reference=%s", reference)

        logger.warning(
            "[%s] 自动预约全部失败，已生成人工预约单 %s visitor=%s id=%s",
            self.name,
            reference,
            request.visitor_name,
            mask_id_number(request.id_number),
        )
        return BookingAttemptResult(
            success=True,
            provenance=self.name,
            booking_reference=reference,
            instructions=instructions,
            deadline=deadline,
            manual_record_id=record_id,
        )
