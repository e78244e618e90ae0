"""放票时间判断

平台每天在固定时刻放票，窗口只有几分钟，因此每次查询都重新计算，不做缓存。
"""

from __future__ import annotations

from datetime import datetime, time as dt_time
from typing import Optional

import pytz

from .errors import ConfigurationError
from .models import TimingStatus

BEFORE_RELEASE = "before_release"
IN_RELEASE_WINDOW = "in_release_window"
AFTER_RELEASE_WINDOW = "after_release_window"

MINUTES_PER_DAY = 24 * 60


def parse_release_time(raw: str) -> dt_time:
    try:
        hour_text, minute_text = raw.strip().split(":", 1)
        return dt_time(hour=int(hour_text), minute=int(minute_text))
    except (AttributeError, ValueError):
        raise ConfigurationError(f"放票时间格式应为 HH:MM: {raw!r}") from None


def _format_duration(minutes: int) -> str:
    hours, rest = divmod(max(minutes, 0), 60)
    return f"{hours}小时{rest}分钟"


class TimingGate:
    def __init__(
        self,
        release_time: dt_time = dt_time(hour=17, minute=0),
        *,
        window_minutes: int = 5,
        timezone: str = "Asia/Shanghai",
    ) -> None:
        if not 0 < window_minutes < MINUTES_PER_DAY:
            raise ConfigurationError("放票窗口必须大于 0 分钟且短于一天")
        try:
            self.tz = pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError:
            raise ConfigurationError(f"未知时区: {timezone}") from None
        self.release_time = release_time
        self.window_minutes = window_minutes

    def _localize(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(self.tz)
        if now.tzinfo is None:
            # 朴素时间视为平台所在时区的墙上时间
            return self.tz.localize(now)
        return now.astimezone(self.tz)

    def status(self, now: Optional[datetime] = None) -> TimingStatus:
        local = self._localize(now)
        now_minutes = local.hour * 60 + local.minute
        release_minutes = self.release_time.hour * 60 + self.release_time.minute
        window_end = (release_minutes + self.window_minutes) % MINUTES_PER_DAY
        release_label = self.release_time.strftime("%H:%M")

        # 窗口可能跨过午夜，按距上次放票的分钟数判断
        if (now_minutes - release_minutes) % MINUTES_PER_DAY < self.window_minutes:
            phase = IN_RELEASE_WINDOW
            can_book = True
            until = 0
            closes = f"{window_end // 60:02d}:{window_end % 60:02d}"
            next_release = f"正在放票（{closes} 截止）"
        elif now_minutes < release_minutes:
            phase = BEFORE_RELEASE
            can_book = False
            until = release_minutes - now_minutes
            next_release = f"今天 {release_label}（还有{_format_duration(until)}）"
        else:
            phase = AFTER_RELEASE_WINDOW
            can_book = False
            until = MINUTES_PER_DAY - now_minutes + release_minutes
            next_release = f"明天 {release_label}（还有{_format_duration(until)}）"

        return TimingStatus(
            current_time=local.strftime("%H:%M"),
            release_time=release_label,
            status=phase,
            can_book=can_book,
            next_release=next_release,
            minutes_until_release=until,
            timezone=self.tz.zone,
        )

    def can_book(self, now: Optional[datetime] = None) -> bool:
        return self.status(now).can_book
