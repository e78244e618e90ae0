"""引擎异常定义

外部世界的失败（网络、超时、选择器缺失）都以 BookingAttemptResult 形式返回，
只有编程错误、配置错误和不合法的请求才会以异常抛出。
"""

from __future__ import annotations


class MuseumBookingError(Exception):
    """所有引擎异常的基类"""


class ConfigurationError(MuseumBookingError, RuntimeError):
    """配置缺失或格式错误"""


class InvalidBookingRequest(MuseumBookingError, ValueError):
    """预约请求不满足基本约束（人数、证件信息等）"""


class ManualRecordNotFound(MuseumBookingError, LookupError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"人工预约记录不存在: {record_id}")
        self.record_id = record_id


class ManualRecordAlreadyCompleted(MuseumBookingError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"人工预约记录已完成，不能重复回填: {record_id}")
        self.record_id = record_id


class OrchestrationTimeout(MuseumBookingError, TimeoutError):
    """调用方等待超时；后台的预约流程会继续执行直至结束"""
