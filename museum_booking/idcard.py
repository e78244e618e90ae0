"""居民身份证号码校验（GB 11643 加权模 11 校验码）"""

from __future__ import annotations

from typing import Optional

WEIGHTS = (7, 9, 10, 5, 8, 4, 2, 1, 6, 3, 7, 9, 10, 5, 8, 4, 2)
CHECK_CODES = "10X98765432"


def check_digit(first17: str) -> str:
    """根据前 17 位计算第 18 位校验码"""
    if len(first17) != 17 or not first17.isdigit():
        raise ValueError("check_digit 需要 17 位数字")
    total = sum(int(ch) * weight for ch, weight in zip(first17, WEIGHTS))
    return CHECK_CODES[total % 11]


def is_valid_id_number(value: Optional[str]) -> bool:
    if not isinstance(value, str) or len(value) != 18:
        return False
    body, last = value[:17], value[17].upper()
    # isdigit() 对全角数字也为真，这里只接受 ASCII
    if not (body.isascii() and body.isdigit()):
        return False
    if not (last == "X" or (last.isascii() and last.isdigit())):
        return False
    return check_digit(body) == last


def mask_id_number(value: Optional[str]) -> str:
    """日志中使用的脱敏形式"""
    if not value:
        return "-"
    if len(value) <= 7:
        return "*" * len(value)
    return f"{value[:3]}{'*' * (len(value) - 7)}{value[-4:]}"
