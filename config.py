"""Runtime configuration for the museum booking engine.

Configuration is loaded from environment variables so the same codebase can
run against the local fixture platform, staging or the real ticket site
without modifying source files.  Malformed values raise ConfigurationError at
import time."""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from museum_booking.api import resolve_payload_builder
from museum_booking.errors import ConfigurationError
from museum_booking.models import EndpointSet, EngineSettings
from museum_booking.timing import parse_release_time


ENVIRONMENT = os.getenv("MUSEUM_ENV", "development").lower()
CONFIG_ROOT = Path(os.getenv("MUSEUM_CONFIG_ROOT", Path(__file__).resolve().parent / "data")).resolve()

STATIC_ROOT = Path(__file__).resolve().parent / "museum_booking" / "static"
FIXTURE_PAGE = STATIC_ROOT / "test-museum-site.html"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: float, cast=float):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigurationError(f"环境变量 {name} 不是有效的数字: {raw!r}") from None


def _split_env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    if not value:
        return []
    return [item.strip() for item in value.replace(";", ",").split(",") if item.strip()]


def _load_json_from_env(env_key: str) -> Optional[Any]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise ConfigurationError(f"环境变量 {env_key} 不是有效的 JSON") from None


def _load_json_from_file(path: Optional[str]) -> Optional[Any]:
    if not path:
        return None
    file_path = Path(path).expanduser().resolve()
    if not file_path.exists():
        raise ConfigurationError(f"配置文件 {file_path} 不存在")
    try:
        return json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"配置文件 {file_path} 不是有效的 JSON: {exc}") from exc


def load_endpoints(override: Optional[Dict[str, Any]] = None) -> EndpointSet:
    """在默认候选接口上叠加覆盖项；未知字段或格式错误视为配置错误"""
    endpoints = EndpointSet()
    if override is None:
        override = _load_json_from_env("MUSEUM_ENDPOINTS_JSON")
        if override is None:
            override = _load_json_from_file(os.getenv("MUSEUM_ENDPOINTS_FILE"))
    if override is None:
        return endpoints
    if not isinstance(override, dict):
        raise ConfigurationError("接口覆盖配置必须是 JSON 对象")

    for key, value in override.items():
        if not hasattr(endpoints, key):
            raise ConfigurationError(f"未知的接口配置项: {key}")
        current = getattr(endpoints, key)
        if isinstance(current, list):
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ConfigurationError(f"接口配置项 {key} 必须是字符串列表")
        elif not isinstance(value, str):
            raise ConfigurationError(f"接口配置项 {key} 必须是字符串")
        if key.endswith("_payload"):
            try:
                resolve_payload_builder(value)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from None
        setattr(endpoints, key, value)
    return endpoints


def _booking_urls() -> List[str]:
    primary = os.getenv("MUSEUM_BOOKING_URL", "").strip() or FIXTURE_PAGE.as_uri()
    urls = [primary]
    for item in _split_env_list("MUSEUM_BOOKING_URL_VARIANTS"):
        if item not in urls:
            urls.append(item)
    return urls


def _action_delay() -> Tuple[float, float]:
    low = _env_number("MUSEUM_ACTION_DELAY_MIN", 0.2)
    high = _env_number("MUSEUM_ACTION_DELAY_MAX", 0.8)
    if low < 0 or high < low:
        raise ConfigurationError("MUSEUM_ACTION_DELAY_MIN/MAX 取值无效")
    return low, high


# Base address for all API requests. Defaults to the bundled fixture platform.
BASE_URL = os.getenv("MUSEUM_BASE_URL", "http://127.0.0.1:8080")

RELEASE_TIME = os.getenv("MUSEUM_RELEASE_TIME", "17:00")
parse_release_time(RELEASE_TIME)

DB_PATH = os.getenv("MUSEUM_DB_PATH", str(CONFIG_ROOT / "museum.db"))

LOG_LEVEL = os.getenv("MUSEUM_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("MUSEUM_LOG_FILE") or None

# =============================================================================
# 引擎配置 (EngineSettings)
# =============================================================================
# - 身份模拟（移动端 / 微信小程序）默认关闭，需要 MUSEUM_ENABLE_IMPERSONATION=1
# - 伪造 token / 设备号默认关闭，需要 MUSEUM_SYNTHESIZE_TOKENS=1
# - 放票窗口默认只做展示，MUSEUM_ENFORCE_RELEASE_WINDOW=1 时窗口外直接转人工
# =============================================================================
SETTINGS = EngineSettings(
    base_url=BASE_URL,
    booking_urls=_booking_urls(),
    endpoints=load_endpoints(),
    request_timeout=_env_number("MUSEUM_REQUEST_TIMEOUT", 15.0),
    browser_timeout=_env_number("MUSEUM_BROWSER_TIMEOUT", 30.0),
    tier_timeout=_env_number("MUSEUM_TIER_TIMEOUT", 60.0),
    navigation_retries=_env_number("MUSEUM_NAVIGATION_RETRIES", 2, int),
    browser_headless=_env_bool("MUSEUM_BROWSER_HEADLESS", True),
    browser_stealth=_env_bool("MUSEUM_BROWSER_STEALTH", True),
    action_delay=_action_delay(),
    enable_browser=_env_bool("MUSEUM_ENABLE_BROWSER", True),
    enable_impersonation=_env_bool("MUSEUM_ENABLE_IMPERSONATION", False),
    synthesize_tokens=_env_bool("MUSEUM_SYNTHESIZE_TOKENS", False),
    verify_after_booking=_env_bool("MUSEUM_VERIFY_AFTER_BOOKING", True),
    enforce_release_window=_env_bool("MUSEUM_ENFORCE_RELEASE_WINDOW", False),
    release_time=RELEASE_TIME,
    release_window_minutes=_env_number("MUSEUM_RELEASE_WINDOW_MINUTES", 5, int),
    timezone=os.getenv("MUSEUM_TIMEZONE", "Asia/Shanghai"),
    manual_deadline_minutes=_env_number("MUSEUM_MANUAL_DEADLINE_MINUTES", 30, int),
    db_path=DB_PATH,
)

# Web gateway
WEB_HOST = os.getenv("MUSEUM_WEB_HOST", "127.0.0.1")
WEB_PORT = _env_number("MUSEUM_WEB_PORT", 8000, int)
BOOKING_TIMEOUT = _env_number("MUSEUM_BOOKING_TIMEOUT", 240.0)
