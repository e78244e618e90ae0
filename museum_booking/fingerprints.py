"""客户端指纹：请求头、UA/视口轮换，以及（受配置控制的）伪造会话标识"""

from __future__ import annotations

import random
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


DESKTOP_USER_AGENTS: Tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4_1) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
)

MOBILE_USER_AGENTS: Tuple[str, ...] = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148 SXHMTicket/3.2.1",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148 SXHMTicket/3.1.8",
)

WECHAT_USER_AGENTS: Tuple[str, ...] = (
    "Mozilla/5.0 (Linux; Android 13; SM-S9180 Build/TP1A.220624.014; wv) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Version/4.0 Chrome/116.0.0.0 Mobile Safari/537.36 XWEB/1160065 MMWEBSDK/20231202 MicroMessenger/8.0.47.2560(0x28002F30) "
    "WeChat/arm64 Weixin NetType/WIFI Language/zh_CN ABI/arm64 MiniProgramEnv/android",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148 "
    "MicroMessenger/8.0.48(0x18003030) NetType/WIFI Language/zh_CN",
)

VIEWPORTS: Tuple[Tuple[int, int], ...] = (
    (1366, 768),
    (1440, 900),
    (1536, 864),
    (1920, 1080),
)

ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8"
WECHAT_APP_ID = "wx5e8f2b1c3d4a6e70"


@dataclass(frozen=True)
class ClientProfile:
    """一种客户端的请求头模板"""

    name: str
    user_agents: Tuple[str, ...]
    headers: Dict[str, str] = field(default_factory=dict)
    identity: Optional[str] = None  # "mobile" / "wechat"：需要伪造设备身份的客户端


DESKTOP = ClientProfile(
    name="desktop",
    user_agents=DESKTOP_USER_AGENTS,
    headers={"Accept": "application/json, text/plain, */*"},
)

ENHANCED_DESKTOP = ClientProfile(
    name="enhanced",
    user_agents=DESKTOP_USER_AGENTS,
    headers={
        "Accept": "application/json, text/javascript, */*; q=0.01",
        "X-Requested-With": "XMLHttpRequest",
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "same-origin",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "DNT": "1",
    },
)

MOBILE_APP = ClientProfile(
    name="mobile",
    user_agents=MOBILE_USER_AGENTS,
    headers={
        "Accept": "application/json",
        "X-Platform": "ios",
        "X-App-Version": "3.2.1",
    },
    identity="mobile",
)

WECHAT_MINIPROGRAM = ClientProfile(
    name="wechat",
    user_agents=WECHAT_USER_AGENTS,
    headers={
        "Accept": "application/json",
        "Referer": f"https://servicewechat.com/{WECHAT_APP_ID}/42/page-frame.html",
        "X-WX-AppId": WECHAT_APP_ID,
    },
    identity="wechat",
)


def pick_user_agent(profile: ClientProfile, rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(profile.user_agents)


def pick_viewport(rng: Optional[random.Random] = None) -> Dict[str, int]:
    chooser = rng or random
    width, height = chooser.choice(VIEWPORTS)
    # 在基准尺寸上叠加少量随机偏移
    return {"width": width + chooser.randint(0, 40), "height": height + chooser.randint(0, 24)}


def synthesize_bearer_token() -> str:
    """尽力而为的占位 token，并非平台签发的凭据"""
    return f"Bearer {secrets.token_hex(24)}"


def synthesize_identity(kind: str) -> Dict[str, str]:
    if kind == "mobile":
        return {
            "X-Device-Id": uuid.uuid4().hex.upper(),
            "X-Session-Token": secrets.token_urlsafe(24),
        }
    if kind == "wechat":
        return {
            "X-WX-OpenId": "o" + secrets.token_urlsafe(20)[:27],
            "X-WX-Session": secrets.token_hex(16),
        }
    return {}


def build_headers(
    profile: ClientProfile,
    base_url: str,
    *,
    referer_path: str = "/quickticket/index.html",
    synthesize_tokens: bool = False,
    rng: Optional[random.Random] = None,
) -> Dict[str, str]:
    origin = base_url.rstrip("/")
    headers = {
        "User-Agent": pick_user_agent(profile, rng),
        "Accept-Language": ACCEPT_LANGUAGE,
        "Origin": origin,
        "Referer": f"{origin}{referer_path}",
    }
    headers.update(profile.headers)
    if synthesize_tokens and profile.identity:
        headers.update(synthesize_identity(profile.identity))
        headers["Authorization"] = synthesize_bearer_token()
    return headers
