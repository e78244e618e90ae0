from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from .fingerprints import ClientProfile, build_headers, synthesize_bearer_token
from .models import BookingRequest


logger = logging.getLogger(__name__)


BOOKING_ID_KEYS: Tuple[str, ...] = (
    "bookingId",
    "booking_id",
    "museumBookingId",
    "bookingReference",
    "reference",
    "orderId",
    "order_id",
    "ticketNo",
    "id",
)

CONFIRMATION_KEYS: Tuple[str, ...] = (
    "confirmationCode",
    "confirmation_code",
    "verificationCode",
    "ticketCode",
    "code",
)

ID_NUMBER_KEYS: Tuple[str, ...] = ("idNumber", "id_number", "idCard", "certNo")

VISITOR_NAME_KEYS: Tuple[str, ...] = ("visitorName", "visitor_name", "contactName", "realName")

FOUND_KEYS: Tuple[str, ...] = ("found", "verified", "exists", "valid")

NESTED_KEYS: Tuple[str, ...] = ("data", "result", "booking", "ticket", "order", "record")

OK_CODES = {0, 200, 201}
FAILURE_STATUSES = {"fail", "failed", "failure", "error", "rejected", "invalid"}


def _maybe_parse_json(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if text and text[0] in "{[" and text[-1] in "]}" and len(text) >= 2:
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                return value
            return _maybe_parse_json(parsed)
    if isinstance(value, dict):
        return {k: _maybe_parse_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_maybe_parse_json(v) for v in value]
    return value


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "y", "yes", "found", "verified", "valid"}
    return False


def _numeric_code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return None


def _iter_nodes(payload: Any, depth: int = 2) -> Iterable[Dict[str, Any]]:
    """顶层字典以及 data/result 等常见包装层"""
    if not isinstance(payload, dict):
        return
    yield payload
    if depth <= 0:
        return
    for key in NESTED_KEYS:
        child = payload.get(key)
        if isinstance(child, dict):
            yield from _iter_nodes(child, depth - 1)
        elif isinstance(child, list) and child and isinstance(child[0], dict):
            yield from _iter_nodes(child[0], depth - 1)


def _explicit_failure(node: Dict[str, Any]) -> bool:
    if "success" in node and not _bool(node.get("success")):
        return True
    code = _numeric_code(node.get("code"))
    if code is not None and code not in OK_CODES:
        return True
    status = node.get("status")
    if isinstance(status, str) and status.strip().lower() in FAILURE_STATUSES:
        return True
    return False


def _first_text(node: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = node.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _confirmation(node: Dict[str, Any]) -> Optional[str]:
    for key in CONFIRMATION_KEYS:
        value = node.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        # "code" 常被用作业务状态码，纯数字时不视为确认码
        if key == "code" and _numeric_code(value) is not None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def extract_booking(payload: Any) -> Optional[Tuple[str, Optional[str]]]:
    """从响应中识别成功标记，返回 (预约号, 确认码)"""
    payload = _maybe_parse_json(payload)
    nodes = list(_iter_nodes(payload))
    if not nodes or any(_explicit_failure(node) for node in nodes):
        return None
    for node in nodes:
        booking_id = _first_text(node, BOOKING_ID_KEYS)
        if booking_id:
            confirmation = None
            for candidate in nodes:
                confirmation = _confirmation(candidate)
                if confirmation:
                    break
            return booking_id, confirmation
    return None


def _echo_mismatch(
    node: Dict[str, Any],
    booking_id: str,
    id_number: str,
    visitor_name: Optional[str],
) -> bool:
    """节点回显的预约号、证件号、姓名中只要有一项与查询不符即为 True"""
    echoed = _first_text(node, BOOKING_ID_KEYS)
    if echoed is not None and echoed != booking_id:
        return True
    echoed = _first_text(node, ID_NUMBER_KEYS)
    if echoed is not None and echoed.upper() != id_number.strip().upper():
        return True
    echoed = _first_text(node, VISITOR_NAME_KEYS)
    if echoed is not None and visitor_name is not None and echoed != visitor_name.strip():
        return True
    return False


def is_verified_payload(
    payload: Any,
    booking_id: str,
    id_number: str,
    visitor_name: Optional[str] = None,
) -> bool:
    """响应中有找到标记，或回显了我们的预约号；任何回显字段不一致都不算"""
    payload = _maybe_parse_json(payload)
    nodes = list(_iter_nodes(payload))
    for node in nodes:
        if _explicit_failure(node) or _echo_mismatch(node, booking_id, id_number, visitor_name):
            return False
    for node in nodes:
        if any(_bool(node.get(key)) for key in FOUND_KEYS):
            return True
        if _first_text(node, BOOKING_ID_KEYS) == booking_id:
            return True
    return False


def _error_detail(response: httpx.Response) -> str:
    detail = response.text[:200].strip()
    return f"HTTP {response.status_code}" + (f": {detail}" if detail else "")


# -------------------- payload builders --------------------


def camel_payload(request: BookingRequest) -> Dict[str, Any]:
    return request.to_payload()


def snake_payload(request: BookingRequest) -> Dict[str, Any]:
    return {
        "visitor_name": request.visitor_name,
        "id_number": request.id_number,
        "id_type": request.id_type,
        "museum": request.museum,
        "visit_date": request.visit_date,
        "time_slot": request.time_slot,
        "number_of_visitors": request.number_of_visitors,
        "visitor_details": [
            {"name": item.name, "id_number": item.id_number, "id_type": item.id_type, "age": item.age}
            for item in request.visitor_details
        ],
    }


PayloadBuilder = Callable[[BookingRequest], Dict[str, Any]]

PAYLOAD_BUILDERS: Dict[str, PayloadBuilder] = {
    "camel": camel_payload,
    "snake": snake_payload,
}


def register_payload_builder(name: str, builder: PayloadBuilder) -> None:
    """接入真实接口契约时注册新的载荷格式"""
    PAYLOAD_BUILDERS[name] = builder


def resolve_payload_builder(name: str) -> PayloadBuilder:
    try:
        return PAYLOAD_BUILDERS[name]
    except KeyError:
        raise ValueError(f"未注册的载荷格式: {name}") from None


def form_encode(payload: Dict[str, Any]) -> Dict[str, str]:
    """表单提交时嵌套字段以 JSON 字符串传输"""
    encoded: Dict[str, str] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        else:
            encoded[key] = str(value)
    return encoded


# -------------------- client --------------------


@dataclass
class CandidateOutcome:
    """一轮候选接口尝试的结果"""

    matched: bool = False
    endpoint: Optional[str] = None
    payload: Any = None
    booking_id: Optional[str] = None
    confirmation_code: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if not self.errors:
            return "没有配置候选接口"
        return "; ".join(self.errors[-5:])


class MuseumAPI:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        synthesize_tokens: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.synthesize_tokens = synthesize_tokens
        self._transport = transport

    @asynccontextmanager
    async def open_client(
        self,
        profile: ClientProfile,
        *,
        referer_path: str = "/quickticket/index.html",
    ) -> AsyncIterator[httpx.AsyncClient]:
        headers = build_headers(
            profile,
            self.base_url,
            referer_path=referer_path,
            synthesize_tokens=self.synthesize_tokens,
        )
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
            http2=True,
        ) as client:
            yield client

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return path if path.startswith("/") else f"/{path}"

    async def prime_session(self, client: httpx.AsyncClient, path: str) -> bool:
        """预先访问页面拿到 Cookie；失败不影响后续提交"""
        try:
            resp = await client.get(self._url(path), headers={"Accept": "text/html,application/xhtml+xml,*/*;q=0.8"})
        except httpx.HTTPError as exc:
            logger.debug("预热会话失败 %s: %s", path, exc)
            return False
        return resp.is_success

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        resp = await client.request(method, url, **kwargs)
        if (
            resp.status_code == 401
            and self.synthesize_tokens
            and "authorization" not in client.headers
        ):
            # 平台看起来需要 token 时补一个占位 token 再试一次
            headers = dict(kwargs.pop("headers", None) or {})
            headers["Authorization"] = synthesize_bearer_token()
            resp = await client.request(method, url, headers=headers, **kwargs)
        return resp

    async def submit_booking(
        self,
        client: httpx.AsyncClient,
        paths: Sequence[str],
        payload: Dict[str, Any],
        *,
        form: bool = False,
    ) -> CandidateOutcome:
        outcome = CandidateOutcome()
        for path in paths:
            url = self._url(path)
            try:
                if form:
                    resp = await self._send(client, "POST", url, data=form_encode(payload))
                else:
                    resp = await self._send(client, "POST", url, json=payload)
            except httpx.HTTPError as exc:
                outcome.errors.append(f"{url}: {type(exc).__name__} {exc}".strip())
                logger.debug("候选接口 %s 传输失败: %s", url, exc)
                continue
            if not resp.is_success:
                outcome.errors.append(f"{url}: {_error_detail(resp)}")
                continue
            try:
                data = resp.json()
            except ValueError:
                outcome.errors.append(f"{url}: 响应不是 JSON")
                continue
            extracted = extract_booking(data)
            if not extracted:
                outcome.errors.append(f"{url}: 响应缺少预约成功标记")
                continue
            outcome.matched = True
            outcome.endpoint = url
            outcome.payload = data
            outcome.booking_id, outcome.confirmation_code = extracted
            return outcome
        return outcome

    async def query_verification(
        self,
        client: httpx.AsyncClient,
        paths: Sequence[str],
        *,
        booking_id: str,
        visitor_name: str,
        id_number: str,
    ) -> CandidateOutcome:
        outcome = CandidateOutcome()
        params = {"bookingId": booking_id, "visitorName": visitor_name, "idNumber": id_number}
        for path in paths:
            url = self._url(path.replace("{booking_id}", booking_id))
            try:
                resp = await self._send(client, "GET", url, params=params)
            except httpx.HTTPError as exc:
                outcome.errors.append(f"{url}: {type(exc).__name__} {exc}".strip())
                continue
            if not resp.is_success:
                outcome.errors.append(f"{url}: {_error_detail(resp)}")
                continue
            try:
                data = resp.json()
            except ValueError:
                outcome.errors.append(f"{url}: 响应不是 JSON")
                continue
            if is_verified_payload(data, booking_id, id_number, visitor_name):
                outcome.matched = True
                outcome.endpoint = url
                outcome.payload = data
                outcome.booking_id = booking_id
                return outcome
            outcome.errors.append(f"{url}: 未找到预约")
        return outcome
