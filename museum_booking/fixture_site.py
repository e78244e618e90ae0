"""本地模拟票务平台

在开发和测试中代替真实站点：提供预约页面、接受默认候选接口上的预约、
回答核验查询。各接口的失败方式可以按路径配置。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse

from .models import MUSEUM_SITES, EndpointSet


logger = logging.getLogger(__name__)

PAGE_PATH = Path(__file__).resolve().parent / "static" / "test-museum-site.html"

OK = "ok"
SERVER_ERROR = "server_error"  # HTTP 500
REJECT = "reject"  # 200，success=false
NO_MARKER = "no_marker"  # 200，缺少预约号
NOT_JSON = "not_json"
UNAUTHORIZED = "unauthorized"  # 未带 Authorization 时 401


@dataclass
class FixtureState:
    """模拟平台的可变状态，测试可直接读写"""

    endpoints: EndpointSet = field(default_factory=EndpointSet)
    modes: Dict[str, str] = field(default_factory=dict)
    default_mode: str = OK
    booking_id: Optional[str] = None
    confirmation_code: Optional[str] = None
    bookings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)
    verification_mode: str = OK
    _sequence: Any = field(default_factory=lambda: count(1), repr=False)

    def booking_paths(self) -> List[str]:
        paths: List[str] = []
        for group in (
            self.endpoints.direct_booking,
            self.endpoints.enhanced_booking,
            self.endpoints.mobile_booking,
            self.endpoints.wechat_booking,
        ):
            for path in group:
                if path not in paths:
                    paths.append(path)
        return paths

    def fail_all(self, mode: str = SERVER_ERROR) -> None:
        self.default_mode = mode
        self.verification_mode = mode

    def next_booking_id(self, payload: Dict[str, Any]) -> str:
        if self.booking_id:
            return self.booking_id
        museum = payload.get("museum") or payload.get("venue") or "main"
        site = MUSEUM_SITES.get(str(museum), MUSEUM_SITES["main"])
        visit_date = str(payload.get("visitDate") or payload.get("visit_date") or "")
        return f"{site.prefix}{visit_date.replace('-', '')[2:]}{next(self._sequence):04d}"


def _normalize(path: str) -> str:
    return "/" + path.strip("/")


async def _read_payload(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    content_type = request.headers.get("content-type", "")
    text = body.decode("utf-8", errors="replace")
    if "application/x-www-form-urlencoded" in content_type:
        payload: Dict[str, Any] = dict(parse_qsl(text))
        if isinstance(payload.get("visitorDetails"), str):
            try:
                payload["visitorDetails"] = json.loads(payload["visitorDetails"])
            except json.JSONDecodeError:
                pass
        return payload
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _failure_response(mode: str) -> Optional[Any]:
    if mode == SERVER_ERROR:
        return JSONResponse({"success": False, "message": "服务繁忙"}, status_code=500)
    if mode == REJECT:
        return JSONResponse({"success": False, "code": 4001, "message": "该时段已约满"})
    if mode == NO_MARKER:
        return JSONResponse({"message": "请求已收到"})
    if mode == NOT_JSON:
        return PlainTextResponse("<html>维护中</html>")
    return None


def create_fixture_app(state: Optional[FixtureState] = None) -> FastAPI:
    state = state or FixtureState()
    app = FastAPI(title="Museum Ticket Fixture", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.fixture = state

    @app.get("/")
    @app.get("/quickticket/index.html")
    @app.get("/test-museum-site.html")
    async def booking_page():
        return FileResponse(PAGE_PATH, media_type="text/html")

    @app.post("/{path:path}")
    async def submit_booking(path: str, request: Request):
        path = _normalize(path)
        if path not in state.booking_paths():
            return JSONResponse({"success": False, "message": "not found"}, status_code=404)
        state.calls.append(path)

        mode = state.modes.get(path, state.default_mode)
        if mode == UNAUTHORIZED:
            if "authorization" not in request.headers:
                return JSONResponse({"success": False, "message": "unauthorized"}, status_code=401)
            mode = OK
        failure = _failure_response(mode)
        if failure is not None:
            return failure

        payload = await _read_payload(request)
        booking_id = state.next_booking_id(payload)
        state.bookings[booking_id] = payload
        logger.debug("模拟平台收到预约 %s -> %s", path, booking_id)
        body: Dict[str, Any] = {"success": True, "bookingId": booking_id}
        if state.confirmation_code is not None:
            body["confirmationCode"] = state.confirmation_code
        else:
            body["confirmationCode"] = f"C{booking_id[-4:]}"
        return JSONResponse(body)

    @app.get("/{path:path}")
    async def query_verification(path: str, request: Request):
        path = _normalize(path)
        booking_id = request.query_params.get("bookingId")
        matched = False
        for candidate in state.endpoints.verification:
            if "{booking_id}" in candidate:
                prefix = candidate.split("{booking_id}", 1)[0]
                if path.startswith(prefix) and len(path) > len(prefix):
                    booking_id = booking_id or path[len(prefix):]
                    matched = True
            elif candidate == path:
                matched = True
        if not matched:
            return JSONResponse({"success": False, "message": "not found"}, status_code=404)
        state.calls.append(path)

        failure = _failure_response(state.verification_mode)
        if failure is not None:
            return failure

        record = state.bookings.get(booking_id or "")
        id_number = request.query_params.get("idNumber")
        if record is None or (id_number and str(record.get("idNumber", id_number)) != id_number):
            return JSONResponse({"success": True, "found": False})
        data = {"bookingId": booking_id, "idNumber": record.get("idNumber")}
        if record.get("visitorName"):
            data["visitorName"] = record["visitorName"]
        return JSONResponse({"success": True, "found": True, "data": data})

    return app
