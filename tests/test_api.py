import asyncio
import json

import httpx
import pytest

from museum_booking.api import (
    MuseumAPI,
    extract_booking,
    form_encode,
    is_verified_payload,
    resolve_payload_builder,
    snake_payload,
)
from museum_booking.fingerprints import DESKTOP, MOBILE_APP, build_headers

from conftest import BASE_URL, OTHER_VALID_ID, VALID_ID, make_request


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"bookingId": "SM123", "confirmationCode": "ABC"}, ("SM123", "ABC")),
        ({"success": True, "data": {"booking_id": "SM9"}}, ("SM9", None)),
        ({"code": 0, "result": {"orderId": "O-1", "ticketCode": "T1"}}, ("O-1", "T1")),
        ({"bookingId": "SM5", "code": "XYZ"}, ("SM5", "XYZ")),
        ('{"reference": "R-7"}', ("R-7", None)),
        ({"code": 200, "data": [{"id": 42}]}, ("42", None)),
    ],
)
def test_extract_booking_recognises_success(payload, expected):
    assert extract_booking(payload) == expected


@pytest.mark.parametrize(
    "payload",
    [
        {"success": False, "bookingId": "SM1"},
        {"code": 500, "data": {"bookingId": "SM1"}},
        {"status": "failed", "bookingId": "SM1"},
        {"data": {"success": "false", "bookingId": "SM1"}},
        {"message": "ok"},
        [],
        "plain text",
        None,
    ],
)
def test_extract_booking_rejects_failures(payload):
    assert extract_booking(payload) is None


def test_verification_markers():
    assert is_verified_payload({"found": True}, "SM1", VALID_ID)
    assert is_verified_payload({"data": {"verified": "yes"}}, "SM1", VALID_ID)
    assert is_verified_payload({"bookingId": "SM1", "idNumber": VALID_ID.lower()}, "SM1", VALID_ID)
    assert is_verified_payload({"data": {"bookingId": "SM1"}}, "SM1", VALID_ID)
    assert not is_verified_payload({"bookingId": "SM1", "idNumber": "1" * 18}, "SM1", VALID_ID)
    assert not is_verified_payload({"bookingId": "SM2"}, "SM1", VALID_ID)
    assert not is_verified_payload({"success": False, "found": True}, "SM1", VALID_ID)
    assert not is_verified_payload({"found": False}, "SM1", VALID_ID)


def test_found_marker_needs_matching_echo():
    other = {"bookingId": "SM999", "idNumber": OTHER_VALID_ID, "visitorName": "李四"}
    assert not is_verified_payload({"found": True, "data": other}, "SM1", VALID_ID)
    assert not is_verified_payload({"found": True, "idNumber": OTHER_VALID_ID}, "SM1", VALID_ID)
    assert not is_verified_payload({"bookingId": "SM1", "visitorName": "李四"}, "SM1", VALID_ID, "张三")
    assert not is_verified_payload(
        {"verified": True, "data": {"bookingId": "SM1", "visitorName": "李四"}}, "SM1", VALID_ID, "张三"
    )

    ours = {"bookingId": "SM1", "idNumber": VALID_ID, "visitorName": "张三"}
    assert is_verified_payload({"found": True, "data": ours}, "SM1", VALID_ID, "张三")
    assert is_verified_payload({"bookingId": "SM1", "visitorName": " 张三 "}, "SM1", VALID_ID, "张三")


def test_payload_builders():
    request = make_request()
    assert resolve_payload_builder("camel")(request)["visitorName"] == "张三"
    snake = snake_payload(request)
    assert snake["visitor_details"][0]["id_number"] == VALID_ID
    with pytest.raises(ValueError):
        resolve_payload_builder("xml")


def test_form_encode_serialises_nested_values():
    encoded = form_encode({"a": 1, "b": None, "c": [{"x": "中"}]})
    assert encoded == {"a": "1", "c": '[{"x":"中"}]'}


def test_headers_only_carry_identity_when_synthesis_enabled():
    plain = build_headers(MOBILE_APP, BASE_URL)
    assert "Authorization" not in plain
    assert "X-Device-Id" not in plain
    assert plain["Origin"] == BASE_URL
    assert plain["Referer"] == f"{BASE_URL}/quickticket/index.html"

    synthesized = build_headers(MOBILE_APP, BASE_URL, synthesize_tokens=True)
    assert synthesized["Authorization"].startswith("Bearer ")
    assert synthesized["X-Device-Id"]

    desktop = build_headers(DESKTOP, BASE_URL, synthesize_tokens=True)
    assert "Authorization" not in desktop


def test_submit_booking_walks_candidates_until_marker():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/a":
            return httpx.Response(500, text="busy")
        if request.url.path == "/b":
            return httpx.Response(200, text="<html></html>")
        if request.url.path == "/c":
            return httpx.Response(200, json={"success": False, "message": "full"})
        assert json.loads(request.content)["visitorName"] == "张三"
        assert request.headers["Accept-Language"].startswith("zh-CN")
        return httpx.Response(200, json={"bookingId": "SM123", "confirmationCode": "ABC"})

    api = MuseumAPI(BASE_URL, transport=httpx.MockTransport(handler))

    async def run():
        async with api.open_client(DESKTOP) as client:
            return await api.submit_booking(client, ["/a", "/b", "/c", "/d", "/e"], make_request().to_payload())

    outcome = asyncio.run(run())
    assert outcome.matched
    assert outcome.booking_id == "SM123"
    assert outcome.confirmation_code == "ABC"
    assert outcome.endpoint == "/d"
    assert seen == ["/a", "/b", "/c", "/d"]
    assert len(outcome.errors) == 3


def test_submit_booking_swallows_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    api = MuseumAPI(BASE_URL, transport=httpx.MockTransport(handler))

    async def run():
        async with api.open_client(DESKTOP) as client:
            return await api.submit_booking(client, ["/a", "/b"], {"x": 1})

    outcome = asyncio.run(run())
    assert not outcome.matched
    assert len(outcome.errors) == 2
    assert "ConnectError" in outcome.summary()


@pytest.mark.parametrize("synthesize, matched", [(True, True), (False, False)])
def test_unauthorized_retry_is_gated(synthesize, matched):
    def handler(request: httpx.Request) -> httpx.Response:
        if "authorization" not in request.headers:
            return httpx.Response(401, json={"message": "login required"})
        return httpx.Response(200, json={"bookingId": "SM7"})

    api = MuseumAPI(BASE_URL, synthesize_tokens=synthesize, transport=httpx.MockTransport(handler))

    async def run():
        async with api.open_client(DESKTOP) as client:
            return await api.submit_booking(client, ["/api/v1/booking"], {"x": 1})

    assert asyncio.run(run()).matched is matched


def test_query_verification_substitutes_booking_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, dict(request.url.params)))
        if request.url.path == "/api/verify/SM1":
            return httpx.Response(200, json={"found": True})
        return httpx.Response(404)

    api = MuseumAPI(BASE_URL, transport=httpx.MockTransport(handler))

    async def run():
        async with api.open_client(DESKTOP) as client:
            return await api.query_verification(
                client,
                ["/api/bookings/verify", "/api/verify/{booking_id}"],
                booking_id="SM1",
                visitor_name="张三",
                id_number=VALID_ID,
            )

    outcome = asyncio.run(run())
    assert outcome.matched
    assert outcome.endpoint == "/api/verify/SM1"
    assert seen[0][1] == {"bookingId": "SM1", "visitorName": "张三", "idNumber": VALID_ID}
