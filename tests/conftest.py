from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import date, timedelta
from pathlib import Path

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from museum_booking.database import DatabaseManager  # noqa: E402
from museum_booking.fixture_site import FixtureState, create_fixture_app  # noqa: E402
from museum_booking.models import BookingRequest, EngineSettings  # noqa: E402

VALID_ID = "11010519491231002X"
OTHER_VALID_ID = "110101199003074477"
BASE_URL = "http://museum.test"


def tomorrow() -> str:
    return (date.today() + timedelta(days=1)).strftime("%Y-%m-%d")


def make_request(**overrides) -> BookingRequest:
    data = {
        "visitorName": "张三",
        "idNumber": VALID_ID,
        "idType": "id_card",
        "museum": "main",
        "visitDate": tomorrow(),
        "timeSlot": "8:30-10:30",
        "visitorDetails": [{"name": "张三", "idNumber": VALID_ID, "idType": "id_card"}],
    }
    data.update(overrides)
    return BookingRequest.from_dict(data)


# 浏览器层的替身，按选择器返回元素
MOCK_FORM = ("#visitor-name", "#id-number", "#id-type", "#museum", "#visit-date", "#time-slot", "#submit-booking")
SELECTS = {"#id-type", "#museum", "#time-slot"}


class FakeElement:
    def __init__(self, page, selector, *, text="", attributes=None, visible=True):
        self.page = page
        self.selector = selector
        self.text = text
        self.attributes = attributes or {}
        self.visible = visible
        self.value = None

    async def evaluate(self, script):
        return "select" if self.selector in SELECTS else "input"

    async def fill(self, value):
        self.value = value

    async def select_option(self, value):
        self.value = value

    async def click(self):
        self.page.submitted_via = "click"
        self.page.on_submit(self.page)

    async def press(self, key):
        assert key == "Enter"
        self.page.submitted_via = "enter"
        self.page.on_submit(self.page)

    async def inner_text(self):
        return self.text

    async def get_attribute(self, name):
        return self.attributes.get(name)

    async def is_visible(self):
        return self.visible


def succeed(reference="SM250501001", code="XYZ9"):
    def handler(page):
        page.add(".booking-success", text="预约成功")
        page.add(".booking-reference", text=reference)
        page.add(".confirmation-code", text=code)

    return handler


class FakePage:
    def __init__(self, selectors=MOCK_FORM, on_submit=None, goto_failures=0):
        self.elements = {}
        for selector in selectors:
            self.add(selector)
        self.on_submit = on_submit or (lambda page: None)
        self.goto_failures = goto_failures
        self.visited = []
        self.submitted_via = None

    def add(self, selector, **kwargs):
        self.elements[selector] = FakeElement(self, selector, **kwargs)
        return self.elements[selector]

    def value(self, selector):
        return self.elements[selector].value

    async def goto(self, url, timeout=None, wait_until=None):
        self.visited.append(url)
        if self.goto_failures > 0:
            self.goto_failures -= 1
            raise PlaywrightError("net::ERR_CONNECTION_RESET")

    async def query_selector(self, selector):
        return self.elements.get(selector)

    async def wait_for_selector(self, selector, timeout=None, state=None):
        for candidate in selector.split(", "):
            if candidate in self.elements:
                return self.elements[candidate]
        await asyncio.sleep((timeout or 0) / 1000)
        raise PlaywrightTimeoutError("waiting for selector timed out")

    async def wait_for_event(self, event, timeout=None):
        await asyncio.sleep(3600)


class SessionFactory:
    def __init__(self, page):
        self.page = page
        self.opened = 0
        self.closed = 0

    @asynccontextmanager
    async def __call__(self):
        self.opened += 1
        try:
            yield self.page
        finally:
            self.closed += 1


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        base_url=BASE_URL,
        booking_urls=[f"{BASE_URL}/quickticket/index.html"],
        request_timeout=5.0,
        browser_timeout=1.0,
        tier_timeout=10.0,
        action_delay=(0.0, 0.0),
        enable_browser=False,
        db_path=str(tmp_path / "museum.db"),
    )


@pytest.fixture
def db(settings) -> DatabaseManager:
    return DatabaseManager(settings.db_path)


@pytest.fixture
def fixture_state() -> FixtureState:
    return FixtureState()


@pytest.fixture
def fixture_transport(fixture_state) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=create_fixture_app(fixture_state))


@pytest.fixture
def booking_request() -> BookingRequest:
    return make_request()
