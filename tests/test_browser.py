import asyncio
from contextlib import asynccontextmanager

from playwright.async_api import Error as PlaywrightError

from museum_booking.automation import BrowserStrategy
from museum_booking.models import BROWSER

from conftest import MOCK_FORM, FakePage, SessionFactory, make_request, succeed


def _strategy(page, urls=("http://museum.test/booking",), **kwargs):
    factory = SessionFactory(page)
    kwargs.setdefault("timeout", 0.2)
    kwargs.setdefault("stealth", False)
    return BrowserStrategy(list(urls), session_factory=factory, **kwargs), factory


def test_fills_form_and_reads_reference():
    page = FakePage(on_submit=succeed())
    strategy, factory = _strategy(page)
    request = make_request()

    result = asyncio.run(strategy.attempt(request))

    assert result.success
    assert result.provenance == BROWSER
    assert result.booking_reference == "SM250501001"
    assert result.confirmation_code == "XYZ9"
    assert result.endpoint == "http://museum.test/booking"
    assert page.value("#visitor-name") == "张三"
    assert page.value("#id-number") == request.id_number
    assert page.value("#museum") == "main"
    assert page.value("#visit-date") == request.visit_date
    assert page.value("#time-slot") == "8:30-10:30"
    assert page.submitted_via == "click"
    assert factory.opened == factory.closed == 1


def test_error_marker_becomes_failure():
    page = FakePage(on_submit=lambda p: p.add(".booking-error", text="该时段已约满"))
    strategy, factory = _strategy(page)

    result = asyncio.run(strategy.attempt(make_request()))

    assert not result.success
    assert result.error == "该时段已约满"
    assert factory.closed == 1


def test_missing_form_is_a_failure_not_an_exception():
    page = FakePage(selectors=("#visitor-name",))
    strategy, factory = _strategy(page, urls=("http://a.test", "http://b.test"))

    result = asyncio.run(strategy.attempt(make_request()))

    assert not result.success
    assert "未找到预约表单" in result.error
    assert page.visited == ["http://a.test", "http://b.test"]
    assert factory.closed == 1


def test_navigation_is_retried():
    page = FakePage(on_submit=succeed(), goto_failures=2)
    strategy, _ = _strategy(page, navigation_retries=2)

    result = asyncio.run(strategy.attempt(make_request()))

    assert result.success
    assert len(page.visited) == 3


def test_navigation_gives_up_after_retries_and_tries_next_url():
    page = FakePage(on_submit=succeed(), goto_failures=2)
    strategy, _ = _strategy(page, urls=("http://down.test", "http://up.test"), navigation_retries=1)

    result = asyncio.run(strategy.attempt(make_request()))

    assert result.success
    assert result.endpoint == "http://up.test"
    assert page.visited == ["http://down.test", "http://down.test", "http://up.test"]


def test_enter_is_pressed_without_submit_control():
    page = FakePage(selectors=("#visitor-name", "#id-number"), on_submit=succeed())
    strategy, _ = _strategy(page)

    result = asyncio.run(strategy.attempt(make_request()))

    assert result.success
    assert page.submitted_via == "enter"


def test_per_visitor_fields_are_filled():
    page = FakePage(
        selectors=MOCK_FORM + ("#visitor-0-name", "#visitor-0-id", "#visitor-1-name", "#visitor-1-age"),
        on_submit=succeed(),
    )
    request = make_request(
        visitorDetails=[
            {"name": "张三", "idNumber": "11010519491231002X"},
            {"name": "李四", "idNumber": "110101199003074477", "age": 9},
        ]
    )
    strategy, _ = _strategy(page)

    assert asyncio.run(strategy.attempt(request)).success
    assert page.value("#visitor-0-name") == "张三"
    assert page.value("#visitor-0-id") == "11010519491231002X"
    assert page.value("#visitor-1-name") == "李四"
    assert page.value("#visitor-1-age") == "9"


def test_reference_from_data_attribute():
    def handler(page):
        page.add(".booking-success")
        page.add("[data-booking-id]", attributes={"data-booking-id": "SM-ATTR-1"})

    page = FakePage(on_submit=handler)
    strategy, _ = _strategy(page)

    result = asyncio.run(strategy.attempt(make_request()))
    assert result.booking_reference == "SM-ATTR-1"
    assert result.confirmation_code is None


def test_no_result_within_timeout():
    page = FakePage()
    strategy, _ = _strategy(page, timeout=0.05)

    result = asyncio.run(strategy.attempt(make_request()))
    assert not result.success
    assert result.error == "提交后未出现预约结果"


def test_session_closed_when_launch_fails():
    class FailingFactory:
        @asynccontextmanager
        async def __call__(self):
            raise PlaywrightError("Executable doesn't exist")
            yield  # pragma: no cover

    strategy = BrowserStrategy(["http://museum.test"], session_factory=FailingFactory(), stealth=False)
    result = asyncio.run(strategy.attempt(make_request()))
    assert not result.success
    assert "Executable doesn't exist" in result.error


def _availability_page(text):
    page = FakePage(selectors=())
    page.add("#availability-check")
    page.add(".availability-result", text=text)
    return page


def test_availability_reads_result_text():
    page = _availability_page("8:30-10:30 Available")
    strategy, factory = _strategy(page)

    assert asyncio.run(strategy.check_availability("2030-01-02", "8:30-10:30", "main")) is True
    assert page.visited[0].startswith("http://museum.test/booking?check=true&")
    assert "timeSlot=8%3A30-10%3A30" in page.visited[0]
    assert factory.opened == factory.closed == 1


def test_availability_keeps_existing_query():
    page = _availability_page("available")
    strategy, _ = _strategy(page, urls=("http://museum.test/index.html?lang=zh",))

    assert asyncio.run(strategy.check_availability("2030-01-02", "8:30-10:30", "main"))
    assert page.visited[0].startswith("http://museum.test/index.html?lang=zh&check=true&")


def test_unavailable_slot():
    page = _availability_page("8:30-10:30 unavailable")
    strategy, _ = _strategy(page)
    assert asyncio.run(strategy.check_availability("2030-01-02", "8:30-10:30", "main")) is False


def test_availability_without_result_element():
    page = FakePage(selectors=())
    strategy, factory = _strategy(page, timeout=0.05)

    assert asyncio.run(strategy.check_availability("2030-01-02", "8:30-10:30", "main")) is False
    assert factory.closed == 1


def test_availability_when_page_never_loads():
    page = _availability_page("available")
    page.goto_failures = 5
    strategy, factory = _strategy(page, navigation_retries=1)

    assert asyncio.run(strategy.check_availability("2030-01-02", "8:30-10:30", "main")) is False
    assert len(page.visited) == 2
    assert factory.closed == 1


def test_availability_when_browser_cannot_start():
    class FailingFactory:
        @asynccontextmanager
        async def __call__(self):
            raise PlaywrightError("Executable doesn't exist")
            yield  # pragma: no cover

    strategy = BrowserStrategy(["http://museum.test"], session_factory=FailingFactory(), stealth=False)
    assert asyncio.run(strategy.check_availability("2030-01-02", "8:30-10:30", "main")) is False
