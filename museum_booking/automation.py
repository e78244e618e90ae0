"""浏览器自动化策略

没有稳定接口时，用 Playwright 打开预约页面按表单提交。浏览器只在单次尝试内存活，
任何退出路径都会关闭，不在实例上保存句柄，也不跨调用复用。
"""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .fingerprints import DESKTOP, pick_user_agent, pick_viewport
from .idcard import mask_id_number
from .models import BROWSER, BookingAttemptResult, BookingRequest, EngineSettings
from .strategies import FORM_AUTOMATION, NETWORK_CALL, BookingStrategy


logger = logging.getLogger(__name__)

# 隐藏常见的自动化特征
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['zh-CN', 'zh', 'en'] });
window.chrome = window.chrome || { runtime: {} };
"""

FIELD_SELECTORS: Dict[str, Tuple[str, ...]] = {
    "name": (
        "#visitor-name",
        "input[name='visitorName']",
        "input[name='name']",
        "#name",
        "input[placeholder*='姓名']",
    ),
    "id_number": (
        "#id-number",
        "input[name='idNumber']",
        "input[name='idCard']",
        "#idCard",
        "input[placeholder*='身份证']",
        "input[placeholder*='证件']",
    ),
    "id_type": ("#id-type", "select[name='idType']", "select[name='certType']"),
    "museum": ("#museum", "select[name='museum']", "select[name='venue']"),
    "visit_date": ("#visit-date", "input[name='visitDate']", "input[name='date']", "input[type='date']"),
    "time_slot": ("#time-slot", "select[name='timeSlot']", "select[name='slot']", "input[name='timeSlot']"),
}

SUBMIT_SELECTORS: Tuple[str, ...] = (
    "#submit-booking",
    "button[type='submit']",
    "input[type='submit']",
    "button:has-text('提交')",
    "button:has-text('预约')",
    ".submit-btn",
)

VISITOR_FIELD_TEMPLATES: Dict[str, str] = {
    "name": "#visitor-{i}-name",
    "id_number": "#visitor-{i}-id",
    "id_type": "#visitor-{i}-id-type",
    "age": "#visitor-{i}-age",
}

SUCCESS_MARKERS: Tuple[str, ...] = (".booking-success", "#booking-result .success", ".success-message")
ERROR_MARKERS: Tuple[str, ...] = (".booking-error", "#booking-result .error", ".error-message", ".alert-danger")

REFERENCE_SELECTORS: Tuple[str, ...] = (
    ".booking-reference",
    "#booking-reference",
    ".booking-id",
    "[data-booking-id]",
    "[data-booking-reference]",
)
REFERENCE_ATTRIBUTES: Tuple[str, ...] = ("data-booking-id", "data-booking-reference", "data-reference")

CONFIRMATION_SELECTORS: Tuple[str, ...] = (
    ".confirmation-code",
    "#confirmation-code",
    "[data-confirmation-code]",
)
CONFIRMATION_ATTRIBUTES: Tuple[str, ...] = ("data-confirmation-code", "data-code")

AVAILABILITY_SECTION = "#availability-check"
AVAILABILITY_RESULT = ".availability-result"

SessionFactory = Callable[[], AsyncContextManager[Any]]


async def _dismiss_dialog(dialog: Any) -> None:
    try:
        await dialog.dismiss()
    except PlaywrightError:
        pass


@asynccontextmanager
async def browser_session(
    *,
    headless: bool = True,
    stealth: bool = True,
    timeout: float = 30.0,
) -> AsyncIterator[Any]:
    """启动浏览器并产出一个页面，退出时关闭浏览器"""
    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=headless,
            args=["--disable-blink-features=AutomationControlled", "--no-sandbox"],
        )
        try:
            context_args: Dict[str, Any] = {"locale": "zh-CN", "timezone_id": "Asia/Shanghai"}
            if stealth:
                context_args["user_agent"] = pick_user_agent(DESKTOP)
                context_args["viewport"] = pick_viewport()
            context = await browser.new_context(**context_args)
            if stealth:
                await context.add_init_script(STEALTH_INIT_SCRIPT)
            page = await context.new_page()
            page.set_default_timeout(timeout * 1000)
            page.on("dialog", _dismiss_dialog)
            yield page
        finally:
            await browser.close()


class BrowserStrategy(BookingStrategy):
    name = BROWSER
    capabilities = frozenset({NETWORK_CALL, FORM_AUTOMATION})

    def __init__(
        self,
        urls: Sequence[str],
        *,
        timeout: float = 30.0,
        navigation_retries: int = 2,
        stealth: bool = True,
        action_delay: Tuple[float, float] = (0.2, 0.8),
        session_factory: Optional[SessionFactory] = None,
        headless: bool = True,
    ) -> None:
        self.urls = list(urls)
        self.timeout = timeout
        self.navigation_retries = max(0, navigation_retries)
        self.stealth = stealth
        self.action_delay = action_delay
        self.session_factory = session_factory or partial(
            browser_session, headless=headless, stealth=stealth, timeout=timeout
        )

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        session_factory: Optional[SessionFactory] = None,
    ) -> "BrowserStrategy":
        return cls(
            settings.booking_urls,
            timeout=settings.browser_timeout,
            navigation_retries=settings.navigation_retries,
            stealth=settings.browser_stealth,
            action_delay=settings.action_delay,
            session_factory=session_factory,
            headless=settings.browser_headless,
        )

    @property
    def _timeout_ms(self) -> float:
        return self.timeout * 1000

    async def _pause(self) -> None:
        if not self.stealth:
            return
        low, high = self.action_delay
        if high > 0:
            await asyncio.sleep(random.uniform(max(0.0, low), high))

    async def check_availability(self, visit_date: str, time_slot: str, museum: str) -> bool:
        """打开预约页的余票查询视图，读到 available 才算有票，任何失败都按无票处理"""
        if not self.urls:
            return False
        query = urlencode({"check": "true", "date": visit_date, "timeSlot": time_slot, "museum": museum})
        base = self.urls[0]
        url = f"{base}{'&' if '?' in base else '?'}{query}"
        logger.info("[%s] 查询余票 %s %s %s", self.name, museum, visit_date, time_slot)
        try:
            async with self.session_factory() as page:
                errors: List[str] = []
                if not await self._navigate(page, url, errors):
                    logger.warning("[%s] 余票页面无法打开: %s", self.name, errors[-1])
                    return False
                try:
                    await page.wait_for_selector(AVAILABILITY_SECTION, timeout=self._timeout_ms)
                except (PlaywrightError, asyncio.TimeoutError):
                    logger.debug("未等到余票区域，直接读取结果")
                element = await page.query_selector(AVAILABILITY_RESULT)
                if element is None:
                    return False
                text = (await element.inner_text() or "").strip().lower()
        except (PlaywrightError, asyncio.TimeoutError) as exc:
            logger.warning("[%s] 余票查询失败: %s", self.name, exc)
            return False
        available = "available" in text and "unavailable" not in text
        logger.info("[%s] 余票查询结果: %s", self.name, text or "空")
        return available

    async def attempt(self, request: BookingRequest) -> BookingAttemptResult:
        if not self.urls:
            return BookingAttemptResult.failed(self.name, "没有配置预约页面")
        logger.info("[%s] 启动浏览器 visitor=%s id=%s", self.name, request.visitor_name, mask_id_number(request.id_number))
        try:
            async with self.session_factory() as page:
                return await self._run(page, request)
        except (PlaywrightError, asyncio.TimeoutError) as exc:
            logger.warning("[%s] 浏览器自动化失败: %s", self.name, exc)
            return BookingAttemptResult.failed(self.name, f"浏览器自动化失败: {exc}")

    async def _run(self, page: Any, request: BookingRequest) -> BookingAttemptResult:
        errors: List[str] = []
        for url in self.urls:
            if not await self._navigate(page, url, errors):
                continue
            located = await self._locate_form(page)
            if located is None:
                errors.append(f"{url}: 未找到预约表单")
                continue
            return await self._submit(page, url, request, located)
        return BookingAttemptResult.failed(self.name, "; ".join(errors[-5:]) or "所有预约页面均不可用")

    async def _navigate(self, page: Any, url: str, errors: List[str]) -> bool:
        last_error = f"{url}: 无法打开"
        for attempt in range(1, self.navigation_retries + 2):
            try:
                await page.goto(url, timeout=self._timeout_ms, wait_until="domcontentloaded")
                return True
            except (PlaywrightError, asyncio.TimeoutError) as exc:
                logger.debug("打开 %s 失败（第 %d 次）: %s", url, attempt, exc)
                last_error = f"{url}: {exc}"
        errors.append(last_error)
        return False

    async def _first(self, page: Any, selectors: Sequence[str]) -> Optional[Tuple[str, Any]]:
        for selector in selectors:
            try:
                element = await page.query_selector(selector)
            except PlaywrightError:
                continue
            if element is not None:
                return selector, element
        return None

    async def _locate_form(self, page: Any) -> Optional[Dict[str, Optional[Tuple[str, Any]]]]:
        found: Dict[str, Optional[Tuple[str, Any]]] = {}
        for field_name, selectors in FIELD_SELECTORS.items():
            found[field_name] = await self._first(page, selectors)
        found["submit"] = await self._first(page, SUBMIT_SELECTORS)
        # 姓名、证件号、提交按钮三者至少出现两个才认为找到了表单
        anchors = sum(1 for key in ("name", "id_number", "submit") if found[key] is not None)
        return found if anchors >= 2 else None

    async def _set_value(self, element: Any, value: str) -> bool:
        try:
            tag = await element.evaluate("el => el.tagName.toLowerCase()")
            if tag == "select":
                await element.select_option(value)
            else:
                await element.fill(value)
        except PlaywrightError as exc:
            logger.debug("填写字段失败: %s", exc)
            return False
        await self._pause()
        return True

    async def _fill_form(
        self,
        page: Any,
        request: BookingRequest,
        located: Dict[str, Optional[Tuple[str, Any]]],
    ) -> None:
        values = {
            "name": request.visitor_name,
            "id_number": request.id_number,
            "id_type": request.id_type,
            "museum": request.museum,
            "visit_date": request.visit_date,
            "time_slot": request.time_slot,
        }
        for field_name, value in values.items():
            match = located.get(field_name)
            if match is not None:
                await self._set_value(match[1], value)

        for index, visitor in enumerate(request.visitor_details):
            visitor_values = {
                "name": visitor.name,
                "id_number": visitor.id_number,
                "id_type": visitor.id_type,
                "age": str(visitor.age) if visitor.age is not None else None,
            }
            for field_name, template in VISITOR_FIELD_TEMPLATES.items():
                value = visitor_values[field_name]
                if value is None:
                    continue
                element = await page.query_selector(template.format(i=index))
                if element is not None:
                    await self._set_value(element, value)

    async def _submit(
        self,
        page: Any,
        url: str,
        request: BookingRequest,
        located: Dict[str, Optional[Tuple[str, Any]]],
    ) -> BookingAttemptResult:
        await self._fill_form(page, request, located)

        submit = located.get("submit")
        try:
            if submit is not None:
                await submit[1].click()
            else:
                target = located.get("id_number") or located.get("name")
                await target[1].press("Enter")
        except PlaywrightError as exc:
            return BookingAttemptResult.failed(self.name, f"提交表单失败: {exc}", endpoint=url)

        await self._wait_for_outcome(page)
        return await self._read_outcome(page, url)

    async def _wait_for_outcome(self, page: Any) -> None:
        markers = ", ".join(SUCCESS_MARKERS + ERROR_MARKERS)
        waiters = [
            asyncio.ensure_future(page.wait_for_selector(markers, timeout=self._timeout_ms, state="visible")),
            asyncio.ensure_future(page.wait_for_event("framenavigated", timeout=self._timeout_ms)),
        ]
        done, pending = await asyncio.wait(waiters, timeout=self.timeout + 1, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.debug("等待提交结果: %s", exc)
        if any(task is waiters[1] and task.exception() is None for task in done):
            # 整页跳转后结果标记可能稍后才渲染
            try:
                await page.wait_for_selector(markers, timeout=min(self._timeout_ms, 5000), state="visible")
            except (PlaywrightError, asyncio.TimeoutError):
                pass

    async def _text_or_attribute(
        self,
        page: Any,
        selectors: Sequence[str],
        attributes: Sequence[str],
    ) -> Optional[str]:
        for selector in selectors:
            element = await page.query_selector(selector)
            if element is None:
                continue
            text = (await element.inner_text() or "").strip()
            if text:
                return text
            for attribute in attributes:
                value = await element.get_attribute(attribute)
                if value and value.strip():
                    return value.strip()
        return None

    async def _visible(self, page: Any, selectors: Sequence[str]) -> Optional[Any]:
        for selector in selectors:
            element = await page.query_selector(selector)
            if element is not None and await element.is_visible():
                return element
        return None

    async def _read_outcome(self, page: Any, url: str) -> BookingAttemptResult:
        error_element = await self._visible(page, ERROR_MARKERS)
        success_element = await self._visible(page, SUCCESS_MARKERS)

        if success_element is not None and error_element is None:
            reference = await self._text_or_attribute(page, REFERENCE_SELECTORS, REFERENCE_ATTRIBUTES)
            if not reference:
                return BookingAttemptResult.failed(self.name, "页面显示成功但未找到预约号", endpoint=url)
            confirmation = await self._text_or_attribute(page, CONFIRMATION_SELECTORS, CONFIRMATION_ATTRIBUTES)
            logger.info("[%s] 预约成功 booking=%s", self.name, reference)
            return BookingAttemptResult(
                success=True,
                provenance=self.name,
                booking_reference=reference,
                confirmation_code=confirmation,
                endpoint=url,
            )

        if error_element is not None:
            message = (await error_element.inner_text() or "").strip() or "页面返回错误"
            logger.info("[%s] 平台拒绝预约: %s", self.name, message)
            return BookingAttemptResult.failed(self.name, message, endpoint=url)

        return BookingAttemptResult.failed(self.name, "提交后未出现预约结果", endpoint=url)
