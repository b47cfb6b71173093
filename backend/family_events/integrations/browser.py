"""Browser automation capability and the Playwright adapter.

Each registration gets a fresh headless Chromium (no shared browser state
between events). Launch failures surface as AutomationUnavailableError;
everything else a page does raises whatever Playwright raises and is mapped
by the RegistrationAutomator.
"""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog
from playwright.async_api import async_playwright

from family_events.core.exceptions import AutomationUnavailableError

logger = structlog.get_logger(__name__)

CHROMIUM_ARGS = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]

# Collects every visible form control with the attributes the fill planner keys on.
_COLLECT_FIELDS_JS = """
(elements) => elements
  .filter((el) => el.offsetParent !== null && !el.disabled)
  .map((el) => ({
    tag: el.tagName.toLowerCase(),
    name: el.getAttribute('name') || '',
    id: el.id || '',
    type: (el.getAttribute('type') || '').toLowerCase(),
    placeholder: el.getAttribute('placeholder') || '',
    autocomplete: el.getAttribute('autocomplete') || '',
    label: el.labels && el.labels.length ? el.labels[0].innerText : (el.getAttribute('aria-label') || ''),
    required: !!el.required,
  }))
"""


@dataclass(frozen=True)
class FormField:
    selector: str
    tag: str = "input"
    name: str = ""
    element_id: str = ""
    field_type: str = "text"
    placeholder: str = ""
    label: str = ""
    autocomplete: str = ""
    required: bool = False

    @property
    def descriptor(self) -> str:
        """Lower-cased text the fill planner matches keywords against."""
        parts = (self.name, self.element_id, self.placeholder, self.label, self.autocomplete)
        return " ".join(p for p in parts if p).lower().replace("-", "_")


@runtime_checkable
class BrowserPage(Protocol):
    async def open(self, url: str) -> None: ...

    async def body_text(self) -> str: ...

    async def count(self, selector: str) -> int: ...

    async def form_fields(self) -> list[FormField]: ...

    async def fill(self, field: FormField, value: str) -> None: ...

    async def submit(self) -> None: ...


@runtime_checkable
class BrowserEngine(Protocol):
    def session(self) -> AbstractAsyncContextManager[BrowserPage]:
        """Open a fresh browser session and yield its single page."""
        ...


class PlaywrightPage:
    def __init__(self, page, navigation_timeout: float):
        self._page = page
        self._timeout_ms = navigation_timeout * 1000

    async def open(self, url: str) -> None:
        await self._page.goto(url, wait_until="domcontentloaded", timeout=self._timeout_ms)

    async def body_text(self) -> str:
        return await self._page.inner_text("body")

    async def count(self, selector: str) -> int:
        return await self._page.locator(selector).count()

    async def form_fields(self) -> list[FormField]:
        raw = await self._page.eval_on_selector_all("form input, form select, form textarea", _COLLECT_FIELDS_JS)
        fields = []
        for item in raw:
            if item["type"] in ("hidden", "submit", "button", "image", "reset"):
                continue
            if item["id"]:
                selector = f"#{item['id']}"
            elif item["name"]:
                selector = f"{item['tag']}[name=\"{item['name']}\"]"
            else:
                continue
            fields.append(
                FormField(
                    selector=selector,
                    tag=item["tag"],
                    name=item["name"],
                    element_id=item["id"],
                    field_type=item["type"] or ("text" if item["tag"] == "input" else item["tag"]),
                    placeholder=item["placeholder"],
                    label=item["label"],
                    autocomplete=item["autocomplete"],
                    required=item["required"],
                )
            )
        return fields

    async def fill(self, field: FormField, value: str) -> None:
        if field.tag == "select":
            await self._page.select_option(field.selector, label=value)
        elif field.field_type in ("checkbox", "radio"):
            await self._page.check(field.selector)
        else:
            await self._page.fill(field.selector, value)

    async def submit(self) -> None:
        button = self._page.locator("form button[type=submit], form input[type=submit], form button:not([type])")
        if await button.count():
            await button.first.click()
        else:
            await self._page.locator("form input").last.press("Enter")
        await self._page.wait_for_load_state("networkidle", timeout=self._timeout_ms)


class PlaywrightBrowserEngine:
    """Headless Chromium via Playwright, one browser per session."""

    def __init__(self, headless: bool = True, navigation_timeout: float = 30.0):
        self.headless = headless
        self.navigation_timeout = navigation_timeout

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PlaywrightPage]:
        try:
            playwright = await async_playwright().start()
        except Exception as exc:
            raise AutomationUnavailableError(f"Playwright driver unavailable: {exc}") from exc

        try:
            try:
                browser = await playwright.chromium.launch(headless=self.headless, args=CHROMIUM_ARGS)
            except Exception as exc:
                raise AutomationUnavailableError(f"Chromium launch failed: {exc}") from exc
            logger.debug("browser_session_opened", headless=self.headless)
            try:
                context = await browser.new_context(viewport={"width": 1280, "height": 900})
                page = await context.new_page()
                yield PlaywrightPage(page, self.navigation_timeout)
            finally:
                await browser.close()
        finally:
            await playwright.stop()
