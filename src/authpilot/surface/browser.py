"""Playwright implementation of :class:`~authpilot.surface.base.UISurface`.

:class:`PlaywrightSurface` wraps one :class:`playwright.async_api.Page`.
Siblings opened through :meth:`PlaywrightSurface.open_sibling` share the
page's browser context, and therefore its cookies, which is what lets the
mailbox tab and the provider tab run side by side.

Playwright timeouts are translated into ``None``/``False`` results and
every other Playwright error into :class:`~authpilot.exceptions.SurfaceError`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Locator, Page, Playwright, Route
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from authpilot.exceptions import SurfaceError
from authpilot.surface.base import ElementHandle, UISurface

logger = logging.getLogger(__name__)

_ACTION_TIMEOUT_MS = 5000
_NAVIGATION_TIMEOUT_MS = 30000
_FIDO_ROUTE = "**/GetCredentialType.srf*"


def _ms(seconds: float) -> float:
    return max(0.0, seconds) * 1000


class PlaywrightElement(ElementHandle):
    """Element handle backed by a Playwright :class:`Locator`."""

    def __init__(self, locator: Locator) -> None:
        self._locator = locator

    async def is_visible(self) -> bool:
        try:
            return await self._locator.is_visible()
        except PlaywrightError:
            return False

    async def click(self) -> None:
        try:
            await self._locator.click(timeout=_ACTION_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise SurfaceError(f"click failed: {exc}") from exc

    async def fill(self, text: str) -> None:
        try:
            await self._locator.fill(text, timeout=_ACTION_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise SurfaceError(f"fill failed: {exc}") from exc

    async def text(self) -> str:
        try:
            return (await self._locator.text_content(timeout=_ACTION_TIMEOUT_MS)) or ""
        except PlaywrightError as exc:
            raise SurfaceError(f"text read failed: {exc}") from exc

    async def attribute(self, name: str) -> Optional[str]:
        try:
            return await self._locator.get_attribute(name, timeout=_ACTION_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise SurfaceError(f"attribute read failed: {exc}") from exc

    async def locate_all(self, pattern: str) -> list[ElementHandle]:
        return await _expand(self._locator.locator(pattern))


async def _expand(locator: Locator) -> list[ElementHandle]:
    try:
        count = await locator.count()
    except PlaywrightError as exc:
        raise SurfaceError(f"query failed: {exc}") from exc
    return [PlaywrightElement(locator.nth(i)) for i in range(count)]


class PlaywrightSurface(UISurface):
    """A :class:`UISurface` over a Playwright page.

    Args:
        page: The page to drive.
        family: Surfaces sharing this page's browser context. Created on
            first use and handed to every sibling so :meth:`siblings`
            returns stable wrapper objects.
    """

    def __init__(self, page: Page, family: Optional[list[PlaywrightSurface]] = None) -> None:
        self._page = page
        self._family = family if family is not None else []
        self._family.append(self)

    @property
    def page(self) -> Page:
        return self._page

    @property
    def context(self) -> BrowserContext:
        return self._page.context

    async def navigate(self, url: str) -> None:
        try:
            await self._page.goto(url, wait_until="domcontentloaded", timeout=_NAVIGATION_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise SurfaceError(f"navigation to {url} failed: {exc}") from exc

    async def locate(self, pattern: str) -> Optional[ElementHandle]:
        locator = self._page.locator(pattern).first
        try:
            if await locator.count() == 0:
                return None
        except PlaywrightError as exc:
            raise SurfaceError(f"query {pattern!r} failed: {exc}") from exc
        return PlaywrightElement(locator)

    async def locate_all(self, pattern: str) -> list[ElementHandle]:
        return await _expand(self._page.locator(pattern))

    async def wait_for(
        self, pattern: str, timeout: float, state: str = "visible"
    ) -> Optional[ElementHandle]:
        locator = self._page.locator(pattern).first
        try:
            await locator.wait_for(state=state, timeout=_ms(timeout))
        except PlaywrightTimeoutError:
            return None
        except PlaywrightError as exc:
            logger.debug("wait_for %r failed: %s", pattern, exc)
            return None
        return PlaywrightElement(locator)

    async def wait_gone(self, pattern: str, timeout: float) -> bool:
        try:
            await self._page.locator(pattern).first.wait_for(state="detached", timeout=_ms(timeout))
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as exc:
            logger.debug("wait_gone %r failed: %s", pattern, exc)
            return False
        return True

    async def press_key(self, key: str) -> None:
        try:
            await self._page.keyboard.press(key)
        except PlaywrightError as exc:
            raise SurfaceError(f"key press {key} failed: {exc}") from exc

    def current_url(self) -> str:
        return self._page.url

    async def page_text(self) -> str:
        try:
            return await self._page.inner_text("body", timeout=_ACTION_TIMEOUT_MS)
        except PlaywrightError as exc:
            raise SurfaceError(f"page text read failed: {exc}") from exc

    async def page_html(self) -> str:
        try:
            return await self._page.content()
        except PlaywrightError as exc:
            raise SurfaceError(f"page html read failed: {exc}") from exc

    async def screenshot(self, path: Path) -> None:
        try:
            await self._page.screenshot(path=str(path), full_page=True)
        except PlaywrightError as exc:
            raise SurfaceError(f"screenshot failed: {exc}") from exc

    async def go_back(self) -> None:
        try:
            await self._page.go_back(wait_until="domcontentloaded")
        except PlaywrightError as exc:
            raise SurfaceError(f"history back failed: {exc}") from exc

    async def open_sibling(self) -> UISurface:
        try:
            page = await self._page.context.new_page()
        except PlaywrightError as exc:
            raise SurfaceError(f"cannot open a new tab: {exc}") from exc
        return PlaywrightSurface(page, self._family)

    def siblings(self) -> list[UISurface]:
        return [s for s in self._family if not s.is_closed()]

    async def storage_state(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._page.context.storage_state(path=str(path))
        except PlaywrightError as exc:
            raise SurfaceError(f"storage state export failed: {exc}") from exc

    async def close(self) -> None:
        if self._page.is_closed():
            return
        try:
            await self._page.close()
        except PlaywrightError as exc:
            raise SurfaceError(f"close failed: {exc}") from exc

    def is_closed(self) -> bool:
        return self._page.is_closed()

    async def disable_fido(self) -> None:
        """Rewrite credential-type lookups so the provider skips security-key prompts."""

        async def _rewrite(route: Route) -> None:
            raw = route.request.post_data or "{}"
            try:
                body = json.loads(raw)
            except json.JSONDecodeError:
                body = {}
            body["isFidoSupported"] = False
            await route.continue_(post_data=json.dumps(body))

        try:
            await self._page.route(_FIDO_ROUTE, _rewrite)
        except PlaywrightError as exc:
            logger.debug("FIDO route not installed: %s", exc)


async def launch_surface(
    playwright: Playwright,
    headless: bool = False,
    storage_state: Optional[Path] = None,
) -> tuple[Browser, PlaywrightSurface]:
    """Start Chromium and return ``(browser, surface)`` for a fresh page.

    The caller owns the browser and must close it.

    Args:
        playwright: A started :func:`~playwright.async_api.async_playwright` instance.
        headless: Run without a visible window.
        storage_state: Previously saved session to restore, if the file exists.
    """
    browser = await playwright.chromium.launch(headless=headless)
    state = str(storage_state) if storage_state is not None and storage_state.is_file() else None
    context = await browser.new_context(storage_state=state)
    page = await context.new_page()
    return browser, PlaywrightSurface(page)


async def open_standalone(browser: Browser) -> PlaywrightSurface:
    """Open a page in a new, empty context of *browser*.

    Used for the mailbox when the sign-in session cannot open a tab.
    """
    try:
        context = await browser.new_context()
        page = await context.new_page()
    except PlaywrightError as exc:
        raise SurfaceError(f"cannot open a standalone page: {exc}") from exc
    return PlaywrightSurface(page)
