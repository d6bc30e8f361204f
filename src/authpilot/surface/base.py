"""Abstract UI surface consumed by the sign-in flow.

A :class:`UISurface` is one browsing context (a tab) capable of navigation,
element lookup and input simulation. Stages never talk to a browser
library directly; they go through this interface so the flow can be
driven by a scripted fake in tests.

Two conventions keep the fallback chains simple:

* Waits never raise. :meth:`UISurface.wait_for` returns ``None`` when the
  element did not reach the requested state before the timeout, which the
  caller reads as "absent" before moving on to its next heuristic.
* Interactions (click, fill, navigate) raise
  :class:`~authpilot.exceptions.SurfaceError` when they fail. The helpers
  :func:`is_visible` and :func:`first_visible` absorb it.

See Also:
    :mod:`authpilot.surface.browser` for the Playwright adapter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence

from authpilot.exceptions import SurfaceError


class ElementHandle(ABC):
    """A located element on a :class:`UISurface`."""

    @abstractmethod
    async def is_visible(self) -> bool:
        """Return whether the element is currently rendered and visible."""
        ...

    @abstractmethod
    async def click(self) -> None:
        ...

    @abstractmethod
    async def fill(self, text: str) -> None:
        """Replace the element's value with *text*."""
        ...

    @abstractmethod
    async def text(self) -> str:
        """Return the rendered text content (empty string when there is none)."""
        ...

    @abstractmethod
    async def attribute(self, name: str) -> Optional[str]:
        ...

    @abstractmethod
    async def locate_all(self, pattern: str) -> list[ElementHandle]:
        """Return every descendant matching *pattern*, in DOM order."""
        ...


class UISurface(ABC):
    """One browsing context in a shared session.

    Patterns are selector strings in the adapter's query language. The
    Playwright adapter accepts CSS, ``text=`` and ``:has-text()`` forms.
    """

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Load *url* and wait for the DOM to be ready.

        Raises:
            SurfaceError: If navigation fails.
        """
        ...

    @abstractmethod
    async def locate(self, pattern: str) -> Optional[ElementHandle]:
        """Return the first element matching *pattern*, or ``None`` without waiting."""
        ...

    @abstractmethod
    async def locate_all(self, pattern: str) -> list[ElementHandle]:
        ...

    @abstractmethod
    async def wait_for(
        self, pattern: str, timeout: float, state: str = "visible"
    ) -> Optional[ElementHandle]:
        """Wait up to *timeout* seconds for *pattern* to reach *state*.

        Args:
            pattern: Selector string.
            timeout: Upper bound in seconds.
            state: ``"visible"`` or ``"attached"``.

        Returns:
            The element, or ``None`` if the wait timed out.
        """
        ...

    @abstractmethod
    async def wait_gone(self, pattern: str, timeout: float) -> bool:
        """Wait up to *timeout* seconds for *pattern* to detach.

        Returns:
            ``True`` if the element is gone, ``False`` on timeout.
        """
        ...

    @abstractmethod
    async def press_key(self, key: str) -> None:
        ...

    @abstractmethod
    def current_url(self) -> str:
        ...

    @abstractmethod
    async def page_text(self) -> str:
        """Return the visible text of the whole page."""
        ...

    @abstractmethod
    async def page_html(self) -> str:
        ...

    @abstractmethod
    async def screenshot(self, path: Path) -> None:
        ...

    @abstractmethod
    async def go_back(self) -> None:
        ...

    @abstractmethod
    async def open_sibling(self) -> UISurface:
        """Open a new surface in the same session (cookies are shared).

        Raises:
            SurfaceError: If the session cannot open another surface.
        """
        ...

    @abstractmethod
    def siblings(self) -> list[UISurface]:
        """Return every open surface of this session, including this one."""
        ...

    @abstractmethod
    async def storage_state(self, path: Path) -> None:
        """Write the session's cookies and local storage to *path*."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def is_closed(self) -> bool:
        ...

    async def disable_fido(self) -> None:
        """Ask the provider not to offer security-key sign-in. No-op by default."""
        return None


async def is_visible(surface: UISurface, pattern: str) -> bool:
    """Return whether the first match of *pattern* is visible right now."""
    try:
        element = await surface.locate(pattern)
        return element is not None and await element.is_visible()
    except SurfaceError:
        return False


async def first_visible(
    surface: UISurface, patterns: Sequence[str]
) -> Optional[tuple[str, ElementHandle]]:
    """Return ``(pattern, element)`` for the first pattern with a visible match.

    Patterns are tried in order without waiting.
    """
    for pattern in patterns:
        try:
            element = await surface.locate(pattern)
            if element is not None and await element.is_visible():
                return pattern, element
        except SurfaceError:
            continue
    return None


async def safe_visible(element: ElementHandle) -> bool:
    """Return whether *element* is visible, treating a detached element as hidden."""
    try:
        return await element.is_visible()
    except SurfaceError:
        return False


async def safe_click(element: ElementHandle) -> bool:
    """Click *element*, returning ``False`` instead of raising on failure."""
    try:
        await element.click()
        return True
    except SurfaceError:
        return False


async def safe_text(element: ElementHandle) -> str:
    """Return the element text, or an empty string on failure."""
    try:
        return (await element.text()).strip()
    except SurfaceError:
        return ""
