"""UI surface abstraction used by every stage of the sign-in flow.

- :mod:`~authpilot.surface.base` -- :class:`UISurface` and
  :class:`ElementHandle` abstract base classes plus probing helpers.
- :mod:`~authpilot.surface.browser` -- the concrete adapter over a
  Playwright page.
"""

from authpilot.surface.base import (
    ElementHandle,
    UISurface,
    first_visible,
    is_visible,
    safe_click,
    safe_text,
    safe_visible,
)

__all__ = [
    "ElementHandle",
    "UISurface",
    "first_visible",
    "is_visible",
    "safe_click",
    "safe_text",
    "safe_visible",
]
