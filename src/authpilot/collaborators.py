"""Interfaces of the services the sign-in flow consumes but does not own.

The orchestrator depends only on these abstract base classes:

- :class:`PromptDismisser` -- clears interstitial prompts ("Stay signed in?").
- :class:`SessionStore` -- persists an authenticated session.
- :class:`DiagnosticsCapture` -- rate-limited screenshot/HTML capture.
- :class:`IncidentNotifier` -- relays security incidents to an operator.
- :class:`AccountRegistry` -- the caller's account list.
- :class:`DocsOpener` -- shows the documentation link for an incident.

Small default implementations live here (:class:`DefaultPromptDismisser`,
:class:`InMemoryAccountRegistry`, :class:`LoggingDocsOpener`,
:class:`NullNotifier`) and in :mod:`authpilot.sessions`,
:mod:`authpilot.diagnostics` and :mod:`authpilot.notify`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional, Sequence

from authpilot import output, selectors
from authpilot.exceptions import SurfaceError
from authpilot.models import AccountEntry, SecurityIncident, Severity
from authpilot.surface.base import UISurface, first_visible, safe_click


class PromptDismisser(ABC):
    """Clears known optional prompts from a surface."""

    @abstractmethod
    async def dismiss_known_prompts(self, surface: UISurface) -> bool:
        """Dismiss whatever known prompt is showing. Must never raise.

        Returns:
            ``True`` if at least one prompt was dismissed.
        """
        ...

    async def dismiss_welcome(self, surface: UISurface) -> bool:
        """Close onboarding dialogs shown after sign-in. Defaults to :meth:`dismiss_known_prompts`."""
        return await self.dismiss_known_prompts(surface)


class SessionStore(ABC):
    @abstractmethod
    async def save_session(
        self, path: str, surface: UISurface, account: str, device_class: str
    ) -> Optional[Path]:
        """Persist the session of *surface* for *account*.

        Returns:
            The file written, or ``None`` if nothing was saved.
        """
        ...


class DiagnosticsCapture(ABC):
    @abstractmethod
    async def capture(
        self, surface: UISurface, label: str, scope: str = "login", force: bool = False
    ) -> list[Path]:
        """Capture a screenshot and HTML dump, subject to a per-run limit.

        ``force`` bypasses the limit. Never raises.
        """
        ...


class IncidentNotifier(ABC):
    @abstractmethod
    async def send_incident_alert(self, incident: SecurityIncident, severity: Severity) -> None:
        """Relay *incident* to an external channel. Failures are swallowed."""
        ...


class AccountRegistry(ABC):
    @abstractmethod
    def mark_account_do_later(self, email: str) -> bool:
        """Flag *email* for a later run. Returns ``False`` if it is not registered."""
        ...

    @abstractmethod
    def find_account(self, email: str) -> Optional[AccountEntry]:
        ...


class DocsOpener(ABC):
    @abstractmethod
    async def open(self, url: str, surface: Optional[UISurface] = None) -> None:
        ...


# --- Defaults ---


class DefaultPromptDismisser(PromptDismisser):
    """Clicks through the provider's common interstitials.

    Args:
        prompts: Selectors tried in order. Every visible match is clicked.
        welcome: Close buttons for post sign-in onboarding dialogs.
    """

    def __init__(
        self,
        prompts: Sequence[str] = selectors.KNOWN_PROMPTS,
        welcome: Sequence[str] = selectors.WELCOME_CLOSE,
    ) -> None:
        self._prompts = tuple(prompts)
        self._welcome = tuple(welcome)

    async def dismiss_known_prompts(self, surface: UISurface) -> bool:
        dismissed = await self._click_all(surface, self._prompts)
        try:
            overlay = await surface.locate(selectors.DIALOG_OVERLAY)
            if overlay is not None and await overlay.is_visible():
                await surface.press_key("Escape")
                dismissed = True
        except SurfaceError as exc:
            output.log("PROMPTS", f"Escape on overlay failed: {exc}", "debug")
        return dismissed

    async def dismiss_welcome(self, surface: UISurface) -> bool:
        return await self._click_all(surface, self._welcome)

    async def _click_all(self, surface: UISurface, patterns: Iterable[str]) -> bool:
        dismissed = False
        for pattern in patterns:
            hit = await first_visible(surface, (pattern,))
            if hit is not None and await safe_click(hit[1]):
                output.log("PROMPTS", f"Dismissed prompt via {pattern}", "debug")
                dismissed = True
        return dismissed


class InMemoryAccountRegistry(AccountRegistry):
    """Registry over a list of :class:`~authpilot.models.AccountEntry` records."""

    def __init__(self, accounts: Iterable[AccountEntry] = ()) -> None:
        self._accounts = list(accounts)

    @property
    def accounts(self) -> list[AccountEntry]:
        return self._accounts

    def find_account(self, email: str) -> Optional[AccountEntry]:
        wanted = email.lower()
        for entry in self._accounts:
            if entry.email.lower() == wanted:
                return entry
        return None

    def mark_account_do_later(self, email: str) -> bool:
        entry = self.find_account(email)
        if entry is None:
            return False
        entry.do_later = True
        return True


class LoggingDocsOpener(DocsOpener):
    """Prints the documentation link for the operator instead of opening it."""

    async def open(self, url: str, surface: Optional[UISurface] = None) -> None:
        output.log("SECURITY", f"Documentation: {url}", "warn")


class NullNotifier(IncidentNotifier):
    async def send_incident_alert(self, incident: SecurityIncident, severity: Severity) -> None:
        return None
