"""Retrieve an emailed sign-in code from a webmail inbox.

When the provider sends a code by email, :class:`EmailCodeRetriever`:

1. finds the target mailbox address on the sign-in page,
2. resolves a password for it (``mailbox.passwords`` or the account
   registry); without one the inbox is read only if the session is already
   signed in,
3. opens a sibling surface in the same session, or a fresh one from
   ``surface_factory`` when that fails,
4. runs each configured search term, ranks the result threads newest first
   and opens them in that order,
5. ranks the messages of an opened thread the same way and tries the best
   one first, then its neighbours,
6. repeats the whole search for ``search_rounds`` rounds with a cooldown,
7. finally scans the newest inbox threads.

Within a thread the phrase patterns of :mod:`authpilot.codes` are tried on
every message before the permissive last-digit-run fallback, so a message
that states its code wins over a neighbour that merely contains digits.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import quote

from authpilot import output, selectors
from authpilot.codes import (
    best_index,
    extract_code,
    find_email_addresses,
    last_digit_run,
    neighbour_order,
    parse_timestamp,
    rank_newest_first,
)
from authpilot.collaborators import AccountRegistry
from authpilot.config import resolve_credential
from authpilot.exceptions import ConfigError, SurfaceError
from authpilot.models import ExtractedCode, MailboxConfig, MailMessage, MailThread
from authpilot.pacing import Sleeper
from authpilot.surface.base import ElementHandle, UISurface, is_visible, safe_click, safe_text, safe_visible

logger = logging.getLogger(__name__)

STAGE = "MAILBOX"

SurfaceFactory = Callable[[], Awaitable[UISurface]]


def pick_code(messages: Sequence[MailMessage], brand: str = "Microsoft") -> Optional[str]:
    """Choose a code from the messages of one thread.

    Messages are tried best-ranked first, then alternating neighbours. A
    phrase match anywhere beats the digit-run fallback.
    """
    usable = [m for m in messages if m.text.strip()]
    if not usable:
        return None
    order = neighbour_order(best_index([m.timestamp for m in usable]), len(usable))
    for i in order:
        code = extract_code(usable[i].text, brand)
        if code:
            return code
    for i in order:
        code = last_digit_run(usable[i].text)
        if code:
            return code
    return None


class EmailCodeRetriever:
    """Reads the most recent sign-in code from the account's mailbox.

    Args:
        config: Mailbox location, search terms and retry policy.
        sleeper: Pause provider.
        brand: Provider name used by the phrase patterns.
        registry: Looked up for the mailbox password when the mailbox is
            itself a managed account.
        surface_factory: Opens a standalone surface when the session cannot
            open a sibling. The surface is closed after use.
    """

    def __init__(
        self,
        config: MailboxConfig,
        sleeper: Sleeper,
        brand: str = "Microsoft",
        registry: Optional[AccountRegistry] = None,
        surface_factory: Optional[SurfaceFactory] = None,
    ) -> None:
        self._config = config
        self._sleeper = sleeper
        self._brand = brand
        self._registry = registry
        self._surface_factory = surface_factory

    @property
    def search_base(self) -> str:
        return self._config.base_url.rstrip("/") + "/mail/u/0/"

    def search_url(self, term: str) -> str:
        return f"{self.search_base}#search/{quote(term, safe='')}"

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def retrieve(self, surface: UISurface, account_email: str) -> Optional[ExtractedCode]:
        """Return the code sent to the mailbox named on *surface*, or ``None``."""
        address = await self.find_mailbox_address(surface, account_email)
        if address is None:
            output.log(STAGE, "Unable to determine the mailbox address from the sign-in page", "warn")
            return None
        output.log(STAGE, f"Detected mailbox address: {address}")

        password = self.resolve_password(address)
        if password is None:
            output.log(
                STAGE,
                "No mailbox password configured; reading the inbox only if already signed in",
                "warn",
            )

        mailbox = await self._open_mailbox(surface)
        if mailbox is None:
            return None
        try:
            await self._sign_in(mailbox, address, password)
            return await self._search(mailbox)
        except SurfaceError as exc:
            output.log(STAGE, f"Mailbox search failed: {exc}", "error")
            return None
        finally:
            try:
                await mailbox.close()
            except SurfaceError as exc:
                logger.debug("closing mailbox surface failed: %s", exc)

    async def find_mailbox_address(self, surface: UISurface, account_email: str) -> Optional[str]:
        """Return the email-shaped token on the page that is not the account itself.

        Addresses in one of ``config.domains`` are preferred.
        """
        try:
            text = await surface.page_text()
        except SurfaceError as exc:
            output.log(STAGE, f"Could not read the sign-in page: {exc}", "warn")
            return None
        candidates = [a for a in find_email_addresses(text) if a.lower() != account_email.lower()]
        if not candidates:
            return None
        preferred = {d.lower() for d in self._config.domains}
        for address in candidates:
            if address.rsplit("@", 1)[-1].lower() in preferred:
                return address
        return candidates[0]

    def resolve_password(self, address: str) -> Optional[str]:
        """Return the mailbox password for *address*, or ``None`` if unknown."""
        source = None
        for key, value in self._config.passwords.items():
            if key.lower() == address.lower():
                source = value
                break
        if source is None and self._registry is not None:
            entry = self._registry.find_account(address)
            if entry is not None:
                source = entry.password
        if source is None:
            return None
        try:
            return resolve_credential(source, label=f"password for {address}")
        except ConfigError as exc:
            output.log(STAGE, f"Mailbox password unavailable: {exc}", "warn")
            return None

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    async def _open_mailbox(self, surface: UISurface) -> Optional[UISurface]:
        try:
            return await surface.open_sibling()
        except SurfaceError as exc:
            output.log(STAGE, f"Could not open a tab in the current session: {exc}", "warn")
        if self._surface_factory is None:
            output.log(STAGE, "No standalone surface available for the mailbox", "error")
            return None
        output.log(STAGE, "Falling back to a standalone surface for the mailbox", "warn")
        try:
            return await self._surface_factory()
        except SurfaceError as exc:
            output.log(STAGE, f"Unable to open a surface for the mailbox: {exc}", "error")
            return None

    async def _sign_in(self, mailbox: UISurface, address: str, password: Optional[str]) -> None:
        await mailbox.navigate(self._config.base_url)
        await self._sleeper.pause(self._config.nav_wait)

        try:
            if await is_visible(mailbox, selectors.MAIL_IDENTIFIER):
                await self._fill_and_enter(mailbox, selectors.MAIL_IDENTIFIER, address)
                await self._sleeper.pause(1.4)
            if password is not None and await is_visible(mailbox, selectors.MAIL_PASSWORD):
                await self._fill_and_enter(mailbox, selectors.MAIL_PASSWORD, password)
                await self._sleeper.pause(2.2)
                output.log(STAGE, "Signed in to the mailbox")
        except SurfaceError as exc:
            output.log(STAGE, f"Mailbox sign-in step failed: {exc}", "warn")

        await mailbox.wait_for(selectors.MAIL_READY, self._config.login_timeout)

    @staticmethod
    async def _fill_and_enter(mailbox: UISurface, pattern: str, value: str) -> None:
        field = await mailbox.locate(pattern)
        if field is None:
            raise SurfaceError(f"{pattern} disappeared")
        await field.fill(value)
        await mailbox.press_key("Enter")

    async def _search(self, mailbox: UISurface) -> Optional[ExtractedCode]:
        delay = self._config.search_delay
        for round_no in range(1, self._config.search_rounds + 1):
            for term in self._config.search_terms:
                try:
                    await mailbox.navigate(self.search_url(term))
                    await self._sleeper.pause(delay)
                    found = await self._scan_threads(mailbox, term, self._config.max_threads_per_search)
                except SurfaceError as exc:
                    output.log(STAGE, f"Search for {term!r} failed: {exc}", "debug")
                    continue
                if found is not None:
                    output.log(STAGE, f"Found a code in a message (term={term!r}, round {round_no})")
                    return found
            if round_no < self._config.search_rounds:
                await self._sleeper.pause(max(0.8, delay * 1.5))

        if self._config.inbox_fallback_threads <= 0:
            output.log(STAGE, "No verification code found in the mailbox", "warn")
            return None
        output.log(STAGE, "Search rounds exhausted; scanning the newest inbox threads")
        try:
            await mailbox.navigate(f"{self.search_base}#inbox")
            await self._sleeper.pause(delay)
            found = await self._scan_threads(mailbox, None, self._config.inbox_fallback_threads)
        except SurfaceError as exc:
            output.log(STAGE, f"Inbox scan failed: {exc}", "warn")
            found = None
        if found is None:
            output.log(STAGE, "No verification code found in the mailbox", "warn")
        return found

    async def _scan_threads(
        self, mailbox: UISurface, term: Optional[str], limit: int
    ) -> Optional[ExtractedCode]:
        rows = await mailbox.locate_all(selectors.MAIL_THREAD_ROWS)
        threads: list[MailThread] = []
        for i, row in enumerate(rows):
            if not await safe_visible(row):
                continue
            threads.append(MailThread(index=i, timestamp=parse_timestamp(await self._row_time(row)), handle=row))

        # Rank every visible row; the limit only bounds how many are opened.
        for thread in rank_newest_first(threads, key=lambda t: t.timestamp)[:limit]:
            if not await safe_click(thread.handle):
                continue
            await self._sleeper.pause(1.3)
            messages = await self._read_messages(mailbox)
            code = pick_code(messages, self._brand)
            await self._go_back(mailbox)
            if code is not None:
                return ExtractedCode(
                    value=code,
                    source_thread_timestamp=thread.timestamp,
                    search_term_used=term,
                )
        return None

    async def _row_time(self, row: ElementHandle) -> str:
        for pattern in selectors.MAIL_ROW_TIME:
            try:
                found = await row.locate_all(pattern)
            except SurfaceError:
                continue
            for element in found[:1]:
                try:
                    stamp = (await element.attribute("title") or "").strip()
                except SurfaceError:
                    stamp = ""
                stamp = stamp or await safe_text(element)
                if stamp:
                    return stamp
        return (await safe_text(row))[:200]

    async def _read_messages(self, mailbox: UISurface) -> list[MailMessage]:
        for container_pattern in selectors.MAIL_MESSAGE_CONTAINERS:
            try:
                containers = await mailbox.locate_all(container_pattern)
            except SurfaceError:
                continue
            messages = []
            for i, container in enumerate(containers):
                body = await self._first_text(container, selectors.MAIL_BODIES) or await safe_text(container)
                if not body:
                    continue
                stamp = await self._first_stamp(container)
                messages.append(MailMessage(index=i, timestamp=parse_timestamp(stamp), text=body))
            if messages:
                return messages
        try:
            text = await mailbox.page_text()
        except SurfaceError:
            return []
        return [MailMessage(index=0, text=text)] if text.strip() else []

    async def _first_text(self, container: ElementHandle, patterns: Sequence[str]) -> str:
        for pattern in patterns:
            try:
                found = await container.locate_all(pattern)
            except SurfaceError:
                continue
            for element in found:
                text = await safe_text(element)
                if text:
                    return text
        return ""

    async def _first_stamp(self, container: ElementHandle) -> str:
        for pattern in selectors.MAIL_MESSAGE_TIME:
            try:
                found = await container.locate_all(pattern)
            except SurfaceError:
                continue
            for element in found[:1]:
                try:
                    stamp = (await element.attribute("title") or "").strip()
                except SurfaceError:
                    stamp = ""
                stamp = stamp or await safe_text(element)
                if stamp:
                    return stamp
        return ""

    async def _go_back(self, mailbox: UISurface) -> None:
        try:
            await mailbox.go_back()
        except SurfaceError as exc:
            logger.debug("history back failed: %s", exc)
        await self._sleeper.pause(0.4)
