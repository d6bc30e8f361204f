"""The top-level sign-in state machine.

:class:`LoginOrchestrator` owns one account's run:

1. Refuse to start when the shared :class:`~authpilot.standby.CompromisedState`
   is active.
2. Open the sign-in entry point and stop with :class:`AccountLockedError`
   if the provider shows its account-locked page.
3. Skip the credential flow when the session is already signed in.
4. Otherwise run up to ``timing.max_attempts`` passes of the
   :class:`~authpilot.credentials.CredentialStage`. Between failed passes
   it waits a randomized backoff, opens a fresh sibling surface on the
   landing page, lets it settle, and closes the previous one.
5. On exhaustion close every surface, mark the account ``doLater`` and
   emit a single ``LOGIN_FAILED`` event.
6. On success confirm the landing page, dismiss welcome dialogs and
   persist the session.

Soft failures are reported as a ``False`` return plus an event through
:meth:`LoginOrchestrator.on_error`. Only :class:`AccountLockedError`,
:class:`LoginAbortedError` and unexpected exceptions reach the caller.

Example::

    state = CompromisedState()
    orchestrator = LoginOrchestrator(settings, state)
    orchestrator.on_error(lambda event: print(event.type))
    ok = await orchestrator.login(surface, "me@example.com", "hunter2")
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Union
from urllib.parse import urlsplit

from pydantic import SecretStr

from authpilot import output
from authpilot.collaborators import (
    AccountRegistry,
    DefaultPromptDismisser,
    DiagnosticsCapture,
    DocsOpener,
    IncidentNotifier,
    InMemoryAccountRegistry,
    PromptDismisser,
    SessionStore,
)
from authpilot.console import ConsolePrompt
from authpilot.credentials import CredentialStage
from authpilot.exceptions import (
    AccountLockedError,
    InvalidUsageError,
    LoginAbortedError,
    SurfaceError,
)
from authpilot.mailbox import EmailCodeRetriever, SurfaceFactory
from authpilot.models import (
    AccountCredentials,
    ChallengeContext,
    LoginAttemptState,
    LoginErrorEvent,
    LoginErrorType,
    Settings,
)
from authpilot.oauth import MobileTokenExchange
from authpilot.pacing import Sleeper
from authpilot.second_factor import SecondFactorResolver
from authpilot.security import SecurityIncidentDetector
from authpilot.standby import CompromisedState, StandbyController
from authpilot.surface.base import UISurface

logger = logging.getLogger(__name__)

STAGE = "LOGIN"

RETRY_AFTER_MS = 600_000

ErrorListener = Callable[[LoginErrorEvent], None]


class LoginOrchestrator:
    """Signs one account in at a time and reports soft failures as events.

    Args:
        settings: Provider, timing, mailbox and session settings.
        state: Latch shared by every orchestrator of the process.
        sleeper: Pause provider; :meth:`request_stop` stops it.
        dismisser: Clears interstitial prompts.
        session_store: Persists the authenticated session.
        diagnostics: Captures screenshots on incidents and failures.
        notifier: Receives security alerts.
        registry: Account list used for ``doLater`` and recovery addresses.
        docs: Shows the documentation link of an incident.
        console: Operator prompt for manual codes.
        mailbox_surface_factory: Standalone surface for the webmail inbox
            when a sibling surface cannot be opened.
        standby: Controller around *state*; built from *notifier* if omitted.
        credential_stage: Replaces the default credential stage.
        token_exchange: Replaces the default mobile token exchange.
    """

    def __init__(
        self,
        settings: Settings,
        state: CompromisedState,
        *,
        sleeper: Optional[Sleeper] = None,
        dismisser: Optional[PromptDismisser] = None,
        session_store: Optional[SessionStore] = None,
        diagnostics: Optional[DiagnosticsCapture] = None,
        notifier: Optional[IncidentNotifier] = None,
        registry: Optional[AccountRegistry] = None,
        docs: Optional[DocsOpener] = None,
        console: Optional[ConsolePrompt] = None,
        mailbox_surface_factory: Optional[SurfaceFactory] = None,
        standby: Optional[StandbyController] = None,
        credential_stage: Optional[CredentialStage] = None,
        token_exchange: Optional[MobileTokenExchange] = None,
    ) -> None:
        self.settings = settings
        self.state = state
        self.sleeper = sleeper or Sleeper()
        self.standby = standby or StandbyController(state, notifier)
        self._dismisser = dismisser or DefaultPromptDismisser()
        self._session_store = session_store
        self._diagnostics = diagnostics
        self._registry = registry or InMemoryAccountRegistry()
        self._listeners: list[ErrorListener] = []
        self._live: set[str] = set()
        self._credentials: Optional[AccountCredentials] = None
        self.last_attempt: Optional[LoginAttemptState] = None

        provider = settings.provider
        self.detector = SecurityIncidentDetector(
            self.standby, diagnostics=diagnostics, docs=docs, docs_url=provider.docs_url
        )
        if credential_stage is None:
            retriever = EmailCodeRetriever(
                settings.mailbox,
                self.sleeper,
                brand=provider.brand,
                registry=self._registry,
                surface_factory=mailbox_surface_factory,
            )
            resolver = SecondFactorResolver.default(
                settings.timing, self.sleeper, retriever, console, state=state
            )
            credential_stage = CredentialStage.default(settings.timing, self.sleeper, self.detector, resolver)
        self.credentials = credential_stage
        self.token_exchange = token_exchange or MobileTokenExchange(provider, self.sleeper, emit=self._emit)

    # ------------------------------------------------------------------ #
    # Events and control
    # ------------------------------------------------------------------ #

    def on_error(self, listener: ErrorListener) -> None:
        """Register *listener* for :class:`~authpilot.models.LoginErrorEvent` events."""
        self._listeners.append(listener)

    def request_stop(self) -> None:
        """Cut pending pauses short; the flow raises :class:`LoginAbortedError` at the next boundary."""
        output.log(STAGE, "Stop requested", "warn")
        self.sleeper.stop()

    @property
    def totp_secret_held(self) -> bool:
        """Whether a TOTP secret is currently held (only during :meth:`login`)."""
        return self._credentials is not None and self._credentials.totp_secret is not None

    @property
    def active_surface(self) -> Optional[UISurface]:
        """Surface used by the latest attempt; differs from the input after a retry."""
        if self.last_attempt is None:
            return None
        return self.last_attempt.active_surface

    def _emit(self, event: LoginErrorEvent) -> None:
        output.log(STAGE, f"{event.type.value}: {event.message}", "error")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # listeners must not break the flow
                output.log(STAGE, f"Error listener raised {type(exc).__name__}: {exc}", "warn")
                logger.debug("error listener failure", exc_info=True)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def login(
        self,
        surface: UISurface,
        email: str,
        password: Union[str, SecretStr],
        totp_secret: Union[str, SecretStr, None] = None,
    ) -> bool:
        """Sign *email* in on *surface*.

        Returns:
            ``True`` once the session is authenticated. ``False`` for soft
            failures (retries exhausted, standby active).

        Raises:
            AccountLockedError: The provider shows the account-locked page.
            LoginAbortedError: :meth:`request_stop` was called.
            InvalidUsageError: A login for the same account is already running.
        """
        if self.state.active:
            output.log(STAGE, f"Security standby active ({self.state.reason}); skipping {email}", "warn")
            return False

        key = email.lower()
        if key in self._live:
            raise InvalidUsageError(f"A login for {email} is already in progress")
        self._live.add(key)
        self._credentials = AccountCredentials(
            email=email,
            password=password,
            totp_secret=totp_secret or None,
        )
        try:
            return await self._login(surface, self._credentials)
        except (AccountLockedError, LoginAbortedError):
            raise
        except Exception as exc:
            self._emit(
                LoginErrorEvent(
                    type=LoginErrorType.LOGIN_FAILED,
                    email=email,
                    message=f"Login failed: {exc}",
                    retry_after_ms=RETRY_AFTER_MS,
                    should_restart_browsers=True,
                )
            )
            raise
        finally:
            self._credentials = None
            self._live.discard(key)

    async def get_second_factor_token(self, surface: UISurface, email: str) -> Optional[str]:
        """Return the mobile-scope access token for a signed-in *email*, or ``None``."""
        if self.state.active:
            output.log(STAGE, "Security standby active; not requesting a token", "warn")
            return None
        return await self.token_exchange.get_token(surface, email)

    # ------------------------------------------------------------------ #
    # Flow
    # ------------------------------------------------------------------ #

    async def _login(self, surface: UISurface, creds: AccountCredentials) -> bool:
        output.log(STAGE, f"Starting login for {creds.email}")
        await self._open_sign_in(surface)
        await self._check_locked(surface, creds.email)

        if await self._already_signed_in(surface):
            output.log(STAGE, "Already logged in")
        else:
            ok, surface = await self._exec_login(surface, creds)
            if not ok:
                return False
            await self._check_locked(surface, creds.email)

        await self._finish(surface, creds.email)
        return True

    async def _open_sign_in(self, surface: UISurface) -> None:
        try:
            await surface.navigate(self.settings.provider.signin_url)
        except SurfaceError as exc:
            output.log(STAGE, f"Sign-in page failed to load: {exc}", "warn")

    async def _check_locked(self, surface: UISurface, email: str) -> None:
        await self.sleeper.pause(2.0)
        marker = await surface.wait_for(
            self.settings.provider.locked_marker, self.settings.timing.locked_marker_timeout
        )
        if marker is None:
            return
        self._emit(
            LoginErrorEvent(
                type=LoginErrorType.ACCOUNT_LOCKED,
                email=email,
                message="Account has been locked",
                should_restart_browsers=False,
            )
        )
        raise AccountLockedError(email)

    async def _already_signed_in(self, surface: UISurface) -> bool:
        marker = await surface.wait_for(
            self.settings.provider.portal_marker, self.settings.timing.portal_timeout, state="attached"
        )
        return marker is not None

    async def _exec_login(self, surface: UISurface, creds: AccountCredentials) -> tuple[bool, UISurface]:
        timing = self.settings.timing
        attempt = LoginAttemptState(max_attempts=timing.max_attempts, active_surface=surface)
        self.last_attempt = attempt

        while attempt.attempts_left:
            self.sleeper.check()
            if self._standby_engaged():
                return False, attempt.active_surface
            attempt.attempt_index += 1
            current: UISurface = attempt.active_surface
            output.log(STAGE, f"Attempt {attempt.attempt_index}/{attempt.max_attempts}")
            try:
                ok = await self._attempt_once(current, creds, navigate=attempt.attempt_index > 1)
            except (AccountLockedError, LoginAbortedError):
                raise
            except Exception as exc:
                attempt.last_failure_reason = f"{type(exc).__name__}: {exc}"
                output.log(STAGE, f"Attempt {attempt.attempt_index} raised {attempt.last_failure_reason}", "error")
                if not attempt.attempts_left:
                    await self._cleanup(current, creds.email)
                    raise
                await self.sleeper.pause(timing.error_retry_delay)
                continue

            if ok:
                return True, current
            if self._standby_engaged():
                return False, current

            attempt.last_failure_reason = "second factor rejected or no sign-in path"
            output.log(STAGE, f"Attempt {attempt.attempt_index} failed", "warn")
            if attempt.attempts_left:
                fresh = await self._rotate_surface(current)
                if fresh is None:
                    return False, current
                attempt.active_surface = fresh

        await self._handle_failed_login(attempt.active_surface, creds.email, attempt)
        return False, attempt.active_surface

    async def _attempt_once(self, surface: UISurface, creds: AccountCredentials, navigate: bool) -> bool:
        if navigate:
            await self._open_sign_in(surface)
        await self._dismisser.dismiss_known_prompts(surface)
        if not await self.credentials.enter_email(surface, creds.email):
            return False
        ctx = ChallengeContext(
            account_email=creds.email,
            password=creds.password,
            totp_secret=creds.totp_secret,
            parallel=self.settings.parallel,
        )
        return await self.credentials.enter_password(surface, ctx, self._recovery_email(creds.email))

    def _recovery_email(self, email: str) -> Optional[str]:
        entry = self._registry.find_account(email)
        return entry.recovery_email if entry is not None else None

    def _standby_engaged(self) -> bool:
        if self.state.active:
            output.log(STAGE, f"Security standby engaged during login ({self.state.reason}); stopping", "warn")
            return True
        return False

    async def _rotate_surface(self, old: UISurface) -> Optional[UISurface]:
        """Back off, then replace *old* with a fresh sibling on the landing page.

        Returns ``None`` when standby was engaged during the backoff; the
        surface is left untouched in that case.
        """
        timing = self.settings.timing
        waited = await self.sleeper.pause_between(timing.retry_backoff)
        if self._standby_engaged():
            return None
        output.log(STAGE, f"Backed off {waited / 60:.1f} minutes; opening a fresh surface")
        try:
            fresh = await old.open_sibling()
        except SurfaceError as exc:
            output.log(STAGE, f"Could not open a fresh surface, retrying on the current one: {exc}", "warn")
            await self.sleeper.pause(2.0)
            return old
        try:
            await fresh.navigate(self.settings.provider.landing_url)
        except SurfaceError as exc:
            output.log(STAGE, f"Landing page failed to load on the fresh surface: {exc}", "warn")
        await self.sleeper.pause(1.5)
        await self.sleeper.pause_between(timing.settle_delay)
        try:
            await old.close()
        except SurfaceError as exc:
            logger.debug("closing the previous surface failed: %s", exc)
        return fresh

    async def _cleanup(self, surface: UISurface, email: str) -> None:
        if self._diagnostics is not None:
            await self._diagnostics.capture(surface, "login-failed")
        for sibling in surface.siblings():
            if sibling.is_closed():
                continue
            try:
                await sibling.close()
            except SurfaceError as exc:
                logger.debug("closing surface failed: %s", exc)
        if self._registry.mark_account_do_later(email):
            output.log(STAGE, f"Marked {email} to be processed later")
        else:
            output.log(STAGE, f"{email} is not in the account registry; not marked for later", "warn")

    async def _handle_failed_login(self, surface: UISurface, email: str, attempt: LoginAttemptState) -> None:
        await self._cleanup(surface, email)
        self._emit(
            LoginErrorEvent(
                type=LoginErrorType.LOGIN_FAILED,
                email=email,
                message=(
                    f"Login failed after {attempt.attempt_index} attempts "
                    f"({attempt.last_failure_reason or 'unknown reason'})"
                ),
                retry_after_ms=RETRY_AFTER_MS,
                should_restart_browsers=True,
            )
        )

    async def _finish(self, surface: UISurface, email: str) -> None:
        provider = self.settings.provider
        await self._dismisser.dismiss_known_prompts(surface)

        landing_host = urlsplit(provider.landing_url).hostname
        if urlsplit(surface.current_url()).hostname != landing_host:
            try:
                await surface.navigate(provider.landing_url)
            except SurfaceError as exc:
                output.log(STAGE, f"Landing page failed to load: {exc}", "warn")

        marker = await surface.wait_for(
            provider.portal_marker, self.settings.timing.login_verify_timeout, state="attached"
        )
        if marker is None:
            output.log(STAGE, "Could not confirm the landing page; continuing", "warn")
        await self._dismisser.dismiss_welcome(surface)
        output.log(STAGE, f"Logged in to {email}", "success")

        if self._session_store is not None:
            await self._session_store.save_session(
                self.settings.session_path, surface, email, self.settings.device_class
            )
