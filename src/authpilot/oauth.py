"""Mobile-scope access token through the authorization-code flow.

The signed-in browser session is sent to the provider's authorize endpoint.
The provider redirects to the desktop redirect URI with a ``code`` query
parameter, which is read from the surface URL and redeemed at the token
endpoint with a form-encoded POST.

Tokens are cached per account in :class:`~authpilot.token_store.TokenStore`
and reused until shortly before they expire.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from authpilot import output, selectors
from authpilot.exceptions import SurfaceError
from authpilot.models import LoginErrorEvent, LoginErrorType, ProviderConfig
from authpilot.pacing import Sleeper
from authpilot.surface.base import UISurface, first_visible, safe_click
from authpilot.token_store import TokenEntry, TokenStore

logger = logging.getLogger(__name__)

STAGE = "LOGIN-APP"

EventSink = Callable[[LoginErrorEvent], None]


def build_authorize_url(provider: ProviderConfig, email: str, state: Optional[str] = None) -> str:
    """Return the authorize URL for *email*, with a random ``state`` unless given."""
    oauth = provider.oauth
    params = {
        "response_type": "code",
        "client_id": oauth.client_id,
        "redirect_uri": oauth.redirect_url,
        "scope": oauth.scope,
        "state": state or secrets.token_hex(16),
        "access_type": "offline_access",
        "login_hint": email,
        "client-request-id": str(uuid.uuid4()),
    }
    return f"{oauth.authorize_url}?{urlencode(params)}"


def code_from_url(url: str, redirect_url: str) -> Optional[str]:
    """Return the ``code`` parameter if *url* is the desktop redirect, else ``None``.

    >>> code_from_url("https://login.live.com/oauth20_desktop.srf?code=M.abc&lc=1033",
    ...               "https://login.live.com/oauth20_desktop.srf")
    'M.abc'
    """
    parts = urlsplit(url)
    expected = urlsplit(redirect_url)
    if parts.hostname != expected.hostname or parts.path != expected.path:
        return None
    values = parse_qs(parts.query).get("code")
    return values[0] if values else None


def foreign_client_id(url: str, client_id: str) -> Optional[str]:
    """Return the ``client_id`` on *url* if it differs from ours."""
    values = parse_qs(urlsplit(url).query).get("client_id")
    if values and values[0] != client_id:
        return values[0]
    return None


class MobileTokenExchange:
    """Obtains the mobile-scope access token for a signed-in session.

    Args:
        provider: Endpoints, client id and timing of the exchange.
        sleeper: Pause provider.
        emit: Receives the ``MOBILE_AUTH_FAILED`` event on exhaustion.
        transport: Optional :mod:`httpx` transport, used by tests.
        store_factory: Builds the token store for an account.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        sleeper: Sleeper,
        emit: Optional[EventSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store_factory: Callable[[str], TokenStore] = TokenStore,
    ) -> None:
        self._provider = provider
        self._oauth = provider.oauth
        self._sleeper = sleeper
        self._emit = emit
        self._transport = transport
        self._store_factory = store_factory

    async def get_token(self, surface: UISurface, email: str) -> Optional[str]:
        """Return an access token for *email*, or ``None`` after all attempts fail."""
        store = self._store_factory(email)
        cached = store.valid_token()
        if cached:
            output.log(STAGE, "Using cached mobile access token")
            return cached

        await surface.disable_fido()
        attempts = self._oauth.max_attempts
        for attempt in range(attempts):
            self._sleeper.check()
            output.log(STAGE, f"Requesting authorization code (attempt {attempt + 1}/{attempts})")
            url = build_authorize_url(self._provider, email)
            try:
                await surface.navigate(url)
            except SurfaceError as exc:
                output.log(STAGE, f"Authorize page failed to load: {exc}", "warn")

            code = await self._wait_for_code(surface, can_retry=attempt < attempts - 1)
            if code:
                entry = await self._redeem(code)
                if entry is not None:
                    try:
                        store.save(entry)
                    except OSError as exc:
                        output.log(STAGE, f"Could not cache the access token: {exc}", "warn")
                    output.log(STAGE, "Mobile access token obtained", "success")
                    return entry.access_token

            if attempt < attempts - 1:
                delay = min(2 ** attempt, self._oauth.max_backoff)
                output.log(STAGE, f"Retrying authorization in {delay:g}s", "warn")
                await self._sleeper.pause(delay)

        output.log(STAGE, "Failed to obtain a mobile access token", "error")
        if self._emit is not None:
            self._emit(
                LoginErrorEvent(
                    type=LoginErrorType.MOBILE_AUTH_FAILED,
                    email=email,
                    message="Failed to obtain the mobile access token",
                    retry_after_ms=600_000,
                    should_restart_browsers=True,
                )
            )
        try:
            await surface.navigate(self._provider.landing_url)
        except SurfaceError as exc:
            logger.debug("returning to the landing page failed: %s", exc)
        return None

    async def _wait_for_code(self, surface: UISurface, can_retry: bool) -> Optional[str]:
        ticks = max(1, int(self._oauth.code_timeout))
        for _ in range(ticks):
            hit = await first_visible(surface, selectors.PASSKEY_PROMPTS)
            if hit is not None and await safe_click(hit[1]):
                output.log(STAGE, f"Dismissed passkey prompt via {hit[0]}", "debug")

            url = surface.current_url()
            code = code_from_url(url, self._oauth.redirect_url)
            if code:
                output.log(STAGE, "Authorization code received")
                return code

            other = foreign_client_id(url, self._oauth.client_id)
            if other and can_retry:
                output.log(STAGE, f"Redirected to a different client ({other}); going back", "warn")
                try:
                    await surface.go_back()
                except SurfaceError as exc:
                    logger.debug("history back failed: %s", exc)
                await self._sleeper.pause(2.0)
                return None

            await self._sleeper.pause(1.0)
        output.log(STAGE, "Timed out waiting for the authorization code", "warn")
        return None

    async def _redeem(self, code: str) -> Optional[TokenEntry]:
        data = {
            "grant_type": "authorization_code",
            "client_id": self._oauth.client_id,
            "code": code,
            "redirect_uri": self._oauth.redirect_url,
        }
        kwargs: dict[str, Any] = {"timeout": self._oauth.request_timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.post(self._oauth.token_url, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            output.log(STAGE, f"Token endpoint returned HTTP {exc.response.status_code}", "warn")
            return None
        except httpx.HTTPError as exc:
            output.log(STAGE, f"Token request failed: {exc}", "warn")
            return None
        except ValueError as exc:
            output.log(STAGE, f"Token endpoint returned invalid JSON: {exc}", "warn")
            return None
        if not isinstance(payload, dict) or not payload.get("access_token"):
            output.log(STAGE, "Token response carried no access_token", "warn")
            return None
        return TokenEntry.from_response(payload)
