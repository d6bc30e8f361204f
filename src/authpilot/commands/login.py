"""Login commands -- sign one account in with a real browser.

``authpilot login EMAIL`` signs the account in and saves the session;
``authpilot token EMAIL`` does the same and then prints a mobile-scope
access token. Accounts come from ``accounts.json``; their ``password`` and
``totp`` fields accept credential source descriptors.

When a security incident puts the process into standby the command keeps
the browser open for manual review until interrupted, unless
``--no-hold`` is given.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer

from authpilot.models import AccountEntry, Settings


async def _run(
    settings: Settings,
    entry: AccountEntry,
    accounts: list[AccountEntry],
    password: str,
    totp: Optional[str],
    want_token: bool,
    hold: bool,
) -> Optional[str]:
    from playwright.async_api import async_playwright

    from authpilot.collaborators import InMemoryAccountRegistry
    from authpilot.diagnostics import FileDiagnosticsCapture
    from authpilot.exceptions import LoginFailedError, SecurityStandbyError, TokenExchangeError
    from authpilot.notify import WebhookNotifier
    from authpilot.orchestrator import LoginOrchestrator
    from authpilot.sessions import StorageStateSessionStore, session_file
    from authpilot.standby import CompromisedState
    from authpilot.surface.browser import launch_surface, open_standalone

    state = CompromisedState()
    async with async_playwright() as playwright:
        stored = session_file(settings.session_path, entry.email, settings.device_class)
        browser, surface = await launch_surface(playwright, settings.headless, stored)

        async def mailbox_surface():
            return await open_standalone(browser)

        orchestrator = LoginOrchestrator(
            settings,
            state,
            notifier=WebhookNotifier(settings.notifications),
            registry=InMemoryAccountRegistry(accounts),
            session_store=StorageStateSessionStore(),
            diagnostics=FileDiagnosticsCapture(settings.diagnostics),
            mailbox_surface_factory=mailbox_surface,
        )
        try:
            ok = await orchestrator.login(surface, entry.email, password, totp)
            if state.active:
                if hold:
                    await orchestrator.standby.hold()
                raise SecurityStandbyError(f"Security standby engaged: {state.reason}")
            if not ok:
                raise LoginFailedError(f"Login failed for {entry.email}")
            if not want_token:
                return None
            token = await orchestrator.get_second_factor_token(
                orchestrator.active_surface or surface, entry.email
            )
            if token is None:
                raise TokenExchangeError(f"Could not obtain a mobile access token for {entry.email}")
            return token
        finally:
            await orchestrator.standby.stop()
            await browser.close()


def _resolve(email: str) -> tuple[Settings, AccountEntry, list[AccountEntry], str, Optional[str]]:
    from authpilot.config import find_account, load_accounts, load_settings, resolve_credential
    from authpilot.exceptions import InvalidUsageError

    settings = load_settings()
    accounts = load_accounts()
    entry = find_account(email, accounts)
    if not entry.enabled:
        raise InvalidUsageError(f"{entry.email} is disabled in accounts.json")
    password = resolve_credential(entry.password, label=f"password for {entry.email}")
    totp = resolve_credential(entry.totp, label=f"TOTP secret for {entry.email}") if entry.totp else None
    return settings, entry, accounts, password, totp


def login_command(
    email: str = typer.Argument(..., help="Account email as listed in accounts.json."),
    headless: Optional[bool] = typer.Option(
        None, "--headless/--headed", help="Override the headless setting."
    ),
    hold: bool = typer.Option(
        True, "--hold/--no-hold", help="Keep the browser open in security standby."
    ),
) -> None:
    """Sign an account in and persist its session.

    Example::

        authpilot login me@example.com --headed
    """
    from authpilot.output import success

    settings, entry, accounts, password, totp = _resolve(email)
    if headless is not None:
        settings.headless = headless
    asyncio.run(_run(settings, entry, accounts, password, totp, want_token=False, hold=hold))
    success(f"{entry.email} is signed in")


def token_command(
    email: str = typer.Argument(..., help="Account email as listed in accounts.json."),
    headless: Optional[bool] = typer.Option(
        None, "--headless/--headed", help="Override the headless setting."
    ),
    hold: bool = typer.Option(
        True, "--hold/--no-hold", help="Keep the browser open in security standby."
    ),
) -> None:
    """Sign an account in and print a mobile-scope access token.

    The token is cached and reused while it is valid.

    Example::

        authpilot token me@example.com > token.txt
    """
    from authpilot.output import info, print_data
    from authpilot.token_store import TokenStore

    settings, entry, accounts, password, totp = _resolve(email)
    cached = TokenStore(entry.email).valid_token()
    if cached:
        info("Using cached mobile access token")
        print_data(cached)
        return
    if headless is not None:
        settings.headless = headless
    token = asyncio.run(_run(settings, entry, accounts, password, totp, want_token=True, hold=hold))
    print_data(token or "")
