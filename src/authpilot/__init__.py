"""authpilot -- drive a multi-factor identity-provider sign-in to an authenticated session.

The package automates a sign-in flow whose UI is rendered by an external,
uncontrolled web application. Prompts appear conditionally, change order, or
are absent entirely, so every stage is expressed as an ordered list of
heuristics that are tried until one reports that it handled the page.

Typical usage::

    from authpilot import LoginOrchestrator, CompromisedState, load_settings

    orchestrator = LoginOrchestrator(load_settings(), CompromisedState())
    orchestrator.on_error(lambda event: print(event.type, event.message))
    ok = await orchestrator.login(surface, "user@example.com", "hunter2")

Modules:
    orchestrator: Attempt/retry state machine and the public ``login()`` entry point.
    credentials: Email and password stages with their fallback strategies.
    second_factor: TOTP, push approval, console entry and email-code channels.
    mailbox: Webmail search and thread ranking for emailed sign-in codes.
    codes: Pure text heuristics for extracting codes and parsing timestamps.
    security: Sign-in-blocked and recovery-email mismatch detectors.
    standby: The one-way compromised latch and its reminder loop.
    oauth: Mobile-scope authorization-code exchange.
    surface: The UI surface abstraction and its Playwright adapter.
    models: Pydantic models shared across the package.
    config: XDG-aware settings and account loading.
    output: stdout/stderr formatting with Rich support.
"""

from authpilot.models import (
    AccountCredentials,
    LoginErrorEvent,
    LoginErrorType,
    SecondFactorChannel,
    SecurityIncident,
    Settings,
)
from authpilot.orchestrator import LoginOrchestrator
from authpilot.standby import CompromisedState, StandbyController
from authpilot.config import load_settings

__version__ = "0.1.0"

__all__ = [
    "AccountCredentials",
    "CompromisedState",
    "LoginErrorEvent",
    "LoginErrorType",
    "LoginOrchestrator",
    "SecondFactorChannel",
    "SecurityIncident",
    "Settings",
    "StandbyController",
    "load_settings",
]
