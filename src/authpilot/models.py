"""Canonical Pydantic models shared across all authpilot modules.

This is the single source of truth for data shapes in the project. The models
fall into two groups:

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`ProviderConfig`, :class:`OAuthConfig`, :class:`TimingConfig`,
    :class:`MailboxConfig`, :class:`DiagnosticsConfig`,
    :class:`NotificationConfig`, :class:`Settings` and :class:`AccountEntry`.

**Flow models** -- produced and consumed while a sign-in is in progress:
    :class:`AccountCredentials`, :class:`LoginAttemptState`,
    :class:`SecondFactorChannel`, :class:`ExtractedCode`,
    :class:`SecurityIncident`, :class:`LoginErrorEvent`, :class:`MailThread`
    and :class:`MailMessage`.

All models use Pydantic v2. Secrets are carried as
:class:`~pydantic.SecretStr` so that they never appear in ``repr()`` output
or log lines.
"""

from __future__ import annotations

import enum
import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

CODE_PATTERN = r"^\d{4,8}$"


# --- Enumerations ---


class LoginErrorType(str, enum.Enum):
    """Kinds of soft failure reported through :meth:`LoginOrchestrator.on_error`."""

    MOBILE_AUTH_FAILED = "MOBILE_AUTH_FAILED"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


class SecondFactorChannel(str, enum.Enum):
    """Second-factor channel presented by the provider.

    The channel is never configured; it is discovered by probing the page
    with the ordered strategies in :mod:`authpilot.second_factor`.
    """

    TOTP = "totp"
    AUTHENTICATOR_PUSH = "authenticator_push"
    SMS_MANUAL = "sms_manual"
    EMAIL_OTP = "email_otp"


class IncidentKind(str, enum.Enum):
    """Security incident categories that latch the compromised state."""

    SIGN_IN_BLOCKED = "sign-in-blocked"
    RECOVERY_MISMATCH = "recovery-mismatch"


class Severity(str, enum.Enum):
    """Incident severity used for alert formatting."""

    WARNING = "warning"
    CRITICAL = "critical"


# --- Configuration models ---


class OAuthConfig(BaseModel):
    """Endpoints and client parameters for the mobile-scope token exchange.

    The defaults are the public desktop client registration used by the
    provider's own mobile applications.
    """

    client_id: str = Field(default="0000000040170455", description="Public client identifier")
    authorize_url: str = Field(
        default="https://login.live.com/oauth20_authorize.srf",
        description="Authorization endpoint",
    )
    redirect_url: str = Field(
        default="https://login.live.com/oauth20_desktop.srf",
        description="Registered desktop redirect URI",
    )
    token_url: str = Field(
        default="https://login.microsoftonline.com/consumers/oauth2/v2.0/token",
        description="Token endpoint receiving the form-encoded code exchange",
    )
    scope: str = Field(
        default="service::prod.rewardsplatform.microsoft.com::MBI_SSL",
        description="Requested scope",
    )
    code_timeout: float = Field(
        default=45.0, description="Seconds to poll the surface URL for the redirect code"
    )
    request_timeout: float = Field(default=10.0, description="Token request timeout in seconds")
    max_attempts: int = Field(default=3, ge=1)
    max_backoff: float = Field(default=10.0, description="Upper bound for retry backoff in seconds")


class ProviderConfig(BaseModel):
    """Identity provider entry points and page markers."""

    brand: str = Field(default="Microsoft", description="Brand name used in code phrase patterns")
    signin_url: str = "https://rewards.bing.com/signin"
    landing_url: str = "https://rewards.bing.com"
    portal_marker: str = Field(
        default='html[data-role-name="RewardsPortal"]',
        description="Selector that is present only once the session is authenticated",
    )
    locked_marker: str = Field(
        default="#serviceAbuseLandingTitle",
        description="Selector of the account-locked landing page title",
    )
    docs_url: str = Field(
        default="https://support.microsoft.com/account-billing/how-to-help-keep-your-microsoft-account-safe-and-secure",
        description="Documentation reference opened when a security incident is detected",
    )
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)


class TimingConfig(BaseModel):
    """Every wait, delay and backoff used by the sign-in flow, in seconds."""

    max_attempts: int = Field(default=3, ge=1, description="Full sign-in passes before giving up")
    retry_backoff: tuple[float, float] = Field(
        default=(600.0, 900.0), description="Randomized backoff between failed attempts"
    )
    settle_delay: tuple[float, float] = Field(
        default=(40.0, 60.0),
        description="Wait after opening the replacement surface before closing the old one",
    )
    error_retry_delay: float = Field(
        default=2.0, description="Pause after an unexpected error inside an attempt"
    )
    email_input_timeout: float = 7.0
    prefill_marker_timeout: float = 3.0
    submit_timeout: float = 6.0
    skip_shortcut_timeout: float = 2.0
    password_input_timeout: float = 4.0
    send_button_timeout: float = 1.5
    portal_timeout: float = 10.0
    locked_marker_timeout: float = 1.0
    login_verify_timeout: float = Field(
        default=60.0, description="Upper bound for the post-login landing page check"
    )
    step_delay: float = Field(default=1.2, description="Short pause between UI steps")
    email_send_wait: float = Field(default=4.0, description="Pause after pressing a send-code control")
    email_delivery_wait: tuple[float, float] = Field(
        default=(570.0, 600.0), description="Pause before the mailbox is searched for a code"
    )
    otp_submit_wait: float = Field(default=3.0, description="Pause after submitting a code")
    push_number_timeout: float = 5.0
    push_poll_interval: float = Field(default=60.0, description="Push re-poll cadence in parallel mode")
    push_poll_cycles: int = Field(default=6, ge=0)
    push_approval_timeout: float = Field(
        default=60.0, description="Lifetime of one push approval number"
    )
    push_approval_rounds: int = Field(
        default=10, ge=1, description="Fresh approval numbers requested before giving up"
    )
    manual_poll_interval: float = Field(
        default=2.0, description="UI poll cadence while waiting for console input"
    )
    totp_reveal_attempts: int = Field(default=4, ge=1)


class MailboxConfig(BaseModel):
    """Webmail inbox used to retrieve emailed sign-in codes."""

    base_url: str = "https://mail.google.com/"
    domains: list[str] = Field(
        default_factory=lambda: ["gmail.com", "googlemail.com"],
        description="Preferred mailbox domains when several addresses are visible",
    )
    search_terms: list[str] = Field(
        default_factory=lambda: [
            "Microsoft",
            "code to sign in",
            'subject:("code to sign in")',
            "from:(account-security-noreply@accountprotection.microsoft.com)",
            "from:(no-reply@accountprotection.microsoft.com)",
            'subject:("Your Microsoft account")',
        ]
    )
    search_rounds: int = Field(default=3, ge=1)
    search_delay: float = Field(default=1.2, description="Pause after each search navigation")
    nav_wait: float = Field(default=2.5, description="Pause after opening the mailbox")
    inbox_fallback_threads: int = Field(default=8, ge=0)
    max_threads_per_search: int = Field(default=5, ge=1)
    login_timeout: float = Field(default=15.0, description="Wait for the mailbox shell after sign-in")
    passwords: dict[str, str] = Field(
        default_factory=dict,
        description="Mailbox address -> credential source (env:VAR, file:/path, prompt, literal)",
    )


class DiagnosticsConfig(BaseModel):
    """Screenshot and HTML dumps captured on security incidents and failures."""

    enabled: bool = True
    screenshot: bool = True
    html: bool = True
    max_per_run: int = Field(default=10, ge=0)
    directory: Optional[str] = Field(
        default=None, description="Override for the capture directory (defaults to the data dir)"
    )


class NotificationConfig(BaseModel):
    """Webhook used for security-incident alerts."""

    webhook_url: Optional[str] = None
    username: str = "authpilot"
    mention: str = "@everyone"
    redact_emails: bool = False
    timeout: float = 10.0


class Settings(BaseModel):
    """Top-level configuration stored at ``<config_dir>/config.json``.

    Example::

        {
            "parallel": false,
            "headless": true,
            "timing": {"retry_backoff": [600, 900]},
            "mailbox": {"passwords": {"me@gmail.com": "env:GMAIL_PASSWORD"}}
        }
    """

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    mailbox: MailboxConfig = Field(default_factory=MailboxConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    parallel: bool = Field(
        default=False, description="Multiple accounts are processed concurrently (push polling mode)"
    )
    headless: bool = False
    session_path: str = Field(default="sessions", description="Directory for persisted sessions")
    device_class: str = Field(default="desktop", description="Session device class label")


class AccountEntry(BaseModel):
    """One record of ``accounts.json``.

    ``password`` and ``totp`` accept the same source descriptors as
    :func:`~authpilot.config.resolve_credential`.
    """

    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str
    totp: Optional[str] = None
    recovery_email: Optional[str] = Field(default=None, alias="recoveryEmail")
    enabled: bool = True
    do_later: bool = Field(default=False, alias="doLater")


# --- Flow models ---


class AccountCredentials(BaseModel):
    """Credentials for one sign-in. Immutable and never persisted."""

    model_config = ConfigDict(frozen=True)

    email: str
    password: SecretStr
    totp_secret: Optional[SecretStr] = None


class LoginAttemptState(BaseModel):
    """Mutable bookkeeping for one :meth:`LoginOrchestrator.login` call.

    ``active_surface`` is replaced with a fresh sibling surface when a failed
    attempt is retried.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    attempt_index: int = 0
    max_attempts: int = 3
    active_surface: Any = None
    last_failure_reason: Optional[str] = None

    @property
    def attempts_left(self) -> bool:
        return self.attempt_index < self.max_attempts


class ExtractedCode(BaseModel):
    """A sign-in code read from a mailbox message."""

    value: str
    source_thread_timestamp: float = 0.0
    search_term_used: Optional[str] = None

    @field_validator("value")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        if not re.match(CODE_PATTERN, v):
            raise ValueError(f"code must be 4-8 digits, got {len(v)} characters")
        return v


class SecurityIncident(BaseModel):
    """Structured description of a detected security anomaly."""

    kind: IncidentKind
    account: str
    details: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    docs_url: Optional[str] = None
    severity: Severity = Severity.WARNING
    matched_pattern: Optional[str] = None


class LoginErrorEvent(BaseModel):
    """Soft-failure event delivered to :meth:`LoginOrchestrator.on_error` listeners."""

    type: LoginErrorType
    email: str
    message: str
    retry_after_ms: Optional[int] = None
    should_restart_browsers: bool = False


class MailThread(BaseModel):
    """A search result row in the webmail UI."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int
    timestamp: float = 0.0
    handle: Any = None


class MailMessage(BaseModel):
    """One message body inside an opened mail thread."""

    index: int
    timestamp: float = 0.0
    text: str = ""


class ChallengeContext(BaseModel):
    """Inputs a second-factor strategy may need while resolving a challenge."""

    account_email: str
    password: Optional[SecretStr] = None
    totp_secret: Optional[SecretStr] = None
    parallel: bool = False
