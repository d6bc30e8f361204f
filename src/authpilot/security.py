"""Security incident detection.

:class:`SecurityIncidentDetector` runs two independent checks between the
email and password steps:

* **Sign-in blocked** -- heading and title elements are scanned for phrases
  saying the provider blocked the attempt (too many tries, locked sign-in).
* **Recovery mismatch** -- when the account has an expected recovery
  address, masked hints such as ``jo*****@example.com`` on the page are
  compared with it. Only the visible leading characters (at most two) and
  the domain are compared, since the rest is masked. Hints that exist but
  all disagree are treated as critical: someone may have replaced the
  recovery address.

A match goes through the incident pipeline: latch the shared
:class:`~authpilot.standby.CompromisedState`, log the structured incident,
capture forced diagnostics, surface the documentation link, and alert
through the notifier. Incidents are never raised as exceptions.

Once the latch is active every check returns ``True`` without touching the
surface.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from authpilot import output, selectors
from authpilot.collaborators import DiagnosticsCapture, DocsOpener, LoggingDocsOpener
from authpilot.exceptions import SurfaceError
from authpilot.models import IncidentKind, SecurityIncident, Severity
from authpilot.standby import StandbyController
from authpilot.surface.base import UISurface, safe_text

BLOCKED_PATTERNS: tuple[str, ...] = (
    r"sign[- ]in (?:was |has been |is )?blocked",
    r"we(?:'ve| have) blocked (?:this|your) sign[- ]in",
    r"too many (?:incorrect|failed|unsuccessful) (?:sign[- ]in )?attempts",
    r"you(?:'ve| have) tried to sign in too many times",
    r"your account (?:has been|is) temporarily (?:locked|blocked|suspended)",
    r"help us protect your account",
)

MASKED_EMAIL_RE = re.compile(
    r"(?<![A-Za-z0-9._%+-])([A-Za-z0-9._%+-]{0,4}\*{2,}[A-Za-z0-9._%+*-]*)@([A-Za-z0-9*.-]+\.[A-Za-z]{2,})"
)

BLOCKED_NEXT_STEPS = [
    "Sign in manually from a trusted device and review recent activity.",
    "Wait for the provider's lockout to expire before retrying.",
    "Restart the process once the account has been reviewed.",
]
MISMATCH_NEXT_STEPS = [
    "Verify the recovery address on the account's security page.",
    "Change the password and review recent activity if the address is unknown.",
    "Update recovery_email in accounts.json if the change was intentional.",
]


def _visible_prefix(local: str) -> str:
    return local.split("*", 1)[0]


def _domain_matches(expected: str, observed: str) -> bool:
    if "*" not in observed and "*" not in expected:
        return expected == observed
    obs_head, obs_tail = observed.split("*", 1)[0], observed.rsplit("*", 1)[-1]
    exp_head, exp_tail = expected.split("*", 1)[0], expected.rsplit("*", 1)[-1]
    n = min(len(obs_head), len(exp_head))
    m = min(len(obs_tail), len(exp_tail))
    return obs_head[:n] == exp_head[:n] and (m == 0 or obs_tail[-m:] == exp_tail[-m:])


def recovery_hint_matches(expected: str, observed: str) -> bool:
    """Return whether the masked *observed* hint can belong to *expected*.

    Compares up to two visible leading characters of the local part and the
    full domain. *expected* may itself be written masked (``jo**@example.com``).

    >>> recovery_hint_matches("jo**@example.com", "jo*****@example.com")
    True
    >>> recovery_hint_matches("jo**@example.com", "al*****@example.com")
    False
    """
    exp_local, _, exp_domain = expected.strip().lower().partition("@")
    obs_local, _, obs_domain = observed.strip().lower().partition("@")
    if not exp_domain or not obs_domain:
        return False
    if not _domain_matches(exp_domain, obs_domain):
        return False
    exp_visible = _visible_prefix(exp_local)
    obs_visible = _visible_prefix(obs_local)
    n = min(2, len(exp_visible), len(obs_visible))
    return exp_visible[:n] == obs_visible[:n]


def find_masked_hints(text: str) -> list[str]:
    """Return the distinct masked email hints in *text*, lowercased, in order."""
    seen: dict[str, None] = {}
    for m in MASKED_EMAIL_RE.finditer(text or ""):
        seen.setdefault(f"{m.group(1)}@{m.group(2)}".lower(), None)
    return list(seen)


class SecurityIncidentDetector:
    """Runs the security checks and feeds matches into the incident pipeline.

    Args:
        standby: Controller owning the shared latch and the alert channel.
        diagnostics: Receives a forced capture per incident.
        docs: Surfaces the documentation link.
        docs_url: Link included in incidents.
        headings: Selectors scanned by the sign-in-blocked check.
        blocked_patterns: Regular expressions matched against headings.
    """

    def __init__(
        self,
        standby: StandbyController,
        diagnostics: Optional[DiagnosticsCapture] = None,
        docs: Optional[DocsOpener] = None,
        docs_url: Optional[str] = None,
        headings: Sequence[str] = selectors.HEADINGS,
        blocked_patterns: Sequence[str] = BLOCKED_PATTERNS,
    ) -> None:
        self._standby = standby
        self._diagnostics = diagnostics
        self._docs = docs or LoggingDocsOpener()
        self._docs_url = docs_url
        self._headings = tuple(headings)
        self._blocked = [(p, re.compile(p, re.IGNORECASE)) for p in blocked_patterns]

    @property
    def latched(self) -> bool:
        return self._standby.state.active

    async def check_sign_in_blocked(self, surface: UISurface, email: str) -> bool:
        """Return ``True`` if a blocked sign-in is shown or standby is already active."""
        if self.latched:
            return True
        for pattern in self._headings:
            try:
                elements = await surface.locate_all(pattern)
            except SurfaceError:
                continue
            for element in elements:
                text = await safe_text(element)
                if not text:
                    continue
                for raw, regex in self._blocked:
                    if regex.search(text):
                        incident = SecurityIncident(
                            kind=IncidentKind.SIGN_IN_BLOCKED,
                            account=email,
                            details=[f"Provider reports the sign-in was blocked: {text[:160]!r}"],
                            next_steps=BLOCKED_NEXT_STEPS,
                            docs_url=self._docs_url,
                            severity=Severity.WARNING,
                            matched_pattern=raw,
                        )
                        await self._report(surface, incident)
                        return True
        return False

    async def check_recovery_mismatch(
        self, surface: UISurface, email: str, expected: Optional[str]
    ) -> bool:
        """Return ``True`` if masked recovery hints exist and none match *expected*."""
        if self.latched:
            return True
        if not expected:
            return False
        try:
            text = await surface.page_text()
        except SurfaceError as exc:
            output.log("SECURITY", f"Recovery check skipped, page text unavailable: {exc}", "debug")
            return False
        hints = [h for h in find_masked_hints(text) if h != email.lower()]
        if not hints:
            return False
        if any(recovery_hint_matches(expected, hint) for hint in hints):
            output.log("SECURITY", "Recovery email hint matches the expected address", "debug")
            return False
        incident = SecurityIncident(
            kind=IncidentKind.RECOVERY_MISMATCH,
            account=email,
            details=[
                f"Masked recovery hint {hint} does not match the expected address" for hint in hints
            ],
            next_steps=MISMATCH_NEXT_STEPS,
            docs_url=self._docs_url,
            severity=Severity.CRITICAL,
            matched_pattern=hints[0],
        )
        await self._report(surface, incident)
        return True

    async def run_checks(self, surface: UISurface, email: str, expected_recovery: Optional[str]) -> bool:
        """Run both checks; ``True`` means the flow must stop."""
        if await self.check_sign_in_blocked(surface, email):
            return True
        return await self.check_recovery_mismatch(surface, email, expected_recovery)

    async def _report(self, surface: UISurface, incident: SecurityIncident) -> None:
        entered = self._standby.latch(incident)
        level = "error" if incident.severity is Severity.CRITICAL else "warn"
        output.log(
            "SECURITY",
            f"Incident {incident.kind.value} on {incident.account} "
            f"(severity={incident.severity.value}, pattern={incident.matched_pattern!r}): "
            f"{'; '.join(incident.details)}",
            level,
        )
        for step in incident.next_steps:
            output.log("SECURITY", f"Next step: {step}", level)
        if self._diagnostics is not None:
            await self._diagnostics.capture(surface, f"security-{incident.kind.value}", scope="security", force=True)
        if incident.docs_url:
            try:
                await self._docs.open(incident.docs_url, surface)
            except SurfaceError as exc:
                output.log("SECURITY", f"Could not open documentation: {exc}", "warn")
        if entered:
            await self._standby.announce(incident)
