"""Email and password steps of the provider's sign-in form.

:meth:`CredentialStage.enter_email` is linear. :meth:`CredentialStage.enter_password`
walks an ordered list of :class:`PasswordStrategy` objects; each one either
handles the page (``HANDLED_OK`` / ``HANDLED_FAILED``) or reports
``NOT_APPLICABLE`` so the next one is tried:

1. :class:`SkipSecondFactorShortcut` -- click the "use password instead"
   shortcut if shown, then let the list continue.
2. :class:`DirectPassword` -- fill and submit the password field; then look
   for a second round of emailed-code challenge.
3. :class:`SwitchToPassword` -- press an explicit "use your password"
   control and retry the direct password once.
4. :class:`SendCodeChallenge` -- hand a "send code" challenge to the
   second-factor resolver as an emailed code.
5. :class:`ManualSecondFactor` -- push approval, TOTP or a console code.

The security checks run once the email has been accepted and before any
password is typed.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from authpilot import output, selectors
from authpilot.exceptions import SurfaceError
from authpilot.models import ChallengeContext, SecondFactorChannel, TimingConfig
from authpilot.pacing import Sleeper
from authpilot.second_factor import SecondFactorResolver
from authpilot.security import SecurityIncidentDetector
from authpilot.surface.base import UISurface, first_visible, safe_click, safe_text

EMAIL_STAGE = "LOGIN-EMAIL"
PASSWORD_STAGE = "LOGIN-PASSWORD"

MANUAL_CHANNELS = (
    SecondFactorChannel.TOTP,
    SecondFactorChannel.AUTHENTICATOR_PUSH,
    SecondFactorChannel.SMS_MANUAL,
)


class StepOutcome(enum.Enum):
    HANDLED_OK = "handled_ok"
    HANDLED_FAILED = "handled_failed"
    NOT_APPLICABLE = "not_applicable"


class PasswordStrategy(ABC):
    """One way of getting past the password step."""

    name: str = "strategy"

    @abstractmethod
    async def run(self, surface: UISurface, ctx: ChallengeContext) -> StepOutcome:
        ...


class SkipSecondFactorShortcut(PasswordStrategy):
    name = "skip-second-factor"

    def __init__(self, timing: TimingConfig, sleeper: Sleeper) -> None:
        self._timing = timing
        self._sleeper = sleeper

    async def run(self, surface: UISurface, ctx: ChallengeContext) -> StepOutcome:
        shortcut = await surface.wait_for(selectors.SKIP_SECOND_FACTOR, self._timing.skip_shortcut_timeout)
        if shortcut is not None and await safe_click(shortcut):
            output.log(PASSWORD_STAGE, "Skipped the second-factor prompt via the password shortcut")
            await self._sleeper.pause(self._timing.step_delay)
        return StepOutcome.NOT_APPLICABLE


class DirectPassword(PasswordStrategy):
    """Fills a visible password field.

    Some accounts are asked for an emailed code even after the password;
    when challenge markers show up after submission the resolver handles
    that second round.
    """

    name = "password"

    def __init__(self, timing: TimingConfig, sleeper: Sleeper, resolver: SecondFactorResolver) -> None:
        self._timing = timing
        self._sleeper = sleeper
        self._resolver = resolver

    async def run(self, surface: UISurface, ctx: ChallengeContext) -> StepOutcome:
        field = await surface.wait_for(selectors.PASSWORD_INPUT, self._timing.password_input_timeout)
        if field is None:
            return StepOutcome.NOT_APPLICABLE
        if ctx.password is None:
            output.log(PASSWORD_STAGE, "Password field shown but no password is available", "error")
            return StepOutcome.HANDLED_FAILED
        try:
            await field.fill(ctx.password.get_secret_value())
        except SurfaceError as exc:
            output.log(PASSWORD_STAGE, f"Password field rejected input: {exc}", "warn")
            return StepOutcome.HANDLED_FAILED

        submit = await surface.wait_for(selectors.SUBMIT_BUTTON, self._timing.password_input_timeout)
        if submit is None or not await safe_click(submit):
            try:
                await surface.press_key("Enter")
            except SurfaceError as exc:
                output.log(PASSWORD_STAGE, f"Password submission failed: {exc}", "warn")
                return StepOutcome.HANDLED_FAILED
        output.log(PASSWORD_STAGE, "Password entered successfully")
        await self._sleeper.pause(1.8)

        marker = await first_visible(surface, selectors.CODE_FLOW_MARKERS)
        if marker is None:
            return StepOutcome.HANDLED_OK
        output.log(PASSWORD_STAGE, f"Code challenge after password ({marker[0]})")
        ok = await self._resolver.resolve(surface, ctx, (SecondFactorChannel.EMAIL_OTP,))
        return StepOutcome.HANDLED_OK if ok else StepOutcome.HANDLED_FAILED


class SwitchToPassword(PasswordStrategy):
    """Presses an affordance that swaps a code challenge for the password form.

    Exact selectors are tried first; the fallback scan of every button and
    link requires one of the full phrases in
    :data:`~authpilot.selectors.SWITCH_TO_PASSWORD_PHRASES` so that loosely
    related text such as "Forgot password?" is never pressed.
    """

    name = "switch-to-password"

    def __init__(self, timing: TimingConfig, sleeper: Sleeper, direct: DirectPassword) -> None:
        self._timing = timing
        self._sleeper = sleeper
        self._direct = direct

    async def run(self, surface: UISurface, ctx: ChallengeContext) -> StepOutcome:
        if not await self._press_switch(surface):
            return StepOutcome.NOT_APPLICABLE
        await self._sleeper.pause(self._timing.step_delay)
        return await self._direct.run(surface, ctx)

    async def _press_switch(self, surface: UISurface) -> bool:
        hit = await first_visible(surface, selectors.SWITCH_TO_PASSWORD)
        if hit is not None and await safe_click(hit[1]):
            output.log(PASSWORD_STAGE, f"Switched to password sign-in via {hit[0]}")
            return True
        try:
            candidates = await surface.locate_all(selectors.BUTTONS_AND_LINKS)
        except SurfaceError:
            return False
        for element in candidates:
            text = " ".join((await safe_text(element)).lower().split())
            if not any(phrase in text for phrase in selectors.SWITCH_TO_PASSWORD_PHRASES):
                continue
            try:
                visible = await element.is_visible()
            except SurfaceError:
                continue
            if visible and await safe_click(element):
                output.log(PASSWORD_STAGE, f'Switched to password sign-in via "{text}"')
                return True
        return False


class SendCodeChallenge(PasswordStrategy):
    name = "send-code"

    def __init__(self, resolver: SecondFactorResolver) -> None:
        self._resolver = resolver

    async def run(self, surface: UISurface, ctx: ChallengeContext) -> StepOutcome:
        match = await self._resolver.probe(surface, ctx, (SecondFactorChannel.EMAIL_OTP,))
        if match is None:
            return StepOutcome.NOT_APPLICABLE
        output.log(PASSWORD_STAGE, "Code sign-in detected; resolving via email code")
        ok = await self._resolver.complete(surface, match)
        return StepOutcome.HANDLED_OK if ok else StepOutcome.HANDLED_FAILED


class ManualSecondFactor(PasswordStrategy):
    name = "second-factor"

    def __init__(self, resolver: SecondFactorResolver) -> None:
        self._resolver = resolver

    async def run(self, surface: UISurface, ctx: ChallengeContext) -> StepOutcome:
        output.log(PASSWORD_STAGE, "No password path found; falling back to second-factor handling")
        ok = await self._resolver.resolve(surface, ctx, MANUAL_CHANNELS)
        return StepOutcome.HANDLED_OK if ok else StepOutcome.HANDLED_FAILED


class CredentialStage:
    """Drives the email and password steps.

    Args:
        timing: Waits and delays.
        sleeper: Pause provider.
        detector: Security checks run before the password step.
        strategies: Password strategies, tried in order.
    """

    def __init__(
        self,
        timing: TimingConfig,
        sleeper: Sleeper,
        detector: SecurityIncidentDetector,
        strategies: Sequence[PasswordStrategy],
    ) -> None:
        self._timing = timing
        self._sleeper = sleeper
        self._detector = detector
        self._strategies = list(strategies)

    @classmethod
    def default(
        cls,
        timing: TimingConfig,
        sleeper: Sleeper,
        detector: SecurityIncidentDetector,
        resolver: SecondFactorResolver,
    ) -> CredentialStage:
        direct = DirectPassword(timing, sleeper, resolver)
        return cls(
            timing,
            sleeper,
            detector,
            [
                SkipSecondFactorShortcut(timing, sleeper),
                direct,
                SwitchToPassword(timing, sleeper, direct),
                SendCodeChallenge(resolver),
                ManualSecondFactor(resolver),
            ],
        )

    @property
    def strategies(self) -> list[PasswordStrategy]:
        return list(self._strategies)

    async def enter_email(self, surface: UISurface, email: str) -> bool:
        """Type the account email and submit it.

        A provider-prefilled identity is left untouched.

        Returns:
            ``False`` if the input or the submit control could not be used.
        """
        field = await surface.wait_for(selectors.EMAIL_INPUT, self._timing.email_input_timeout)
        if field is None:
            output.log(EMAIL_STAGE, "Email field not found", "warn")
            return False
        await self._sleeper.pause(0.8)

        prefilled = await surface.wait_for(selectors.EMAIL_PREFILLED, self._timing.prefill_marker_timeout)
        if prefilled is not None:
            output.log(EMAIL_STAGE, "Email already prefilled by the provider")
        else:
            try:
                await field.fill("")
                await field.fill(email)
            except SurfaceError as exc:
                output.log(EMAIL_STAGE, f"Email field rejected input: {exc}", "warn")
                return False
            await self._sleeper.pause(0.5)

        submit = await surface.wait_for(selectors.SUBMIT_BUTTON, self._timing.submit_timeout)
        if submit is None:
            output.log(EMAIL_STAGE, "Submit button not found after email", "warn")
            return False
        if not await safe_click(submit):
            output.log(EMAIL_STAGE, "Submit button could not be clicked", "warn")
            return False
        output.log(EMAIL_STAGE, "Email submitted")
        await self._sleeper.pause(2.0)
        return True

    async def enter_password(
        self, surface: UISurface, ctx: ChallengeContext, recovery_email: Optional[str] = None
    ) -> bool:
        """Get past the password step.

        Returns:
            ``True`` to proceed, ``False`` to retry the whole flow. A security
            incident also returns ``False``; the caller reads the latch.
        """
        if await self._detector.run_checks(surface, ctx.account_email, recovery_email):
            output.log(PASSWORD_STAGE, "Security check tripped; not entering the password", "warn")
            return False

        for strategy in self._strategies:
            self._sleeper.check()
            outcome = await strategy.run(surface, ctx)
            if outcome is StepOutcome.NOT_APPLICABLE:
                continue
            output.log(PASSWORD_STAGE, f"Strategy {strategy.name}: {outcome.value}", "debug")
            return outcome is StepOutcome.HANDLED_OK
        output.log(PASSWORD_STAGE, "No strategy could handle the password step", "warn")
        return False
