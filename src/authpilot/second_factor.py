"""Second-factor resolution as an ordered list of probing strategies.

Each :class:`SecondFactorStrategy` inspects the page in :meth:`~SecondFactorStrategy.probe`
and, when it recognises its challenge, returns a :class:`ChallengeMatch`
whose ``submit`` coroutine answers it. :class:`SecondFactorResolver` tries
the strategies in a fixed order:

1. :class:`TotpStrategy` -- a TOTP secret is configured; reveal the code
   input if needed and submit the current code.
2. :class:`AuthenticatorPushStrategy` -- an approval number is shown; wait
   for the operator to approve it in the authenticator app.
3. :class:`ManualCodeStrategy` -- a code input is shown; ask the operator on
   the console while polling the page in case the challenge is solved there.
4. :class:`EmailCodeStrategy` -- a "send code" challenge; send it, read the
   code from the mailbox and type it in.

After any submission :func:`verify_submission` decides the outcome. It only
looks for signs of failure: an explicit "code incorrect" message, code
inputs that are still showing, or the original challenge markers. When
none of these is present the submission counts as accepted. A failed
submission is never retried in place because a rejected code normally
invalidates the server-side challenge; the caller restarts the whole flow.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from authpilot import output, selectors
from authpilot.console import ConsolePrompt
from authpilot.exceptions import SurfaceError
from authpilot.mailbox import EmailCodeRetriever
from authpilot.models import ChallengeContext, SecondFactorChannel, TimingConfig
from authpilot.pacing import Sleeper
from authpilot.standby import CompromisedState
from authpilot.surface.base import (
    UISurface,
    first_visible,
    is_visible,
    safe_click,
    safe_text,
    safe_visible,
)
from authpilot.totp import generate_code

STAGE = "2FA"


@dataclass
class ChallengeMatch:
    """A recognised challenge and the coroutine that answers it.

    ``submit`` returns ``False`` when nothing could be submitted.
    """

    channel: SecondFactorChannel
    submit: Callable[[], Awaitable[bool]]
    detail: str = ""


# ------------------------------------------------------------------ #
# Page helpers
# ------------------------------------------------------------------ #


async def challenge_present(surface: UISurface) -> bool:
    """Return whether code inputs or challenge markers are still visible."""
    if await is_visible(surface, selectors.OTP_INPUTS):
        return True
    return await first_visible(surface, selectors.CODE_FLOW_MARKERS) is not None


async def verify_submission(surface: UISurface) -> bool:
    """Decide whether a second-factor submission was accepted.

    Returns ``False`` on an explicit error message, visible code inputs or
    visible challenge markers, ``True`` otherwise.
    """
    error = await first_visible(surface, selectors.OTP_ERROR_MARKERS)
    if error is not None:
        output.log(STAGE, f"Code rejected: error marker {error[0]} is showing", "warn")
        return False
    if await is_visible(surface, selectors.OTP_INPUTS):
        output.log(STAGE, "Code inputs are still showing after submission", "warn")
        return False
    marker = await first_visible(surface, selectors.CODE_FLOW_MARKERS)
    if marker is not None:
        output.log(STAGE, f"Still on the code challenge ({marker[0]})", "warn")
        return False
    output.log(STAGE, "No error or challenge markers after submission; treating as accepted")
    return True


async def fill_otp_inputs(surface: UISurface, code: str) -> bool:
    """Type *code* into the page's code input(s).

    Multi-box layouts (one digit per input) are tried first, inside the
    known containers and then page wide; otherwise the single code field
    is filled.

    Returns:
        ``True`` if any input was filled.
    """
    boxes = []
    for container_pattern in selectors.OTP_CONTAINERS:
        try:
            container = await surface.locate(container_pattern)
            if container is None:
                continue
            boxes = await container.locate_all(selectors.OTP_DIGIT_BOXES)
        except SurfaceError:
            continue
        if len(boxes) >= 2:
            break
    if len(boxes) < 2:
        try:
            boxes = await surface.locate_all(selectors.OTP_DIGIT_BOXES_PAGE)
        except SurfaceError:
            boxes = []

    if len(boxes) >= 2:
        for box, digit in zip(boxes, code):
            await safe_click(box)
            try:
                await box.fill(digit)
            except SurfaceError as exc:
                output.log(STAGE, f"Digit box rejected input: {exc}", "debug")
        return True

    hit = await first_visible(surface, (selectors.OTC_INPUT, selectors.OTP_SINGLE_INPUT))
    if hit is None:
        return False
    try:
        await hit[1].fill(code)
    except SurfaceError as exc:
        output.log(STAGE, f"Code input rejected input: {exc}", "warn")
        return False
    return True


def standby_engaged(state: Optional[CompromisedState]) -> bool:
    """Whether the latch was set, possibly by another orchestrator, during a wait."""
    if state is not None and state.active:
        output.log(STAGE, f"Security standby active ({state.reason}); abandoning the challenge", "warn")
        return True
    return False


async def _press_enter(surface: UISurface) -> None:
    try:
        await surface.press_key("Enter")
    except SurfaceError as exc:
        output.log(STAGE, f"Enter key failed: {exc}", "debug")


# ------------------------------------------------------------------ #
# Strategies
# ------------------------------------------------------------------ #


class SecondFactorStrategy(ABC):
    """One second-factor channel."""

    channel: SecondFactorChannel

    @abstractmethod
    async def probe(self, surface: UISurface, ctx: ChallengeContext) -> Optional[ChallengeMatch]:
        """Return a match if this channel's challenge is on the page, else ``None``."""
        ...


class TotpStrategy(SecondFactorStrategy):
    """Answers with a time-based code computed from the account's secret."""

    channel = SecondFactorChannel.TOTP

    def __init__(self, timing: TimingConfig, sleeper: Sleeper) -> None:
        self._timing = timing
        self._sleeper = sleeper

    async def probe(self, surface: UISurface, ctx: ChallengeContext) -> Optional[ChallengeMatch]:
        if ctx.totp_secret is None:
            return None
        if not await self._reveal_input(surface):
            return None
        secret = ctx.totp_secret

        async def submit() -> bool:
            try:
                code = generate_code(secret)
            except ValueError as exc:
                output.log(STAGE, f"TOTP generation failed: {exc}", "warn")
                return False
            if not await fill_otp_inputs(surface, code):
                output.log(STAGE, "TOTP input vanished before it could be filled", "warn")
                return False
            await _press_enter(surface)
            output.log(STAGE, "Submitted TOTP automatically")
            await self._sleeper.pause(self._timing.otp_submit_wait)
            return True

        return ChallengeMatch(self.channel, submit, "authenticator code input")

    async def _reveal_input(self, surface: UISurface) -> bool:
        for attempt in range(self._timing.totp_reveal_attempts):
            if await is_visible(surface, selectors.OTC_INPUT):
                return True
            clicked = False
            for group in (selectors.OTHER_WAYS, selectors.USE_AUTHENTICATOR_CODE):
                hit = await first_visible(surface, group)
                if hit is not None and await safe_click(hit[1]):
                    output.log(STAGE, f"Revealing authenticator code input via {hit[0]}", "debug")
                    clicked = True
                    await self._sleeper.pause(0.9)
            if not clicked:
                break
        return await is_visible(surface, selectors.OTC_INPUT)


class AuthenticatorPushStrategy(SecondFactorStrategy):
    """Waits for the operator to approve a push notification.

    Probing may press the provider's "send" and "try again" controls, since
    the approval number often only appears after a notification is sent.
    """

    channel = SecondFactorChannel.AUTHENTICATOR_PUSH

    def __init__(
        self, timing: TimingConfig, sleeper: Sleeper, state: Optional[CompromisedState] = None
    ) -> None:
        self._timing = timing
        self._sleeper = sleeper
        self._state = state

    async def probe(self, surface: UISurface, ctx: ChallengeContext) -> Optional[ChallengeMatch]:
        number = await self.read_number(surface, ctx.parallel)
        if number is None:
            return None

        async def submit() -> bool:
            return await self._await_approval(surface, number, ctx.parallel)

        return ChallengeMatch(self.channel, submit, f"approval number {number}")

    async def read_number(self, surface: UISurface, parallel: bool) -> Optional[str]:
        number = await self._poll_number(surface, self._timing.push_number_timeout)
        if number:
            return number

        if parallel:
            output.log(STAGE, "Running in parallel; polling for push approval", "warn")
            for _ in range(self._timing.push_poll_cycles):
                for pattern in selectors.PUSH_RETRY_BUTTONS:
                    button = await surface.wait_for(pattern, 2.0)
                    if button is not None and await safe_click(button):
                        output.log(STAGE, f"Clicked retry button: {pattern}")
                await self._sleeper.pause(self._timing.push_poll_interval)
                if standby_engaged(self._state):
                    return None
                number = await self._poll_number(surface, 2.0)
                if number:
                    return number

        confirm = await surface.wait_for(selectors.PUSH_CONFIRM_SEND, 2.0, state="attached")
        if confirm is not None and await safe_click(confirm):
            await self._sleeper.pause(2.0)
            element = await surface.wait_for(selectors.PUSH_NUMBER_STRICT, 5.0, state="attached")
            if element is not None:
                return await safe_text(element) or None
        return None

    async def _poll_number(self, surface: UISurface, timeout: float) -> Optional[str]:
        for pattern in selectors.PUSH_NUMBER:
            element = await surface.wait_for(pattern, timeout)
            if element is not None:
                text = await safe_text(element)
                if text:
                    return text
        return None

    async def _await_approval(self, surface: UISurface, number: Optional[str], parallel: bool) -> bool:
        for _ in range(self._timing.push_approval_rounds):
            self._sleeper.check()
            if standby_engaged(self._state):
                return False
            if number:
                output.log(STAGE, f"Press the number {number} on your authenticator app to approve the sign-in")
            output.log(STAGE, "If you press the wrong number or DENY, a new number follows in 60 seconds")
            if await surface.wait_gone(selectors.PUSH_FORM, self._timing.push_approval_timeout):
                output.log(STAGE, "Sign-in approved")
                return True
            output.log(STAGE, "The approval number expired; requesting a new one")
            button = await surface.wait_for(selectors.PRIMARY_BUTTON, 5.0)
            if button is not None:
                await safe_click(button)
            number = await self.read_number(surface, parallel)
        output.log(STAGE, "Push approval was not granted in time", "warn")
        return False


class ManualCodeStrategy(SecondFactorStrategy):
    """Asks the operator for a code (usually from an SMS).

    The console read is raced against a poll of the page: if the challenge
    disappears on its own, for example because the operator solved it in the
    browser window, the pending read is abandoned.
    """

    channel = SecondFactorChannel.SMS_MANUAL

    def __init__(self, timing: TimingConfig, sleeper: Sleeper, console: Optional[ConsolePrompt] = None) -> None:
        self._timing = timing
        self._sleeper = sleeper
        self._console = console or ConsolePrompt()

    async def probe(self, surface: UISurface, ctx: ChallengeContext) -> Optional[ChallengeMatch]:
        if not await challenge_present(surface):
            return None

        async def submit() -> bool:
            return await self.race(surface)

        return ChallengeMatch(self.channel, submit, "code input")

    async def race(self, surface: UISurface) -> bool:
        """Run the console read and the page poll; the first to finish wins."""
        output.log(STAGE, "Second-factor code required. Waiting for operator input...")
        reader = asyncio.ensure_future(self._console.ask("Enter 2FA code:"))
        poller = asyncio.ensure_future(self._wait_until_cleared(surface))
        try:
            done, _ = await asyncio.wait({reader, poller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, poller):
                if not task.done():
                    task.cancel()
            await asyncio.gather(reader, poller, return_exceptions=True)

        if reader in done and not reader.cancelled() and reader.exception() is None:
            code = reader.result().strip()
            if not code:
                output.log(STAGE, "Empty code entered", "warn")
                return False
            if not await fill_otp_inputs(surface, code):
                output.log(STAGE, "No code input to type into", "warn")
                return False
            await _press_enter(surface)
            output.log(STAGE, "Second-factor code entered")
            await self._sleeper.pause(self._timing.otp_submit_wait)
            return True

        if poller in done and poller.exception() is not None:
            raise poller.exception()  # type: ignore[misc]
        if poller in done:
            output.log(STAGE, "Challenge cleared on the page; console prompt abandoned")
            return True
        output.log(STAGE, f"Console input failed: {reader.exception()}", "warn")
        return False

    async def _wait_until_cleared(self, surface: UISurface) -> None:
        while True:
            await self._sleeper.pause(self._timing.manual_poll_interval)
            if not await challenge_present(surface):
                return


class EmailCodeStrategy(SecondFactorStrategy):
    """Sends a code by email, reads it from the mailbox and submits it."""

    channel = SecondFactorChannel.EMAIL_OTP

    def __init__(
        self,
        timing: TimingConfig,
        sleeper: Sleeper,
        retriever: EmailCodeRetriever,
        state: Optional[CompromisedState] = None,
    ) -> None:
        self._timing = timing
        self._sleeper = sleeper
        self._retriever = retriever
        self._state = state

    async def probe(self, surface: UISurface, ctx: ChallengeContext) -> Optional[ChallengeMatch]:
        detail = await self.detect(surface)
        if detail is None:
            return None

        async def submit() -> bool:
            return await self._send_and_submit(surface, ctx)

        return ChallengeMatch(self.channel, submit, detail)

    async def detect(self, surface: UISurface) -> Optional[str]:
        """Return a description of the send-code challenge, or ``None``."""
        hit = await first_visible(surface, selectors.CODE_FLOW_MARKERS)
        if hit is not None:
            return hit[0]
        try:
            buttons = await surface.locate_all(selectors.BUTTONS)
        except SurfaceError:
            return None
        for button in buttons:
            text = (await safe_text(button)).lower()
            if ("send code" in text or text == "send" or "continue" in text) and await safe_visible(button):
                return f'button "{text}"'
        return None

    async def _send_and_submit(self, surface: UISurface, ctx: ChallengeContext) -> bool:
        if not await self._click_send(surface):
            output.log(STAGE, "No send button clicked; fetching the code anyway", "warn")
        await self._sleeper.pause(self._timing.email_send_wait)
        waited = await self._sleeper.pause_between(self._timing.email_delivery_wait)
        output.log(STAGE, f"Waited {waited / 60:.1f} minutes for the code email")
        if standby_engaged(self._state):
            return False

        code = await self._retriever.retrieve(surface, ctx.account_email)
        if code is None:
            output.log(STAGE, "Could not retrieve a code from the mailbox", "warn")
            return False
        output.log(STAGE, f"Retrieved code from the mailbox (term={code.search_term_used!r})")
        if not await fill_otp_inputs(surface, code.value):
            output.log(STAGE, "No code input found for the retrieved code", "warn")
            return False
        await _press_enter(surface)
        await self._sleeper.pause(self._timing.otp_submit_wait)
        return True

    async def _click_send(self, surface: UISurface) -> bool:
        for pattern in selectors.SEND_CODE_BUTTONS:
            button = await surface.wait_for(pattern, self._timing.send_button_timeout, state="attached")
            if button is not None and await safe_click(button):
                output.log(STAGE, f"Clicked send button: {pattern}")
                return True
        try:
            button = await surface.locate(selectors.BUTTONS)
        except SurfaceError:
            return False
        if button is not None and await safe_visible(button):
            text = (await safe_text(button)).lower()
            if ("send" in text or "continue" in text) and await safe_click(button):
                output.log(STAGE, f'Clicked fallback send button "{text}"')
                return True
        return False


# ------------------------------------------------------------------ #
# Resolver
# ------------------------------------------------------------------ #


class SecondFactorResolver:
    """Dispatches a challenge to the first strategy that recognises it.

    Args:
        strategies: Tried in order.
    """

    def __init__(self, strategies: Sequence[SecondFactorStrategy]) -> None:
        self._strategies = list(strategies)

    @classmethod
    def default(
        cls,
        timing: TimingConfig,
        sleeper: Sleeper,
        retriever: EmailCodeRetriever,
        console: Optional[ConsolePrompt] = None,
        state: Optional[CompromisedState] = None,
    ) -> SecondFactorResolver:
        return cls(
            [
                TotpStrategy(timing, sleeper),
                AuthenticatorPushStrategy(timing, sleeper, state),
                ManualCodeStrategy(timing, sleeper, console),
                EmailCodeStrategy(timing, sleeper, retriever, state),
            ]
        )

    @property
    def strategies(self) -> list[SecondFactorStrategy]:
        return list(self._strategies)

    async def probe(
        self,
        surface: UISurface,
        ctx: ChallengeContext,
        channels: Optional[Sequence[SecondFactorChannel]] = None,
    ) -> Optional[ChallengeMatch]:
        """Return the first match among strategies whose channel is in *channels*."""
        for strategy in self._strategies:
            if channels is not None and strategy.channel not in channels:
                continue
            match = await strategy.probe(surface, ctx)
            if match is not None:
                output.log(STAGE, f"Second factor: {match.channel.value} ({match.detail})")
                return match
        return None

    async def resolve(
        self,
        surface: UISurface,
        ctx: ChallengeContext,
        channels: Optional[Sequence[SecondFactorChannel]] = None,
    ) -> bool:
        """Probe, submit and verify.

        Returns:
            ``True`` if the challenge was answered and no failure markers
            remain; ``False`` means the whole flow should be retried.
        """
        match = await self.probe(surface, ctx, channels)
        if match is None:
            output.log(STAGE, "No recognised second-factor challenge on the page", "warn")
            return False
        return await self.complete(surface, match)

    async def complete(self, surface: UISurface, match: ChallengeMatch) -> bool:
        """Submit an already detected *match* and verify the outcome."""
        if not await match.submit():
            return False
        return await verify_submission(surface)
