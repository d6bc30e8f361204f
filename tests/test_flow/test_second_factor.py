"""Tests for second-factor strategies and the resolver."""

from __future__ import annotations

import asyncio
import threading

from authpilot import selectors
from authpilot.console import ConsolePrompt
from authpilot.exceptions import SurfaceError
from authpilot.mailbox import EmailCodeRetriever
from authpilot.models import (
    ChallengeContext,
    ExtractedCode,
    MailboxConfig,
    SecondFactorChannel,
    TimingConfig,
)
from authpilot.second_factor import (
    AuthenticatorPushStrategy,
    EmailCodeStrategy,
    ManualCodeStrategy,
    SecondFactorResolver,
    TotpStrategy,
    challenge_present,
    fill_otp_inputs,
    verify_submission,
)
from authpilot.standby import CompromisedState
from conftest import FakeElement, FakeSurface, make_sleeper

SECRET = "JBSWY3DPEHPK3PXP"


class FakeRetriever(EmailCodeRetriever):
    def __init__(self, code: str | None) -> None:
        super().__init__(MailboxConfig(), make_sleeper())
        self.code = code
        self.calls: list[str] = []

    async def retrieve(self, surface, account_email):
        self.calls.append(account_email)
        if self.code is None:
            return None
        return ExtractedCode(value=self.code, search_term_used="Microsoft")


class DetachedElement(FakeElement):
    async def is_visible(self) -> bool:
        raise SurfaceError("element is not attached to the DOM")


class TestVerifySubmission:
    def test_clean_page_is_accepted(self) -> None:
        assert asyncio.run(verify_submission(FakeSurface())) is True

    def test_error_marker_rejects(self) -> None:
        surface = FakeSurface()
        surface.add(selectors.OTP_ERROR_MARKERS[0], text="That code is incorrect")
        assert asyncio.run(verify_submission(surface)) is False

    def test_visible_inputs_reject(self) -> None:
        surface = FakeSurface()
        surface.add(selectors.OTP_INPUTS)
        assert asyncio.run(verify_submission(surface)) is False

    def test_hidden_inputs_are_ignored(self) -> None:
        surface = FakeSurface()
        surface.add(selectors.OTP_INPUTS, visible=False)
        assert asyncio.run(verify_submission(surface)) is True

    def test_challenge_marker_rejects(self) -> None:
        surface = FakeSurface()
        surface.add(selectors.CODE_FLOW_MARKERS[0], text="Get a code to sign in")
        assert asyncio.run(verify_submission(surface)) is False


class TestFillOtpInputs:
    def test_digit_boxes_in_container(self) -> None:
        surface = FakeSurface()
        boxes = [FakeElement() for _ in range(6)]
        surface.add(selectors.OTP_CONTAINERS[0], children={selectors.OTP_DIGIT_BOXES: boxes})

        assert asyncio.run(fill_otp_inputs(surface, "482913")) is True
        assert [b.value for b in boxes] == list("482913")
        assert all(b.clicks == 1 for b in boxes)

    def test_digit_boxes_page_wide(self) -> None:
        surface = FakeSurface()
        boxes = [surface.add(selectors.OTP_DIGIT_BOXES_PAGE) for _ in range(4)]

        assert asyncio.run(fill_otp_inputs(surface, "7381")) is True
        assert [b.value for b in boxes] == list("7381")

    def test_single_code_input(self) -> None:
        surface = FakeSurface()
        field = surface.add(selectors.OTC_INPUT)

        assert asyncio.run(fill_otp_inputs(surface, "482913")) is True
        assert field.value == "482913"

    def test_no_input(self) -> None:
        assert asyncio.run(fill_otp_inputs(FakeSurface(), "482913")) is False


class TestTotpStrategy:
    def test_no_secret_never_matches(self, surface, timing, sleeper, ctx) -> None:
        surface.add(selectors.OTC_INPUT)
        assert asyncio.run(TotpStrategy(timing, sleeper).probe(surface, ctx)) is None

    def test_submits_current_code(self, surface, timing, sleeper) -> None:
        ctx = ChallengeContext(account_email="user@outlook.com", totp_secret=SECRET)
        field = surface.add(selectors.OTC_INPUT)

        async def scenario():
            match = await TotpStrategy(timing, sleeper).probe(surface, ctx)
            assert match is not None
            return await match.submit()

        assert asyncio.run(scenario()) is True
        assert field.value is not None and len(field.value) == 6 and field.value.isdigit()
        assert surface.keys == ["Enter"]
        assert timing.otp_submit_wait in sleeper.history

    def test_reveals_hidden_code_input(self, surface, timing, sleeper) -> None:
        ctx = ChallengeContext(account_email="user@outlook.com", totp_secret=SECRET)
        use_code = FakeElement(on_click=lambda: surface.add(selectors.OTC_INPUT))
        surface.add(
            selectors.OTHER_WAYS[0],
            on_click=lambda: surface.add(selectors.USE_AUTHENTICATOR_CODE[0], use_code),
        )

        match = asyncio.run(TotpStrategy(timing, sleeper).probe(surface, ctx))

        assert match is not None
        assert match.channel is SecondFactorChannel.TOTP
        assert use_code.clicks == 1

    def test_gives_up_when_nothing_reveals_input(self, surface, timing, sleeper) -> None:
        ctx = ChallengeContext(account_email="user@outlook.com", totp_secret=SECRET)
        assert asyncio.run(TotpStrategy(timing, sleeper).probe(surface, ctx)) is None


class TestAuthenticatorPush:
    def test_approval_completes(self, surface, timing, sleeper, ctx) -> None:
        surface.add(selectors.PUSH_NUMBER[0], text="42")
        resolver = SecondFactorResolver([AuthenticatorPushStrategy(timing, sleeper)])

        assert asyncio.run(resolver.resolve(surface, ctx)) is True

    def test_unapproved_push_is_bounded(self, surface, sleeper, ctx) -> None:
        timing = TimingConfig(push_approval_rounds=2)
        surface.add(selectors.PUSH_NUMBER[0], text="42")
        surface.add(selectors.PUSH_FORM)
        strategy = AuthenticatorPushStrategy(timing, sleeper)

        async def scenario():
            match = await strategy.probe(surface, ctx)
            return await match.submit()

        assert asyncio.run(scenario()) is False
        assert surface.waits.count(selectors.PUSH_FORM) == 2

    def test_latched_state_abandons_approval(self, surface, timing, sleeper, ctx) -> None:
        state = CompromisedState()
        state.activate("sign-in-blocked", "other@outlook.com")
        surface.add(selectors.PUSH_NUMBER[0], text="42")
        surface.add(selectors.PUSH_FORM)
        strategy = AuthenticatorPushStrategy(timing, sleeper, state)

        async def scenario():
            match = await strategy.probe(surface, ctx)
            return await match.submit()

        assert asyncio.run(scenario()) is False
        assert selectors.PUSH_FORM not in surface.waits

    def test_no_number_no_match(self, surface, timing, sleeper, ctx) -> None:
        assert asyncio.run(AuthenticatorPushStrategy(timing, sleeper).probe(surface, ctx)) is None


class TestManualCodeStrategy:
    def test_console_answer_is_typed_in(self, surface, timing, sleeper) -> None:
        surface.add(selectors.OTP_INPUTS)
        field = surface.add(selectors.OTC_INPUT)
        prompts: list[str] = []

        def reader(message: str) -> str:
            prompts.append(message)
            return " 551203 "

        strategy = ManualCodeStrategy(timing, sleeper, ConsolePrompt(reader))

        assert asyncio.run(strategy.race(surface)) is True
        assert prompts == ["Enter 2FA code:"]
        assert field.value == "551203"
        assert surface.keys == ["Enter"]

    def test_empty_answer_fails(self, surface, timing, sleeper) -> None:
        surface.add(selectors.OTP_INPUTS)
        strategy = ManualCodeStrategy(timing, sleeper, ConsolePrompt(lambda message: "  "))

        assert asyncio.run(strategy.race(surface)) is False
        assert surface.keys == []

    def test_cleared_challenge_abandons_prompt(self, surface, timing) -> None:
        surface.add(selectors.OTP_INPUTS)
        release = threading.Event()

        def blocking_reader(message: str) -> str:
            release.wait(5)
            return "000000"

        async def solved_elsewhere(seconds: float) -> None:
            surface.remove(selectors.OTP_INPUTS)
            await asyncio.sleep(0)

        strategy = ManualCodeStrategy(timing, make_sleeper(solved_elsewhere), ConsolePrompt(blocking_reader))
        try:
            assert asyncio.run(strategy.race(surface)) is True
        finally:
            release.set()
        assert surface.keys == []

    def test_challenge_present(self, surface) -> None:
        assert asyncio.run(challenge_present(surface)) is False
        surface.add(selectors.CODE_FLOW_MARKERS[-1], text="Enter the code we sent")
        assert asyncio.run(challenge_present(surface)) is True


class TestEmailCodeStrategy:
    def test_send_fetch_and_submit(self, surface, timing, sleeper, ctx) -> None:
        marker = surface.add(selectors.CODE_FLOW_MARKERS[1], text="Send code")
        field = surface.add(selectors.OTC_INPUT)

        def accept(page, key):
            page.remove(selectors.CODE_FLOW_MARKERS[1])
            page.remove(selectors.OTC_INPUT)

        surface.on_key = accept
        retriever = FakeRetriever("482913")
        resolver = SecondFactorResolver([EmailCodeStrategy(timing, sleeper, retriever)])

        assert asyncio.run(resolver.resolve(surface, ctx)) is True
        assert marker.clicks == 1
        assert retriever.calls == ["user@outlook.com"]
        assert field.value == "482913"
        assert timing.email_send_wait in sleeper.history

    def test_missing_code_fails(self, surface, timing, sleeper, ctx) -> None:
        surface.add(selectors.CODE_FLOW_MARKERS[1], text="Send code")
        resolver = SecondFactorResolver([EmailCodeStrategy(timing, sleeper, FakeRetriever(None))])

        assert asyncio.run(resolver.resolve(surface, ctx)) is False
        assert surface.keys == []

    def test_latch_during_delivery_wait_skips_mailbox(self, surface, timing, ctx) -> None:
        state = CompromisedState()

        async def latch_on_delivery_wait(seconds: float) -> None:
            if seconds >= timing.email_delivery_wait[0]:
                state.activate("recovery-mismatch", "other@outlook.com")
            await asyncio.sleep(0)

        surface.add(selectors.CODE_FLOW_MARKERS[1], text="Send code")
        field = surface.add(selectors.OTC_INPUT)
        retriever = FakeRetriever("482913")
        strategy = EmailCodeStrategy(timing, make_sleeper(latch_on_delivery_wait), retriever, state)

        assert asyncio.run(SecondFactorResolver([strategy]).resolve(surface, ctx)) is False
        assert retriever.calls == []
        assert field.value is None
        assert surface.keys == []

    def test_code_without_input_is_a_failure(self, surface, timing, sleeper, ctx) -> None:
        surface.add(selectors.CODE_FLOW_MARKERS[1], text="Send code")
        retriever = FakeRetriever("482913")
        resolver = SecondFactorResolver([EmailCodeStrategy(timing, sleeper, retriever)])

        assert asyncio.run(resolver.resolve(surface, ctx)) is False
        assert retriever.calls == ["user@outlook.com"]
        assert surface.keys == []

    def test_detect_by_button_text(self, surface, timing, sleeper) -> None:
        surface.add(selectors.BUTTONS, text="Forgot password?")
        surface.add(selectors.BUTTONS, text="Send")
        strategy = EmailCodeStrategy(timing, sleeper, FakeRetriever(None))

        assert asyncio.run(strategy.detect(surface)) == 'button "send"'

    def test_detached_button_is_skipped(self, surface, timing, sleeper) -> None:
        surface.add(selectors.BUTTONS, DetachedElement(text="Send code"))
        surface.add(selectors.BUTTONS, text="Continue")
        strategy = EmailCodeStrategy(timing, sleeper, FakeRetriever(None))

        assert asyncio.run(strategy.detect(surface)) == 'button "continue"'

    def test_detect_nothing(self, surface, timing, sleeper) -> None:
        surface.add(selectors.BUTTONS, text="Next")
        strategy = EmailCodeStrategy(timing, sleeper, FakeRetriever(None))

        assert asyncio.run(strategy.detect(surface)) is None


class TestSecondFactorResolver:
    def test_default_order(self, timing, sleeper) -> None:
        resolver = SecondFactorResolver.default(timing, sleeper, FakeRetriever(None))
        assert [s.channel for s in resolver.strategies] == [
            SecondFactorChannel.TOTP,
            SecondFactorChannel.AUTHENTICATOR_PUSH,
            SecondFactorChannel.SMS_MANUAL,
            SecondFactorChannel.EMAIL_OTP,
        ]

    def test_first_recognising_strategy_wins(self, surface, timing, sleeper, ctx) -> None:
        surface.add(selectors.PUSH_NUMBER[0], text="42")
        surface.add(selectors.OTP_INPUTS)
        resolver = SecondFactorResolver.default(timing, sleeper, FakeRetriever(None))

        match = asyncio.run(resolver.probe(surface, ctx))

        assert match is not None
        assert match.channel is SecondFactorChannel.AUTHENTICATOR_PUSH
        assert match.detail == "approval number 42"

    def test_channel_filter(self, surface, timing, sleeper, ctx) -> None:
        surface.add(selectors.PUSH_NUMBER[0], text="42")
        surface.add(selectors.OTP_INPUTS)
        resolver = SecondFactorResolver.default(timing, sleeper, FakeRetriever(None))

        async def scenario():
            return (
                await resolver.probe(surface, ctx, (SecondFactorChannel.SMS_MANUAL,)),
                await resolver.probe(surface, ctx, (SecondFactorChannel.EMAIL_OTP,)),
            )

        manual, email = asyncio.run(scenario())

        assert manual is not None and manual.channel is SecondFactorChannel.SMS_MANUAL
        assert email is None

    def test_nothing_recognised(self, surface, timing, sleeper, ctx) -> None:
        resolver = SecondFactorResolver.default(timing, sleeper, FakeRetriever(None))
        assert asyncio.run(resolver.resolve(surface, ctx)) is False
