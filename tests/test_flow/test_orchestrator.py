"""Tests for the top-level sign-in state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from authpilot import selectors
from authpilot.collaborators import DiagnosticsCapture, InMemoryAccountRegistry, SessionStore
from authpilot.credentials import CredentialStage
from authpilot.exceptions import AccountLockedError, InvalidUsageError, LoginAbortedError
from authpilot.models import (
    AccountEntry,
    ChallengeContext,
    LoginErrorEvent,
    LoginErrorType,
    Settings,
    TimingConfig,
)
from authpilot.orchestrator import RETRY_AFTER_MS, LoginOrchestrator
from authpilot.security import SecurityIncidentDetector
from authpilot.standby import CompromisedState, StandbyController
from conftest import FakeSurface, SpyResolver, make_sleeper

EMAIL = "user@outlook.com"


class RecordingDiagnostics(DiagnosticsCapture):
    def __init__(self) -> None:
        self.labels: list[str] = []

    async def capture(self, surface, label, scope="login", force=False) -> list[Path]:
        self.labels.append(label)
        return []


class RecordingSessionStore(SessionStore):
    def __init__(self) -> None:
        self.saved: list[tuple[object, str]] = []

    async def save_session(self, path, surface, account, device_class) -> Optional[Path]:
        self.saved.append((surface, account))
        return None


class ScriptedStage(CredentialStage):
    """Credential stage whose password outcomes are scripted.

    Each entry of *results* is a bool, an exception to raise, or a callable
    run against the orchestrator that returns a bool.
    """

    def __init__(self, results, orchestrator: Optional[LoginOrchestrator] = None) -> None:
        super().__init__(TimingConfig(), make_sleeper(), None, [])
        self.results = list(results)
        self.orchestrator = orchestrator
        self.contexts: list[ChallengeContext] = []
        self.recovery: list[Optional[str]] = []
        self.held: list[bool] = []

    async def enter_email(self, surface, email) -> bool:
        return True

    async def enter_password(self, surface, ctx, recovery_email=None) -> bool:
        self.contexts.append(ctx)
        self.recovery.append(recovery_email)
        if self.orchestrator is not None:
            self.held.append(self.orchestrator.totp_secret_held)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(self.orchestrator)
        return result


@pytest.fixture
def registry() -> InMemoryAccountRegistry:
    return InMemoryAccountRegistry(
        [AccountEntry.model_validate({"email": EMAIL, "password": "hunter2", "recoveryEmail": "jo**@example.com"})]
    )


def _settings(max_attempts: int = 3) -> Settings:
    return Settings(timing=TimingConfig(max_attempts=max_attempts))


def _orchestrator(
    settings: Settings,
    state: CompromisedState,
    registry: InMemoryAccountRegistry,
    stage: Optional[CredentialStage] = None,
    **kwargs,
) -> tuple[LoginOrchestrator, list[LoginErrorEvent]]:
    orchestrator = LoginOrchestrator(
        settings,
        state,
        sleeper=kwargs.pop("sleeper", None) or make_sleeper(),
        registry=registry,
        credential_stage=stage,
        **kwargs,
    )
    if isinstance(stage, ScriptedStage):
        stage.orchestrator = orchestrator
    events: list[LoginErrorEvent] = []
    orchestrator.on_error(events.append)
    return orchestrator, events


class TestSuccessfulLogin:
    def test_password_only_account(self, surface, registry) -> None:
        surface.add(selectors.EMAIL_INPUT)
        surface.add(selectors.SUBMIT_BUTTON)
        field = surface.add(selectors.PASSWORD_INPUT)
        settings = _settings()
        state = CompromisedState()
        sleeper = make_sleeper()
        resolver = SpyResolver()
        detector = SecurityIncidentDetector(StandbyController(state))
        stage = CredentialStage.default(settings.timing, sleeper, detector, resolver)
        store = RecordingSessionStore()
        orchestrator, events = _orchestrator(
            settings, state, registry, stage, sleeper=sleeper, session_store=store
        )

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is True
        assert field.value == "hunter2"
        assert resolver.invoked is False
        assert events == []
        assert store.saved == [(surface, EMAIL)]
        assert surface.visits == [settings.provider.signin_url]

    def test_already_signed_in_skips_credentials(self, surface, registry) -> None:
        settings = _settings()
        surface.add(settings.provider.portal_marker)
        stage = ScriptedStage([])
        orchestrator, events = _orchestrator(settings, CompromisedState(), registry, stage)

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is True
        assert stage.contexts == []

    def test_off_landing_host_navigates_to_landing(self, registry) -> None:
        settings = _settings()
        surface = FakeSurface(url="https://login.live.com/")
        surface.on_navigate = lambda page, url: setattr(
            page, "url", "https://login.live.com/" if url == settings.provider.signin_url else url
        )
        orchestrator, _ = _orchestrator(settings, CompromisedState(), registry, ScriptedStage([True]))

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is True
        assert surface.visits[-1] == settings.provider.landing_url

    def test_recovery_email_and_context(self, surface, registry) -> None:
        stage = ScriptedStage([True])
        orchestrator, _ = _orchestrator(_settings(), CompromisedState(), registry, stage)

        asyncio.run(orchestrator.login(surface, EMAIL, "hunter2", "JBSWY3DPEHPK3PXP"))

        assert stage.recovery == ["jo**@example.com"]
        ctx = stage.contexts[0]
        assert ctx.account_email == EMAIL
        assert ctx.password.get_secret_value() == "hunter2"
        assert ctx.totp_secret.get_secret_value() == "JBSWY3DPEHPK3PXP"

    def test_totp_secret_cleared_after_login(self, surface, registry) -> None:
        stage = ScriptedStage([True])
        orchestrator, _ = _orchestrator(_settings(), CompromisedState(), registry, stage)

        asyncio.run(orchestrator.login(surface, EMAIL, "hunter2", "JBSWY3DPEHPK3PXP"))

        assert stage.held == [True]
        assert orchestrator.totp_secret_held is False

    def test_retry_rotates_surface(self, surface, registry) -> None:
        stage = ScriptedStage([False, True])
        store = RecordingSessionStore()
        orchestrator, events = _orchestrator(_settings(), CompromisedState(), registry, stage, session_store=store)

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is True
        fresh = orchestrator.active_surface
        assert fresh is not surface
        assert surface.closed is True
        assert fresh.closed is False
        assert store.saved == [(fresh, EMAIL)]
        assert events == []


class TestFailedLogin:
    def test_exhaustion_emits_one_event(self, surface, registry) -> None:
        sleeper = make_sleeper()
        diagnostics = RecordingDiagnostics()
        state = CompromisedState()
        orchestrator, events = _orchestrator(
            _settings(), state, registry, ScriptedStage([False, False, False]),
            sleeper=sleeper, diagnostics=diagnostics,
        )

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False

        assert len(events) == 1
        event = events[0]
        assert event.type is LoginErrorType.LOGIN_FAILED
        assert event.email == EMAIL
        assert event.retry_after_ms == RETRY_AFTER_MS == 600_000
        assert event.should_restart_browsers is True
        assert registry.find_account(EMAIL).do_later is True
        assert state.active is False
        assert len(surface.family) == 3
        assert all(s.closed for s in surface.family)
        assert diagnostics.labels == ["login-failed"]
        backoffs = [s for s in sleeper.history if s >= 600]
        assert len(backoffs) == 2
        assert all(600 <= s <= 900 for s in backoffs)

    def test_unregistered_account_still_fails_cleanly(self, surface) -> None:
        orchestrator, events = _orchestrator(
            _settings(1), CompromisedState(), InMemoryAccountRegistry(), ScriptedStage([False])
        )

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False
        assert [e.type for e in events] == [LoginErrorType.LOGIN_FAILED]

    def test_sibling_failure_retries_on_current_surface(self, surface, registry) -> None:
        surface.sibling_error = True
        orchestrator, events = _orchestrator(_settings(2), CompromisedState(), registry, ScriptedStage([False, True]))

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is True
        assert orchestrator.active_surface is surface
        assert surface.closed is False

    def test_throwing_listener_does_not_break_flow(self, surface, registry) -> None:
        orchestrator, events = _orchestrator(_settings(1), CompromisedState(), registry, ScriptedStage([False]))

        def broken(event: LoginErrorEvent) -> None:
            raise RuntimeError("listener bug")

        seen: list[LoginErrorEvent] = []
        orchestrator.on_error(broken)
        orchestrator.on_error(seen.append)

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False
        assert len(events) == 1
        assert len(seen) == 1

    def test_exception_on_final_attempt_is_raised_once(self, surface, registry) -> None:
        stage = ScriptedStage([RuntimeError("boom"), RuntimeError("boom again")])
        orchestrator, events = _orchestrator(_settings(2), CompromisedState(), registry, stage)

        with pytest.raises(RuntimeError, match="boom again"):
            asyncio.run(orchestrator.login(surface, EMAIL, "hunter2"))

        assert [e.type for e in events] == [LoginErrorType.LOGIN_FAILED]
        assert registry.find_account(EMAIL).do_later is True
        assert orchestrator.totp_secret_held is False

    def test_exception_then_success(self, surface, registry) -> None:
        stage = ScriptedStage([RuntimeError("transient"), True])
        orchestrator, events = _orchestrator(_settings(2), CompromisedState(), registry, stage)

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is True
        assert events == []


class TestLockedAndStandby:
    def test_standby_short_circuits(self, surface, registry) -> None:
        state = CompromisedState()
        state.activate("sign-in-blocked", "other@outlook.com")
        stage = ScriptedStage([True])
        orchestrator, events = _orchestrator(_settings(), state, registry, stage)

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False
        assert surface.visits == []
        assert stage.contexts == []
        assert events == []

    def test_token_refused_in_standby(self, surface, registry) -> None:
        state = CompromisedState()
        state.activate("recovery-mismatch")
        orchestrator, _ = _orchestrator(_settings(), state, registry, ScriptedStage([]))

        assert asyncio.run(orchestrator.get_second_factor_token(surface, EMAIL)) is None
        assert surface.visits == []

    def test_incident_during_login_stops_without_event(self, surface, registry) -> None:
        state = CompromisedState()

        def trip(orchestrator: LoginOrchestrator) -> bool:
            orchestrator.state.activate("sign-in-blocked", EMAIL)
            return False

        stage = ScriptedStage([trip, True])
        orchestrator, events = _orchestrator(_settings(), state, registry, stage)

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False
        assert events == []
        assert len(stage.contexts) == 1
        assert surface.closed is False
        assert registry.find_account(EMAIL).do_later is False

    def test_latch_set_during_backoff_stops_before_ui(self, surface, registry) -> None:
        state = CompromisedState()
        settings = _settings()

        async def latch_on_backoff(seconds: float) -> None:
            if seconds >= settings.timing.retry_backoff[0]:
                state.activate("sign-in-blocked", "other@outlook.com")
            await asyncio.sleep(0)

        stage = ScriptedStage([False, True])
        orchestrator, events = _orchestrator(
            settings, state, registry, stage, sleeper=make_sleeper(latch_on_backoff)
        )

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False
        assert len(stage.contexts) == 1
        assert surface.family == [surface]
        assert surface.visits == [settings.provider.signin_url]
        assert surface.closed is False
        assert events == []
        assert registry.find_account(EMAIL).do_later is False

    def test_latch_set_after_an_error_stops_next_attempt(self, surface, registry) -> None:
        state = CompromisedState()
        settings = Settings(timing=TimingConfig(error_retry_delay=7.5))

        async def latch_on_retry_pause(seconds: float) -> None:
            if seconds == settings.timing.error_retry_delay:
                state.activate("recovery-mismatch", "other@outlook.com")
            await asyncio.sleep(0)

        stage = ScriptedStage([RuntimeError("flaky"), True])
        orchestrator, events = _orchestrator(
            settings, state, registry, stage, sleeper=make_sleeper(latch_on_retry_pause)
        )

        assert asyncio.run(orchestrator.login(surface, EMAIL, "hunter2")) is False
        assert len(stage.contexts) == 1
        assert surface.visits == [settings.provider.signin_url]
        assert events == []

    def test_locked_account_raises(self, surface, registry) -> None:
        settings = _settings()
        surface.add(settings.provider.locked_marker, text="Your account has been locked")
        stage = ScriptedStage([True])
        orchestrator, events = _orchestrator(settings, CompromisedState(), registry, stage)

        with pytest.raises(AccountLockedError):
            asyncio.run(orchestrator.login(surface, EMAIL, "hunter2"))

        assert [e.type for e in events] == [LoginErrorType.ACCOUNT_LOCKED]
        assert events[0].should_restart_browsers is False
        assert stage.contexts == []


class TestControl:
    def test_concurrent_login_for_same_account_refused(self, registry) -> None:
        class GatedSurface(FakeSurface):
            gate: Optional[asyncio.Event] = None

            async def navigate(self, url: str) -> None:
                await self.gate.wait()
                await super().navigate(url)

        first = GatedSurface()
        orchestrator, _ = _orchestrator(_settings(1), CompromisedState(), registry, ScriptedStage([True]))

        async def scenario():
            first.gate = asyncio.Event()
            running = asyncio.ensure_future(orchestrator.login(first, EMAIL, "hunter2"))
            await asyncio.sleep(0)
            with pytest.raises(InvalidUsageError):
                await orchestrator.login(FakeSurface(), EMAIL.upper(), "hunter2")
            first.gate.set()
            return await running

        assert asyncio.run(scenario()) is True

    def test_stop_request_aborts_without_event(self, surface, registry) -> None:
        def stop(orchestrator: LoginOrchestrator) -> bool:
            orchestrator.request_stop()
            return False

        orchestrator, events = _orchestrator(_settings(), CompromisedState(), registry, ScriptedStage([stop, True]))

        with pytest.raises(LoginAbortedError):
            asyncio.run(orchestrator.login(surface, EMAIL, "hunter2"))

        assert events == []
        assert orchestrator.totp_secret_held is False
