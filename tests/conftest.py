"""Shared test fixtures for authpilot.

Provides isolated config directories, a quiet output manager, an instant
:class:`~authpilot.pacing.Sleeper`, and a scripted in-memory
:class:`~authpilot.surface.base.UISurface`. These fixtures are
automatically discovered by pytest; the fake classes can also be imported
directly (``from conftest import FakeSurface``).

The fake surface is keyed by the exact selector strings of
:mod:`authpilot.selectors`: an element registered under a pattern is what
``locate``/``wait_for`` return for that pattern, nothing more.
"""

from __future__ import annotations

import asyncio
import random
from pathlib import Path
from typing import Callable, Optional

import pytest

from authpilot.exceptions import SurfaceError
from authpilot.models import ChallengeContext, TimingConfig
from authpilot.output import OutputManager, reset_output, set_output
from authpilot.pacing import Sleeper
from authpilot.second_factor import ChallengeMatch, SecondFactorResolver
from authpilot.surface.base import ElementHandle, UISurface


# ---------------------------------------------------------------------------
# Fake UI surface
# ---------------------------------------------------------------------------


class FakeElement(ElementHandle):
    """Scripted element. ``children`` maps selector patterns to descendants."""

    def __init__(
        self,
        text: str = "",
        visible: bool = True,
        attrs: Optional[dict[str, str]] = None,
        children: Optional[dict[str, list[FakeElement]]] = None,
        on_click: Optional[Callable[[], None]] = None,
        fail_click: bool = False,
    ) -> None:
        self.text_value = text
        self.visible = visible
        self.attrs = attrs or {}
        self.children = children or {}
        self.on_click = on_click
        self.fail_click = fail_click
        self.clicks = 0
        self.filled: list[str] = []

    @property
    def value(self) -> Optional[str]:
        return self.filled[-1] if self.filled else None

    async def is_visible(self) -> bool:
        return self.visible

    async def click(self) -> None:
        if self.fail_click:
            raise SurfaceError("element detached")
        self.clicks += 1
        if self.on_click is not None:
            self.on_click()

    async def fill(self, text: str) -> None:
        self.filled.append(text)

    async def text(self) -> str:
        return self.text_value

    async def attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    async def locate_all(self, pattern: str) -> list[ElementHandle]:
        return list(self.children.get(pattern, []))


class FakeSurface(UISurface):
    """In-memory surface whose page content is a dict of selector -> elements."""

    def __init__(
        self,
        url: str = "about:blank",
        text: str = "",
        family: Optional[list[FakeSurface]] = None,
    ) -> None:
        self.url = url
        self.text = text
        self.elements: dict[str, list[FakeElement]] = {}
        self.visits: list[str] = []
        self.keys: list[str] = []
        self.waits: list[str] = []
        self.queries: list[str] = []
        self.backs = 0
        self.closed = False
        self.fido_disabled = False
        self.sibling_error = False
        self.sibling_factory: Optional[Callable[[], FakeSurface]] = None
        self.on_navigate: Optional[Callable[[FakeSurface, str], None]] = None
        self.on_key: Optional[Callable[[FakeSurface, str], None]] = None
        self.family = family if family is not None else []
        self.family.append(self)

    # -- scripting helpers --

    def add(self, pattern: str, element: Optional[FakeElement] = None, **kwargs) -> FakeElement:
        element = element or FakeElement(**kwargs)
        self.elements.setdefault(pattern, []).append(element)
        return element

    def remove(self, pattern: str) -> None:
        self.elements.pop(pattern, None)

    # -- UISurface --

    async def navigate(self, url: str) -> None:
        if self.closed:
            raise SurfaceError("surface closed")
        self.visits.append(url)
        self.url = url
        if self.on_navigate is not None:
            self.on_navigate(self, url)

    async def locate(self, pattern: str) -> Optional[ElementHandle]:
        self.queries.append(pattern)
        found = self.elements.get(pattern)
        return found[0] if found else None

    async def locate_all(self, pattern: str) -> list[ElementHandle]:
        self.queries.append(pattern)
        return list(self.elements.get(pattern, []))

    async def wait_for(
        self, pattern: str, timeout: float, state: str = "visible"
    ) -> Optional[ElementHandle]:
        self.waits.append(pattern)
        found = self.elements.get(pattern)
        if not found:
            return None
        if state == "visible" and not found[0].visible:
            return None
        return found[0]

    async def wait_gone(self, pattern: str, timeout: float) -> bool:
        self.waits.append(pattern)
        return not self.elements.get(pattern)

    async def press_key(self, key: str) -> None:
        self.keys.append(key)
        if self.on_key is not None:
            self.on_key(self, key)

    def current_url(self) -> str:
        return self.url

    async def page_text(self) -> str:
        return self.text

    async def page_html(self) -> str:
        return f"<html><body>{self.text}</body></html>"

    async def screenshot(self, path: Path) -> None:
        path.write_bytes(b"\x89PNG")

    async def go_back(self) -> None:
        self.backs += 1

    async def open_sibling(self) -> UISurface:
        if self.sibling_error:
            raise SurfaceError("cannot open a new tab")
        if self.sibling_factory is not None:
            sibling = self.sibling_factory()
            self.family.append(sibling)
            sibling.family = self.family
            return sibling
        return FakeSurface(family=self.family)

    def siblings(self) -> list[UISurface]:
        return [s for s in self.family if not s.closed]

    async def storage_state(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{}")

    async def close(self) -> None:
        self.closed = True

    def is_closed(self) -> bool:
        return self.closed

    async def disable_fido(self) -> None:
        self.fido_disabled = True


class SpyResolver(SecondFactorResolver):
    """Resolver that records calls and returns canned results."""

    def __init__(self, result: bool = True, match: Optional[ChallengeMatch] = None) -> None:
        super().__init__([])
        self.result = result
        self.match = match
        self.probe_calls: list[Optional[tuple]] = []
        self.resolve_calls: list[Optional[tuple]] = []
        self.completed: list[ChallengeMatch] = []

    @property
    def invoked(self) -> bool:
        return bool(self.probe_calls or self.resolve_calls or self.completed)

    async def probe(self, surface, ctx, channels=None):
        self.probe_calls.append(tuple(channels) if channels is not None else None)
        return self.match

    async def resolve(self, surface, ctx, channels=None):
        self.resolve_calls.append(tuple(channels) if channels is not None else None)
        return self.result

    async def complete(self, surface, match):
        self.completed.append(match)
        return self.result


async def instant_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def make_sleeper(sleep=instant_sleep) -> Sleeper:
    return Sleeper(sleep=sleep, rng=random.Random(7))


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale.
    Resetting forces a fresh manager to be created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Flow fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface(url="https://rewards.bing.com/signin")


@pytest.fixture
def sleeper() -> Sleeper:
    """A sleeper whose pauses return immediately; durations land in ``history``."""
    return make_sleeper()


@pytest.fixture
def timing() -> TimingConfig:
    return TimingConfig()


@pytest.fixture
def ctx() -> ChallengeContext:
    return ChallengeContext(account_email="user@outlook.com", password="hunter2")


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to
    subdirectories of tmp_path so that tests never touch real user
    config, and clears the AUTHPILOT_* overrides.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("authpilot.config._is_xdg_platform", lambda: True)
    for var in ["AUTHPILOT_CONFIG", "AUTHPILOT_ACCOUNTS"]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a quiet, colourless OutputManager for tests that don't care about output."""
    output = OutputManager(no_color=True, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
