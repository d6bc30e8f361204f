"""Tests for the per-account token cache."""

from __future__ import annotations

import stat
from datetime import datetime, timedelta, timezone

from authpilot.token_store import TokenEntry, TokenStore

NOW = datetime(2025, 10, 14, 9, 0, tzinfo=timezone.utc)


class TestTokenEntry:
    def test_from_response(self) -> None:
        entry = TokenEntry.from_response(
            {"access_token": "tok", "expires_in": "3600", "scope": "s", "foci": "1"}, now=NOW
        )
        assert entry.access_token == "tok"
        assert entry.token_type == "bearer"
        assert entry.expires_at == NOW + timedelta(hours=1)
        assert entry.metadata == {"foci": "1"}

    def test_refresh_token_hidden_from_repr(self) -> None:
        entry = TokenEntry(access_token="tok", refresh_token="very-secret")
        assert "very-secret" not in repr(entry)


class TestTokenStore:
    def test_save_and_load(self, isolated_config) -> None:
        store = TokenStore("User@Example.com")
        store.save(TokenEntry(access_token="tok123"))

        assert store.load().access_token == "tok123"
        assert TokenStore("user@example.com").path == store.path
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600
        assert list(store.path.parent.glob("*.tmp")) == []

    def test_missing_and_corrupt(self, isolated_config) -> None:
        store = TokenStore("user@example.com")
        assert store.load() is None
        store.path.write_text("{not json")
        assert store.load() is None
        assert store.valid_token() is None

    def test_expiry_margin(self, isolated_config) -> None:
        store = TokenStore("user@example.com")
        store.save(TokenEntry(access_token="tok", expires_at=NOW + timedelta(minutes=5)))

        assert store.valid_token(now=NOW) == "tok"
        assert store.valid_token(now=NOW + timedelta(minutes=4, seconds=30)) is None
        assert store.valid_token(now=NOW + timedelta(hours=1)) is None

    def test_unknown_expiry_is_valid(self, isolated_config) -> None:
        store = TokenStore("user@example.com")
        store.save(TokenEntry(access_token="tok"))
        assert store.valid_token(now=NOW) == "tok"

    def test_clear(self, isolated_config) -> None:
        store = TokenStore("user@example.com")
        store.save(TokenEntry(access_token="tok"))
        store.clear()
        assert store.load() is None
        store.clear()
