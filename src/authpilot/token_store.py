"""Persistent store for mobile-scope access tokens, one file per account.

Tokens live in ``~/.local/share/authpilot/tokens/<account>.json`` (XDG) or
the platform-equivalent directory. Files are written atomically via
:func:`tempfile.NamedTemporaryFile` and ``os.replace`` with ``0o600``
permissions so that tokens are never world-readable, even momentarily.

See Also:
    :class:`~authpilot.oauth.MobileTokenExchange` -- produces the entries.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from authpilot.config import get_data_dir

_EXPIRY_MARGIN = timedelta(seconds=60)


class TokenEntry(BaseModel):
    """An access token returned by the token endpoint.

    Attributes:
        access_token: The bearer token.
        token_type: Usually ``"bearer"``.
        scope: Scope granted by the endpoint.
        expires_at: UTC expiry time. ``None`` means unknown; such tokens are
            treated as valid.
        refresh_token: Present when the endpoint granted offline access.
        metadata: Remaining fields from the token response.
    """

    access_token: str
    token_type: str = "bearer"
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = Field(default=None, repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: dict[str, Any], now: Optional[datetime] = None) -> TokenEntry:
        """Build an entry from a token endpoint JSON body."""
        now = now or datetime.now(timezone.utc)
        expires_in = payload.get("expires_in")
        expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        known = {"access_token", "token_type", "scope", "expires_in", "refresh_token"}
        return cls(
            access_token=payload["access_token"],
            token_type=payload.get("token_type", "bearer"),
            scope=payload.get("scope"),
            expires_at=expires_at,
            refresh_token=payload.get("refresh_token"),
            metadata={k: v for k, v in payload.items() if k not in known},
        )


def _tokens_dir() -> Path:
    path = get_data_dir() / "tokens"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _file_stem(email: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", email.lower()).strip("_")[:48]
    digest = hashlib.sha256(email.lower().encode("utf-8")).hexdigest()[:10]
    return f"{slug}-{digest}"


class TokenStore:
    """Read/write the cached token for a single account.

    Args:
        email: Account the token belongs to.

    Example::

        store = TokenStore("user@example.com")
        store.save(TokenEntry(access_token="tok123"))
        assert store.load().access_token == "tok123"
    """

    def __init__(self, email: str) -> None:
        self._email = email
        self._path = _tokens_dir() / f"{_file_stem(email)}.json"

    @property
    def path(self) -> Path:
        return self._path

    def save(self, entry: TokenEntry) -> None:
        """Persist *entry* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written.
        """
        text = json.dumps(entry.model_dump(mode="json"), indent=2) + "\n"
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd = None
        tmp_path: Optional[str] = None
        try:
            fd = tempfile.NamedTemporaryFile(
                mode="w",
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            )
            tmp_path = fd.name
            # Restrict permissions before any secret is written
            os.chmod(tmp_path, 0o600)
            fd.write(text)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            fd = None
            os.replace(tmp_path, self._path)
        except BaseException:
            if fd is not None:
                fd.close()
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise

    def load(self) -> Optional[TokenEntry]:
        """Return the stored entry, or ``None`` if missing or unreadable."""
        if not self._path.is_file():
            return None
        try:
            return TokenEntry.model_validate(json.loads(self._path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValueError, OSError):
            return None

    def valid_token(self, now: Optional[datetime] = None) -> Optional[str]:
        """Return the cached access token if it is still valid for at least a minute."""
        entry = self.load()
        if entry is None:
            return None
        if entry.expires_at is None:
            return entry.access_token
        now = now or datetime.now(timezone.utc)
        expires = entry.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return entry.access_token if now + _EXPIRY_MARGIN < expires else None

    def clear(self) -> None:
        """Delete the stored token file if it exists."""
        if self._path.is_file():
            self._path.unlink()
