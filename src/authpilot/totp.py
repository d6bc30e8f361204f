"""RFC 6238 time-based one-time codes, computed with :mod:`pyotp`."""

from __future__ import annotations

import time
from typing import Optional

import pyotp
from pydantic import SecretStr


def _normalise(secret: str) -> str:
    return secret.replace(" ", "").strip().upper()


def generate_code(secret: SecretStr | str, at: Optional[float] = None) -> str:
    """Return the 6-digit code for *secret* in the 30-second window containing *at*.

    Args:
        secret: Base32 secret, optionally with spaces as shown by setup pages.
        at: Unix timestamp. Defaults to now.

    Raises:
        ValueError: If *secret* is not valid base32.
    """
    raw = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
    totp = pyotp.TOTP(_normalise(raw))
    try:
        return totp.at(int(at if at is not None else time.time()))
    except (TypeError, ValueError) as exc:
        # binascii.Error is a ValueError
        raise ValueError("TOTP secret is not valid base32") from exc


def seconds_remaining(at: Optional[float] = None, interval: int = 30) -> int:
    """Seconds until the current code rolls over."""
    now = at if at is not None else time.time()
    return interval - int(now) % interval
