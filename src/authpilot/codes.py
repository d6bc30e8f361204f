"""Text heuristics for emailed sign-in codes.

Everything here is pure and synchronous so it can be tested without a
browser:

* :func:`extract_code` applies an ordered list of phrase patterns, most
  specific first. The brand-qualified pattern comes before the generic
  ones so that promotional numbers elsewhere in a message are not picked
  up by a loose ``code: NNNN`` match.
* :func:`extract_code_with_fallback` additionally accepts the *last* bare
  4-8 digit run. This is intentionally permissive: a year such as ``2024``
  in a marketing mail will be returned.
* :func:`parse_timestamp` understands the date strings webmail UIs put in
  ``title`` attributes and returns ``0.0`` for anything it cannot read.
* :func:`rank_newest_first`, :func:`best_index` and :func:`neighbour_order`
  define the deterministic order in which threads and messages are tried.

Example::

    >>> extract_code("Your Microsoft single-use code is 483921. Thanks")
    '483921'
    >>> extract_code("random marketing digits 2024 offer") is None
    True
    >>> extract_code_with_fallback("random marketing digits 2024 offer")
    '2024'
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from functools import lru_cache
from typing import Callable, Optional, Sequence, TypeVar

T = TypeVar("T")

_DIGITS = r"([0-9]{4,8})(?!\d)"
_LEAD = r"\s*(?:is|:)?\s*[:\-\s]*"

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_DIGIT_RUN_RE = re.compile(r"(?<!\d)\d{4,8}(?!\d)")
_PARENS_RE = re.compile(r"\s*\([^)]*\)\s*$")
_WEEKDAY_RE = re.compile(r"^(?:mon|tue|wed|thu|fri|sat|sun)[a-z]*\.?,?\s+", re.IGNORECASE)

_DATETIME_FORMATS = (
    "%b %d, %Y, %I:%M %p",
    "%b %d, %Y %I:%M %p",
    "%d %b %Y, %H:%M",
    "%d %b %Y %H:%M",
    "%B %d, %Y, %I:%M %p",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%y",
    "%b %d, %Y",
)
_TIME_ONLY_FORMATS = ("%I:%M %p", "%H:%M")


@lru_cache(maxsize=8)
def build_code_patterns(brand: str = "Microsoft") -> tuple[tuple[str, re.Pattern[str]], ...]:
    """Return ``(name, regex)`` pairs in the order they are tried.

    Args:
        brand: Provider name that qualifies the most specific pattern.
    """
    brand_re = re.escape(brand)
    specs = [
        (f"{brand} single-use code", rf"\b{brand_re}\b.{{0,80}}?single[-\s]?use\s+code{_LEAD}{_DIGITS}"),
        ("your single-use code is", rf"your\s+single[-\s]?use\s+code{_LEAD}{_DIGITS}"),
        ("single-use code", rf"single[-\s]?use\s+code{_LEAD}{_DIGITS}"),
        ("one-time code", rf"your\s+one[-\s]?time\s+code{_LEAD}{_DIGITS}"),
        ("verification code", rf"verification\s+code{_LEAD}{_DIGITS}"),
        ("code is", rf"(?:code\s*(?:is|:)|is:)\s*([0-9]{{4,8}})\b"),
        ("code:", rf"code[:\s]*{_DIGITS}"),
    ]
    return tuple((name, re.compile(rx, re.IGNORECASE | re.DOTALL)) for name, rx in specs)


def normalise_text(text: str) -> str:
    """Collapse non-breaking spaces, carriage returns and runs of whitespace."""
    text = text.replace(" ", " ").replace("\r", " ")
    return re.sub(r"\s+", " ", text).strip()


def match_code(text: str, brand: str = "Microsoft") -> Optional[tuple[str, str]]:
    """Return ``(code, pattern_name)`` for the first phrase pattern that matches."""
    if not text:
        return None
    txt = normalise_text(text)
    for name, pattern in build_code_patterns(brand):
        m = pattern.search(txt)
        if m:
            return m.group(1), name
    return None


def extract_code(text: str, brand: str = "Microsoft") -> Optional[str]:
    """Return the sign-in code announced by a phrase in *text*, or ``None``."""
    found = match_code(text, brand)
    return found[0] if found else None


def last_digit_run(text: str) -> Optional[str]:
    """Return the last standalone run of 4 to 8 digits in *text*."""
    if not text:
        return None
    runs = _DIGIT_RUN_RE.findall(text)
    return runs[-1] if runs else None


def extract_code_with_fallback(text: str, brand: str = "Microsoft") -> Optional[str]:
    """Like :func:`extract_code`, falling back to :func:`last_digit_run`."""
    return extract_code(text, brand) or last_digit_run(text)


def find_email_addresses(text: str) -> list[str]:
    """Return every email-shaped token in *text*, in order, without duplicates."""
    seen: dict[str, None] = {}
    for m in _EMAIL_RE.finditer(text or ""):
        seen.setdefault(m.group(0), None)
    return list(seen)


# --- Timestamps ---


def parse_timestamp(text: Optional[str], now: Optional[datetime] = None) -> float:
    """Parse a webmail date string into a Unix timestamp.

    Understands RFC 2822 dates, ISO 8601, the ``"Oct 14, 2025, 9:41 AM"``
    family (with or without a leading weekday or a trailing
    ``"(2 hours ago)"``), and bare times of day, which are taken to be on
    the date of *now*.

    Returns:
        Seconds since the epoch, or ``0.0`` if *text* cannot be parsed.
    """
    if not text:
        return 0.0
    raw = " ".join(text.split())
    raw = _PARENS_RE.sub("", raw).replace(" ", " ").strip()
    if not raw:
        return 0.0

    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        pass

    # Explicit formats first: parsedate drops the AM/PM marker of these.
    candidate = _WEEKDAY_RE.sub("", raw)
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).timestamp()
        except ValueError:
            continue

    try:
        return parsedate_to_datetime(raw).timestamp()
    except (TypeError, ValueError, IndexError):
        pass

    reference = now or datetime.now()
    for fmt in _TIME_ONLY_FORMATS:
        try:
            clock = datetime.strptime(candidate.upper(), fmt)
        except ValueError:
            continue
        stamp = reference.replace(hour=clock.hour, minute=clock.minute, second=0, microsecond=0)
        if stamp > reference + timedelta(minutes=5):
            stamp -= timedelta(days=1)
        return stamp.timestamp()

    return 0.0


# --- Ranking ---


def rank_newest_first(items: Sequence[T], key: Callable[[T], float]) -> list[T]:
    """Sort *items* by ``key`` descending, keeping DOM order among equal keys."""
    return sorted(items, key=key, reverse=True)


def best_index(timestamps: Sequence[float]) -> int:
    """Index of the highest timestamp; the earliest index wins ties.

    Raises:
        ValueError: If *timestamps* is empty.
    """
    if not timestamps:
        raise ValueError("no candidates to rank")
    best = 0
    for i, ts in enumerate(timestamps):
        if ts > timestamps[best]:
            best = i
    return best


def neighbour_order(best: int, count: int) -> list[int]:
    """Return indices starting at *best*, then alternating after/before, widening.

    >>> neighbour_order(2, 5)
    [2, 3, 1, 4, 0]
    """
    order = [best]
    for offset in range(1, count):
        if best + offset < count:
            order.append(best + offset)
        if best - offset >= 0:
            order.append(best - offset)
    return order
