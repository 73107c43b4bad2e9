"""Normalization helpers for Battle.net payloads.

All functions accept loosely-typed input (the API omits fields freely) and
return the appropriate type or None.
"""

from __future__ import annotations

import math
import re
import unicodedata
import urllib.parse
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: realm / character slugs (Battle.net URL path segments)
# ---------------------------------------------------------------------------

def realm_slug(value: str | None) -> str | None:
    """Lowercase, hyphenated realm slug.  "Argent Dawn" → "argent-dawn"."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFC", v).lower()
    v = v.replace("'", "").replace("’", "").replace(".", "")
    v = re.sub(r"\s+", "-", v)
    return urllib.parse.quote(v, safe="-")


def character_slug(value: str | None) -> str | None:
    """NFC-normalized, lowercased, URL-encoded character name."""
    v = trim(value)
    if v is None:
        return None
    return urllib.parse.quote(unicodedata.normalize("NFC", v).lower(), safe="")


# ---------------------------------------------------------------------------
# Rule 3: timestamps
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any) -> datetime | None:
    """Parse an API timestamp into an aware UTC datetime.

    Accepts epoch milliseconds (int/float or digit string), ISO-8601
    strings and RFC 1123 HTTP dates (the Last-Modified header).
    Anything unparseable → None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not value > 0:
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    v = trim(value)
    if v is None:
        return None
    if v.isdigit():
        try:
            return parse_timestamp(int(v))
        except ValueError:
            return None
    try:
        parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(v)
        except (TypeError, ValueError):
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Rule 4: numbers
# ---------------------------------------------------------------------------

def as_int(value: Any, default: int = 0) -> int:
    """Coerce to int; None / garbage → default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def as_number(value: Any, default: float = 0) -> float:
    """Coerce to a finite float; NaN / infinity count as garbage."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (2.5 → 3), unlike round()."""
    return int(math.floor(value + 0.5))


def percentage(completed: int, total: int) -> int:
    """Whole-number completion percentage; 0 when total is 0."""
    if total <= 0:
        return 0
    return round_half_up(completed / total * 100)


# ---------------------------------------------------------------------------
# Rule 5: nested lookups
# ---------------------------------------------------------------------------

def dig(data: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested dicts; any missing / non-dict level → default.

    >>> dig({"a": {"b": 1}}, "a", "b")
    1
    """
    cur = data
    for key in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(key)
        if cur is None:
            return default
    return cur


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []
