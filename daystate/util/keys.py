# daystate/util/keys.py
from __future__ import annotations

import datetime as dt
import re
import time
from typing import Union

DateLike = Union[str, dt.date]

_DATE_KEY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_date_key(s: str) -> dt.date:
    """Parse a `YYYY-MM-DD` date key.

    Raises ValueError for anything else (including impossible dates like
    2026-02-30).
    """
    m = _DATE_KEY_RE.match(str(s).strip())
    if not m:
        raise ValueError(f"Invalid date key: {s!r}")
    try:
        return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError as ex:
        raise ValueError(f"Invalid date key: {s!r}") from ex


def is_month_key(s: object) -> bool:
    if not isinstance(s, str):
        return False
    m = _MONTH_KEY_RE.match(s)
    return bool(m) and 1 <= int(m.group(2)) <= 12


def date_key(d: DateLike) -> str:
    """Normalize a date, datetime or date key string to `YYYY-MM-DD`."""
    if isinstance(d, dt.datetime):
        d = d.date()
    if isinstance(d, dt.date):
        return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"
    return date_key(parse_date_key(d))


def month_key(d: DateLike) -> str:
    k = date_key(d)
    return k[:7]


def shift_month(mk: str, delta: int) -> str:
    if not is_month_key(mk):
        raise ValueError(f"Invalid month key: {mk!r}")
    y, m = int(mk[:4]), int(mk[5:7])
    idx = y * 12 + (m - 1) + int(delta)
    return f"{idx // 12:04d}-{idx % 12 + 1:02d}"


def iso_timestamp(ms: int) -> str:
    """Epoch milliseconds -> `2026-02-19T00:00:00.000Z`."""
    t = dt.datetime.fromtimestamp(ms / 1000.0, tz=dt.timezone.utc)
    return t.strftime("%Y-%m-%dT%H:%M:%S.") + f"{t.microsecond // 1000:03d}Z"
