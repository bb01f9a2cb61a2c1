# daystate/sections.py
from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from daystate.model import META_FIELDS, DayState, clone_day_state, finalize_day_state

NO_SLOT = "none"
ORDER_KEY_SEP = "::"

Boundary = Dict[str, int]

DEFAULT_BOUNDARIES: tuple[Boundary, ...] = (
    {"hour": 0, "minute": 0},
    {"hour": 8, "minute": 0},
    {"hour": 12, "minute": 0},
    {"hour": 16, "minute": 0},
)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?$")
_TZ_SUFFIX_RE = re.compile(r"(?:Z|[+-]\d{2}:?\d{2})$")


class SectionProvider(Protocol):
    def get_slot_keys(self) -> Sequence[str]: ...


def sanitize_boundaries(raw: Any) -> Optional[List[Boundary]]:
    """Validate section boundaries; None means "use the defaults".

    Requires at least two boundaries, integer hour/minute, the first at 00:00,
    strictly ascending.
    """
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        return None
    out: List[Boundary] = []
    for item in raw:
        if not isinstance(item, dict):
            return None
        h, m = item.get("hour"), item.get("minute")
        if isinstance(h, bool) or isinstance(m, bool) or not isinstance(h, int) or not isinstance(m, int):
            return None
        if not (0 <= h <= 23 and 0 <= m <= 59):
            return None
        out.append({"hour": h, "minute": m})

    if out[0] != {"hour": 0, "minute": 0}:
        return None
    minutes = [b["hour"] * 60 + b["minute"] for b in out]
    if any(b <= a for a, b in zip(minutes, minutes[1:])):
        return None
    return out


def _fmt(b: Boundary) -> str:
    return f"{b['hour']}:{b['minute']:02d}"


def parse_time_to_minutes(s: Any) -> Optional[int]:
    if not isinstance(s, str) or not s.strip():
        return None
    part = s.strip()
    if re.match(r"^\d{4}-\d{2}-\d{2}T", part):
        try:
            t = dt.datetime.fromisoformat(part.replace("Z", "+00:00"))
        except ValueError:
            t = None
        if t is not None:
            if t.tzinfo is not None:
                t = t.astimezone()
            return t.hour * 60 + t.minute
    if "T" in part:
        part = part.split("T", 1)[1]
    part = _TZ_SUFFIX_RE.sub("", part)
    m = _TIME_RE.match(part)
    if not m:
        return None
    h, mi = int(m.group(1)), int(m.group(2))
    sec = int(m.group(3)) if m.group(3) else 0
    if not (0 <= h <= 23 and 0 <= mi <= 59 and 0 <= sec <= 59):
        return None
    return h * 60 + mi


class SectionConfig:
    """Named time-of-day buckets ("sections") derived from boundaries.

    With the default boundaries the slot keys are
    `0:00-8:00`, `8:00-12:00`, `12:00-16:00`, `16:00-0:00`.
    """

    def __init__(self, boundaries: Any = None) -> None:
        self.update_boundaries(boundaries)

    def update_boundaries(self, boundaries: Any = None) -> None:
        self._boundaries = sanitize_boundaries(boundaries) or [dict(b) for b in DEFAULT_BOUNDARIES]
        self._minutes = [b["hour"] * 60 + b["minute"] for b in self._boundaries]
        n = len(self._boundaries)
        self._slot_keys = [
            f"{_fmt(self._boundaries[i])}-{_fmt(self._boundaries[(i + 1) % n])}" for i in range(n)
        ]

    def get_boundaries(self) -> List[Boundary]:
        return [dict(b) for b in self._boundaries]

    def get_slot_keys(self) -> List[str]:
        return list(self._slot_keys)

    def is_valid_slot_key(self, slot_key: str) -> bool:
        return slot_key == NO_SLOT or slot_key in self._slot_keys

    def _slot_index(self, minutes: int) -> int:
        for i in range(len(self._minutes) - 1, -1, -1):
            if minutes >= self._minutes[i]:
                return i
        return len(self._minutes) - 1

    def get_slot_from_time(self, time_str: str) -> str:
        minutes = parse_time_to_minutes(time_str)
        if minutes is None:
            return self._slot_keys[0]
        return self._slot_keys[self._slot_index(minutes)]

    def migrate_slot_key(self, old_key: str) -> str:
        """Map a slot key from an older configuration onto the current one by start time."""
        if self.is_valid_slot_key(old_key):
            return old_key
        start = old_key.split("-", 1)[0] if "-" in old_key else ""
        if not start:
            return NO_SLOT
        return self.get_slot_from_time(start)

    def migrate_order_key(self, old_key: str) -> str:
        if ORDER_KEY_SEP not in old_key:
            return old_key
        task_part, slot_part = old_key.rsplit(ORDER_KEY_SEP, 1)
        return f"{task_part}{ORDER_KEY_SEP}{self.migrate_slot_key(slot_part)}"


class SectionValidator:
    """Drops order/slot keys that reference a section that is no longer configured."""

    def __init__(self, provider: SectionProvider) -> None:
        self.provider = provider

    def _valid_slots(self) -> set[str]:
        return set(self.provider.get_slot_keys()) | {NO_SLOT}

    def is_valid_slot_value(self, slot_key: Any, valid: Optional[set[str]] = None) -> bool:
        return isinstance(slot_key, str) and slot_key in (valid if valid is not None else self._valid_slots())

    def is_valid_order_key(self, key: str, valid: Optional[set[str]] = None) -> bool:
        if ORDER_KEY_SEP not in key:
            return True
        slot = key.rsplit(ORDER_KEY_SEP, 1)[1]
        return slot in (valid if valid is not None else self._valid_slots())

    def sanitize_day(self, state: DayState) -> DayState:
        valid = self._valid_slots()
        day = clone_day_state(state)

        day["orders"] = {k: v for k, v in (day.get("orders") or {}).items() if self.is_valid_order_key(k, valid)}
        orders_meta = day.get(META_FIELDS["orders"])
        if isinstance(orders_meta, dict):
            day[META_FIELDS["orders"]] = {k: v for k, v in orders_meta.items() if self.is_valid_order_key(k, valid)}

        day["slotOverrides"] = {
            k: v for k, v in (day.get("slotOverrides") or {}).items() if self.is_valid_slot_value(v, valid)
        }
        slot_meta = day.get(META_FIELDS["slotOverrides"])
        if isinstance(slot_meta, dict):
            day[META_FIELDS["slotOverrides"]] = {
                k: v
                for k, v in slot_meta.items()
                if "value" not in v or self.is_valid_slot_value(v["value"], valid)
            }
        return finalize_day_state(day)
