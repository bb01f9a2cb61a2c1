# daystate/model.py
from __future__ import annotations

import copy
import json
import math
from typing import Any, Dict, Optional

from daystate.util.keys import iso_timestamp

try:
    import orjson  # type: ignore
except Exception:  # pragma: no cover
    orjson = None  # type: ignore

DAY_STATE_VERSION = "1.0"
STATE_FILE_SUFFIX = "-state.json"

DELETION_TEMPORARY = "temporary"
DELETION_PERMANENT = "permanent"

# Records are plain JSON-compatible dicts using the on-disk key names.
DayState = Dict[str, Any]
MonthlyState = Dict[str, Any]
MetaEntry = Dict[str, Any]

LIST_FIELDS = ("hiddenRoutines", "deletedInstances", "duplicatedInstances")
MAP_FIELDS = ("slotOverrides", "orders")
META_FIELDS = {"slotOverrides": "slotOverridesMeta", "orders": "ordersMeta"}

# Older files stored the meta value under a field-specific name.
_LEGACY_META_VALUE = {"slotOverridesMeta": "slotKey", "ordersMeta": "order"}


def empty_day_state() -> DayState:
    return {
        "hiddenRoutines": [],
        "deletedInstances": [],
        "duplicatedInstances": [],
        "slotOverrides": {},
        "orders": {},
    }


def empty_monthly_state(now_ms: int) -> MonthlyState:
    return {
        "days": {},
        "metadata": {"version": DAY_STATE_VERSION, "lastUpdated": iso_timestamp(now_ms)},
    }


def is_number(v: Any) -> bool:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return False
    return math.isfinite(v)


def as_ms(v: Any) -> int:
    """Timestamp field -> int ms; anything unusable counts as 0."""
    if is_number(v):
        return int(v)
    return 0


def _is_order_value(v: Any) -> bool:
    return is_number(v)


def _is_slot_value(v: Any) -> bool:
    return isinstance(v, str)


def normalize_hidden_routine(entry: Any) -> Optional[Dict[str, Any]]:
    if isinstance(entry, str):
        path = entry.strip()
        return {"path": path, "instanceId": None} if path else None
    if not isinstance(entry, dict):
        return None
    path = entry.get("path")
    if not isinstance(path, str) or not path.strip():
        return None
    out = dict(entry)
    out["path"] = path.strip()
    return out


def _normalize_meta_map(raw: Any, meta_field: str) -> Dict[str, MetaEntry]:
    out: Dict[str, MetaEntry] = {}
    if not isinstance(raw, dict):
        return out
    legacy = _LEGACY_META_VALUE[meta_field]
    check = _is_order_value if meta_field == "ordersMeta" else _is_slot_value
    for key, entry in raw.items():
        if not isinstance(key, str) or not isinstance(entry, dict):
            continue
        updated_at = entry.get("updatedAt")
        if not is_number(updated_at):
            continue
        value = entry.get("value", entry.get(legacy))
        meta: MetaEntry = {"updatedAt": int(updated_at)}
        if check(value):
            meta["value"] = value
        out[key] = meta
    return out


def normalize_day_state(value: Any) -> DayState:
    """Coerce an arbitrary decoded JSON value into a well-formed DayState.

    Unknown or mistyped entries are dropped rather than raising: a single bad
    record must not make the whole month unreadable.
    """
    day = empty_day_state()
    if not isinstance(value, dict):
        return day

    hidden = value.get("hiddenRoutines")
    if isinstance(hidden, list):
        day["hiddenRoutines"] = [h for h in (normalize_hidden_routine(e) for e in hidden) if h is not None]

    deleted = value.get("deletedInstances")
    if isinstance(deleted, list):
        day["deletedInstances"] = [dict(e) for e in deleted if isinstance(e, dict)]

    duplicated = value.get("duplicatedInstances")
    if isinstance(duplicated, list):
        day["duplicatedInstances"] = [
            dict(e) for e in duplicated if isinstance(e, dict) and isinstance(e.get("instanceId"), str) and e["instanceId"]
        ]

    slots = value.get("slotOverrides")
    if isinstance(slots, dict):
        day["slotOverrides"] = {k: v for k, v in slots.items() if isinstance(k, str) and _is_slot_value(v)}

    orders = value.get("orders")
    if isinstance(orders, dict):
        day["orders"] = {k: v for k, v in orders.items() if isinstance(k, str) and _is_order_value(v)}

    for meta_field in META_FIELDS.values():
        meta = _normalize_meta_map(value.get(meta_field), meta_field)
        if meta:
            day[meta_field] = meta

    return day


def finalize_day_state(day: DayState) -> DayState:
    """Drop empty meta maps so an untouched day compares equal to an empty one."""
    for meta_field in META_FIELDS.values():
        if meta_field in day and not day[meta_field]:
            del day[meta_field]
    return day


def normalize_monthly_state(obj: Any, now_ms: int) -> MonthlyState:
    month = empty_monthly_state(now_ms)
    if not isinstance(obj, dict):
        return month

    days = obj.get("days")
    if isinstance(days, dict):
        for key, value in days.items():
            if isinstance(key, str):
                month["days"][key] = normalize_day_state(value)

    meta = obj.get("metadata")
    if isinstance(meta, dict):
        version = meta.get("version")
        if isinstance(version, str) and version.strip():
            month["metadata"]["version"] = version
        last = meta.get("lastUpdated")
        if isinstance(last, str) and last.strip():
            month["metadata"]["lastUpdated"] = last
    return month


def ensure_metadata(month: MonthlyState, now_ms: int) -> None:
    meta = month.get("metadata")
    if not isinstance(meta, dict):
        month["metadata"] = {"version": DAY_STATE_VERSION, "lastUpdated": iso_timestamp(now_ms)}
        return
    if not meta.get("version"):
        meta["version"] = DAY_STATE_VERSION
    if not meta.get("lastUpdated"):
        meta["lastUpdated"] = iso_timestamp(now_ms)


def touch(month: MonthlyState, now_ms: int) -> None:
    ensure_metadata(month, now_ms)
    month["metadata"]["lastUpdated"] = iso_timestamp(now_ms)


def clone_day_state(state: DayState) -> DayState:
    return copy.deepcopy(state)


def clone_monthly_state(state: MonthlyState) -> MonthlyState:
    return copy.deepcopy(state)


def fingerprint(obj: Any) -> bytes:
    """Canonical serialization used for structural equality."""
    if orjson is not None:
        try:
            return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)
        except TypeError:
            pass
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def day_states_equal(a: DayState, b: DayState) -> bool:
    return fingerprint(a) == fingerprint(b)


def serialize_monthly_state(month: MonthlyState) -> str:
    return json.dumps(month, indent=2, ensure_ascii=False)


def meta_map(day: DayState, field: str) -> Dict[str, MetaEntry]:
    m = day.get(META_FIELDS[field])
    return m if isinstance(m, dict) else {}
