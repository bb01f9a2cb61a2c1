"""Monthly state file validation helpers (library-facing).

The store itself is lenient (it normalizes whatever it reads); these checks
report what a strict reader would reject, for tools and tests.
"""

from __future__ import annotations

from typing import Any, Dict, List

from daystate.model import DELETION_PERMANENT, DELETION_TEMPORARY, META_FIELDS, is_number
from daystate.util.keys import date_key


class StateValidationError(ValueError):
    """Raised when a monthly state file fails validation."""


def _require(cond: bool, msg: str, errs: List[str]) -> None:
    if not cond:
        errs.append(msg)


def _validate_meta(meta: Any, *, label: str, value_check, errs: List[str]) -> None:
    if not isinstance(meta, dict):
        errs.append(f"{label} must be dict")
        return
    for k, entry in meta.items():
        if not isinstance(entry, dict):
            errs.append(f"{label}[{k!r}] must be dict")
            continue
        _require(is_number(entry.get("updatedAt")), f"{label}[{k!r}].updatedAt must be a number", errs)
        if "value" in entry:
            _require(value_check(entry["value"]), f"{label}[{k!r}].value has wrong type", errs)


def validate_day_state(day: Any, *, label: str = "day") -> List[str]:
    errs: List[str] = []
    if not isinstance(day, dict):
        return [f"{label}: must be dict"]

    for name in ("hiddenRoutines", "deletedInstances", "duplicatedInstances"):
        _require(isinstance(day.get(name), list), f"{label}: {name} must be list", errs)
    for name in ("slotOverrides", "orders"):
        _require(isinstance(day.get(name), dict), f"{label}: {name} must be dict", errs)

    for i, h in enumerate(day.get("hiddenRoutines") or []):
        if isinstance(h, str):
            # legacy: bare path
            _require(bool(h.strip()), f"{label}: hiddenRoutines[{i}] must be non-empty", errs)
            continue
        if not isinstance(h, dict):
            errs.append(f"{label}: hiddenRoutines[{i}] must be dict or string")
            continue
        p = h.get("path")
        _require(isinstance(p, str) and bool(p.strip()), f"{label}: hiddenRoutines[{i}].path must be non-empty string", errs)
        for ts in ("hiddenAt", "restoredAt"):
            if h.get(ts) is not None:
                _require(is_number(h[ts]), f"{label}: hiddenRoutines[{i}].{ts} must be a number", errs)

    for i, d in enumerate(day.get("deletedInstances") or []):
        if not isinstance(d, dict):
            errs.append(f"{label}: deletedInstances[{i}] must be dict")
            continue
        _require(
            d.get("deletionType") in (DELETION_TEMPORARY, DELETION_PERMANENT),
            f"{label}: deletedInstances[{i}].deletionType must be 'temporary' or 'permanent'",
            errs,
        )
        _require(
            any(isinstance(d.get(k), str) and d[k].strip() for k in ("path", "instanceId", "taskId")),
            f"{label}: deletedInstances[{i}] needs path, instanceId or taskId",
            errs,
        )
        for ts in ("deletedAt", "restoredAt", "timestamp"):
            if d.get(ts) is not None:
                _require(is_number(d[ts]), f"{label}: deletedInstances[{i}].{ts} must be a number", errs)

    for i, d in enumerate(day.get("duplicatedInstances") or []):
        if not isinstance(d, dict):
            errs.append(f"{label}: duplicatedInstances[{i}] must be dict")
            continue
        iid = d.get("instanceId")
        _require(isinstance(iid, str) and bool(iid), f"{label}: duplicatedInstances[{i}].instanceId must be non-empty string", errs)

    for k, v in (day.get("slotOverrides") or {}).items() if isinstance(day.get("slotOverrides"), dict) else ():
        _require(isinstance(v, str), f"{label}: slotOverrides[{k!r}] must be string", errs)
    for k, v in (day.get("orders") or {}).items() if isinstance(day.get("orders"), dict) else ():
        _require(is_number(v), f"{label}: orders[{k!r}] must be a number", errs)

    if META_FIELDS["slotOverrides"] in day:
        _validate_meta(
            day[META_FIELDS["slotOverrides"]],
            label=f"{label}: slotOverridesMeta",
            value_check=lambda v: isinstance(v, str),
            errs=errs,
        )
    if META_FIELDS["orders"] in day:
        _validate_meta(day[META_FIELDS["orders"]], label=f"{label}: ordersMeta", value_check=is_number, errs=errs)

    return errs


def validate_monthly_state(obj: Any, *, label: str = "state") -> List[str]:
    if not isinstance(obj, dict):
        return [f"{label}: monthly state must be a dict/object"]
    errs: List[str] = []

    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        errs.append(f"{label}: metadata must be dict")
    else:
        v = meta.get("version")
        _require(isinstance(v, str) and bool(v.strip()), f"{label}: metadata.version must be non-empty string", errs)
        lu = meta.get("lastUpdated")
        _require(isinstance(lu, str) and bool(lu.strip()), f"{label}: metadata.lastUpdated must be non-empty string", errs)

    days = obj.get("days")
    if not isinstance(days, dict):
        errs.append(f"{label}: days must be dict")
        return errs

    months = set()
    for dk, day in days.items():
        try:
            canonical = date_key(dk)
        except (TypeError, ValueError):
            errs.append(f"{label}: invalid date key {dk!r}")
            continue
        _require(canonical == dk, f"{label}: date key {dk!r} is not YYYY-MM-DD", errs)
        months.add(canonical[:7])
        errs.extend(validate_day_state(day, label=f"{label}.days[{dk}]"))

    _require(len(months) <= 1, f"{label}: days span more than one month: {sorted(months)}", errs)
    return errs


def assert_valid_monthly_state(obj: Any) -> None:
    if not isinstance(obj, dict):
        raise StateValidationError("monthly state must be a JSON object")
    errs = validate_monthly_state(obj)
    if errs:
        raise StateValidationError(errs[0])


__all__ = [
    "StateValidationError",
    "assert_valid_monthly_state",
    "validate_day_state",
    "validate_monthly_state",
]
