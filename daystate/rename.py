# daystate/rename.py
from __future__ import annotations

from typing import Any, Dict

from daystate.model import META_FIELDS, DayState, MonthlyState, touch
from daystate.sections import ORDER_KEY_SEP


def _rename_plain_key(key: str, old: str, new: str) -> str:
    return new if key == old else key


def _rename_order_key(key: str, old: str, new: str) -> str:
    if key == old:
        return new
    prefix = f"{old}{ORDER_KEY_SEP}"
    if key.startswith(prefix):
        return f"{new}{ORDER_KEY_SEP}{key[len(prefix):]}"
    return key


def _rename_keys(m: Any, old: str, new: str, rename) -> tuple[Dict[str, Any], bool]:
    if not isinstance(m, dict):
        return {}, False
    out: Dict[str, Any] = {}
    changed = False
    for k, v in m.items():
        nk = rename(k, old, new)
        changed = changed or nk != k
        out[nk] = v
    return out, changed


def rename_paths_in_day_state(state: DayState, old: str, new: str) -> bool:
    """Rewrite task path references in place. Returns True if anything changed.

    Only path references move; timestamps, ids and values are left untouched.
    """
    if not state or old == new:
        return False
    mutated = False

    for entry in state.get("hiddenRoutines") or []:
        if isinstance(entry, dict) and isinstance(entry.get("path"), str) and entry["path"].strip() == old:
            entry["path"] = new
            mutated = True

    for entry in state.get("deletedInstances") or []:
        if isinstance(entry, dict) and isinstance(entry.get("path"), str) and entry["path"].strip() == old:
            entry["path"] = new
            mutated = True

    for entry in state.get("duplicatedInstances") or []:
        if isinstance(entry, dict) and isinstance(entry.get("originalPath"), str) and entry["originalPath"].strip() == old:
            entry["originalPath"] = new
            mutated = True

    for field, rename in (("slotOverrides", _rename_plain_key), ("orders", _rename_order_key)):
        if field in state:
            state[field], changed = _rename_keys(state.get(field), old, new, rename)
            mutated = mutated or changed
        meta_field = META_FIELDS[field]
        if meta_field in state:
            state[meta_field], changed = _rename_keys(state.get(meta_field), old, new, rename)
            mutated = mutated or changed

    return mutated


def rename_paths_in_monthly_state(month: MonthlyState, old: str, new: str, now_ms: int) -> bool:
    if not month or old == new:
        return False
    mutated = False
    days = month.get("days")
    if isinstance(days, dict):
        for state in days.values():
            if state:
                mutated = rename_paths_in_day_state(state, old, new) or mutated
    if mutated:
        touch(month, now_ms)
    return mutated
