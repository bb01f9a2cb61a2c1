"""Field-level conflict resolution for day states.

Every merger here is a pure function over plain records: no I/O, no clock, no
shared state. Collections merge as OR-Sets with tombstones; scalar maps merge
per key as last-writer-wins on `updatedAt` metadata.

Timestamps are epoch milliseconds. For hide/restore and delete/restore pairs
the merged entry keeps the max of each timestamp, so whichever operation
happened last decides the entry's effective state no matter which side it came
from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from daystate.model import (
    DELETION_PERMANENT,
    DELETION_TEMPORARY,
    DayState,
    MetaEntry,
    as_ms,
    empty_day_state,
    finalize_day_state,
    fingerprint,
    meta_map,
    normalize_hidden_routine,
)

# No-metadata tie-break policies for orders.
#   PREFER_REMOTE: reconciliation after an external change. The remote value
#     wins and a key missing remotely is dropped, so external edits and
#     deletions propagate.
#   PREFER_REMOTE_KEEP_LOCAL_ONLY: flushing a local buffer against freshly
#     loaded disk. Disk wins for shared keys; keys only the buffer has are kept.
# Slot overrides always keep unstamped local-only keys, whatever the policy.
PREFER_REMOTE = "prefer_remote"
PREFER_REMOTE_KEEP_LOCAL_ONLY = "prefer_remote_keep_local_only"
NO_META_POLICIES = (PREFER_REMOTE, PREFER_REMOTE_KEEP_LOCAL_ONLY)


@dataclass(frozen=True)
class Resolution:
    merged: List[Dict[str, Any]]
    has_conflicts: bool
    conflict_count: int


@dataclass(frozen=True)
class MapResolution:
    merged: Dict[str, Any]
    meta: Dict[str, MetaEntry]
    has_conflicts: bool
    conflict_count: int


@dataclass(frozen=True)
class DeletedIdentities:
    instance_ids: FrozenSet[str] = field(default_factory=frozenset)
    paths: FrozenSet[str] = field(default_factory=frozenset)
    task_ids: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class DayMergeResult:
    day: DayState
    has_conflicts: bool
    conflict_count: int


@dataclass(frozen=True)
class MonthMergeResult:
    days: Dict[str, DayState]
    affected_date_keys: List[str]
    conflict_count: int


def _clean_str(v: Any) -> str:
    return v.strip() if isinstance(v, str) else ""


def _set_ts(entry: Dict[str, Any], name: str, value: int) -> None:
    if value > 0:
        entry[name] = value
    else:
        entry.pop(name, None)


# --- hiddenRoutines -----------------------------------------------------------

def _hidden_key(entry: Dict[str, Any]) -> str:
    iid = entry.get("instanceId")
    return f"{entry['path']}::{iid}" if iid else entry["path"]


def is_hidden(entry: Dict[str, Any]) -> bool:
    """Effective state of a hidden-routine record.

    Records without `hiddenAt` predate timestamps: they are hidden unless a
    restore was recorded.
    """
    hidden_at = as_ms(entry.get("hiddenAt"))
    restored_at = as_ms(entry.get("restoredAt"))
    if hidden_at == 0:
        return restored_at == 0
    return hidden_at >= restored_at


def merge_hidden_routines(local: Iterable[Any], remote: Iterable[Any]) -> Resolution:
    merged: Dict[str, Dict[str, Any]] = {}
    conflicts = 0

    for raw in local:
        entry = normalize_hidden_routine(raw)
        if entry is not None:
            merged[_hidden_key(entry)] = entry

    for raw in remote:
        entry = normalize_hidden_routine(raw)
        if entry is None:
            continue
        key = _hidden_key(entry)
        existing = merged.get(key)
        if existing is None:
            merged[key] = entry
            continue

        lh, lr = as_ms(existing.get("hiddenAt")), as_ms(existing.get("restoredAt"))
        rh, rr = as_ms(entry.get("hiddenAt")), as_ms(entry.get("restoredAt"))
        if (lh, lr) != (rh, rr):
            conflicts += 1

        out = {**existing, **entry}
        _set_ts(out, "hiddenAt", max(lh, rh))
        _set_ts(out, "restoredAt", max(lr, rr))
        merged[key] = out

    return Resolution(merged=list(merged.values()), has_conflicts=conflicts > 0, conflict_count=conflicts)


# --- deletedInstances ---------------------------------------------------------

def effective_deleted_at(entry: Dict[str, Any]) -> int:
    # Older records stored the deletion time as `timestamp`.
    v = entry.get("deletedAt")
    if v is None:
        v = entry.get("timestamp")
    return as_ms(v)


def is_deleted(entry: Dict[str, Any]) -> bool:
    """True while a tombstone is in force (not superseded by a restore).

    A tombstone without any timestamps is treated as a deletion; same-instant
    delete and restore resolves to deleted.
    """
    restored_at = as_ms(entry.get("restoredAt"))
    if restored_at == 0:
        return True
    return effective_deleted_at(entry) >= restored_at


def _instance_scoped(entry: Dict[str, Any]) -> bool:
    return entry.get("deletionType") == DELETION_TEMPORARY and bool(_clean_str(entry.get("instanceId")))


def deleted_instance_key(entry: Dict[str, Any]) -> str:
    """Composite identity: deletion type plus the strongest available id."""
    dtype = entry.get("deletionType") or ""
    iid = _clean_str(entry.get("instanceId"))
    task_id = _clean_str(entry.get("taskId"))
    path = _clean_str(entry.get("path"))
    if _instance_scoped(entry):
        ident = f"instanceId:{iid}"
    elif task_id:
        ident = f"taskId:{task_id}"
    elif path:
        ident = f"path:{path}"
    elif iid:
        ident = f"instanceId:{iid}"
    else:
        ident = "unknown:" + fingerprint(entry).decode("utf-8")
    return f"{dtype}|{ident}"


def _path_matchable(entry: Dict[str, Any]) -> bool:
    return not _instance_scoped(entry) and bool(_clean_str(entry.get("path")))


def _find_deleted_match(entry: Dict[str, Any], merged: Dict[str, Dict[str, Any]]) -> Optional[str]:
    primary = deleted_instance_key(entry)
    if primary in merged:
        return primary
    if not _path_matchable(entry):
        return None

    # A record identified by taskId on one side may only carry the path on the
    # other; fall back to path equality within the same deletion type.
    path = _clean_str(entry.get("path"))
    dtype = entry.get("deletionType") or ""
    fallback: Optional[str] = None
    for key, existing in merged.items():
        if (existing.get("deletionType") or "") != dtype or not _path_matchable(existing):
            continue
        if _clean_str(existing.get("path")) != path:
            continue
        if existing.get("taskId"):
            return key
        if fallback is None:
            fallback = key
    return fallback


def _merge_deleted_pair(current: Dict[str, Any], incoming: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    cd, cr = effective_deleted_at(current), as_ms(current.get("restoredAt"))
    idel, ir = effective_deleted_at(incoming), as_ms(incoming.get("restoredAt"))
    conflict = (cd, cr) != (idel, ir)

    incoming_newer = max(idel, ir) > max(cd, cr)
    latest, older = (incoming, current) if incoming_newer else (current, incoming)

    out = dict(latest)
    for name in ("taskId", "instanceId", "path", "deletionType"):
        if out.get(name) is None and older.get(name) is not None:
            out[name] = older[name]
    _set_ts(out, "deletedAt", max(cd, idel))
    _set_ts(out, "restoredAt", max(cr, ir))
    return out, conflict


def merge_deleted_instances(local: Iterable[Dict[str, Any]], remote: Iterable[Dict[str, Any]]) -> Resolution:
    """Union of tombstones. Never drops an entry; same identity keeps max timestamps."""
    merged: Dict[str, Dict[str, Any]] = {}
    conflicts = 0

    def upsert(entry: Dict[str, Any], count: bool) -> None:
        nonlocal conflicts
        match = _find_deleted_match(entry, merged)
        if match is None:
            merged[deleted_instance_key(entry)] = dict(entry)
            return
        out, conflict = _merge_deleted_pair(merged[match], entry)
        if count and conflict:
            conflicts += 1
        canonical = deleted_instance_key(out)
        if canonical != match:
            del merged[match]
        merged[canonical] = out

    for entry in local:
        if isinstance(entry, dict):
            upsert(entry, False)
    for entry in remote:
        if isinstance(entry, dict):
            upsert(entry, True)

    return Resolution(merged=list(merged.values()), has_conflicts=conflicts > 0, conflict_count=conflicts)


def collect_deleted_identities(deleted: Iterable[Dict[str, Any]]) -> DeletedIdentities:
    """Identities that suppress duplicated instances.

    Any active tombstone suppresses its instanceId; permanent ones also suppress
    every duplicate of the same task path or taskId.
    """
    instance_ids: set[str] = set()
    paths: set[str] = set()
    task_ids: set[str] = set()
    for entry in deleted:
        if not isinstance(entry, dict) or not is_deleted(entry):
            continue
        iid = _clean_str(entry.get("instanceId"))
        if iid:
            instance_ids.add(iid)
        if entry.get("deletionType") == DELETION_PERMANENT:
            path = _clean_str(entry.get("path"))
            task_id = _clean_str(entry.get("taskId"))
            if path:
                paths.add(path)
            if task_id:
                task_ids.add(task_id)
    return DeletedIdentities(frozenset(instance_ids), frozenset(paths), frozenset(task_ids))


# --- duplicatedInstances ------------------------------------------------------

def _is_suppressed(entry: Dict[str, Any], deleted: DeletedIdentities) -> bool:
    if entry["instanceId"] in deleted.instance_ids:
        return True
    task_id = entry.get("originalTaskId")
    if isinstance(task_id, str) and task_id in deleted.task_ids:
        return True
    path = entry.get("originalPath")
    return isinstance(path, str) and path in deleted.paths


def merge_duplicated_instances(
    local: Iterable[Dict[str, Any]],
    remote: Iterable[Dict[str, Any]],
    deleted: DeletedIdentities,
) -> Resolution:
    merged: Dict[str, Dict[str, Any]] = {}
    conflicts = 0

    for entry in local:
        if not isinstance(entry, dict) or not entry.get("instanceId"):
            continue
        if _is_suppressed(entry, deleted):
            continue
        merged[entry["instanceId"]] = dict(entry)

    for entry in remote:
        if not isinstance(entry, dict) or not entry.get("instanceId"):
            continue
        if _is_suppressed(entry, deleted):
            continue
        existing = merged.get(entry["instanceId"])
        if existing is None:
            merged[entry["instanceId"]] = dict(entry)
        elif fingerprint(existing) != fingerprint(entry):
            # first writer stays
            conflicts += 1

    return Resolution(merged=list(merged.values()), has_conflicts=conflicts > 0, conflict_count=conflicts)


# --- slotOverrides / orders ---------------------------------------------------

_MISSING = object()


def _side_value(values: Dict[str, Any], meta: Optional[MetaEntry], key: str) -> Any:
    if key in values:
        return values[key]
    if meta is not None and "value" in meta:
        return meta["value"]
    return _MISSING


def _merge_scalar_map(
    local: Dict[str, Any],
    local_meta: Dict[str, MetaEntry],
    remote: Dict[str, Any],
    remote_meta: Dict[str, MetaEntry],
    policy: str,
) -> MapResolution:
    if policy not in NO_META_POLICIES:
        raise ValueError(f"Unknown no-metadata policy: {policy!r}")

    merged: Dict[str, Any] = {}
    meta: Dict[str, MetaEntry] = {}
    conflicts = 0

    keys = list(dict.fromkeys([*local, *remote, *local_meta, *remote_meta]))
    for key in keys:
        lm = local_meta.get(key)
        rm = remote_meta.get(key)
        lv = _side_value(local, lm, key)
        rv = _side_value(remote, rm, key)

        if lm is not None and rm is not None:
            lt, rt = as_ms(lm.get("updatedAt")), as_ms(rm.get("updatedAt"))
            if lt != rt or lv != rv:
                conflicts += 1
            use_local = lt >= rt
            value, winner = (lv, lm) if use_local else (rv, rm)
            meta[key] = dict(winner)
        elif lm is not None or rm is not None:
            # Only one side has ever stamped this key: it wins outright.
            if lv != rv:
                conflicts += 1
            value, winner = (lv, lm) if lm is not None else (rv, rm)
            meta[key] = dict(winner)  # type: ignore[arg-type]
        else:
            if lv is not _MISSING and rv is not _MISSING and lv != rv:
                conflicts += 1
            if rv is not _MISSING:
                value = rv
            elif policy == PREFER_REMOTE_KEEP_LOCAL_ONLY:
                value = lv
            else:
                value = _MISSING

        if value is not _MISSING:
            merged[key] = value

    return MapResolution(merged=merged, meta=meta, has_conflicts=conflicts > 0, conflict_count=conflicts)


def merge_slot_overrides(
    local: Dict[str, str],
    local_meta: Dict[str, MetaEntry],
    remote: Dict[str, str],
    remote_meta: Dict[str, MetaEntry],
    policy: str = PREFER_REMOTE,
) -> MapResolution:
    if policy not in NO_META_POLICIES:
        raise ValueError(f"Unknown no-metadata policy: {policy!r}")
    return _merge_scalar_map(local, local_meta, remote, remote_meta, PREFER_REMOTE_KEEP_LOCAL_ONLY)


def merge_orders(
    local: Dict[str, Any],
    local_meta: Dict[str, MetaEntry],
    remote: Dict[str, Any],
    remote_meta: Dict[str, MetaEntry],
    policy: str = PREFER_REMOTE,
) -> MapResolution:
    return _merge_scalar_map(local, local_meta, remote, remote_meta, policy)


# --- whole day ----------------------------------------------------------------

def merge_day_states(local: DayState, remote: DayState, policy: str = PREFER_REMOTE) -> DayMergeResult:
    """Run the five field mergers; duplication sees the already-merged tombstones."""
    hidden = merge_hidden_routines(local.get("hiddenRoutines") or [], remote.get("hiddenRoutines") or [])
    deleted = merge_deleted_instances(local.get("deletedInstances") or [], remote.get("deletedInstances") or [])
    duplicated = merge_duplicated_instances(
        local.get("duplicatedInstances") or [],
        remote.get("duplicatedInstances") or [],
        collect_deleted_identities(deleted.merged),
    )
    slots = merge_slot_overrides(
        local.get("slotOverrides") or {},
        meta_map(local, "slotOverrides"),
        remote.get("slotOverrides") or {},
        meta_map(remote, "slotOverrides"),
        policy,
    )
    orders = merge_orders(
        local.get("orders") or {},
        meta_map(local, "orders"),
        remote.get("orders") or {},
        meta_map(remote, "orders"),
        policy,
    )

    day: DayState = {
        "hiddenRoutines": hidden.merged,
        "deletedInstances": deleted.merged,
        "duplicatedInstances": duplicated.merged,
        "slotOverrides": slots.merged,
        "orders": orders.merged,
        "slotOverridesMeta": slots.meta,
        "ordersMeta": orders.meta,
    }
    parts = (hidden, deleted, duplicated, slots, orders)
    return DayMergeResult(
        day=finalize_day_state(day),
        has_conflicts=any(p.has_conflicts for p in parts),
        conflict_count=sum(p.conflict_count for p in parts),
    )


def merge_month_days(
    local_days: Dict[str, DayState],
    remote_days: Dict[str, DayState],
    policy: str = PREFER_REMOTE,
    sanitize: Optional[Callable[[DayState], DayState]] = None,
) -> MonthMergeResult:
    """Merge every date of two months. A date is affected when it had conflicts
    or its merged day differs from the local one."""
    prep = sanitize or (lambda d: d)
    days: Dict[str, DayState] = {}
    affected: List[str] = []
    conflicts = 0
    for dk in sorted(set(local_days) | set(remote_days)):
        before = local_days.get(dk) or empty_day_state()
        result = merge_day_states(prep(before), prep(remote_days.get(dk) or empty_day_state()), policy)
        days[dk] = result.day
        conflicts += result.conflict_count
        if result.has_conflicts or fingerprint(result.day) != fingerprint(before):
            affected.append(dk)
    return MonthMergeResult(days=days, affected_date_keys=affected, conflict_count=conflicts)


__all__ = [
    "PREFER_REMOTE",
    "PREFER_REMOTE_KEEP_LOCAL_ONLY",
    "DayMergeResult",
    "DeletedIdentities",
    "MapResolution",
    "MonthMergeResult",
    "Resolution",
    "collect_deleted_identities",
    "deleted_instance_key",
    "effective_deleted_at",
    "is_deleted",
    "is_hidden",
    "merge_day_states",
    "merge_deleted_instances",
    "merge_duplicated_instances",
    "merge_hidden_routines",
    "merge_month_days",
    "merge_orders",
    "merge_slot_overrides",
]
