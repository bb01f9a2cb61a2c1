"""Day State Store: monthly persistence and cross-writer reconciliation.

One JSON file per month (`<logBase>/<YYYY-MM>-state.json`) holds every day's
overrides. The store keeps an instance-owned cache of decoded months, performs
read-modify-write operations on single days, and reconciles the cache with
files changed by other writers.

Writes are copy-on-write: a month is only placed in the cache after the file
write succeeded, so a failed write never leaves the cache claiming data that is
not on disk. Every write is registered with the LocalWriteTracker first, and
the registration is discarded again if the write fails.

No locking is done. Overlapping calls from one process are not serialized;
callers keep logically related mutations in sequence.
"""

from __future__ import annotations

import datetime as dt
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from daystate.conflict import PREFER_REMOTE, PREFER_REMOTE_KEEP_LOCAL_ONLY, merge_day_states, merge_month_days
from daystate.local_writes import LocalWriteTracker
from daystate.model import (
    META_FIELDS,
    STATE_FILE_SUFFIX,
    DayState,
    MonthlyState,
    clone_day_state,
    clone_monthly_state,
    day_states_equal,
    empty_day_state,
    ensure_metadata,
    normalize_day_state,
    normalize_hidden_routine,
    normalize_monthly_state,
    serialize_monthly_state,
    touch,
)
from daystate.rename import rename_paths_in_monthly_state
from daystate.sections import SectionConfig, SectionProvider, SectionValidator
from daystate.storage import FileStore, PathResolver
from daystate.util.keys import DateLike, date_key, is_month_key, month_key, now_ms, shift_month

logger = logging.getLogger(__name__)

# Months scanned by rename_task_path when the file store cannot enumerate.
RECENT_MONTHS_WINDOW = 12

Mutator = Callable[[DayState], Union[DayState, None, Awaitable[Optional[DayState]]]]


@dataclass(frozen=True)
class ExternalMergeResult:
    merged: MonthlyState
    affected_date_keys: List[str]


class DayStateStore:
    def __init__(
        self,
        files: FileStore,
        paths: Optional[PathResolver] = None,
        *,
        sections: Union[SectionProvider, SectionValidator, None] = None,
        tracker: Optional[LocalWriteTracker] = None,
        clock: Callable[[], int] = now_ms,
        log_base: Optional[str] = None,
    ) -> None:
        self.files = files
        self.paths = paths if paths is not None else PathResolver(files, log_base)
        if isinstance(sections, SectionValidator):
            self.validator = sections
        else:
            self.validator = SectionValidator(sections if sections is not None else SectionConfig())
        self._clock = clock
        self.tracker = tracker if tracker is not None else LocalWriteTracker(clock=clock)
        self._cache: Dict[str, MonthlyState] = {}

    def now(self) -> int:
        return self._clock()

    # --- paths ------------------------------------------------------------

    def get_state_path(self, mk: str) -> str:
        return f"{self.paths.get_log_data_path()}/{mk}{STATE_FILE_SUFFIX}"

    def get_month_key_from_path(self, path: str) -> Optional[str]:
        base = f"{self.paths.get_log_data_path()}/"
        p = str(path).replace("\\", "/").lstrip("/")
        if not p.startswith(base) or not p.endswith(STATE_FILE_SUFFIX):
            return None
        mk = p[len(base) : len(p) - len(STATE_FILE_SUFFIX)]
        return mk if is_month_key(mk) else None

    # --- disk -------------------------------------------------------------

    async def _read_month_file(self, path: str) -> Tuple[MonthlyState, bool]:
        """Decode a monthly file; the flag is False when nothing usable was on disk."""
        now = self._clock()
        raw = await self.files.read(path)
        if raw is None or not raw.strip():
            return normalize_monthly_state({}, now), False
        try:
            parsed = json.loads(raw)
        except ValueError as ex:
            logger.error("failed to parse day state file %s: %s", path, ex)
            return normalize_monthly_state({}, now), False
        if not isinstance(parsed, dict):
            logger.error("day state file %s is not a JSON object", path)
            return normalize_monthly_state({}, now), False
        return normalize_monthly_state(parsed, now), True

    async def _load_month(self, mk: str) -> MonthlyState:
        cached = self._cache.get(mk)
        if cached is not None:
            return cached
        month, _ok = await self._read_month_file(self.get_state_path(mk))
        ensure_metadata(month, self._clock())
        self._cache[mk] = month
        return month

    async def _write_file(self, path: str, month: MonthlyState) -> None:
        payload = serialize_monthly_state(month)
        h = self.tracker.record(path, payload)
        try:
            if not await self.files.exists(path):
                await self.paths.ensure_log_folder()
            await self.files.write(path, payload)
        except Exception:
            self.tracker.discard(path, h)
            raise

    async def _write_month(self, mk: str, month: MonthlyState) -> None:
        await self._write_file(self.get_state_path(mk), month)
        self._cache[mk] = month

    def _sanitize(self, day: DayState) -> DayState:
        return self.validator.sanitize_day(day)

    # --- day access -------------------------------------------------------

    async def load_month(self, mk: str) -> MonthlyState:
        if not is_month_key(mk):
            raise ValueError(f"Invalid month key: {mk!r}")
        return clone_monthly_state(await self._load_month(mk))

    async def load_day(self, date: DateLike) -> DayState:
        dk = date_key(date)
        month = await self._load_month(month_key(dk))
        day = month["days"].get(dk)
        return clone_day_state(day) if day is not None else empty_day_state()

    async def _replace_day(self, dk: str, state: DayState) -> None:
        mk = month_key(dk)
        month = clone_monthly_state(await self._load_month(mk))
        month["days"][dk] = state
        touch(month, self._clock())
        await self._write_month(mk, month)

    async def save_day(self, date: DateLike, state: DayState) -> None:
        dk = date_key(date)
        month = await self._load_month(month_key(dk))
        existing = month["days"].get(dk) or empty_day_state()
        incoming = normalize_day_state(state)
        if day_states_equal(existing, incoming):
            return
        await self._replace_day(dk, incoming)

    async def update_day(self, date: DateLike, mutator: Mutator) -> DayState:
        """Read-modify-write one day. Persists only if the mutator changed something."""
        dk = date_key(date)
        month = await self._load_month(month_key(dk))
        current = month["days"].get(dk) or empty_day_state()
        working = clone_day_state(current)
        result = mutator(working)
        if inspect.isawaitable(result):
            result = await result
        updated = normalize_day_state(result if result is not None else working)
        if day_states_equal(current, updated):
            return clone_day_state(current)
        await self._replace_day(dk, updated)
        return clone_day_state(updated)

    async def merge_day_state(self, date: DateLike, partial: Mapping[str, Any]) -> DayState:
        """Accumulate a partial day into the stored one (same-process use).

        Collections are unioned by identity with later entries replacing
        earlier ones; orders, slot overrides and their meta maps are
        shallow-merged. Cross-writer reconciliation goes through
        merge_external_change / merge_and_save_month instead.
        """

        def apply(state: DayState) -> DayState:
            hidden = partial.get("hiddenRoutines")
            if hidden:
                by_key: Dict[str, Dict[str, Any]] = {}
                for raw in [*state["hiddenRoutines"], *hidden]:
                    entry = normalize_hidden_routine(raw)
                    if entry is not None:
                        by_key[f"{entry['path']}::{entry.get('instanceId') or ''}"] = entry
                state["hiddenRoutines"] = list(by_key.values())

            deleted = partial.get("deletedInstances")
            if deleted:
                by_key = {}
                for entry in [*state["deletedInstances"], *deleted]:
                    if isinstance(entry, dict):
                        key = f"{entry.get('deletionType') or ''}::{entry.get('path') or ''}::{entry.get('instanceId') or ''}"
                        by_key[key] = dict(entry)
                state["deletedInstances"] = list(by_key.values())

            duplicated = partial.get("duplicatedInstances")
            if duplicated:
                by_key = {}
                for entry in [*state["duplicatedInstances"], *duplicated]:
                    if isinstance(entry, dict) and entry.get("instanceId"):
                        by_key[entry["instanceId"]] = dict(entry)
                state["duplicatedInstances"] = list(by_key.values())

            for field in ("orders", "slotOverrides"):
                if partial.get(field):
                    state[field] = {**state[field], **partial[field]}
                meta_field = META_FIELDS[field]
                if partial.get(meta_field):
                    state[meta_field] = {**(state.get(meta_field) or {}), **partial[meta_field]}
            return state

        return await self.update_day(date, apply)

    # --- path rename ------------------------------------------------------

    def _current_month_key(self) -> str:
        return month_key(dt.datetime.fromtimestamp(self._clock() / 1000.0).date())

    async def list_state_files(self) -> List[str]:
        base = self.paths.get_log_data_path()
        listed = await self.files.list_files(base)
        if listed:
            found = [p for p in listed if self.get_month_key_from_path(p) is not None]
            if found:
                return found

        found = []
        current = self._current_month_key()
        for i in range(RECENT_MONTHS_WINDOW):
            path = self.get_state_path(shift_month(current, -i))
            if await self.files.exists(path):
                found.append(path)
        return found

    async def rename_task_path(self, old_path: str, new_path: str) -> None:
        old = old_path.strip() if isinstance(old_path, str) else ""
        new = new_path.strip() if isinstance(new_path, str) else ""
        if not old or not new or old == new:
            return

        for path in await self.list_state_files():
            try:
                month, ok = await self._read_month_file(path)
                if not ok or not rename_paths_in_monthly_state(month, old, new, self._clock()):
                    continue
                ensure_metadata(month, self._clock())
                await self._write_file(path, month)
                mk = self.get_month_key_from_path(path)
                if mk:
                    self._cache[mk] = month
            except Exception as ex:
                logger.warning("failed to rename task path in %s: %s", path, ex)

        for cached in self._cache.values():
            rename_paths_in_monthly_state(cached, old, new, self._clock())

    # --- reconciliation ---------------------------------------------------

    async def merge_external_change(self, mk: str) -> ExternalMergeResult:
        """Reconcile the cached month with a month file changed by another writer.

        Orders that neither side has stamped follow the remote (disk) value,
        including removals. Unstamped slot overrides only the cache has are kept.
        """
        if not is_month_key(mk):
            raise ValueError(f"Invalid month key: {mk!r}")
        disk, ok = await self._read_month_file(self.get_state_path(mk))
        cached = self._cache.get(mk)

        if cached is None:
            ensure_metadata(disk, self._clock())
            self._cache[mk] = disk
            return ExternalMergeResult(merged=clone_monthly_state(disk), affected_date_keys=[])
        if not ok:
            # Missing or unreadable file: nothing to merge against.
            return ExternalMergeResult(merged=clone_monthly_state(cached), affected_date_keys=[])

        result = merge_month_days(cached["days"], disk["days"], PREFER_REMOTE, self._sanitize)
        merged: MonthlyState = {"days": result.days, "metadata": dict(cached.get("metadata") or {})}
        affected = result.affected_date_keys

        if affected:
            touch(merged, self._clock())
            await self._write_month(mk, merged)
            logger.info("merged external change for %s (%d affected dates)", mk, len(affected))
        else:
            self._cache[mk] = merged
        return ExternalMergeResult(merged=clone_monthly_state(merged), affected_date_keys=affected)

    async def merge_and_save_month(self, mk: str, local_day_states: Mapping[str, DayState]) -> Optional[MonthlyState]:
        """Flush buffered local days against the freshest disk copy in one write.

        For scalar keys neither side has stamped, disk wins except for keys only
        the buffer has.
        """
        if not is_month_key(mk):
            raise ValueError(f"Invalid month key: {mk!r}")
        if not local_day_states:
            return None

        self._cache.pop(mk, None)
        base = await self._load_month(mk)
        month = clone_monthly_state(base)

        merged_any = False
        for raw_key, local in local_day_states.items():
            try:
                dk = date_key(raw_key)
            except ValueError:
                logger.warning("skipping buffered day with invalid date key %r", raw_key)
                continue
            if month_key(dk) != mk:
                logger.warning("skipping buffered day %s outside month %s", dk, mk)
                continue
            result = merge_day_states(
                self._sanitize(normalize_day_state(local)),
                self._sanitize(month["days"].get(dk) or empty_day_state()),
                PREFER_REMOTE_KEEP_LOCAL_ONLY,
            )
            month["days"][dk] = result.day
            merged_any = True

        if not merged_any:
            return None

        touch(month, self._clock())
        try:
            await self._write_month(mk, month)
        except Exception:
            self._cache[mk] = base
            raise
        return clone_monthly_state(month)

    # --- echo detection / cache control ------------------------------------

    def consume_local_state_write(
        self, path: str, content: Optional[str] = None, max_recorded_at: Optional[int] = None
    ) -> bool:
        return self.tracker.consume(path, content, max_recorded_at)

    def clear_cache(self) -> None:
        self._cache.clear()

    def clear_cache_for_date(self, dk: DateLike) -> None:
        self._cache.pop(month_key(dk), None)

    def cached_month(self, mk: str) -> Optional[MonthlyState]:
        m = self._cache.get(mk)
        return clone_monthly_state(m) if m is not None else None
