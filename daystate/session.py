# daystate/session.py
"""Per-view working cache of day states on top of a DayStateStore.

Views read and mutate the cached DayState objects directly and then call
`persist`. While a write barrier is active (e.g. during a bulk reload),
`persist` only snapshots the day; the outermost `end_write_barrier` flushes the
snapshots month by month through `DayStateStore.merge_and_save_month` and then
reloads the flushed days, so the cache holds what is on disk.

Snapshots whose flush failed are retained and retried by the next barrier
session, unless a later direct `persist` of the same day succeeded first.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from daystate.model import DELETION_PERMANENT, DayState, clone_day_state, empty_day_state
from daystate.rename import rename_paths_in_day_state
from daystate.store import DayStateStore
from daystate.util.keys import date_key, month_key

logger = logging.getLogger(__name__)


class DayStateFlushError(RuntimeError):
    def __init__(self, date_keys: Iterable[str]) -> None:
        self.date_keys = sorted(date_keys)
        super().__init__(f"Failed to flush pending day states: {', '.join(self.date_keys)}")


def _with_empty_fields(state: Optional[DayState]) -> DayState:
    out = empty_day_state()
    if state:
        out.update(state)
    return out


class DayStateSession:
    def __init__(self, store: DayStateStore, *, today: Optional[Callable[[], str]] = None) -> None:
        self.store = store
        self._today = today
        self._days: Dict[str, DayState] = {}
        self._current_key: Optional[str] = None
        self._barrier_depth = 0
        self._pending: Dict[str, DayState] = {}

    def _key(self, dk: Optional[str]) -> str:
        if dk is not None:
            return date_key(dk)
        if self._today is not None:
            return date_key(self._today())
        return date_key(dt.date.fromtimestamp(self.store.now() / 1000.0))

    # --- cache ------------------------------------------------------------

    async def ensure(self, dk: Optional[str] = None) -> DayState:
        key = self._key(dk)
        state = self._days.get(key)
        if state is None:
            state = _with_empty_fields(await self.store.load_day(key))
            self._days[key] = state
        self._current_key = key
        return state

    def snapshot(self, dk: str) -> Optional[DayState]:
        return self._days.get(date_key(dk))

    def get_current_key(self) -> Optional[str]:
        return self._current_key

    def get_current(self) -> DayState:
        key = self._current_key if self._current_key is not None else self._key(None)
        self._current_key = key
        return self._days.setdefault(key, empty_day_state())

    def get_state_for(self, dk: Optional[str] = None) -> DayState:
        """Cached day, creating an empty one (not persisted) when absent."""
        key = self._key(dk)
        state = self._days.get(key)
        if state is None:
            state = self._days[key] = empty_day_state()
            if dk is None:
                self._current_key = key
        return state

    def clear(self, dk: Optional[str] = None) -> None:
        """Drop cached days (and the store's month cache) to pick up external changes.

        Snapshots waiting for a barrier flush survive this.
        """
        if dk is None:
            self._days.clear()
            self._current_key = None
            self.store.clear_cache()
            return
        key = date_key(dk)
        self._days.pop(key, None)
        if self._current_key == key:
            self._current_key = None
        self.store.clear_cache_for_date(key)

    def forget(self, dk: str) -> None:
        """Drop one cached day so the next `ensure` reloads it from the store."""
        key = date_key(dk)
        self._days.pop(key, None)
        if self._current_key == key:
            self._current_key = None

    # --- persistence --------------------------------------------------------

    @property
    def barrier_active(self) -> bool:
        return self._barrier_depth > 0

    def pending_date_keys(self) -> List[str]:
        return sorted(self._pending)

    async def persist(self, dk: Optional[str] = None) -> None:
        key = self._key(dk)
        state = self._days.get(key)
        if state is None:
            return
        if self.barrier_active:
            self._pending[key] = clone_day_state(state)
            return
        await self.store.save_day(key, state)
        self._pending.pop(key, None)

    def begin_write_barrier(self) -> None:
        self._barrier_depth += 1

    async def end_write_barrier(self) -> List[str]:
        """Close one barrier level; the outermost close flushes. Returns flushed date keys."""
        if self._barrier_depth == 0:
            return []
        self._barrier_depth -= 1
        if self._barrier_depth > 0 or not self._pending:
            return []

        by_month: Dict[str, Dict[str, DayState]] = {}
        for key, state in self._pending.items():
            by_month.setdefault(month_key(key), {})[key] = state

        flushed: List[str] = []
        failed: List[str] = []
        for mk, states in sorted(by_month.items()):
            try:
                await self.store.merge_and_save_month(mk, states)
            except Exception as ex:
                logger.warning("merge_and_save_month failed for %s, saving days individually: %s", mk, ex)
                ok = await self._save_each(states)
            else:
                ok = list(states)
            for key in ok:
                self._pending.pop(key, None)
            flushed.extend(ok)
            failed.extend(k for k in states if k not in ok)

        for key in flushed:
            self._days[key] = _with_empty_fields(await self.store.load_day(key))

        if failed:
            raise DayStateFlushError(failed)
        return sorted(flushed)

    async def _save_each(self, states: Dict[str, DayState]) -> List[str]:
        saved: List[str] = []
        for key, state in states.items():
            try:
                await self.store.save_day(key, state)
            except Exception as ex:
                logger.error("failed to save day state %s: %s", key, ex)
                continue
            saved.append(key)
        return saved

    @contextlib.asynccontextmanager
    async def write_barrier(self) -> AsyncIterator["DayStateSession"]:
        self.begin_write_barrier()
        try:
            yield self
        finally:
            await self.end_write_barrier()

    async def rename_task_path(self, old_path: str, new_path: str) -> None:
        old = old_path.strip() if isinstance(old_path, str) else ""
        new = new_path.strip() if isinstance(new_path, str) else ""
        if not old or not new or old == new:
            return
        for state in self._days.values():
            rename_paths_in_day_state(state, old, new)
        for state in self._pending.values():
            rename_paths_in_day_state(state, old, new)
        await self.store.rename_task_path(old, new)

    # --- hidden routines ----------------------------------------------------

    def get_hidden(self, dk: Optional[str] = None) -> List[dict]:
        return self.get_state_for(dk)["hiddenRoutines"]

    async def set_hidden(self, entries: Iterable[dict], dk: Optional[str] = None) -> None:
        state = self.get_state_for(dk)
        state["hiddenRoutines"] = [e for e in entries if e]
        await self.persist(dk)

    def is_hidden(self, *, instance_id: Optional[str] = None, path: Optional[str] = None, dk: Optional[str] = None) -> bool:
        for entry in self.get_hidden(dk):
            if not entry:
                continue
            if entry.get("instanceId") and entry["instanceId"] == instance_id:
                return True
            if entry.get("instanceId") is None and entry.get("path") and entry["path"] == path:
                return True
        return False

    # --- deletions ----------------------------------------------------------

    def get_deleted(self, dk: Optional[str] = None) -> List[dict]:
        return self.get_state_for(dk)["deletedInstances"]

    async def set_deleted(self, entries: Iterable[dict], dk: Optional[str] = None) -> None:
        state = self.get_state_for(dk)
        seen_permanent: set[str] = set()
        out: List[dict] = []
        for entry in entries:
            if not entry:
                continue
            task_id = entry.get("taskId")
            if isinstance(task_id, str) and task_id.strip() and task_id != task_id.strip():
                entry = {**entry, "taskId": task_id.strip()}
                task_id = entry["taskId"]
            if task_id and entry.get("deletionType") == DELETION_PERMANENT:
                if task_id in seen_permanent:
                    continue
                seen_permanent.add(task_id)
            out.append(entry)
        state["deletedInstances"] = out
        await self.persist(dk)

    def is_deleted(
        self,
        *,
        task_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        path: Optional[str] = None,
        dk: Optional[str] = None,
    ) -> bool:
        for entry in self.get_deleted(dk):
            permanent = entry.get("deletionType") == DELETION_PERMANENT
            if entry.get("instanceId") and entry["instanceId"] == instance_id:
                return True
            if task_id and permanent and entry.get("taskId") == task_id:
                return True
            if permanent and path is not None and entry.get("path") == path:
                return True
        return False
