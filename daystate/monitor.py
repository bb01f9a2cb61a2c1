# daystate/monitor.py
"""Turns host file-change notifications into store reconciliation.

Events for monthly state files are filtered against the LocalWriteTracker so
the engine's own writes do not trigger a merge. Remaining months are queued and
merged by `process_pending`, which waits while the session's write barrier is
active (a flush is about to write those months anyway).
"""

from __future__ import annotations

import logging
from typing import List, Optional

from daystate.session import DayStateSession
from daystate.store import DayStateStore

logger = logging.getLogger(__name__)


class ChangeMonitor:
    def __init__(self, store: DayStateStore, session: Optional[DayStateSession] = None) -> None:
        self.store = store
        self.session = session
        self._queued: List[str] = []

    @property
    def queued_months(self) -> List[str]:
        return list(self._queued)

    def handle_change(self, path: str, content: Optional[str] = None, event_ms: Optional[int] = None) -> bool:
        """Queue the month behind `path`. False for untracked paths and echoes."""
        mk = self.store.get_month_key_from_path(path)
        if mk is None:
            return False
        if self.store.consume_local_state_write(self.store.get_state_path(mk), content, event_ms):
            return False
        if mk not in self._queued:
            self._queued.append(mk)
        logger.debug("queued external change for %s", mk)
        return True

    async def process_pending(self) -> List[str]:
        if not self._queued:
            return []
        if self.session is not None and self.session.barrier_active:
            logger.debug("write barrier active, deferring %d month(s)", len(self._queued))
            return []

        affected: List[str] = []
        while self._queued:
            mk = self._queued[0]
            result = await self.store.merge_external_change(mk)
            self._queued.pop(0)
            affected.extend(result.affected_date_keys)
            if self.session is not None:
                for dk in result.affected_date_keys:
                    self.session.forget(dk)
        return affected
