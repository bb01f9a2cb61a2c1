"""Ledger of this process's own state-file writes.

The host's change notifications include writes made by this engine. Before a
monthly file is written its content hash is recorded here; when a change event
arrives with the new file content, a matching hash means the event is an echo
of our own write and can be ignored. Anything unverifiable is treated as an
external change.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from daystate.util.keys import now_ms

logger = logging.getLogger(__name__)

LOCAL_WRITE_TTL_MS = 5000
MAX_HASHES_PER_PATH = 8


def content_hash(content: str) -> str:
    data = content.encode("utf-8")
    return f"{zlib.crc32(data) & 0xFFFFFFFF:08x}:{len(data)}"


@dataclass(frozen=True)
class WriteRecord:
    content_hash: str
    recorded_at: int


class LocalWriteTracker:
    def __init__(
        self,
        *,
        clock: Callable[[], int] = now_ms,
        ttl_ms: int = LOCAL_WRITE_TTL_MS,
        max_per_path: int = MAX_HASHES_PER_PATH,
    ) -> None:
        self._clock = clock
        self.ttl_ms = int(ttl_ms)
        self.max_per_path = max(1, int(max_per_path))
        self._records: Dict[str, List[WriteRecord]] = {}

    def _prune(self, now: int) -> None:
        for path in list(self._records):
            kept = [r for r in self._records[path] if now - r.recorded_at <= self.ttl_ms]
            if kept:
                self._records[path] = kept
            else:
                del self._records[path]

    def record(self, path: str, content: str) -> str:
        now = self._clock()
        self._prune(now)
        h = content_hash(content)
        records = self._records.setdefault(path, [])
        records.append(WriteRecord(content_hash=h, recorded_at=now))
        if len(records) > self.max_per_path:
            del records[: len(records) - self.max_per_path]
        return h

    def discard(self, path: str, h: str) -> None:
        """Forget the newest record of `h` for `path` (the write did not happen)."""
        records = self._records.get(path)
        if not records:
            return
        for i in range(len(records) - 1, -1, -1):
            if records[i].content_hash == h:
                del records[i]
                break
        if not records:
            del self._records[path]

    def consume(self, path: str, content: Optional[str] = None, max_recorded_at: Optional[int] = None) -> bool:
        """Return True (once) if `content` at `path` is an echo of our own write."""
        self._prune(self._clock())
        if content is None:
            return False
        records = self._records.get(path)
        if not records:
            return False

        h = content_hash(content)
        for i, r in enumerate(records):
            if r.content_hash != h:
                continue
            if max_recorded_at is not None and r.recorded_at > max_recorded_at:
                continue
            del records[i]
            if not records:
                del self._records[path]
            logger.debug("suppressed self-originated change for %s", path)
            return True
        return False

    def pending(self, path: str) -> int:
        self._prune(self._clock())
        return len(self._records.get(path, ()))

    def clear(self) -> None:
        self._records.clear()
