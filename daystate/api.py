"""daystate.api

Stable *library* entrypoint for daystate.

Policy:
  - Only names listed in __all__ are considered public API.
  - Everything else is internal and may change without notice.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional, Union

from daystate.conflict import (
    PREFER_REMOTE,
    PREFER_REMOTE_KEEP_LOCAL_ONLY,
    DayMergeResult,
    merge_day_states,
    merge_deleted_instances,
    merge_duplicated_instances,
    merge_hidden_routines,
    merge_orders,
    merge_slot_overrides,
)
from daystate.local_writes import LocalWriteTracker
from daystate.model import DayState, MonthlyState, empty_day_state, normalize_monthly_state
from daystate.monitor import ChangeMonitor
from daystate.sections import SectionConfig, SectionValidator
from daystate.session import DayStateFlushError, DayStateSession
from daystate.storage import LocalFileStore, MemoryFileStore, PathResolver
from daystate.store import DayStateStore, ExternalMergeResult
from daystate.util.keys import now_ms
from daystate.validate import StateValidationError, assert_valid_monthly_state, validate_monthly_state

JsonPath = Union[str, Path]


def load_state_file(path: JsonPath, *, strict: bool = False) -> MonthlyState:
    """Read one monthly state file.

    strict=True validates the raw JSON first (raises StateValidationError);
    otherwise the content is normalized the way the store reads it.
    """
    obj: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if strict:
        assert_valid_monthly_state(obj)
    return normalize_monthly_state(obj, now_ms())


def open_store(root: JsonPath, *, log_base: Optional[str] = None, boundaries: Any = None) -> DayStateStore:
    """DayStateStore over a vault directory on the local filesystem."""
    files = LocalFileStore(root)
    return DayStateStore(files, PathResolver(files, log_base), sections=SectionConfig(boundaries))


# --- Public API exports ---------------------------------------------------
_PUBLIC_EXPORTS = (
    "ChangeMonitor",
    "DayMergeResult",
    "DayState",
    "DayStateFlushError",
    "DayStateSession",
    "DayStateStore",
    "ExternalMergeResult",
    "LocalFileStore",
    "LocalWriteTracker",
    "MemoryFileStore",
    "MonthlyState",
    "PREFER_REMOTE",
    "PREFER_REMOTE_KEEP_LOCAL_ONLY",
    "PathResolver",
    "SectionConfig",
    "SectionValidator",
    "StateValidationError",
    "assert_valid_monthly_state",
    "empty_day_state",
    "load_state_file",
    "merge_day_states",
    "merge_deleted_instances",
    "merge_duplicated_instances",
    "merge_hidden_routines",
    "merge_orders",
    "merge_slot_overrides",
    "open_store",
    "validate_monthly_state",
)

__all__ = [n for n in _PUBLIC_EXPORTS if n in globals()]
# --- /Public API exports --------------------------------------------------
