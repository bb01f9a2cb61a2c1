#!/usr/bin/env python3
"""Offline merge of two copies of one monthly state file.

Typical use: a sync client left a conflict copy next to the real file. The
first file plays the local side, the second the remote side.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from daystate.conflict import PREFER_REMOTE, PREFER_REMOTE_KEEP_LOCAL_ONLY, merge_month_days
from daystate.model import normalize_monthly_state, serialize_monthly_state, touch
from daystate.sections import SectionConfig, SectionValidator
from daystate.util.keys import now_ms

logger = logging.getLogger(__name__)

_POLICIES = {
    "remote": PREFER_REMOTE,
    "keep-local-only": PREFER_REMOTE_KEEP_LOCAL_ONLY,
}


def _die(msg: str, rc: int = 2) -> int:
    print(f"[daystate-merge-state] ERROR: {msg}", file=sys.stderr)
    return rc


def _read_json(p: Path) -> Dict[str, Any]:
    obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
    if not isinstance(obj, dict):
        raise ValueError(f"state must be an object/dict; got {type(obj).__name__}")
    return obj


def _load_boundaries(p: Path) -> Any:
    obj = json.loads(p.read_text(encoding="utf-8"))
    return obj.get("boundaries") if isinstance(obj, dict) else obj


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="daystate-merge-state", description="Merge two copies of a monthly day-state file.")
    ap.add_argument("--local", required=True, help="Local monthly state JSON path")
    ap.add_argument("--remote", required=True, help="Remote monthly state JSON path")
    ap.add_argument("--out", required=True, help="Output JSON path (may equal --local)")
    ap.add_argument(
        "--policy",
        choices=sorted(_POLICIES),
        default="remote",
        help="Tie-break for keys no side has timestamped (default: remote)",
    )
    ap.add_argument("--sections", default=None, help="JSON file with section boundaries [{hour, minute}, ...]")
    ap.add_argument("--verbose", action="store_true", help="Log each affected date")
    ns = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if ns.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    now = now_ms()
    sides = []
    for p in (Path(ns.local), Path(ns.remote)):
        if not p.exists():
            return _die(f"Missing JSON file: {p}")
        try:
            sides.append(normalize_monthly_state(_read_json(p), now))
        except Exception as e:
            return _die(f"Failed to parse state file: {p} ({e})")
    local, remote = sides

    try:
        cfg = SectionConfig(_load_boundaries(Path(ns.sections)) if ns.sections else None)
    except Exception as e:
        return _die(f"Failed to load sections: {ns.sections} ({e})")

    result = merge_month_days(local["days"], remote["days"], _POLICIES[ns.policy], SectionValidator(cfg).sanitize_day)
    for dk in result.affected_date_keys:
        logger.debug("affected: %s", dk)
    logger.info(
        "merged %d date(s), %d affected, %d conflict(s)",
        len(result.days),
        len(result.affected_date_keys),
        result.conflict_count,
    )

    merged = {"days": result.days, "metadata": dict(local["metadata"])}
    touch(merged, now)

    out_path = Path(ns.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(serialize_monthly_state(merged), encoding="utf-8", newline="\n")

    print(f"[daystate-merge-state] OK: wrote {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
