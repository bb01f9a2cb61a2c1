#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List

from daystate.model import STATE_FILE_SUFFIX
from daystate.validate import validate_monthly_state


def _die(msg: str, rc: int = 2) -> int:
    print(f"[daystate-validate-state] ERROR: {msg}", file=sys.stderr)
    return rc


def _collect(ns: argparse.Namespace) -> List[Path]:
    paths = [Path(p) for p in (ns.in_json or [])]
    if ns.dir:
        paths.extend(sorted(Path(ns.dir).glob(f"*{STATE_FILE_SUFFIX}")))
    return paths


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="daystate-validate-state", description="Validate monthly day-state JSON files.")
    ap.add_argument("--in", dest="in_json", action="append", default=None, help="Monthly state JSON path (repeatable)")
    ap.add_argument("--dir", default=None, help="Validate every *-state.json in this directory")
    ns = ap.parse_args(argv)

    if not ns.in_json and not ns.dir:
        return _die("Provide --in and/or --dir")
    if ns.dir and not Path(ns.dir).is_dir():
        return _die(f"Missing directory: {ns.dir}")

    paths = _collect(ns)
    if not paths:
        return _die("No state files found")

    all_errs: List[str] = []
    for p in paths:
        if not p.exists():
            return _die(f"Missing JSON file: {p}")
        try:
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except Exception as e:
            all_errs.append(f"{p}: invalid JSON ({e})")
            continue
        all_errs.extend(validate_monthly_state(obj, label=p.name))

    if all_errs:
        print("[daystate-validate-state] FAIL", file=sys.stderr)
        for e in all_errs:
            print(f"  - {e}", file=sys.stderr)
        return 3

    print(f"[daystate-validate-state] OK ({len(paths)} file(s))")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
