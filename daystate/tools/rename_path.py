#!/usr/bin/env python3
"""Rewrite a renamed task path across every monthly state file of a vault."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List

from daystate.storage import LocalFileStore, PathResolver, default_log_base
from daystate.store import DayStateStore

logger = logging.getLogger(__name__)


def _die(msg: str, rc: int = 2) -> int:
    print(f"[daystate-rename-path] ERROR: {msg}", file=sys.stderr)
    return rc


async def _run(root: Path, log_base: str, old: str, new: str) -> int:
    files = LocalFileStore(root)
    store = DayStateStore(files, PathResolver(files, log_base))
    before = {p: (root / p).read_text(encoding="utf-8") for p in await store.list_state_files()}
    await store.rename_task_path(old, new)
    return sum(1 for p, txt in before.items() if (root / p).read_text(encoding="utf-8") != txt)


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="daystate-rename-path", description="Rename a task path in all monthly state files.")
    ap.add_argument("--root", required=True, help="Vault root directory")
    ap.add_argument("--log-base", default=None, help="State directory relative to --root (default: $DAYSTATE_LOG_BASE or LOGS)")
    ap.add_argument("--old", required=True, help="Old task path")
    ap.add_argument("--new", required=True, help="New task path")
    ns = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = Path(ns.root)
    if not root.is_dir():
        return _die(f"Missing directory: {root}")
    if not ns.old.strip() or not ns.new.strip():
        return _die("--old and --new must be non-empty")

    try:
        changed = asyncio.run(_run(root, ns.log_base or default_log_base(), ns.old, ns.new))
    except Exception as e:
        return _die(f"Rename failed: {e}", rc=3)

    print(f"[daystate-rename-path] OK: {changed} file(s) updated")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
