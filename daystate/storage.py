"""Storage collaborators for the day-state engine.

`FileStore` is the async file abstraction the store consumes. Paths are
vault-style relative POSIX strings (e.g. `LOGS/2026-02-state.json`).
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Optional, Protocol

ENV_LOG_BASE = "DAYSTATE_LOG_BASE"
DEFAULT_LOG_BASE = "LOGS"


class FileStore(Protocol):
    async def read(self, path: str) -> Optional[str]:
        """Return the file content, or None if there is no such file."""
        ...

    async def write(self, path: str, content: str) -> None:
        """Create or overwrite `path`."""
        ...

    async def exists(self, path: str) -> bool: ...

    async def list_files(self, prefix: str) -> Optional[List[str]]:
        """Best-effort enumeration under `prefix`; None when unsupported."""
        ...

    async def ensure_folder(self, path: str) -> None: ...


def _clean(path: str) -> str:
    return str(path).replace("\\", "/").strip("/")


class LocalFileStore:
    """FileStore over a directory on the local filesystem.

    Blocking file I/O runs in a worker thread. Writes go through a temp file
    and `os.replace`, so readers never observe a half-written month.
    """

    def __init__(self, root: os.PathLike[str] | str) -> None:
        self.root = Path(root)

    def _abs(self, path: str) -> Path:
        return self.root / _clean(path)

    def _read(self, path: str) -> Optional[str]:
        p = self._abs(path)
        if not p.is_file():
            return None
        return p.read_text(encoding="utf-8")

    def _write(self, path: str, content: str) -> None:
        p = self._abs(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        try:
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, p)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def _list(self, prefix: str) -> List[str]:
        base = self._abs(prefix)
        if not base.is_dir():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in base.rglob("*") if p.is_file())

    async def read(self, path: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, path)

    async def write(self, path: str, content: str) -> None:
        await asyncio.to_thread(self._write, path, content)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._abs(path).is_file)

    async def list_files(self, prefix: str) -> Optional[List[str]]:
        return await asyncio.to_thread(self._list, prefix)

    async def ensure_folder(self, path: str) -> None:
        await asyncio.to_thread(self._abs(path).mkdir, parents=True, exist_ok=True)


class MemoryFileStore:
    """Dict-backed FileStore (embedding hosts, tests).

    `listing=False` mimics hosts that cannot enumerate files.
    """

    def __init__(self, files: Optional[Dict[str, str]] = None, *, listing: bool = True) -> None:
        self.files: Dict[str, str] = {_clean(k): v for k, v in (files or {}).items()}
        self.listing = listing
        self.folders: set[str] = set()
        self.write_count = 0

    async def read(self, path: str) -> Optional[str]:
        return self.files.get(_clean(path))

    async def write(self, path: str, content: str) -> None:
        self.write_count += 1
        self.files[_clean(path)] = content

    async def exists(self, path: str) -> bool:
        return _clean(path) in self.files

    async def list_files(self, prefix: str) -> Optional[List[str]]:
        if not self.listing:
            return None
        base = _clean(prefix) + "/"
        return sorted(p for p in self.files if p.startswith(base))

    async def ensure_folder(self, path: str) -> None:
        self.folders.add(_clean(path))


def default_log_base() -> str:
    return os.getenv(ENV_LOG_BASE, DEFAULT_LOG_BASE)


class PathResolver:
    """Resolves the base log directory and guarantees it exists before writes."""

    def __init__(self, files: FileStore, log_base: Optional[str] = None) -> None:
        self.files = files
        self._log_base = _clean(log_base if log_base is not None else default_log_base())
        if not self._log_base:
            raise ValueError("log base directory must not be empty")

    def get_log_data_path(self) -> str:
        return self._log_base

    async def ensure_log_folder(self) -> None:
        await self.files.ensure_folder(self._log_base)
