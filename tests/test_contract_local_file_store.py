from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from daystate.api import open_store
from daystate.model import empty_day_state
from daystate.storage import LocalFileStore, PathResolver, default_log_base


class TestLocalFileStoreContract(unittest.IsolatedAsyncioTestCase):
    async def test_read_write_list(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            fs = LocalFileStore(td)
            self.assertIsNone(await fs.read("LOGS/2026-02-state.json"))
            self.assertFalse(await fs.exists("LOGS/2026-02-state.json"))

            await fs.write("LOGS/2026-02-state.json", '{"days": {}}')
            self.assertTrue(await fs.exists("LOGS/2026-02-state.json"))
            self.assertEqual(await fs.read("LOGS/2026-02-state.json"), '{"days": {}}')
            self.assertEqual(await fs.list_files("LOGS"), ["LOGS/2026-02-state.json"])
            self.assertEqual(await fs.list_files("MISSING"), [])
            self.assertFalse((Path(td) / "LOGS" / "2026-02-state.json.tmp").exists())

    async def test_failed_replace_removes_temp_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            fs = LocalFileStore(td)
            await fs.write("LOGS/2026-02-state.json", "old")
            with patch("daystate.storage.os.replace", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    await fs.write("LOGS/2026-02-state.json", "new")
            self.assertFalse((Path(td) / "LOGS" / "2026-02-state.json.tmp").exists())
            self.assertEqual(await fs.read("LOGS/2026-02-state.json"), "old")

    async def test_store_round_trip_on_disk(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = open_store(td, log_base="LOGS")
            state = empty_day_state()
            state["orders"]["TASKS/a.md::8:00-12:00"] = 3
            await store.save_day("2026-02-19", state)

            self.assertTrue((Path(td) / "LOGS" / "2026-02-state.json").is_file())
            fresh = open_store(td, log_base="LOGS")
            self.assertEqual((await fresh.load_day("2026-02-19"))["orders"], {"TASKS/a.md::8:00-12:00": 3})


class TestPathResolverContract(unittest.TestCase):
    def test_log_base_from_environment(self) -> None:
        with patch.dict(os.environ, {"DAYSTATE_LOG_BASE": "Vault/Logs/"}):
            self.assertEqual(default_log_base(), "Vault/Logs/")
            self.assertEqual(PathResolver(LocalFileStore(".")).get_log_data_path(), "Vault/Logs")

    def test_default_log_base(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(default_log_base(), "LOGS")

    def test_empty_log_base_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PathResolver(LocalFileStore("."), "/")


if __name__ == "__main__":
    unittest.main(verbosity=2)
