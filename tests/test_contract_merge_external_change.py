from __future__ import annotations

import json
import unittest

from daystate.model import empty_day_state
from daystate.storage import MemoryFileStore, PathResolver
from daystate.store import DayStateStore

NOW = 1_771_459_200_000
PATH = "LOGS/2026-02-state.json"
META = {"version": "1.0", "lastUpdated": "2026-02-19T00:00:00.000Z"}


class FlakyFileStore(MemoryFileStore):
    def __init__(self, *a, **kw) -> None:
        super().__init__(*a, **kw)
        self.fail_next_writes = 0

    async def write(self, path: str, content: str) -> None:
        if self.fail_next_writes:
            self.fail_next_writes -= 1
            raise OSError("simulated write failure")
        await super().write(path, content)


def _day(**fields):
    d = empty_day_state()
    d.update(fields)
    return d


def _write_external(files: MemoryFileStore, days) -> None:
    files.files[PATH] = json.dumps({"days": days, "metadata": META})


class TestMergeExternalChangeContract(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.files = FlakyFileStore()
        self.store = DayStateStore(self.files, PathResolver(self.files, "LOGS"), clock=lambda: NOW)

    async def test_without_cache_disk_is_adopted(self) -> None:
        _write_external(self.files, {"2026-02-19": _day(orders={"k": 1})})
        result = await self.store.merge_external_change("2026-02")
        self.assertEqual(result.affected_date_keys, [])
        self.assertEqual(result.merged["days"]["2026-02-19"]["orders"], {"k": 1})
        self.assertEqual(self.files.write_count, 0)
        self.assertEqual((await self.store.load_day("2026-02-19"))["orders"], {"k": 1})

    async def test_remote_order_with_newer_meta_wins(self) -> None:
        await self.store.save_day(
            "2026-02-19", _day(orders={"k": 50}, ordersMeta={"k": {"value": 50, "updatedAt": 100}})
        )
        _write_external(
            self.files, {"2026-02-19": _day(orders={"k": 2}, ordersMeta={"k": {"value": 2, "updatedAt": 200}})}
        )

        result = await self.store.merge_external_change("2026-02")
        self.assertEqual(result.affected_date_keys, ["2026-02-19"])
        self.assertEqual(result.merged["days"]["2026-02-19"]["orders"], {"k": 2})
        self.assertEqual((await self.store.load_day("2026-02-19"))["orders"], {"k": 2})

    async def test_external_removal_of_unstamped_key_propagates(self) -> None:
        await self.store.save_day("2026-02-19", _day(orders={"gone": 1, "kept": 2}))
        _write_external(self.files, {"2026-02-19": _day(orders={"kept": 2})})

        result = await self.store.merge_external_change("2026-02")
        self.assertEqual(result.merged["days"]["2026-02-19"]["orders"], {"kept": 2})
        self.assertIn("2026-02-19", result.affected_date_keys)

    async def test_local_only_tombstone_survives_and_is_written_back(self) -> None:
        tomb = {"path": "TASKS/local.md", "deletionType": "permanent", "deletedAt": 10}
        await self.store.save_day("2026-02-19", _day(deletedInstances=[tomb]))
        _write_external(
            self.files,
            {"2026-02-19": _day(hiddenRoutines=[{"path": "TASKS/remote.md", "hiddenAt": 20}])},
        )
        writes = self.files.write_count

        result = await self.store.merge_external_change("2026-02")
        self.assertEqual(self.files.write_count, writes + 1)
        on_disk = json.loads(self.files.files[PATH])["days"]["2026-02-19"]
        self.assertEqual(on_disk["deletedInstances"], [tomb])
        self.assertEqual(on_disk["hiddenRoutines"], [{"path": "TASKS/remote.md", "hiddenAt": 20}])
        self.assertEqual(result.affected_date_keys, ["2026-02-19"])

    async def test_identical_disk_is_not_rewritten(self) -> None:
        await self.store.save_day("2026-02-19", _day(orders={"k": 1}))
        writes = self.files.write_count

        result = await self.store.merge_external_change("2026-02")
        self.assertEqual(result.affected_date_keys, [])
        self.assertEqual(self.files.write_count, writes)

    async def test_own_write_is_recognised_as_echo(self) -> None:
        await self.store.save_day("2026-02-19", _day(orders={"k": 1}))
        content = self.files.files[PATH]
        self.assertTrue(self.store.consume_local_state_write(PATH, content))
        self.assertFalse(self.store.consume_local_state_write(PATH, content))

    async def test_write_failure_rolls_back(self) -> None:
        await self.store.save_day("2026-02-19", _day(orders={"local": 1}))
        _write_external(self.files, {"2026-02-20": _day(orders={"remote": 2})})

        self.files.fail_next_writes = 1
        with self.assertRaises(OSError):
            await self.store.merge_external_change("2026-02")

        self.assertEqual(await self.store.load_day("2026-02-20"), empty_day_state())
        self.assertEqual(self.store.tracker.pending(PATH), 1)  # only the earlier save_day

    async def test_unreadable_disk_leaves_cache_alone(self) -> None:
        await self.store.save_day("2026-02-19", _day(orders={"k": 1}))
        self.files.files[PATH] = "{broken"
        with self.assertLogs("daystate.store", level="ERROR"):
            result = await self.store.merge_external_change("2026-02")
        self.assertEqual(result.affected_date_keys, [])
        self.assertEqual(result.merged["days"]["2026-02-19"]["orders"], {"k": 1})

    async def test_unstamped_local_slot_override_survives_stale_disk(self) -> None:
        await self.store.save_day("2026-02-19", _day(slotOverrides={"TASKS/a.md": "8:00-12:00"}, orders={"gone": 1}))
        _write_external(
            self.files,
            {"2026-02-19": _day(hiddenRoutines=[{"path": "TASKS/remote.md", "hiddenAt": 20}])},
        )

        result = await self.store.merge_external_change("2026-02")
        merged = result.merged["days"]["2026-02-19"]
        self.assertEqual(merged["slotOverrides"], {"TASKS/a.md": "8:00-12:00"})
        self.assertEqual(merged["orders"], {})
        self.assertEqual(result.affected_date_keys, ["2026-02-19"])
        on_disk = json.loads(self.files.files[PATH])["days"]["2026-02-19"]
        self.assertEqual(on_disk["slotOverrides"], {"TASKS/a.md": "8:00-12:00"})

    async def test_invalid_section_keys_are_dropped_on_both_sides(self) -> None:
        await self.store.save_day(
            "2026-02-19",
            _day(
                orders={"a::8:00-12:00": 1, "x::3:00-4:00": 5},
                slotOverrides={"TASKS/x.md": "3:00-4:00"},
            ),
        )
        _write_external(
            self.files,
            {
                "2026-02-19": _day(
                    orders={"a::8:00-12:00": 1, "b::9:00-10:00": 3},
                    slotOverrides={"TASKS/a.md": "12:00-16:00", "TASKS/b.md": "9:00-10:00"},
                )
            },
        )

        result = await self.store.merge_external_change("2026-02")
        merged = result.merged["days"]["2026-02-19"]
        self.assertEqual(merged["orders"], {"a::8:00-12:00": 1})
        self.assertEqual(merged["slotOverrides"], {"TASKS/a.md": "12:00-16:00"})
        self.assertEqual(result.affected_date_keys, ["2026-02-19"])
        on_disk = json.loads(self.files.files[PATH])["days"]["2026-02-19"]
        self.assertEqual(on_disk["orders"], {"a::8:00-12:00": 1})

    async def test_failed_write_leaves_cached_month_untouched(self) -> None:
        await self.store.save_day("2026-02-19", _day(orders={"local": 1}))
        before = self.store.cached_month("2026-02")
        _write_external(self.files, {"2026-02-19": _day(orders={"remote": 2})})

        self.files.fail_next_writes = 1
        with self.assertRaises(OSError):
            await self.store.merge_external_change("2026-02")
        self.assertEqual(self.store.cached_month("2026-02"), before)
        self.assertEqual(before["days"]["2026-02-19"]["orders"], {"local": 1})

    async def test_invalid_month_key(self) -> None:
        with self.assertRaises(ValueError):
            await self.store.merge_external_change("2026-2")


if __name__ == "__main__":
    unittest.main(verbosity=2)
