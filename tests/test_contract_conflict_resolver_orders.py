from __future__ import annotations

import unittest

from daystate.conflict import (
    PREFER_REMOTE,
    PREFER_REMOTE_KEEP_LOCAL_ONLY,
    merge_orders,
    merge_slot_overrides,
)


class TestOrdersLwwContract(unittest.TestCase):
    def test_newer_meta_wins_per_key(self) -> None:
        r = merge_orders(
            {"task-a": 10, "task-b": 2},
            {"task-a": {"value": 10, "updatedAt": 300}, "task-b": {"value": 2, "updatedAt": 100}},
            {"task-a": 1, "task-b": 2},
            {"task-a": {"value": 1, "updatedAt": 100}, "task-b": {"value": 2, "updatedAt": 200}},
        )
        self.assertEqual(r.merged, {"task-a": 10, "task-b": 2})
        self.assertEqual(r.meta["task-a"]["updatedAt"], 300)
        self.assertEqual(r.meta["task-b"]["updatedAt"], 200)

    def test_remote_newer_meta_beats_local_value(self) -> None:
        r = merge_orders(
            {"k": 50},
            {"k": {"value": 50, "updatedAt": 100}},
            {"k": 2},
            {"k": {"value": 2, "updatedAt": 200}},
        )
        self.assertEqual(r.merged, {"k": 2})
        self.assertTrue(r.has_conflicts)

    def test_lww_does_not_depend_on_side(self) -> None:
        older = ({"k": 1}, {"k": {"value": 1, "updatedAt": 10}})
        newer = ({"k": 7}, {"k": {"value": 7, "updatedAt": 20}})
        a = merge_orders(*older, *newer)
        b = merge_orders(*newer, *older)
        self.assertEqual(a.merged, {"k": 7})
        self.assertEqual(b.merged, {"k": 7})

    def test_equal_timestamps_go_to_local(self) -> None:
        r = merge_orders({"k": 1}, {"k": {"value": 1, "updatedAt": 10}}, {"k": 2}, {"k": {"value": 2, "updatedAt": 10}})
        self.assertEqual(r.merged, {"k": 1})

    def test_only_meta_side_wins_outright(self) -> None:
        r = merge_orders({"k": 3}, {"k": {"value": 3, "updatedAt": 5}}, {"k": 99}, {})
        self.assertEqual(r.merged, {"k": 3})
        r2 = merge_orders({"k": 3}, {}, {"k": 99}, {"k": {"value": 99, "updatedAt": 5}})
        self.assertEqual(r2.merged, {"k": 99})

    def test_meta_without_value_is_a_deletion(self) -> None:
        r = merge_orders({"k": 3}, {"k": {"value": 3, "updatedAt": 5}}, {}, {"k": {"updatedAt": 9}})
        self.assertEqual(r.merged, {})
        self.assertEqual(r.meta, {"k": {"updatedAt": 9}})

    def test_meta_value_used_when_map_lacks_key(self) -> None:
        r = merge_orders({}, {"k": {"value": 4, "updatedAt": 9}}, {"k": 1}, {"k": {"value": 1, "updatedAt": 2}})
        self.assertEqual(r.merged, {"k": 4})


class TestNoMetaPoliciesContract(unittest.TestCase):
    def test_prefer_remote_drops_keys_missing_remotely(self) -> None:
        r = merge_orders({"local-only": 1, "shared": 10}, {}, {"shared": 50}, {}, PREFER_REMOTE)
        self.assertEqual(r.merged, {"shared": 50})

    def test_keep_local_only_keeps_buffer_keys(self) -> None:
        r = merge_orders({"local-only": 1, "shared": 10}, {}, {"shared": 50}, {}, PREFER_REMOTE_KEEP_LOCAL_ONLY)
        self.assertEqual(r.merged, {"local-only": 1, "shared": 50})

    def test_slot_overrides_follow_same_rules(self) -> None:
        r = merge_slot_overrides(
            {"TASKS/a.md": "8:00-12:00"},
            {"TASKS/a.md": {"value": "8:00-12:00", "updatedAt": 50}},
            {"TASKS/a.md": "16:00-0:00", "TASKS/b.md": "none"},
            {},
        )
        self.assertEqual(r.merged, {"TASKS/a.md": "8:00-12:00", "TASKS/b.md": "none"})
        self.assertEqual(r.meta, {"TASKS/a.md": {"value": "8:00-12:00", "updatedAt": 50}})

    def test_slot_overrides_keep_unstamped_local_only_keys(self) -> None:
        for policy in (PREFER_REMOTE, PREFER_REMOTE_KEEP_LOCAL_ONLY):
            r = merge_slot_overrides(
                {"TASKS/a.md": "8:00-12:00", "TASKS/b.md": "none"}, {}, {"TASKS/b.md": "12:00-16:00"}, {}, policy
            )
            self.assertEqual(r.merged, {"TASKS/a.md": "8:00-12:00", "TASKS/b.md": "12:00-16:00"}, policy)

    def test_unknown_policy_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            merge_slot_overrides({}, {}, {}, {}, "newest")


if __name__ == "__main__":
    unittest.main(verbosity=2)
