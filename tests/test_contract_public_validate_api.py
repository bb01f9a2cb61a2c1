from __future__ import annotations

import json
import unittest
from pathlib import Path

from daystate.api import StateValidationError, assert_valid_monthly_state, load_state_file, validate_monthly_state

FIXTURE = Path(__file__).resolve().parent / "fixtures" / "2026-02-state.json"


class TestPublicValidateApiContract(unittest.TestCase):
    def test_fixture_is_valid(self) -> None:
        obj = json.loads(FIXTURE.read_text(encoding="utf-8"))
        self.assertEqual(validate_monthly_state(obj), [])
        assert_valid_monthly_state(obj)

    def test_errors_are_labelled(self) -> None:
        errs = validate_monthly_state({"days": {"2026-02-19": {"orders": {"k": "x"}}}}, label="feb")
        self.assertTrue(errs)
        self.assertTrue(all(e.startswith("feb") for e in errs))
        self.assertTrue(any("orders['k']" in e for e in errs))

    def test_bad_date_key(self) -> None:
        errs = validate_monthly_state(
            {"days": {"2026-02-30": {}}, "metadata": {"version": "1.0", "lastUpdated": "x"}}
        )
        self.assertEqual(errs, ["state: invalid date key '2026-02-30'"])

    def test_assert_raises_value_error_subclass(self) -> None:
        with self.assertRaises(StateValidationError):
            assert_valid_monthly_state([])
        with self.assertRaises(ValueError):
            assert_valid_monthly_state({"days": {}})

    def test_load_state_file(self) -> None:
        month = load_state_file(FIXTURE, strict=True)
        self.assertEqual(sorted(month["days"]), ["2026-02-18", "2026-02-19"])
        self.assertEqual(
            month["days"]["2026-02-19"]["ordersMeta"],
            {"TASKS/write-report.md::12:00-16:00": {"value": 200, "updatedAt": 1771462000000}},
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
