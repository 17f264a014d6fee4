from __future__ import annotations

import unittest
from datetime import date, datetime, time, timezone

from shiftcheck.errors import ApiError
from shiftcheck.services.time_utils import combine_local_utc, local_date, local_day_bounds_utc, monday_of, parse_hhmm


class TimeUtilsTests(unittest.TestCase):
    def test_parse_hhmm(self) -> None:
        self.assertEqual(parse_hhmm("09:05"), time(9, 5))
        for raw in ("9", "24:00", "12:60", "ab:cd"):
            with self.subTest(raw=raw):
                with self.assertRaises(ApiError) as exc:
                    parse_hhmm(raw)
                self.assertEqual(exc.exception.code, "INVALID_TIME_FORMAT")

    def test_monday_of(self) -> None:
        self.assertEqual(monday_of(date(2025, 6, 15)), date(2025, 6, 9))
        self.assertEqual(monday_of(date(2025, 6, 9)), date(2025, 6, 9))

    def test_local_conversion_follows_daylight_saving(self) -> None:
        self.assertEqual(combine_local_utc(date(2025, 6, 9), time(9, 0)), datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc))
        self.assertEqual(combine_local_utc(date(2025, 1, 13), time(9, 0)), datetime(2025, 1, 13, 8, 0, tzinfo=timezone.utc))

    def test_local_date_crosses_midnight(self) -> None:
        self.assertEqual(local_date(datetime(2025, 6, 9, 22, 30, tzinfo=timezone.utc)), date(2025, 6, 10))
        self.assertEqual(local_date(datetime(2025, 6, 9, 22, 30)), date(2025, 6, 10))

    def test_day_bounds(self) -> None:
        start, end = local_day_bounds_utc(date(2025, 6, 9))

        self.assertEqual(start, datetime(2025, 6, 8, 22, 0, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2025, 6, 9, 22, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
