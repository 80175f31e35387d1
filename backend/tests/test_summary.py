import os
import pathlib
import sys
import unittest
from datetime import timedelta, timezone

BACKEND_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("API_BASE_URL", "http://api.test")

from budgetsync.services.summary import build_chart_series, build_summary, export_csv, parse_occurred_at

EXPENSES = [
    {"id": "e1", "amount": "12.50", "category": "GROCERIES", "note": "milk, eggs", "occurredAt": "2026-02-11T10:00:00Z"},
    {"id": "e2", "amount": 7.5, "category": "UTILITIES", "note": None, "occurredAt": "2026-02-12T08:00:00+00:00"},
]
INCOMES = [
    {"id": "i1", "amount": 100, "source": "SALARY", "note": "", "occurredAt": "2026-02-11T09:00:00Z"},
]


class SummaryTests(unittest.TestCase):
    def test_build_summary_coerces_string_amounts(self):
        summary = build_summary(EXPENSES, INCOMES)
        self.assertEqual(summary, {"totalIncome": 100.0, "totalExpense": 20.0, "balance": 80.0})

    def test_build_summary_empty(self):
        self.assertEqual(build_summary([], []), {"totalIncome": 0.0, "totalExpense": 0.0, "balance": 0.0})

    def test_chart_series_groups_by_day(self):
        series = build_chart_series(EXPENSES, INCOMES)
        self.assertEqual(
            series,
            [
                {"name": "Feb 11", "income": 100.0, "expense": 12.5},
                {"name": "Feb 12", "income": 0.0, "expense": 7.5},
            ],
        )

    def test_chart_series_buckets_days_in_display_zone(self):
        late_evening = [{"amount": 5, "category": "MISC", "occurredAt": "2026-02-11T20:00:00Z"}]

        self.assertEqual(build_chart_series(late_evening, [])[0]["name"], "Feb 11")
        jakarta = timezone(timedelta(hours=7))
        self.assertEqual(build_chart_series(late_evening, [], tz=jakarta)[0]["name"], "Feb 12")

    def test_chart_series_skips_rows_without_date(self):
        series = build_chart_series([{"amount": 5, "occurredAt": "not-a-date"}], [])
        self.assertEqual(series, [])

    def test_export_csv_layout(self):
        lines = export_csv(EXPENSES, INCOMES).split("\n")
        self.assertEqual(lines[0], "type,date,amount,category_or_source,note")
        self.assertEqual(lines[1], "expense,2026-02-11T10:00:00Z,12.50,GROCERIES,milk; eggs")
        self.assertEqual(lines[2], "expense,2026-02-12T08:00:00+00:00,7.50,UTILITIES,")
        self.assertEqual(lines[3], "income,2026-02-11T09:00:00Z,100.00,SALARY,")
        self.assertEqual(len(lines), 4)

    def test_parse_occurred_at_normalizes_to_utc(self):
        dt = parse_occurred_at("2026-02-11T10:15:12+07:00")
        self.assertEqual(dt.isoformat(), "2026-02-11T03:15:12+00:00")
        self.assertIsNone(parse_occurred_at(None))


if __name__ == "__main__":
    unittest.main()
