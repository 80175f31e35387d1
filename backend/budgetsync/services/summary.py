import csv
import io
from datetime import datetime, timezone, tzinfo
from typing import Any


def coerce_amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_occurred_at(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def build_summary(expenses: list[dict[str, Any]], incomes: list[dict[str, Any]]) -> dict[str, float]:
    total_income = sum(coerce_amount(row.get("amount")) for row in incomes)
    total_expense = sum(coerce_amount(row.get("amount")) for row in expenses)
    return {
        "totalIncome": round(total_income, 2),
        "totalExpense": round(total_expense, 2),
        "balance": round(total_income - total_expense, 2),
    }


def build_chart_series(
    expenses: list[dict[str, Any]],
    incomes: list[dict[str, Any]],
    tz: tzinfo = timezone.utc,
) -> list[dict[str, Any]]:
    """Per-day income and expense totals, bucketed by calendar day in ``tz``."""
    # Buckets keep first-seen order: incomes first, then expenses.
    grouped: dict[str, dict[str, float]] = {}
    for kind, rows in (("income", incomes), ("expense", expenses)):
        for row in rows:
            occurred = parse_occurred_at(row.get("occurredAt"))
            if occurred is None:
                continue
            key = occurred.astimezone(tz).strftime("%b %d")
            totals = grouped.setdefault(key, {"income": 0.0, "expense": 0.0})
            totals[kind] += coerce_amount(row.get("amount"))
    return [
        {"name": name, "income": round(values["income"], 2), "expense": round(values["expense"], 2)}
        for name, values in grouped.items()
    ]


def _csv_note(value: Any) -> str:
    return str(value or "").replace(",", ";")


def export_csv(expenses: list[dict[str, Any]], incomes: list[dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["type", "date", "amount", "category_or_source", "note"])
    for row in expenses:
        writer.writerow(
            ["expense", row.get("occurredAt") or "", f"{coerce_amount(row.get('amount')):.2f}",
             row.get("category") or "", _csv_note(row.get("note"))]
        )
    for row in incomes:
        writer.writerow(
            ["income", row.get("occurredAt") or "", f"{coerce_amount(row.get('amount')):.2f}",
             row.get("source") or "", _csv_note(row.get("note"))]
        )
    return buf.getvalue().rstrip("\n")
