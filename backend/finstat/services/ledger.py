import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

INCOME = "Income"
EXPENSE = "Expense"


@dataclass(frozen=True)
class LedgerSummary:
    running_total: float
    total_income: float
    total_expenses: float
    count: int


def _type_of(row: Mapping[str, Any]) -> str:
    value = row["type"]
    return getattr(value, "value", value)


def transaction_total(row: Mapping[str, Any]) -> float:
    return float(row["debit"]) - float(row["credit"])


def summarize(rows: Iterable[Mapping[str, Any]]) -> LedgerSummary:
    """Reduce a set of transactions to the figures the dashboard shows.

    ``math.fsum`` keeps the sums exact up to the final rounding, so the
    result is the same whatever order the rows arrive in.
    """
    rows = list(rows)
    return LedgerSummary(
        running_total=math.fsum(transaction_total(r) for r in rows),
        total_income=math.fsum(float(r["credit"]) for r in rows if _type_of(r) == INCOME),
        total_expenses=math.fsum(float(r["debit"]) for r in rows if _type_of(r) == EXPENSE),
        count=len(rows),
    )
