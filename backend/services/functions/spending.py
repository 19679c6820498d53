"""
analyze_spending: category / merchant breakdown, daily anomalies and
period-over-period comparison.

Anomalies are days whose total spend exceeds twice the mean daily spend,
where mean = period total / number of days that had any spending.
"""

from typing import List, Optional

import pandas as pd
from pydantic import BaseModel, Field

from services.finance_data import FamilyFinanceData
from services.money import format_money, money_fields
from services.periods import previous_period, resolve_period
from services.tool_registry import FamilyContext, ToolDefinition, ToolName

TOP_N = 10
MAX_ANOMALIES = 5
ANOMALY_MULTIPLIER = 2


def find_spending_anomalies(daily_totals: pd.Series, currency: str) -> List[dict]:
    """
    Days above ANOMALY_MULTIPLIER x the mean spending day.

    `daily_totals` is indexed by date. Ties are broken by date so the output
    is deterministic.
    """
    if daily_totals.empty:
        return []

    mean_daily = float(daily_totals.sum()) / max(len(daily_totals), 1)
    threshold = mean_daily * ANOMALY_MULTIPLIER

    spikes = [(day, float(amount)) for day, amount in daily_totals.items() if amount > threshold]
    spikes.sort(key=lambda item: (-item[1], item[0]))

    return [
        {"date": day.isoformat(), "amount": round(amount, 2), "formatted": format_money(amount, currency)}
        for day, amount in spikes[:MAX_ANOMALIES]
    ]


class AnalyzeSpendingArgs(BaseModel):
    period: Optional[str] = Field(
        "this_month",
        description="Time period to analyze. Options: this_month, last_month, last_3_months, last_6_months, this_year",
    )
    category: Optional[str] = Field(None, description="Optional: Filter analysis to a specific category")
    compare_previous: bool = Field(
        True, description="Compare with the previous period of same duration. Default: true"
    )


def analyze_spending(data: FamilyFinanceData, args: AnalyzeSpendingArgs, context: FamilyContext) -> dict:
    today = context.current_date()
    currency = context.currency
    period = resolve_period(args.period, today)

    frame = data.transactions_frame(period, category=args.category, expenses_only=True)
    total_spent = float(frame["amount"].sum()) if not frame.empty else 0.0

    if frame.empty:
        by_category = pd.Series(dtype=float)
        by_merchant = pd.Series(dtype=float)
        daily = pd.Series(dtype=float)
    else:
        by_category = frame.dropna(subset=["category"]).groupby("category")["amount"].sum()
        by_category = by_category.sort_values(ascending=False, kind="stable")
        by_merchant = frame.dropna(subset=["merchant"]).groupby("merchant")["amount"].sum()
        by_merchant = by_merchant.sort_values(ascending=False, kind="stable").head(TOP_N)
        daily = frame.groupby("date")["amount"].sum()

    avg_daily = total_spent / max(len(daily), 1)
    anomalies = find_spending_anomalies(daily, currency)

    result = {
        "period": period.to_dict(),
        **money_fields("total_spent", total_spent, currency),
        "transaction_count": int(len(frame)),
        "average_daily_spending": round(avg_daily, 2),
        "average_daily_formatted": format_money(avg_daily, currency),
        "currency": currency,
        "top_categories": [
            {
                "name": name,
                "amount": round(float(amount), 2),
                "formatted": format_money(amount, currency),
                "percentage": round(float(amount) / total_spent * 100, 1) if total_spent > 0 else 0,
            }
            for name, amount in by_category.head(TOP_N).items()
        ],
        "top_merchants": [
            {"name": name, "amount": round(float(amount), 2), "formatted": format_money(amount, currency)}
            for name, amount in by_merchant.items()
        ],
        "spending_anomalies": anomalies,
        "anomalies_found": bool(anomalies),
    }

    if args.compare_previous:
        previous = previous_period(args.period, today)
        previous_frame = data.transactions_frame(previous, category=args.category, expenses_only=True)
        previous_total = float(previous_frame["amount"].sum()) if not previous_frame.empty else 0.0
        change = total_spent - previous_total

        if change > 0:
            trend = "increased"
        elif change < 0:
            trend = "decreased"
        else:
            trend = "unchanged"

        result["comparison"] = {
            "previous_period": {
                "start_date": previous.start.isoformat(),
                "end_date": previous.end.isoformat(),
            },
            "previous_total": round(previous_total, 2),
            "previous_formatted": format_money(previous_total, currency),
            "change": round(change, 2),
            "change_formatted": format_money(abs(change), currency),
            "change_percent": round(change / previous_total * 100, 1) if previous_total > 0 else 0,
            "trend": trend,
        }

    if len(by_category):
        top_name = by_category.index[0]
        top_category = f"{top_name} at {format_money(by_category.iloc[0], currency)}"
    else:
        top_category = "No categories found"

    result["summary"] = {
        "headline": (
            f"Total spending of {format_money(total_spent, currency)} from "
            f"{period.start.strftime('%b %d, %Y')} to {period.end.strftime('%b %d, %Y')}"
        ),
        "top_spending_category": top_category,
        "daily_average": f"Average daily spending: {format_money(avg_daily, currency)}",
        "transaction_volume": f"{len(frame)} transactions in this period",
    }
    return result


DEFINITIONS = [
    ToolDefinition(
        name=ToolName.ANALYZE_SPENDING,
        description="Analyze spending patterns, find anomalies, compare periods, and identify top spending categories",
        args_model=AnalyzeSpendingArgs,
        handler=analyze_spending,
    ),
]
