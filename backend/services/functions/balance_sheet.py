"""
get_balance_sheet / get_income_statement: net worth and income vs expense.
"""

from typing import Optional

from pydantic import BaseModel, Field

from services.finance_data import FamilyFinanceData
from services.money import format_money, money_fields
from services.periods import resolve_period, shift_months
from services.tool_registry import FamilyContext, ToolDefinition, ToolName

HISTORY_YEARS = 5


def debt_to_asset_health_message(assets: float, liabilities: float) -> str:
    if assets == 0:
        return "No assets recorded"

    ratio = liabilities / assets
    if ratio <= 0.2:
        return "Excellent financial health - very low debt"
    if ratio <= 0.4:
        return "Good financial health - manageable debt"
    if ratio <= 0.6:
        return "Moderate debt levels - consider paying down debt"
    return "High debt levels - debt reduction recommended"


class GetBalanceSheetArgs(BaseModel):
    pass


def get_balance_sheet(data: FamilyFinanceData, args: GetBalanceSheetArgs, context: FamilyContext) -> dict:
    today = context.current_date()
    currency = context.currency

    assets = data.total_balance("asset")
    liabilities = data.total_balance("liability")
    net_worth = assets - liabilities

    oldest = data.oldest_snapshot_date()
    window_start = shift_months(today, -12 * HISTORY_YEARS)
    history_start = max(window_start, oldest) if oldest else today

    ratio = 0 if liabilities == 0 or assets == 0 else liabilities / assets

    return {
        "as_of_date": today.isoformat(),
        "oldest_account_start_date": oldest.isoformat() if oldest else None,
        "currency": currency,
        "summary": {
            "headline": f"Net worth of {format_money(net_worth, currency)} as of {today.strftime('%b %d, %Y')}",
            "assets_summary": f"Total assets: {format_money(assets, currency)}",
            "liabilities_summary": f"Total liabilities: {format_money(liabilities, currency)}",
            "health_indicator": debt_to_asset_health_message(assets, liabilities),
        },
        "net_worth": {
            **money_fields("current", net_worth, currency),
            "monthly_history": data.monthly_balance_history(history_start, today),
        },
        "assets": {
            **money_fields("current", assets, currency),
            "monthly_history": data.monthly_balance_history(history_start, today, "asset"),
        },
        "liabilities": {
            **money_fields("current", liabilities, currency),
            "monthly_history": data.monthly_balance_history(history_start, today, "liability"),
        },
        "insights": {
            "debt_to_asset_ratio": f"{round(ratio * 100)}%",
        },
    }


class GetIncomeStatementArgs(BaseModel):
    period: Optional[str] = Field(
        "this_month",
        description="Time period. Options: this_month, last_month, last_3_months, last_6_months, this_year, last_year",
    )


def get_income_statement(data: FamilyFinanceData, args: GetIncomeStatementArgs,
                         context: FamilyContext) -> dict:
    period = resolve_period(args.period, context.current_date())
    currency = context.currency
    frame = data.transactions_frame(period)

    if frame.empty:
        income_by_category, expense_by_category = {}, {}
        total_income = total_expense = 0.0
    else:
        frame["category"] = frame["category"].fillna("Uncategorized")
        income = frame[frame["amount"] < 0]
        expenses = frame[frame["amount"] > 0]
        income_by_category = (-income.groupby("category")["amount"].sum()).sort_values(ascending=False).to_dict()
        expense_by_category = expenses.groupby("category")["amount"].sum().sort_values(ascending=False).to_dict()
        total_income = float(-income["amount"].sum())
        total_expense = float(expenses["amount"].sum())

    net = total_income - total_expense
    savings_rate = round(net / total_income * 100, 1) if total_income > 0 else 0

    def breakdown(by_category: dict, total: float) -> list:
        return [
            {
                "category": name,
                **money_fields("amount", amount, currency),
                "percentage": round(amount / total * 100, 1) if total > 0 else 0,
            }
            for name, amount in by_category.items()
        ]

    return {
        "period": period.to_dict(),
        "currency": currency,
        **money_fields("total_income", total_income, currency),
        **money_fields("total_expense", total_expense, currency),
        **money_fields("net_income", net, currency),
        "savings_rate": savings_rate,
        "income_by_category": breakdown(income_by_category, total_income),
        "expense_by_category": breakdown(expense_by_category, total_expense),
        "summary": {
            "headline": (
                f"Income of {format_money(total_income, currency)} against expenses of "
                f"{format_money(total_expense, currency)} from {period.start.strftime('%b %d, %Y')} "
                f"to {period.end.strftime('%b %d, %Y')}"
            ),
            "savings": f"Savings rate: {savings_rate}%",
        },
    }


DEFINITIONS = [
    ToolDefinition(
        name=ToolName.GET_BALANCE_SHEET,
        description=(
            "Get the user's balance sheet: net worth, total assets and liabilities with monthly history. "
            "Use for questions like 'What is my net worth?' or 'How has my wealth changed over time?'"
        ),
        args_model=GetBalanceSheetArgs,
        handler=get_balance_sheet,
    ),
    ToolDefinition(
        name=ToolName.GET_INCOME_STATEMENT,
        description="Get income versus expenses for a period, broken down by category, with savings rate",
        args_model=GetIncomeStatementArgs,
        handler=get_income_statement,
    ),
]
