"""
get_transactions / get_accounts: raw ledger and account listings.
"""

import math
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from services.finance_data import FamilyFinanceData
from services.money import format_money, money_fields
from services.periods import resolve_period
from services.tool_registry import FamilyContext, ToolDefinition, ToolName

PAGE_SIZE = 50


class GetTransactionsArgs(BaseModel):
    start_date: Optional[date] = Field(None, description="Start date (YYYY-MM-DD). Overrides period.")
    end_date: Optional[date] = Field(None, description="End date (YYYY-MM-DD). Overrides period.")
    period: Optional[str] = Field(
        None,
        description="Time period. Options: this_month, last_month, last_3_months, last_6_months, this_year, last_year",
    )
    category: Optional[str] = Field(None, description="Filter by category name (partial match)")
    merchant: Optional[str] = Field(None, description="Filter by merchant name (partial match)")
    search: Optional[str] = Field(None, description="Free-text search over description, notes and merchant")
    page: int = Field(1, ge=1, description="Page number, 50 transactions per page")


def get_transactions(data: FamilyFinanceData, args: GetTransactionsArgs, context: FamilyContext) -> dict:
    start, end = args.start_date, args.end_date
    if args.period and not (start or end):
        period = resolve_period(args.period, context.current_date())
        start, end = period.start, period.end

    query = data.transactions_query(start, end, category=args.category,
                                    merchant=args.merchant, search=args.search)
    matching = query.all()

    income = sum(-t.amount for t in matching if t.amount < 0)
    expense = sum(t.amount for t in matching if t.amount > 0)
    total_results = len(matching)
    total_pages = max(math.ceil(total_results / PAGE_SIZE), 1)

    ordered = sorted(matching, key=lambda t: (t.date, t.id), reverse=True)
    page_rows = ordered[(args.page - 1) * PAGE_SIZE: args.page * PAGE_SIZE]
    currency = context.currency

    return {
        "filters": {
            "start_date": start.isoformat() if start else None,
            "end_date": end.isoformat() if end else None,
            "category": args.category,
            "merchant": args.merchant,
            "search": args.search,
        },
        "currency": currency,
        "page": args.page,
        "per_page": PAGE_SIZE,
        "total_pages": total_pages,
        "total_results": total_results,
        **money_fields("total_income", income, currency),
        **money_fields("total_expense", expense, currency),
        "transactions": [
            {
                "date": t.date.isoformat(),
                "date_formatted": t.date.strftime(context.date_format),
                "name": t.name,
                "amount": round(abs(t.amount), 2),
                "formatted_amount": format_money(abs(t.amount), t.currency or currency),
                "classification": t.classification,
                "category": t.category.name if t.category else None,
                "merchant": t.merchant_name,
                "account": t.account.name if t.account else None,
                "currency": t.currency or currency,
            }
            for t in page_rows
        ],
    }


class GetAccountsArgs(BaseModel):
    pass


def get_accounts(data: FamilyFinanceData, args: GetAccountsArgs, context: FamilyContext) -> dict:
    accounts = data.accounts()
    return {
        "as_of_date": context.current_date().isoformat(),
        "currency": context.currency,
        "accounts": [
            {
                "name": a.name,
                "type": a.accountable_type,
                "subtype": a.subtype,
                "classification": a.classification,
                "currency": a.currency or context.currency,
                **money_fields("balance", a.balance, a.currency or context.currency),
            }
            for a in accounts
        ],
    }


DEFINITIONS = [
    ToolDefinition(
        name=ToolName.GET_TRANSACTIONS,
        description=(
            "Get the user's transactions, newest first, filtered by date range, period, "
            "category, merchant or free-text search. Includes income and expense totals."
        ),
        args_model=GetTransactionsArgs,
        handler=get_transactions,
    ),
    ToolDefinition(
        name=ToolName.GET_ACCOUNTS,
        description="Get the user's accounts with balances, types and classification (asset or liability)",
        args_model=GetAccountsArgs,
        handler=get_accounts,
    ),
]
