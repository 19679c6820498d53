"""
get_investments: holdings across investment accounts plus tax-advantaged
retirement schemes (PPF / EPF / NPS).
"""

import re
from typing import Optional

from pydantic import BaseModel, Field

from services.finance_data import FamilyFinanceData
from services.money import format_money, money_fields
from services.tool_registry import FamilyContext, ToolDefinition, ToolName

MAX_HOLDINGS = 50
RETIREMENT_TYPES = ("ppf", "epf", "nps")

_INVESTMENT_TYPES = [
    (re.compile(r"ppf|public provident"), "PPF"),
    (re.compile(r"epf|employee provident"), "EPF"),
    (re.compile(r"nps|national pension"), "NPS"),
    (re.compile(r"\bfd\b|fixed deposit"), "Fixed Deposit"),
    (re.compile(r"\bmf\b|mutual fund|sip"), "Mutual Fund"),
    (re.compile(r"stock|equity|share"), "Stocks"),
]
FILTER_LABELS = {
    "stocks": "Stocks",
    "mutual_funds": "Mutual Fund",
    "ppf": "PPF",
    "epf": "EPF",
    "nps": "NPS",
    "fixed_deposits": "Fixed Deposit",
}
_MUTUAL_FUND = re.compile(r"fund|mf|mutual", re.IGNORECASE)


def detect_investment_type(account_name: str) -> str:
    name = account_name.lower()
    for pattern, label in _INVESTMENT_TYPES:
        if pattern.search(name):
            return label
    return "Investment"


def _include_holding(holding, account_type: str, filter_type: str) -> bool:
    if filter_type == "all":
        return True
    if filter_type == "stocks":
        return holding.security_type == "Stock"
    if filter_type == "mutual_funds":
        return holding.security_type == "MutualFund" or bool(_MUTUAL_FUND.search(holding.security_name or ""))
    return FILTER_LABELS.get(filter_type) == account_type


def _gain_loss(holding):
    if holding.value is None or holding.cost_basis is None:
        return None, None
    gain = holding.value - holding.cost_basis
    percent = round(gain / holding.cost_basis * 100, 2) if holding.cost_basis > 0 else None
    return round(gain, 2), percent


class GetInvestmentsArgs(BaseModel):
    type: Optional[str] = Field(
        "all",
        description="Filter by investment type. Options: all, stocks, mutual_funds, ppf, epf, nps, fixed_deposits",
    )


def get_investments(data: FamilyFinanceData, args: GetInvestmentsArgs, context: FamilyContext) -> dict:
    filter_type = (args.type or "all").lower()
    currency = context.currency
    holdings_data = []
    total_value = 0.0

    investment_accounts = data.accounts(accountable_type="Investment")
    seen_account_ids = set()

    for account in investment_accounts:
        seen_account_ids.add(account.id)
        account_currency = account.currency or currency
        holdings = data.holdings(account)
        account_type = detect_investment_type(account.name)

        if not holdings:
            if filter_type == "all" or FILTER_LABELS.get(filter_type) == account_type:
                holdings_data.append({
                    "account_name": account.name,
                    "type": account_type,
                    "currency": account_currency,
                    **money_fields("current_value", account.balance, account_currency),
                })
                total_value += account.balance or 0
            continue

        for holding in holdings:
            if not _include_holding(holding, account_type, filter_type):
                continue
            gain, gain_percent = _gain_loss(holding)
            holdings_data.append({
                "account_name": account.name,
                "security_name": holding.security_name,
                "ticker": holding.ticker,
                "security_type": holding.security_type,
                "quantity": holding.qty,
                "current_price": holding.current_price,
                **money_fields("current_value", holding.value, account_currency),
                "cost_basis": holding.cost_basis,
                "gain_loss": gain,
                "gain_loss_formatted": format_money(gain, account_currency) if gain is not None else None,
                "gain_loss_percent": gain_percent,
                "currency": account_currency,
            })
            total_value += holding.value or 0

    if filter_type == "all" or filter_type in RETIREMENT_TYPES:
        fragments = [filter_type.upper()] if filter_type in RETIREMENT_TYPES else ["PPF", "EPF", "NPS"]
        for account in data.accounts_named_like(fragments):
            # Investment accounts were already counted above
            if account.id in seen_account_ids:
                continue
            account_currency = account.currency or currency
            holdings_data.append({
                "account_name": account.name,
                "type": detect_investment_type(account.name),
                "currency": account_currency,
                "is_tax_advantaged": True,
                **money_fields("current_value", account.balance, account_currency),
            })
            total_value += account.balance or 0

    return {
        "as_of_date": context.current_date().isoformat(),
        "summary": {
            "headline": (
                f"Total investments of {format_money(total_value, currency)} "
                f"across {len(holdings_data)} holding(s)"
            ),
            "investment_count": f"{len(investment_accounts)} investment account(s)",
        },
        **money_fields("total_investment_value", total_value, currency),
        "currency": currency,
        "holdings_count": len(holdings_data),
        "holdings": holdings_data[:MAX_HOLDINGS],
    }


DEFINITIONS = [
    ToolDefinition(
        name=ToolName.GET_INVESTMENTS,
        description=(
            "Get user's investment holdings including stocks, mutual funds, PPF, EPF, NPS, "
            "and fixed deposits with current values and returns"
        ),
        args_model=GetInvestmentsArgs,
        handler=get_investments,
    ),
]
