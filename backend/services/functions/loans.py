"""
get_loans / get_upcoming_emis: loan book and EMI calendar.
"""

from typing import Optional

from pydantic import BaseModel, Field

from services import loan_calculator as calc
from services.finance_data import FamilyFinanceData
from services.money import format_money, money_fields
from services.tool_registry import FamilyContext, ToolDefinition, ToolName

MAX_DAYS_AHEAD = 90
EMI_DATES_PER_LOAN = 3


class GetLoansArgs(BaseModel):
    type: Optional[str] = Field(
        "all",
        description="Filter by loan type. Options: all, home_loan, personal, car_loan, education_loan, gold",
    )


def get_loans(data: FamilyFinanceData, args: GetLoansArgs, context: FamilyContext) -> dict:
    today = context.current_date()
    filter_type = (args.type or "all").lower()
    currency = context.currency

    loans_data = []
    total_outstanding = 0.0
    total_monthly_emi = 0.0

    for account, loan in data.loans():
        if filter_type != "all" and loan.subtype != filter_type:
            continue

        account_currency = account.currency or currency
        outstanding = calc.outstanding_principal(loan)
        emi = calc.emi_amount(loan)
        next_date = calc.next_emi_date(loan, today)

        loans_data.append({
            "name": account.name,
            "lender": loan.lender_name or "Unknown Lender",
            "type": loan.subtype,
            "type_display": calc.subtype_label(loan.subtype),
            "principal_amount": loan.principal_amount,
            "outstanding_principal": outstanding,
            "outstanding_formatted": format_money(outstanding, account_currency),
            **money_fields("emi_amount", emi, account_currency),
            "emi_day": loan.emi_day,
            "next_emi_date": next_date.isoformat() if next_date else None,
            "days_until_next_emi": (next_date - today).days if next_date else None,
            "interest_rate": loan.interest_rate,
            "rate_type": loan.rate_type,
            "tenure_months": loan.term_months,
            "remaining_months": calc.remaining_months(loan),
            "principal_paid": calc.principal_paid_to_date(loan),
            "interest_paid": calc.interest_paid_to_date(loan),
            "tax_benefits": calc.tax_benefits_this_year(loan, today),
            "currency": account_currency,
        })
        total_outstanding += outstanding
        total_monthly_emi += emi

    return {
        "as_of_date": today.isoformat(),
        "summary": {
            "headline": (
                f"You have {len(loans_data)} loan(s) with total outstanding of "
                f"{format_money(total_outstanding, currency)}"
            ),
            "monthly_emi_burden": f"Total monthly EMI: {format_money(total_monthly_emi, currency)}",
        },
        "total_loans": len(loans_data),
        **money_fields("total_outstanding", total_outstanding, currency),
        **money_fields("total_monthly_emi", total_monthly_emi, currency),
        "currency": currency,
        "loans": loans_data,
    }


def urgency_level(days_until: int) -> str:
    if days_until <= 2:
        return "critical"
    if days_until <= 7:
        return "high"
    if days_until <= 14:
        return "medium"
    return "low"


class GetUpcomingEmisArgs(BaseModel):
    days_ahead: int = Field(30, ge=0, description="Number of days to look ahead. Default is 30, max is 90.")


def get_upcoming_emis(data: FamilyFinanceData, args: GetUpcomingEmisArgs, context: FamilyContext) -> dict:
    today = context.current_date()
    days_ahead = min(args.days_ahead, MAX_DAYS_AHEAD)
    currency = context.currency

    upcoming = []
    for account, loan in data.loans():
        if not loan.emi_day:
            continue
        emi = calc.emi_amount(loan)
        if emi == 0:
            continue

        account_currency = account.currency or currency
        for due in calc.upcoming_emi_dates(loan, today, EMI_DATES_PER_LOAN):
            days_until = (due - today).days
            if days_until < 0 or days_until > days_ahead:
                continue
            upcoming.append({
                "loan_name": account.name,
                "lender": loan.lender_name,
                "loan_type": calc.subtype_label(loan.subtype, long=False),
                **money_fields("emi_amount", emi, account_currency),
                "due_date": due.isoformat(),
                "due_date_formatted": due.strftime("%d %b %Y"),
                "day_of_month": loan.emi_day,
                "days_until": days_until,
                "urgency": urgency_level(days_until),
                "currency": account_currency,
            })

    upcoming.sort(key=lambda emi: (emi["due_date"], emi["loan_name"]))

    def bucket(rows: list) -> dict:
        return {"count": len(rows), **money_fields("total", sum(r["emi_amount"] for r in rows), currency)}

    total_due = sum(e["emi_amount"] for e in upcoming)
    return {
        "as_of_date": today.isoformat(),
        "looking_ahead_days": days_ahead,
        "total_emis_due": len(upcoming),
        **money_fields("total_amount_due", total_due, currency),
        "currency": currency,
        "summary": {
            "this_week": bucket([e for e in upcoming if e["days_until"] <= 7]),
            "next_week": bucket([e for e in upcoming if 7 < e["days_until"] <= 14]),
            "later": bucket([e for e in upcoming if e["days_until"] > 14]),
        },
        "upcoming_emis": upcoming,
    }


DEFINITIONS = [
    ToolDefinition(
        name=ToolName.GET_LOANS,
        description=(
            "Get user's loans including home loans, personal loans, car loans with EMI schedules, "
            "outstanding amounts, and tax benefits"
        ),
        args_model=GetLoansArgs,
        handler=get_loans,
    ),
    ToolDefinition(
        name=ToolName.GET_UPCOMING_EMIS,
        description="Get upcoming EMI payments due in the next 30 days (up to 90) with dates, amounts and urgency",
        args_model=GetUpcomingEmisArgs,
        handler=get_upcoming_emis,
    ),
]
