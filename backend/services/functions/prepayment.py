"""
calculate_prepayment: reduce-tenure vs reduce-EMI comparison for a
part-prepayment on one or more loans.
"""

from typing import Optional

from pydantic import BaseModel, Field

from services import loan_calculator as calc
from services.finance_data import FamilyFinanceData
from services.money import format_money, money_fields
from services.tool_registry import FamilyContext, ToolDefinition, ToolName


class CalculatePrepaymentArgs(BaseModel):
    prepayment_amount: float = Field(..., description="Amount to prepay in the family's currency")
    loan_name: Optional[str] = Field(None, description="Name of the loan to analyze (partial match)")


def _advice(results: list, prepayment_amount: float, currency: str) -> Optional[str]:
    if not results:
        return None
    best = max(results, key=lambda r: r["option_1_reduce_tenure"]["interest_saved"])
    tenure = best["option_1_reduce_tenure"]
    return (
        f"For maximum benefit, prepay {format_money(prepayment_amount, currency)} on your "
        f"{best['loan_name']}. This could save you {format_money(tenure['interest_saved'], currency)} "
        f"in interest and reduce your loan tenure by {tenure['months_saved']} months."
    )


def calculate_prepayment(data: FamilyFinanceData, args: CalculatePrepaymentArgs,
                         context: FamilyContext) -> dict:
    amount = float(args.prepayment_amount)
    if amount <= 0:
        return {"error": "Prepayment amount must be positive"}

    loans = data.loans(name_filter=args.loan_name)
    if not loans:
        return {"error": "No matching loans found"}

    results = []
    for account, loan in loans:
        if calc.outstanding_principal(loan) <= 0:
            continue
        impact = calc.prepayment_impact(loan, amount)
        if not impact:
            continue

        account_currency = account.currency or context.currency
        tenure = impact["option_reduce_tenure"]
        emi_option = impact["option_reduce_emi"]
        current_emi = impact["emi"]

        results.append({
            "loan_name": account.name,
            "loan_type": calc.subtype_label(loan.subtype),
            "lender": loan.lender_name,
            "currency": account_currency,
            "current_status": {
                **money_fields("outstanding", impact["current_outstanding"], account_currency),
                "remaining_months": impact["remaining_months"],
                **money_fields("current_emi", current_emi, account_currency),
            },
            "prepayment": {
                "amount": amount,
                "formatted": format_money(amount, account_currency),
                **money_fields("new_outstanding", impact["new_outstanding"], account_currency),
            },
            "option_1_reduce_tenure": {
                "description": "Keep same EMI, reduce tenure",
                "new_tenure_months": tenure["new_tenure_months"],
                "months_saved": tenure["months_saved"],
                "years_saved": round(tenure["months_saved"] / 12.0, 1),
                **money_fields("interest_saved", tenure["interest_saved"], account_currency),
                "recommendation": (
                    "Recommended" if tenure["interest_saved"] > emi_option["interest_saved"] else None
                ),
            },
            "option_2_reduce_emi": {
                "description": "Keep same tenure, reduce EMI",
                **money_fields("new_emi", emi_option["new_emi"], account_currency),
                **money_fields("emi_reduction", emi_option["emi_reduction"], account_currency),
                **money_fields("interest_saved", emi_option["interest_saved"], account_currency),
                "recommendation": (
                    "Better for cash flow" if emi_option["interest_saved"] >= tenure["interest_saved"] else None
                ),
            },
        })

    if not results:
        return {"error": "No loans with outstanding principal found"}

    return {
        "analysis_date": context.current_date().isoformat(),
        "currency": context.currency,
        "prepayment_amount": amount,
        "prepayment_formatted": format_money(amount, context.currency),
        "loans_analyzed": len(results),
        "results": results,
        "advice": _advice(results, amount, context.currency),
    }


DEFINITIONS = [
    ToolDefinition(
        name=ToolName.CALCULATE_PREPAYMENT,
        description=(
            "Calculate the impact of making a prepayment on a loan - shows savings on interest "
            "and tenure reduction options"
        ),
        args_model=CalculatePrepaymentArgs,
        handler=calculate_prepayment,
    ),
]
