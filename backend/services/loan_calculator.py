"""
Module: loan_calculator.py
Description: EMI, amortization and prepayment maths for Indian loans.

All functions take a models.Loan (with its emi_payments loaded) and an
explicit `today` so results are deterministic under test.

Formulas:
    EMI = P * r * (1 + r)^n / ((1 + r)^n - 1),  r = annual_rate / 12 / 100
    Reduce-tenure option keeps the EMI and solves for n:
        n = -ln(1 - B*r/EMI) / ln(1 + r)
    Reduce-EMI option keeps the remaining tenure and recomputes the EMI.

Author: RUPI Assistant Team
"""

import math
from datetime import date
from typing import List, Optional, Dict, Any

from services.periods import shift_months, fiscal_year_start


SUBTYPES = {
    "mortgage": ("Mortgage", "Mortgage"),
    "home_loan": ("Home Loan", "Home Loan (India)"),
    "student": ("Student", "Student Loan"),
    "education_loan": ("Education", "Education Loan (India)"),
    "auto": ("Auto", "Auto Loan"),
    "car_loan": ("Car", "Car Loan (India)"),
    "personal": ("Personal", "Personal Loan"),
    "gold": ("Gold", "Gold Loan (India)"),
    "business": ("Business", "Business Loan"),
    "lap": ("LAP", "Loan Against Property"),
    "two_wheeler": ("Two Wheeler", "Two Wheeler Loan"),
    "consumer_durable": ("Consumer", "Consumer Durable Loan"),
    "other": ("Other", "Other Loan"),
}

# Income-tax deduction caps (INR)
SECTION_80C_LIMIT = 150000
SECTION_24_LIMIT = 200000

MAX_EMI_DAY = 28
SETTLED_STATUSES = ("paid", "prepayment")


def subtype_label(subtype: Optional[str], long: bool = True) -> str:
    labels = SUBTYPES.get(subtype or "")
    if not labels:
        return subtype or "Loan"
    return labels[1] if long else labels[0]


# =============================================================================
# EMI
# =============================================================================

def calculated_emi(loan) -> Optional[float]:
    """Standard reducing-balance EMI, rounded to the rupee. None when terms are missing."""
    if loan.term_months is None or loan.interest_rate is None:
        return None
    principal = loan.principal_amount or 0
    if principal == 0 or loan.term_months == 0:
        return 0.0

    monthly_rate = loan.interest_rate / 100.0 / 12.0
    n = loan.term_months
    if monthly_rate == 0:
        payment = principal / n
    else:
        growth = (1 + monthly_rate) ** n
        payment = principal * monthly_rate * growth / (growth - 1)
    return float(round(payment))


def emi_amount(loan) -> float:
    """EMI from the sanction letter when known, else the formula."""
    if loan.actual_emi and loan.actual_emi > 0:
        return float(loan.actual_emi)
    return calculated_emi(loan) or 0.0


# =============================================================================
# Payment history
# =============================================================================

def _settled(loan) -> List:
    return [p for p in (loan.emi_payments or []) if p.status in SETTLED_STATUSES]


def principal_paid_to_date(loan) -> float:
    return round(sum(p.principal_component or 0 for p in _settled(loan)), 2)


def interest_paid_to_date(loan) -> float:
    return round(sum(p.interest_component or 0 for p in _settled(loan)), 2)


def outstanding_principal(loan) -> float:
    return round((loan.principal_amount or 0) - principal_paid_to_date(loan), 2)


def remaining_months(loan) -> int:
    if not loan.term_months:
        return 0
    paid_count = sum(1 for p in (loan.emi_payments or []) if p.status == "paid")
    return max(loan.term_months - paid_count, 0)


# =============================================================================
# Schedule
# =============================================================================

def upcoming_emi_dates(loan, today: date, count: int = 3) -> List[date]:
    """Next `count` debit dates. EMI days past the 28th are debited on the 28th."""
    if not loan.emi_day:
        return []

    day = min(loan.emi_day, MAX_EMI_DAY)
    first = date(today.year, today.month, day)
    offset = 1 if today.day > day else 0
    return [shift_months(first, offset + i) for i in range(count)]


def next_emi_date(loan, today: date) -> Optional[date]:
    dates = upcoming_emi_dates(loan, today, 1)
    return dates[0] if dates else None


# =============================================================================
# Prepayment
# =============================================================================

def prepayment_impact(loan, prepayment_amount: float) -> Dict[str, Any]:
    """
    Compare the two ways a lender can apply a part-prepayment.

    Returns an empty dict when the loan has no principal or no interest rate.
    """
    principal = loan.principal_amount or 0
    rate = loan.interest_rate or 0
    if principal <= 0 or rate <= 0:
        return {}

    current_outstanding = outstanding_principal(loan)
    new_outstanding = max(current_outstanding - prepayment_amount, 0)
    monthly_rate = rate / 100.0 / 12.0
    emi = emi_amount(loan)
    months_left = remaining_months(loan)

    new_tenure = months_left
    if emi > 0:
        remaining_ratio = 1 - (new_outstanding * monthly_rate / emi)
        if remaining_ratio > 0:
            new_tenure = math.ceil(-math.log(remaining_ratio) / math.log(1 + monthly_rate))

    original_total = emi * months_left
    interest_saved_tenure = original_total - emi * new_tenure - prepayment_amount

    new_emi = 0.0
    if months_left > 0:
        growth = (1 + monthly_rate) ** months_left
        new_emi = new_outstanding * monthly_rate * growth / (growth - 1)
    interest_saved_emi = original_total - new_emi * months_left - prepayment_amount

    return {
        "prepayment_amount": prepayment_amount,
        "current_outstanding": current_outstanding,
        "new_outstanding": round(new_outstanding, 2),
        "remaining_months": months_left,
        "emi": emi,
        "option_reduce_tenure": {
            "new_tenure_months": new_tenure,
            "months_saved": months_left - new_tenure,
            "interest_saved": round(interest_saved_tenure, 2),
        },
        "option_reduce_emi": {
            "new_emi": round(new_emi, 2),
            "emi_reduction": round(emi - new_emi, 2),
            "interest_saved": round(interest_saved_emi, 2),
        },
    }


# =============================================================================
# Tax
# =============================================================================

def tax_benefits_this_year(loan, today: date) -> Dict[str, float]:
    """Deductions available in the current financial year (April to March)."""
    fy_start = fiscal_year_start(today)
    fy_end = date(fy_start.year + 1, 3, 31)

    this_year = [
        p for p in _settled(loan)
        if p.paid_date and fy_start <= p.paid_date <= fy_end
    ]
    principal_paid = round(sum(p.principal_component or 0 for p in this_year), 2)
    interest_paid = round(sum(p.interest_component or 0 for p in this_year), 2)
    is_home_loan = loan.subtype in ("home_loan", "mortgage")

    return {
        "financial_year": f"{fy_start.year}-{str(fy_start.year + 1)[-2:]}",
        "principal_paid": principal_paid,
        "interest_paid": interest_paid,
        "section_80c_eligible": min(principal_paid, SECTION_80C_LIMIT) if is_home_loan else 0,
        "section_24_eligible": min(interest_paid, SECTION_24_LIMIT) if is_home_loan else 0,
        "section_80e_eligible": interest_paid if loan.subtype == "education_loan" else 0,
    }
