"""
Test Module: test_assistant_functions.py
Description: Unit tests for the assistant functions and their helpers.

Tests:
    - Period resolution and comparison windows
    - Money formatting (Indian digit grouping)
    - Spending anomaly detection
    - EMI, schedule, prepayment and tax maths
    - Function outputs against a seeded database

Author: RUPI Assistant Team
"""

from datetime import date

import pandas as pd
import pytest

from models import EmiPayment, Holding, Loan
from services import loan_calculator as calc
from services.function_executor import FunctionExecutor
from services.functions.loans import urgency_level
from services.functions.spending import find_spending_anomalies
from services.money import format_money, money_fields
from services.periods import fiscal_year_start, previous_period, resolve_period, shift_months
from services.tool_registry import ToolCallRequest

from conftest import TODAY, add_account, add_loan, add_transaction, category_named


def run(db, catalog, context, name, **arguments):
    request = ToolCallRequest(call_id="call-1", name=name, arguments=arguments)
    return FunctionExecutor(catalog, db).execute(request, context).output


# =============================================================================
# Periods
# =============================================================================

class TestPeriods:
    """Tests for period token resolution."""

    @pytest.mark.parametrize("token,start,end", [
        ("this_month", date(2024, 6, 1), date(2024, 6, 15)),
        ("last_month", date(2024, 5, 1), date(2024, 5, 31)),
        ("last_3_months", date(2024, 3, 1), date(2024, 6, 15)),
        ("this_year", date(2024, 1, 1), date(2024, 6, 15)),
        ("last_year", date(2023, 1, 1), date(2023, 12, 31)),
    ])
    def test_resolve(self, token, start, end):
        period = resolve_period(token, TODAY)
        assert (period.start, period.end) == (start, end)

    def test_unknown_token_falls_back_to_this_month(self):
        assert resolve_period("fortnight", TODAY).name == "this_month"
        assert resolve_period(None, TODAY).name == "this_month"
        assert resolve_period("last_0_months", TODAY).name == "this_month"

    @pytest.mark.parametrize("token,start,end", [
        ("this_month", date(2024, 5, 1), date(2024, 5, 31)),
        ("last_month", date(2024, 4, 1), date(2024, 4, 30)),
        ("last_3_months", date(2023, 12, 1), date(2024, 2, 29)),
        ("this_year", date(2023, 1, 1), date(2023, 12, 31)),
    ])
    def test_previous_period(self, token, start, end):
        period = previous_period(token, TODAY)
        assert (period.start, period.end) == (start, end)

    def test_shift_months_clamps_day(self):
        assert shift_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert shift_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
        assert shift_months(date(2024, 12, 15), 1) == date(2025, 1, 15)

    def test_fiscal_year_starts_in_april(self):
        assert fiscal_year_start(date(2024, 3, 31)) == date(2023, 4, 1)
        assert fiscal_year_start(date(2024, 4, 1)) == date(2024, 4, 1)


# =============================================================================
# Money
# =============================================================================

class TestMoney:
    """Tests for format_money."""

    @pytest.mark.parametrize("amount,currency,expected", [
        (10550000, "INR", "₹1,05,50,000.00"),
        (100000, "INR", "₹1,00,000.00"),
        (999, "INR", "₹999.00"),
        (-1234.5, "USD", "-$1,234.50"),
        (1000, "JPY", "JPY 1,000.00"),
        (None, "INR", "₹0.00"),
    ])
    def test_format(self, amount, currency, expected):
        assert format_money(amount, currency) == expected

    def test_money_fields(self):
        assert money_fields("total", 1500.5, "INR") == {"total": 1500.5, "total_formatted": "₹1,500.50"}


# =============================================================================
# Anomalies
# =============================================================================

class TestSpendingAnomalies:
    """Tests for find_spending_anomalies."""

    def test_spike_above_twice_mean(self):
        daily = pd.Series({
            date(2024, 6, 1): 100.0,
            date(2024, 6, 2): 100.0,
            date(2024, 6, 3): 100.0,
            date(2024, 6, 4): 1000.0,
        })
        anomalies = find_spending_anomalies(daily, "INR")

        assert [a["date"] for a in anomalies] == ["2024-06-04"]
        assert anomalies[0]["formatted"] == "₹1,000.00"

    def test_ties_are_ordered_by_date(self):
        values = {date(2024, 6, day): 100.0 for day in range(1, 11)}
        values[date(2024, 6, 20)] = 2000.0
        values[date(2024, 6, 12)] = 2000.0

        anomalies = find_spending_anomalies(pd.Series(values), "INR")

        assert [a["date"] for a in anomalies] == ["2024-06-12", "2024-06-20"]

    def test_capped_at_five_largest(self):
        values = {date(2024, 5, day): 10.0 for day in range(1, 21)}
        for i, day in enumerate(range(21, 27)):
            values[date(2024, 5, day)] = 1000.0 + i * 100

        anomalies = find_spending_anomalies(pd.Series(values), "INR")

        assert len(anomalies) == 5
        assert anomalies[0]["amount"] == 1500.0
        assert anomalies[-1]["amount"] == 1100.0

    def test_empty_series(self):
        assert find_spending_anomalies(pd.Series(dtype=float), "INR") == []

    def test_deterministic(self):
        daily = pd.Series({date(2024, 6, d): float(d * 10 if d != 7 else 5000) for d in range(1, 15)})
        assert find_spending_anomalies(daily, "INR") == find_spending_anomalies(daily, "INR")


# =============================================================================
# Loan maths
# =============================================================================

def _loan(**fields) -> Loan:
    defaults = {"subtype": "home_loan", "principal_amount": 1_000_000.0, "interest_rate": 12.0,
                "term_months": 120, "emi_day": 20}
    defaults.update(fields)
    payments = defaults.pop("payments", [])
    loan = Loan(**defaults)
    loan.emi_payments = [EmiPayment(due_date=date(2024, 1, 1), **p) for p in payments]
    return loan


class TestLoanCalculator:
    """Tests for services.loan_calculator."""

    def test_calculated_emi(self):
        assert calc.calculated_emi(_loan(term_months=12)) == 88849.0
        assert calc.calculated_emi(_loan()) == 14347.0

    def test_zero_rate_and_missing_terms(self):
        assert calc.calculated_emi(_loan(interest_rate=0.0, term_months=100)) == 10000.0
        assert calc.calculated_emi(_loan(term_months=None)) is None

    def test_actual_emi_preferred(self):
        assert calc.emi_amount(_loan(actual_emi=15000.0)) == 15000.0

    def test_outstanding_counts_paid_and_prepayments(self):
        loan = _loan(term_months=12, payments=[
            {"status": "paid", "principal_component": 10000.0, "interest_component": 9000.0},
            {"status": "prepayment", "principal_component": 50000.0, "interest_component": 0.0},
            {"status": "pending", "principal_component": 5000.0, "interest_component": 100.0},
        ])

        assert calc.outstanding_principal(loan) == 940000.0
        assert calc.interest_paid_to_date(loan) == 9000.0
        assert calc.remaining_months(loan) == 11

    @pytest.mark.parametrize("emi_day,expected", [
        (20, [date(2024, 6, 20), date(2024, 7, 20), date(2024, 8, 20)]),
        (15, [date(2024, 6, 15), date(2024, 7, 15), date(2024, 8, 15)]),
        (5, [date(2024, 7, 5), date(2024, 8, 5), date(2024, 9, 5)]),
        (31, [date(2024, 6, 28), date(2024, 7, 28), date(2024, 8, 28)]),
    ])
    def test_upcoming_emi_dates(self, emi_day, expected):
        assert calc.upcoming_emi_dates(_loan(emi_day=emi_day), TODAY) == expected

    def test_no_emi_day_no_dates(self):
        assert calc.upcoming_emi_dates(_loan(emi_day=None), TODAY) == []

    def test_prepayment_reduce_tenure(self):
        impact = calc.prepayment_impact(_loan(), 100000)

        assert impact["new_outstanding"] == 900000.0
        assert impact["option_reduce_tenure"]["months_saved"] == 20
        assert impact["option_reduce_tenure"]["interest_saved"] == 186940.0
        assert impact["option_reduce_emi"]["new_emi"] < impact["emi"]
        assert impact["option_reduce_tenure"]["interest_saved"] > impact["option_reduce_emi"]["interest_saved"]

    def test_prepayment_clearing_the_loan(self):
        impact = calc.prepayment_impact(_loan(), 2_000_000)

        assert impact["new_outstanding"] == 0
        assert impact["option_reduce_tenure"]["new_tenure_months"] == 0
        assert impact["option_reduce_emi"]["new_emi"] == 0

    @pytest.mark.parametrize("fields", [{"interest_rate": 0.0}, {"principal_amount": 0.0}])
    def test_prepayment_needs_rate_and_principal(self, fields):
        assert calc.prepayment_impact(_loan(**fields), 10000) == {}

    def test_home_loan_tax_benefits_are_capped(self):
        loan = _loan(payments=[
            {"status": "paid", "paid_date": date(2024, 5, 5),
             "principal_component": 200000.0, "interest_component": 250000.0},
            {"status": "paid", "paid_date": date(2024, 3, 5),
             "principal_component": 1000.0, "interest_component": 1000.0},
        ])
        benefits = calc.tax_benefits_this_year(loan, TODAY)

        assert benefits["financial_year"] == "2024-25"
        assert benefits["section_80c_eligible"] == 150000
        assert benefits["section_24_eligible"] == 200000
        assert benefits["section_80e_eligible"] == 0

    def test_education_loan_uses_80e(self):
        loan = _loan(subtype="education_loan", payments=[
            {"status": "paid", "paid_date": date(2024, 5, 5),
             "principal_component": 20000.0, "interest_component": 30000.0},
        ])
        benefits = calc.tax_benefits_this_year(loan, TODAY)

        assert benefits["section_80c_eligible"] == 0
        assert benefits["section_80e_eligible"] == 30000.0


# =============================================================================
# Functions against the database
# =============================================================================

class TestTransactionFunctions:
    """Tests for get_transactions / get_accounts."""

    def test_filters_and_totals(self, db_session, catalog, family, context):
        food = category_named(db_session, family.id, "Swiggy/Zomato")
        add_transaction(db_session, family.id, "UPI/SWIGGY/ORDER", 450.0, date(2024, 6, 3), food,
                        merchant_name="Swiggy")
        add_transaction(db_session, family.id, "UPI/SWIGGY/ORDER", 550.0, date(2024, 6, 10), food,
                        merchant_name="Swiggy")
        add_transaction(db_session, family.id, "SALARY JUNE", -85000.0, date(2024, 6, 1))
        add_transaction(db_session, family.id, "OLD SWIGGY", 300.0, date(2024, 4, 1), food)

        output = run(db_session, catalog, context, "get_transactions", period="this_month", search="swiggy")

        assert output["total_results"] == 2
        assert output["total_expense"] == 1000.0
        assert output["total_income"] == 0
        assert [t["date"] for t in output["transactions"]] == ["2024-06-10", "2024-06-03"]
        assert output["transactions"][0]["category"] == "Swiggy/Zomato"
        assert output["transactions"][0]["date_formatted"] == "10-06-2024"

    def test_explicit_dates_override_period(self, db_session, catalog, family, context):
        add_transaction(db_session, family.id, "RENT", 25000.0, date(2024, 4, 1))

        output = run(db_session, catalog, context, "get_transactions",
                     period="this_month", start_date="2024-04-01", end_date="2024-04-30")

        assert output["total_results"] == 1
        assert output["filters"]["start_date"] == "2024-04-01"

    def test_pagination(self, db_session, catalog, family, context):
        for day in range(1, 16):
            for i in range(4):
                add_transaction(db_session, family.id, f"TXN {day}-{i}", 10.0, date(2024, 6, day))

        first = run(db_session, catalog, context, "get_transactions", period="this_month")
        second = run(db_session, catalog, context, "get_transactions", period="this_month", page=2)

        assert first["total_results"] == 60
        assert first["total_pages"] == 2
        assert len(first["transactions"]) == 50
        assert len(second["transactions"]) == 10


class TestBalanceSheetFunctions:
    """Tests for get_balance_sheet / get_income_statement."""

    def test_net_worth(self, db_session, catalog, family, context):
        add_account(db_session, family.id, "SBI Savings", balance=500000)
        add_account(db_session, family.id, "HDFC Credit Card", accountable_type="CreditCard",
                    classification="liability", balance=50000)

        output = run(db_session, catalog, context, "get_balance_sheet")

        assert output["net_worth"]["current"] == 450000.0
        assert output["net_worth"]["current_formatted"] == "₹4,50,000.00"
        assert output["insights"]["debt_to_asset_ratio"] == "10%"
        assert output["summary"]["health_indicator"].startswith("Excellent")

    def test_income_statement(self, db_session, catalog, family, context):
        salary = category_named(db_session, family.id, "Salary")
        rent = category_named(db_session, family.id, "Rent")
        add_transaction(db_session, family.id, "SALARY", -100000.0, date(2024, 6, 1), salary)
        add_transaction(db_session, family.id, "RENT", 30000.0, date(2024, 6, 5), rent)
        add_transaction(db_session, family.id, "MISC", 10000.0, date(2024, 6, 6))

        output = run(db_session, catalog, context, "get_income_statement", period="this_month")

        assert output["total_income"] == 100000.0
        assert output["total_expense"] == 40000.0
        assert output["savings_rate"] == 60.0
        assert [c["category"] for c in output["expense_by_category"]] == ["Rent", "Uncategorized"]


class TestInvestmentFunctions:
    """Tests for get_investments."""

    def test_retirement_accounts_counted_once(self, db_session, catalog, family, context):
        zerodha = add_account(db_session, family.id, "Zerodha Stocks", accountable_type="Investment",
                              balance=0)
        db_session.add(Holding(account_id=zerodha.id, security_name="Infosys", ticker="INFY",
                               security_type="Stock", qty=10, current_price=1500, value=15000,
                               cost_basis=12000))
        add_account(db_session, family.id, "EPF Account", accountable_type="Investment", balance=200000)
        add_account(db_session, family.id, "PPF SBI", accountable_type="OtherAsset", balance=100000)
        db_session.commit()

        output = run(db_session, catalog, context, "get_investments")

        assert output["total_investment_value"] == 315000.0
        assert output["holdings_count"] == 3
        stock = next(h for h in output["holdings"] if h.get("ticker") == "INFY")
        assert stock["gain_loss"] == 3000.0
        assert stock["gain_loss_percent"] == 25.0

    def test_no_investments(self, db_session, catalog, family, context):
        output = run(db_session, catalog, context, "get_investments")

        assert output["holdings_count"] == 0
        assert output["total_investment_value"] == 0


class TestLoanFunctions:
    """Tests for get_loans / get_upcoming_emis."""

    @pytest.mark.parametrize("days,level", [(0, "critical"), (2, "critical"), (3, "high"),
                                            (7, "high"), (14, "medium"), (15, "low")])
    def test_urgency(self, days, level):
        assert urgency_level(days) == level

    def test_upcoming_emis_window(self, db_session, catalog, family, context):
        add_loan(db_session, family.id, actual_emi=25000.0, emi_day=20)

        default = run(db_session, catalog, context, "get_upcoming_emis")
        capped = run(db_session, catalog, context, "get_upcoming_emis", days_ahead=200)

        assert default["total_emis_due"] == 1
        assert default["upcoming_emis"][0]["due_date"] == "2024-06-20"
        assert default["upcoming_emis"][0]["urgency"] == "high"
        assert default["summary"]["this_week"]["count"] == 1
        assert capped["looking_ahead_days"] == 90
        assert capped["total_emis_due"] == 3

    def test_get_loans_filters_by_type(self, db_session, catalog, family, context):
        add_loan(db_session, family.id, "HDFC Home Loan")
        add_loan(db_session, family.id, "Bajaj Personal Loan", subtype="personal",
                 principal_amount=300000.0, term_months=36)

        output = run(db_session, catalog, context, "get_loans", type="personal")

        assert output["total_loans"] == 1
        assert output["loans"][0]["name"] == "Bajaj Personal Loan"
        assert output["loans"][0]["type_display"] == "Personal Loan"


class TestPrepaymentFunction:
    """Tests for calculate_prepayment boundaries."""

    @pytest.mark.parametrize("amount", [0, -5000])
    def test_amount_must_be_positive(self, db_session, catalog, family, context, amount):
        add_loan(db_session, family.id)
        output = run(db_session, catalog, context, "calculate_prepayment", prepayment_amount=amount)

        assert output == {"error": "Prepayment amount must be positive"}

    def test_no_matching_loans(self, db_session, catalog, family, context):
        add_loan(db_session, family.id, "HDFC Home Loan")
        output = run(db_session, catalog, context, "calculate_prepayment",
                     prepayment_amount=10000, loan_name="car")

        assert output == {"error": "No matching loans found"}

    def test_fully_repaid_loans_are_skipped(self, db_session, catalog, family, context):
        add_loan(db_session, family.id, principal_amount=100000.0, payments=[
            {"due_date": date(2024, 1, 20), "status": "paid", "principal_component": 100000.0},
        ])
        output = run(db_session, catalog, context, "calculate_prepayment", prepayment_amount=10000)

        assert output == {"error": "No loans with outstanding principal found"}

    def test_options_and_advice(self, db_session, catalog, family, context):
        add_loan(db_session, family.id, "HDFC Home Loan")
        output = run(db_session, catalog, context, "calculate_prepayment",
                     prepayment_amount=100000, loan_name="hdfc")

        result = output["results"][0]
        assert output["loans_analyzed"] == 1
        assert result["option_1_reduce_tenure"]["months_saved"] == 20
        assert result["option_1_reduce_tenure"]["recommendation"] == "Recommended"
        assert "HDFC Home Loan" in output["advice"]
        assert output["prepayment_formatted"] == "₹1,00,000.00"


class TestAnalyzeSpending:
    """Tests for analyze_spending."""

    def test_breakdown_anomalies_and_comparison(self, db_session, catalog, family, context):
        groceries = category_named(db_session, family.id, "Groceries")
        restaurants = category_named(db_session, family.id, "Restaurants")
        shopping = category_named(db_session, family.id, "Shopping")
        add_transaction(db_session, family.id, "BIGBASKET", 500.0, date(2024, 6, 1), groceries,
                        merchant_name="BigBasket")
        add_transaction(db_session, family.id, "BIGBASKET", 500.0, date(2024, 6, 2), groceries,
                        merchant_name="BigBasket")
        add_transaction(db_session, family.id, "TRUFFLES", 500.0, date(2024, 6, 3), restaurants)
        add_transaction(db_session, family.id, "AMAZON", 5000.0, date(2024, 6, 10), shopping,
                        merchant_name="Amazon")
        add_transaction(db_session, family.id, "SALARY", -50000.0, date(2024, 6, 1))
        add_transaction(db_session, family.id, "MAY SHOPPING", 3000.0, date(2024, 5, 10), shopping)

        output = run(db_session, catalog, context, "analyze_spending", period="this_month")

        assert output["total_spent"] == 6500.0
        assert output["transaction_count"] == 4
        assert [c["name"] for c in output["top_categories"]] == ["Shopping", "Groceries", "Restaurants"]
        assert output["top_categories"][0]["percentage"] == 76.9
        assert output["top_merchants"][0]["name"] == "Amazon"
        assert [a["date"] for a in output["spending_anomalies"]] == ["2024-06-10"]
        assert output["comparison"]["previous_total"] == 3000.0
        assert output["comparison"]["trend"] == "increased"
        assert output["comparison"]["change_percent"] == 116.7

    def test_no_spending(self, db_session, catalog, family, context):
        output = run(db_session, catalog, context, "analyze_spending", compare_previous=False)

        assert output["total_spent"] == 0
        assert output["top_categories"] == []
        assert output["anomalies_found"] is False
        assert "comparison" not in output
