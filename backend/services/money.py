"""
Module: money.py
Description: Currency-aware money formatting.

INR amounts use Indian digit grouping (lakh/crore): the last three digits
form one group and every group before that has two digits.

    format_money(10550000, "INR")  -> "₹1,05,50,000.00"
    format_money(-1234.5, "USD")   -> "-$1,234.50"

Author: RUPI Assistant Team
"""

from typing import Optional, Union

Number = Union[int, float]

CURRENCY_SYMBOLS = {
    "INR": "₹",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "AED": "AED ",
    "SGD": "S$",
}


def _group_indian(digits: str) -> str:
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def _group_western(digits: str) -> str:
    return f"{int(digits):,}"


def format_money(amount: Optional[Number], currency: str = "INR") -> str:
    """Format an amount with its currency symbol and two decimals."""
    value = round(float(amount or 0), 2)
    sign = "-" if value < 0 else ""
    whole, fraction = f"{abs(value):.2f}".split(".")

    code = (currency or "INR").upper()
    grouped = _group_indian(whole) if code == "INR" else _group_western(whole)
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")

    return f"{sign}{symbol}{grouped}.{fraction}"


def money_fields(prefix: str, amount: Optional[Number], currency: str) -> dict:
    """
    Build the {prefix: amount, prefix_formatted: "..."} pair used throughout
    function outputs.
    """
    value = round(float(amount or 0), 2)
    return {prefix: value, f"{prefix}_formatted": format_money(value, currency)}
