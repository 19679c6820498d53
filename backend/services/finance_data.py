"""
Module: finance_data.py
Description: Read-only, family-scoped access to financial records.

Every query issued here filters on the family_id the object was built with;
assistant functions receive a FamilyFinanceData and never a raw session, so
one family's function call cannot read another family's data.

Author: RUPI Assistant Team

Usage:
    data = FamilyFinanceData(db, family_id=42)
    frame = data.transactions_frame(period, expenses_only=True)
"""

from datetime import date
from typing import List, Optional, Tuple

import pandas as pd
from sqlalchemy import or_
from sqlalchemy.orm import Session as DBSession

from models import (
    Account, BalanceSnapshot, Category, Family, Holding, Loan, Transaction
)
from services.periods import Period, month_end, shift_months


FRAME_COLUMNS = ["id", "date", "name", "amount", "category", "merchant"]


class FamilyFinanceData:
    """Query facade bound to a single family."""

    def __init__(self, db: DBSession, family_id: int):
        self.db = db
        self.family_id = family_id

    # =========================================================================
    # Family / accounts
    # =========================================================================

    def family(self) -> Optional[Family]:
        return self.db.query(Family).filter(Family.id == self.family_id).first()

    def accounts(self, accountable_type: Optional[str] = None,
                 classification: Optional[str] = None,
                 visible_only: bool = True) -> List[Account]:
        query = self.db.query(Account).filter(Account.family_id == self.family_id)
        if visible_only:
            query = query.filter(Account.is_active.is_(True))
        if accountable_type:
            query = query.filter(Account.accountable_type == accountable_type)
        if classification:
            query = query.filter(Account.classification == classification)
        return query.order_by(Account.name).all()

    def accounts_named_like(self, fragments: List[str]) -> List[Account]:
        """Visible accounts whose name contains any of the fragments (case-insensitive)."""
        query = self.db.query(Account).filter(
            Account.family_id == self.family_id,
            Account.is_active.is_(True),
            or_(*[Account.name.ilike(f"%{fragment}%") for fragment in fragments]),
        )
        return query.order_by(Account.name).all()

    def total_balance(self, classification: str) -> float:
        return round(sum(a.balance or 0 for a in self.accounts(classification=classification)), 2)

    def holdings(self, account: Account) -> List[Holding]:
        return (
            self.db.query(Holding)
            .join(Account, Holding.account_id == Account.id)
            .filter(Account.family_id == self.family_id, Holding.account_id == account.id)
            .order_by(Holding.value.desc())
            .all()
        )

    def loans(self, name_filter: Optional[str] = None) -> List[Tuple[Account, Loan]]:
        """(account, loan) pairs for the family's loan accounts."""
        query = (
            self.db.query(Account, Loan)
            .join(Loan, Loan.account_id == Account.id)
            .filter(Account.family_id == self.family_id, Account.accountable_type == "Loan")
        )
        if name_filter:
            query = query.filter(Account.name.ilike(f"%{name_filter}%"))
        return query.order_by(Account.name).all()

    # =========================================================================
    # Balance history
    # =========================================================================

    def oldest_snapshot_date(self) -> Optional[date]:
        row = (
            self.db.query(BalanceSnapshot.date)
            .join(Account, BalanceSnapshot.account_id == Account.id)
            .filter(Account.family_id == self.family_id)
            .order_by(BalanceSnapshot.date.asc())
            .first()
        )
        return row[0] if row else None

    def monthly_balance_history(self, start: date, end: date,
                                classification: Optional[str] = None) -> List[dict]:
        """
        Month-end totals between start and end.

        Each account contributes its latest snapshot on or before the month
        end. For net worth (classification=None) liabilities are subtracted.
        """
        if start >= end:
            return []

        accounts = self.accounts(classification=classification)
        if not accounts:
            return []

        snapshots = (
            self.db.query(BalanceSnapshot)
            .filter(BalanceSnapshot.account_id.in_([a.id for a in accounts]))
            .filter(BalanceSnapshot.date <= end)
            .order_by(BalanceSnapshot.date.asc())
            .all()
        )
        if not snapshots:
            return []

        frame = pd.DataFrame([
            {"account_id": s.account_id, "date": pd.Timestamp(s.date), "balance": s.balance}
            for s in snapshots
        ])
        signs = {a.id: (-1 if a.classification == "liability" and classification is None else 1)
                 for a in accounts}

        history = []
        cursor = month_end(start)
        while cursor <= month_end(end):
            point = min(cursor, end)
            upto = frame[frame["date"] <= pd.Timestamp(point)]
            latest = upto.groupby("account_id")["balance"].last()
            total = sum(balance * signs[account_id] for account_id, balance in latest.items())
            history.append({"date": point.isoformat(), "value": round(float(total), 2)})
            cursor = month_end(shift_months(cursor.replace(day=1), 1))

        return history

    # =========================================================================
    # Categories / transactions
    # =========================================================================

    def categories(self) -> List[Category]:
        return (
            self.db.query(Category)
            .filter(Category.family_id == self.family_id)
            .order_by(Category.name)
            .all()
        )

    def transactions_query(self, start: Optional[date] = None, end: Optional[date] = None,
                           category: Optional[str] = None, merchant: Optional[str] = None,
                           search: Optional[str] = None, expenses_only: bool = False):
        query = (
            self.db.query(Transaction)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .filter(Transaction.family_id == self.family_id)
        )
        if start:
            query = query.filter(Transaction.date >= start)
        if end:
            query = query.filter(Transaction.date <= end)
        if expenses_only:
            query = query.filter(Transaction.amount > 0)
        if category:
            query = query.filter(Category.name.ilike(f"%{category}%"))
        if merchant:
            query = query.filter(Transaction.merchant_name.ilike(f"%{merchant}%"))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Transaction.name.ilike(pattern),
                Transaction.notes.ilike(pattern),
                Transaction.merchant_name.ilike(pattern),
            ))
        return query

    def transactions_frame(self, period: Period, category: Optional[str] = None,
                           expenses_only: bool = False) -> pd.DataFrame:
        """Transactions in a period as a DataFrame with FRAME_COLUMNS."""
        rows = (
            self.transactions_query(period.start, period.end, category=category,
                                    expenses_only=expenses_only)
            .all()
        )
        if not rows:
            return pd.DataFrame(columns=FRAME_COLUMNS)

        return pd.DataFrame([
            {
                "id": t.id,
                "date": t.date,
                "name": t.name,
                "amount": float(t.amount),
                "category": t.category.name if t.category else None,
                "merchant": t.merchant_name,
            }
            for t in rows
        ], columns=FRAME_COLUMNS)

    def uncategorized_transactions(self, transaction_ids: List[int]) -> List[Transaction]:
        """Candidates for auto-categorization, in id order."""
        if not transaction_ids:
            return []
        rows = (
            self.db.query(Transaction)
            .filter(Transaction.family_id == self.family_id)
            .filter(Transaction.id.in_(transaction_ids))
            .filter(Transaction.category_id.is_(None))
            .order_by(Transaction.id)
            .all()
        )
        return [t for t in rows if not t.is_locked("category_id")]
