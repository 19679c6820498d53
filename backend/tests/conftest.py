"""
Pytest configuration and shared fixtures for RUPI assistant tests.

This file is automatically loaded by pytest and provides:
    - An in-memory SQLite session with all tables created
    - A seeded family with the default categories
    - A scripted fake LLM gateway
    - Builders for accounts, loans and transactions

Author: RUPI Assistant Team
"""

import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import AppConfig
from database import Base, bootstrap_categories
from models import Account, Category, EmiPayment, Family, Loan, Transaction
from services.functions import build_default_catalog
from services.llm_gateway import Categorization, LLMGateway
from services.observability import metrics
from services.tool_registry import FamilyContext

TODAY = date(2024, 6, 15)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def db_session():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def family(db_session):
    """A family with the default Indian category set."""
    family = Family(name="Sharma Family", currency="INR", date_format="%d-%m-%Y", timezone="Asia/Kolkata")
    db_session.add(family)
    db_session.commit()
    bootstrap_categories(db_session, family.id)
    return family


@pytest.fixture
def context(family):
    return FamilyContext(family_id=family.id, currency="INR", today=TODAY)


@pytest.fixture
def catalog():
    return build_default_catalog()


@pytest.fixture
def app_config():
    return AppConfig(database_url="sqlite://", chat_history_limit=20, categorization_batch_size=25)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


# =============================================================================
# Builders
# =============================================================================

def category_named(db, family_id: int, name: str) -> Category:
    return (
        db.query(Category)
        .filter(Category.family_id == family_id, Category.name == name)
        .one()
    )


def add_account(db, family_id: int, name: str, accountable_type: str = "Depository",
                classification: str = "asset", balance: float = 0.0, **kwargs) -> Account:
    account = Account(family_id=family_id, name=name, accountable_type=accountable_type,
                      classification=classification, balance=balance, **kwargs)
    db.add(account)
    db.commit()
    return account


def add_loan(db, family_id: int, name: str = "HDFC Home Loan", payments: Optional[List[Dict[str, Any]]] = None,
             **loan_fields) -> Loan:
    account = add_account(db, family_id, name, accountable_type="Loan", classification="liability",
                          balance=loan_fields.get("principal_amount", 0))
    defaults = {
        "subtype": "home_loan",
        "lender_name": "HDFC Bank",
        "principal_amount": 1_000_000.0,
        "interest_rate": 12.0,
        "term_months": 120,
        "emi_day": 20,
    }
    defaults.update(loan_fields)
    loan = Loan(account_id=account.id, **defaults)
    for payment in payments or []:
        loan.emi_payments.append(EmiPayment(**payment))
    db.add(loan)
    db.commit()
    return loan


def add_transaction(db, family_id: int, name: str, amount: float, day: date = TODAY,
                    category: Optional[Category] = None, **kwargs) -> Transaction:
    transaction = Transaction(family_id=family_id, name=name, amount=amount, date=day,
                              category_id=category.id if category else None, **kwargs)
    db.add(transaction)
    db.commit()
    return transaction


# =============================================================================
# Fake Gateway
# =============================================================================

class FakeGateway(LLMGateway):
    """
    Scripted LLM gateway.

    `rounds` holds one list per chat() call; each item is either a gateway
    event to yield or an exception instance to raise at that point.
    `batches` holds one entry per categorize() call: a list of
    Categorization, or an exception instance.
    """

    name = "fake"

    def __init__(self, rounds: Optional[List[list]] = None, batches: Optional[list] = None):
        self.rounds = list(rounds or [])
        self.batches = list(batches or [])
        self.chat_calls: List[Dict[str, Any]] = []
        self.categorize_calls: List[Dict[str, Any]] = []

    async def chat(self, prompt, instructions, tool_catalog, tool_results, chat_history,
                   previous_response_id=None):
        self.chat_calls.append({
            "prompt": prompt,
            "instructions": instructions,
            "tool_catalog": tool_catalog,
            "tool_results": list(tool_results or []),
            "chat_history": list(chat_history),
            "previous_response_id": previous_response_id,
        })
        script = self.rounds.pop(0) if self.rounds else []
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item

    async def categorize(self, transactions, categories):
        self.categorize_calls.append({"transactions": transactions, "categories": categories})
        outcome = self.batches.pop(0) if self.batches else []
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(transactions)
        return outcome


def categorize_all_as(category_name: str):
    """Batch script that assigns every transaction in the batch to one category."""
    def script(transactions):
        return [Categorization(t["id"], category_name) for t in transactions]
    return script
