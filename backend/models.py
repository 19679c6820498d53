"""
SQLAlchemy ORM models for the RUPI assistant backend.

Includes:
    - Family (currency / date format / timezone preferences)
    - Account, BalanceSnapshot, Holding, Loan, EmiPayment
    - Category, Transaction, CategoryRule
    - Chat, Message
    - Import (categorization progress tracking)

Sign convention for Transaction.amount: positive = money out (expense),
negative = money in (income).

Author: RUPI Assistant Team
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, DateTime,
    ForeignKey, Text, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from database import Base


class Family(Base):
    """
    A household. Every financial record is owned by exactly one family and
    every assistant query is scoped by family_id.
    """
    __tablename__ = "families"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    currency = Column(String, default="INR", nullable=False)
    date_format = Column(String, default="%d-%m-%Y")
    timezone = Column(String, default="Asia/Kolkata")
    created_at = Column(DateTime, default=datetime.utcnow)

    accounts = relationship("Account", back_populates="family", cascade="all, delete-orphan")
    categories = relationship("Category", back_populates="family", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="family", cascade="all, delete-orphan")
    chats = relationship("Chat", back_populates="family", cascade="all, delete-orphan")
    imports = relationship("Import", back_populates="family", cascade="all, delete-orphan")


class Account(Base):
    """A balance-carrying account (bank, investment, loan, other)."""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    accountable_type = Column(String, nullable=False)  # Depository|CreditCard|Investment|Loan|OtherAsset|OtherLiability
    subtype = Column(String)
    classification = Column(String, nullable=False)  # asset|liability
    balance = Column(Float, default=0.0)  # liabilities are stored as positive amounts owed
    currency = Column(String, default="INR")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    family = relationship("Family", back_populates="accounts")
    snapshots = relationship("BalanceSnapshot", back_populates="account", cascade="all, delete-orphan")
    holdings = relationship("Holding", back_populates="account", cascade="all, delete-orphan")
    loan = relationship("Loan", back_populates="account", uselist=False, cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="account")


class BalanceSnapshot(Base):
    """Point-in-time balance of an account, used for net worth history."""
    __tablename__ = "balance_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    date = Column(Date, nullable=False)
    balance = Column(Float, nullable=False)

    account = relationship("Account", back_populates="snapshots")

    __table_args__ = (
        Index("ix_balance_snapshots_account_date", "account_id", "date"),
    )


class Holding(Base):
    """A security position inside an investment account."""
    __tablename__ = "holdings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    security_name = Column(String, nullable=False)
    ticker = Column(String)
    security_type = Column(String)  # Stock|MutualFund|Bond|ETF
    qty = Column(Float)
    current_price = Column(Float)
    value = Column(Float)
    cost_basis = Column(Float)

    account = relationship("Account", back_populates="holdings")


class Loan(Base):
    """Loan terms attached to a liability account."""
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, unique=True)
    subtype = Column(String, default="other")  # home_loan|personal|car_loan|education_loan|gold|...
    lender_name = Column(String)
    principal_amount = Column(Float, default=0.0)
    interest_rate = Column(Float)  # annual, percent
    rate_type = Column(String)  # fixed|floating
    term_months = Column(Integer)
    emi_day = Column(Integer)  # day of month the EMI is debited
    actual_emi = Column(Float)  # EMI from the sanction letter, preferred over the formula
    disbursement_date = Column(Date)

    account = relationship("Account", back_populates="loan")
    emi_payments = relationship("EmiPayment", back_populates="loan", cascade="all, delete-orphan")


class EmiPayment(Base):
    """A single EMI instalment (paid or pending)."""
    __tablename__ = "emi_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False)
    due_date = Column(Date, nullable=False)
    paid_date = Column(Date)
    emi_amount = Column(Float)
    principal_component = Column(Float, default=0.0)
    interest_component = Column(Float, default=0.0)
    status = Column(String, default="pending")  # pending|paid|overdue|prepayment

    loan = relationship("Loan", back_populates="emi_payments")


class Category(Base):
    """Per-family transaction category."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String)
    classification = Column(String, default="expense")  # income|expense
    parent_id = Column(Integer, ForeignKey("categories.id"))

    family = relationship("Family", back_populates="categories")
    transactions = relationship("Transaction", back_populates="category")

    __table_args__ = (
        UniqueConstraint("family_id", "name", name="uq_categories_family_name"),
    )


class Transaction(Base):
    """Core transaction data."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"))
    date = Column(Date, nullable=False)
    name = Column(String, nullable=False)
    notes = Column(String)
    amount = Column(Float, nullable=False)
    currency = Column(String, default="INR")
    merchant_name = Column(String)
    category_id = Column(Integer, ForeignKey("categories.id"))
    category_source = Column(String)  # 'ai'|'rule'|'user'
    locked_attributes = Column(JSON, default=list)  # attribute names protected from automatic overwrite
    created_at = Column(DateTime, default=datetime.utcnow)

    family = relationship("Family", back_populates="transactions")
    account = relationship("Account", back_populates="transactions")
    category = relationship("Category", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_family_date", "family_id", "date"),
    )

    @property
    def classification(self) -> str:
        return "expense" if (self.amount or 0) > 0 else "income"

    def is_locked(self, attribute: str) -> bool:
        return attribute in (self.locked_attributes or [])

    def lock(self, attribute: str) -> None:
        if not self.is_locked(attribute):
            # Reassign so the JSON column registers the change
            self.locked_attributes = list(self.locked_attributes or []) + [attribute]


class CategoryRule(Base):
    """Learned description pattern -> category mapping."""
    __tablename__ = "category_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    pattern = Column(String, nullable=False)
    match_type = Column(String, default="contains")  # exact|starts_with|contains
    source = Column(String, default="ai")  # manual|system|ai|auto
    scope = Column(String, default="narration")
    status = Column(String, default="candidate")  # candidate|active|inactive
    confidence = Column(Float, default=0.65)
    probationary = Column(Boolean, default=True)
    times_matched = Column(Integer, default=0)
    merchant_name = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)

    category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("family_id", "scope", "pattern", name="uq_category_rules_pattern"),
    )


class Chat(Base):
    """Assistant conversation."""
    __tablename__ = "chats"

    id = Column(String, primary_key=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False, index=True)
    title = Column(String)
    latest_assistant_response_id = Column(String)
    error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    family = relationship("Family", back_populates="chats")
    messages = relationship(
        "Message", back_populates="chat", cascade="all, delete-orphan",
        order_by="(Message.created_at, Message.id)"
    )


class Message(Base):
    """Individual chat messages."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String, ForeignKey("chats.id"), nullable=False)
    role = Column(String, nullable=False)  # 'user'|'assistant'
    content = Column(Text, nullable=False, default="")
    status = Column(String, default="complete")  # pending|complete|failed
    ai_model = Column(String)

    # Executed tool calls for audit/UI display
    tool_calls = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow)

    chat = relationship("Chat", back_populates="messages")


class Import(Base):
    """Statement import; tracks the categorization step that follows it."""
    __tablename__ = "imports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(Integer, ForeignKey("families.id"), nullable=False)
    filename = Column(String)
    status = Column(String, default="complete")
    categorization_status = Column(String, default="pending")  # pending|running|complete|failed
    categorized_count = Column(Integer, default=0)
    categorization_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    family = relationship("Family", back_populates="imports")
