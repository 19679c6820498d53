"""SQLAlchemy engine/session setup and default category seeding."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from config import load_config

DATABASE_URL = load_config().database_url

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# (name, color, classification) - a trimmed version of the Indian default set
DEFAULT_CATEGORIES = [
    ("Salary", "#16a34a", "income"),
    ("Interest Income", "#065f46", "income"),
    ("Other Income", "#0d9488", "income"),
    ("Groceries", "#eab308", "expense"),
    ("Swiggy/Zomato", "#f59e0b", "expense"),
    ("Restaurants", "#d97706", "expense"),
    ("Shopping", "#8b5cf6", "expense"),
    ("Amazon/Flipkart", "#7c3aed", "expense"),
    ("Petrol/Fuel", "#2563eb", "expense"),
    ("Uber/Ola/Rapido", "#1d4ed8", "expense"),
    ("Travel", "#0891b2", "expense"),
    ("Electricity", "#d97706", "expense"),
    ("Mobile/Internet", "#f97316", "expense"),
    ("Healthcare", "#ec4899", "expense"),
    ("Education", "#6366f1", "expense"),
    ("Entertainment", "#f97316", "expense"),
    ("Subscriptions", "#14b8a6", "expense"),
    ("Rent", "#78350f", "expense"),
    ("Home Loan EMI", "#b91c1c", "expense"),
    ("Personal Loan EMI", "#7f1d1d", "expense"),
    ("Credit Card Payment", "#e11d48", "expense"),
    ("Mutual Funds SIP", "#047857", "expense"),
    ("Insurance", "#0369a1", "expense"),
    ("Taxes", "#dc2626", "expense"),
    ("UPI Transfers", "#64748b", "expense"),
    ("ATM Withdrawal", "#94a3b8", "expense"),
]


def get_db():
    """Dependency for getting database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def bootstrap_categories(db, family_id: int) -> int:
    """Create the default categories for a family that has none. Returns count created."""
    from models import Category

    existing = db.query(Category).filter(Category.family_id == family_id).count()
    if existing:
        return 0

    db.add_all([
        Category(family_id=family_id, name=name, color=color, classification=classification)
        for name, color, classification in DEFAULT_CATEGORIES
    ])
    db.commit()
    return len(DEFAULT_CATEGORIES)


def init_db():
    """Create all tables."""
    import models  # noqa: F401  (registers the mappers on Base)

    Base.metadata.create_all(bind=engine)
