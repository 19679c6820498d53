"""
Module: category_rules.py
Description: Learns description -> category rules from AI categorizations.

Rule lifecycle:
    1. AI categorization creates a "candidate" rule (confidence 0.65)
    2. After PROMOTION_THRESHOLD matches it becomes "active" but probationary
    3. After PROBATION_USES matches it leaves probation
    Manual and system rules are never overwritten by AI-learned ones.

Author: RUPI Assistant Team
"""

import re
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession

from models import Category, CategoryRule
from services.observability import logger

INITIAL_AI_CONFIDENCE = 0.65
AI_CATEGORIZATION_CONFIDENCE = 0.85
MAX_CONFIDENCE = 0.99
PROMOTION_THRESHOLD = 2
PROBATION_USES = 5
MIN_PATTERN_LENGTH = 3
PATTERN_TOKENS = 3

PROTECTED_SOURCES = ("manual", "system")

NOISE_WORDS = {
    "upi", "imps", "neft", "rtgs", "the", "and", "for", "from", "to", "via", "by", "at", "on",
    "in", "of", "debit", "credit", "transfer", "payment", "transaction", "ref", "no", "number",
    "id", "mobile", "wallet", "bank", "account", "pvt", "ltd", "limited", "india", "private",
    "pos", "ach", "wire", "check", "cheque",
}

_AGGRESSIVE_NOISE = [
    re.compile(r"\b[A-Z0-9]{12,}\b"),               # long alphanumeric codes
    re.compile(r"\b\d{10,}\b"),                     # long numbers
    re.compile(r"\d{2}[-/]\d{2}[-/]\d{2,4}"),       # dates
    re.compile(r"upi\s*ref\s*no\s*\S+", re.IGNORECASE),
    re.compile(r"ref\s*:?\s*\S+", re.IGNORECASE),
    re.compile(r"txn\s*id\s*:?\s*\S+", re.IGNORECASE),
]
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_LETTERS_ONLY = re.compile(r"^[a-z]+$")


def normalize_aggressive(description: Optional[str]) -> str:
    """Strip references, ids, dates and punctuation; lower-case."""
    if not description or not description.strip():
        return ""
    text = description
    for pattern in _AGGRESSIVE_NOISE:
        text = pattern.sub("", text)
    text = _PUNCTUATION.sub(" ", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip().lower()


def extract_pattern(description: Optional[str]) -> Optional[str]:
    """
    First three meaningful tokens of a description.

    >>> extract_pattern("UPI/SWIGGY INSTAMART/ref 998877/Payment")
    'swiggy instamart'
    """
    normalized = normalize_aggressive(description)
    if not normalized:
        return None

    tokens = [t for t in normalized.split() if len(t) >= 3]
    meaningful = [t for t in tokens if t not in NOISE_WORDS]
    pattern = " ".join(meaningful[:PATTERN_TOKENS])

    if len(pattern) < 4 and len(normalized) >= 4:
        pattern = " ".join(normalized.split()[:PATTERN_TOKENS])

    return pattern or None


def determine_match_type(pattern: str) -> str:
    if len(pattern) <= 4:
        return "exact"
    if _LETTERS_ONLY.match(pattern) and len(pattern) >= 5:
        return "starts_with"
    return "contains"


def extract_merchant_name(description: Optional[str]) -> Optional[str]:
    if not description:
        return None
    tokens = [t for t in _WHITESPACE.sub(" ", description).strip().split() if len(t) >= 3]
    return tokens[0].title() if tokens else None


def record_match(rule: CategoryRule) -> None:
    """Bump match count and confidence; promote along the lifecycle."""
    rule.times_matched = (rule.times_matched or 0) + 1
    matches = rule.times_matched

    if matches <= 3:
        increment = 0.05
    elif matches <= 8:
        increment = 0.02
    else:
        increment = 0.01
    rule.confidence = min((rule.confidence or INITIAL_AI_CONFIDENCE) + increment, MAX_CONFIDENCE)

    if rule.status == "candidate" and matches >= PROMOTION_THRESHOLD:
        rule.status = "active"
        rule.probationary = True
        logger.info("Category rule promoted", pattern=rule.pattern)
    if rule.probationary and rule.status == "active" and matches >= PROBATION_USES:
        rule.probationary = False


def learn_from_ai_categorization(db: DBSession, family_id: int, description: str,
                                 category: Category, scope: str = "narration",
                                 confidence: float = AI_CATEGORIZATION_CONFIDENCE) -> Optional[CategoryRule]:
    """
    Create or reinforce the rule for a description.

    Returns None when no usable pattern can be extracted or when a manual /
    system rule already owns the pattern. Flushes but does not commit.
    """
    pattern = extract_pattern(description)
    if not pattern or len(pattern) < MIN_PATTERN_LENGTH:
        return None

    existing = (
        db.query(CategoryRule)
        .filter(
            CategoryRule.family_id == family_id,
            CategoryRule.scope == scope,
            func.lower(CategoryRule.pattern) == pattern,
        )
        .first()
    )

    if existing is not None:
        if existing.source in PROTECTED_SOURCES and existing.category_id != category.id:
            logger.debug("Skipping rule, conflicts with protected rule", pattern=pattern, source=existing.source)
            return None
        record_match(existing)
        db.flush()
        return existing

    rule = CategoryRule(
        family_id=family_id,
        category_id=category.id,
        pattern=pattern,
        match_type=determine_match_type(pattern),
        source="ai",
        scope=scope,
        status="candidate",
        probationary=True,
        confidence=confidence,
        times_matched=0,
        merchant_name=extract_merchant_name(description),
    )
    db.add(rule)
    db.flush()
    return rule
