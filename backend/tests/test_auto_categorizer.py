"""
Test Module: test_auto_categorizer.py
Description: Unit tests for batched AI categorization and rule learning.

Tests:
    - Scope (uncategorized, unlocked, own family only)
    - Batch independence when one batch fails
    - Name matching (exact only; null / NEW: / unknown skipped)
    - Provenance and locking of applied categories
    - Best-effort rule learning
    - Import status tracking in the job wrapper

Author: RUPI Assistant Team
"""

import json
from datetime import date

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from config import EngineConfig
from models import CategoryRule, Family, Import, Transaction
from services.auto_categorizer import AutoCategorizationError, AutoCategorizer
from services.categorization_job import run_auto_categorize_job
from services.category_rules import extract_pattern, learn_from_ai_categorization, record_match
from services.llm_gateway import Categorization, EngineGateway, GatewayResponseError
from services.observability import metrics

from conftest import FakeGateway, add_transaction, categorize_all_as, category_named


def seed_transactions(db, family_id, count, name="BIGBASKET ORDER"):
    rows = [
        Transaction(family_id=family_id, name=name, amount=100.0 + i, date=date(2024, 6, 1))
        for i in range(count)
    ]
    db.add_all(rows)
    db.commit()
    return [t.id for t in rows]


class TestBatching:
    """Tests for batch splitting and failure isolation."""

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_the_others(self, db_session, family):
        ids = seed_transactions(db_session, family.id, 60)
        gateway = FakeGateway(batches=[
            categorize_all_as("Groceries"),
            GatewayResponseError("engine exploded"),
            categorize_all_as("Groceries"),
        ])
        outcomes = []

        modified = await AutoCategorizer(db_session, gateway, batch_size=25,
                                         on_batch=outcomes.append).categorize(family.id, ids)

        assert modified == 35
        assert [len(c["transactions"]) for c in gateway.categorize_calls] == [25, 25, 10]
        assert [(o.index, o.size, o.modified, o.error) for o in outcomes] == [
            (1, 25, 25, None),
            (2, 25, 0, "engine exploded"),
            (3, 10, 10, None),
        ]
        uncategorized = db_session.query(Transaction).filter(Transaction.category_id.is_(None)).all()
        assert sorted(t.id for t in uncategorized) == ids[25:50]
        assert metrics.counters["categorization.batches.failed"] == 1

    @pytest.mark.asyncio
    async def test_malformed_engine_batch_is_skipped(self, db_session, family):
        ids = seed_transactions(db_session, family.id, 60)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 2:
                return httpx.Response(200, json={"categorizations": ["oops"]})
            sent = json.loads(request.content)["transactions"]
            return httpx.Response(200, json={"categorizations": [
                {"transaction_id": t["id"], "category_name": "Groceries"} for t in sent
            ]})

        gateway = EngineGateway(EngineConfig(base_url="http://engine.test/api/v1/ai"),
                                transport=httpx.MockTransport(handler))

        modified = await AutoCategorizer(db_session, gateway).categorize(family.id, ids)

        assert len(calls) == 3
        assert modified == 35

    @pytest.mark.asyncio
    async def test_unexpected_batch_error_is_skipped(self, db_session, family):
        ids = seed_transactions(db_session, family.id, 4)
        gateway = FakeGateway(batches=[ValueError("bad shape"), categorize_all_as("Groceries")])
        outcomes = []

        modified = await AutoCategorizer(db_session, gateway, batch_size=2,
                                         on_batch=outcomes.append).categorize(family.id, ids)

        assert modified == 2
        assert [o.error for o in outcomes] == ["Unexpected error: bad shape", None]
        assert metrics.counters["categorization.batches.failed"] == 1

    @pytest.mark.asyncio
    async def test_batch_payload(self, db_session, family):
        add_transaction(db_session, family.id, "ZOMATO", 450.0, notes="dinner", merchant_name="Zomato")
        refund = add_transaction(db_session, family.id, "AMAZON REFUND", -1200.0)
        ids = [t.id for t in db_session.query(Transaction).all()]
        gateway = FakeGateway(batches=[[]])

        await AutoCategorizer(db_session, gateway).categorize(family.id, ids)

        sent = {t["id"]: t for t in gateway.categorize_calls[0]["transactions"]}
        assert sent[refund.id]["amount"] == 1200.0
        assert sent[refund.id]["classification"] == "income"
        zomato = next(t for t in sent.values() if t["merchant"] == "Zomato")
        assert zomato["description"] == "ZOMATO dinner"
        assert zomato["classification"] == "expense"
        categories = gateway.categorize_calls[0]["categories"]
        assert {"id", "name", "classification", "parent_id"} == set(categories[0])


class TestScope:
    """Only uncategorized, unlocked transactions of the family are sent."""

    @pytest.mark.asyncio
    async def test_scope(self, db_session, family):
        groceries = category_named(db_session, family.id, "Groceries")
        open_txn = add_transaction(db_session, family.id, "DMART", 800.0)
        categorized = add_transaction(db_session, family.id, "RELIANCE FRESH", 300.0, category=groceries)
        locked = add_transaction(db_session, family.id, "CASH", 500.0, locked_attributes=["category_id"])
        other = Family(name="Neighbours")
        db_session.add(other)
        db_session.commit()
        foreign = add_transaction(db_session, other.id, "DMART", 900.0)
        gateway = FakeGateway(batches=[categorize_all_as("Groceries")])

        modified = await AutoCategorizer(db_session, gateway).categorize(
            family.id, [open_txn.id, categorized.id, locked.id, foreign.id]
        )

        assert modified == 1
        assert [t["id"] for t in gateway.categorize_calls[0]["transactions"]] == [open_txn.id]
        db_session.refresh(foreign)
        assert foreign.category_id is None

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, db_session, family):
        gateway = FakeGateway()
        assert await AutoCategorizer(db_session, gateway).categorize(family.id, []) == 0
        assert gateway.categorize_calls == []

    @pytest.mark.asyncio
    async def test_requires_gateway(self, db_session, family):
        with pytest.raises(AutoCategorizationError):
            await AutoCategorizer(db_session, None).categorize(family.id, [1])

    @pytest.mark.asyncio
    async def test_requires_categories(self, db_session):
        bare = Family(name="No Categories")
        db_session.add(bare)
        db_session.commit()

        with pytest.raises(AutoCategorizationError):
            await AutoCategorizer(db_session, FakeGateway()).categorize(bare.id, [1])


class TestApplying:
    """Name matching, provenance and locking."""

    @pytest.mark.asyncio
    async def test_only_exact_names_are_applied(self, db_session, family):
        ids = seed_transactions(db_session, family.id, 6)
        gateway = FakeGateway(batches=[[
            Categorization(ids[0], "Groceries"),
            Categorization(ids[1], "groceries"),
            Categorization(ids[2], None),
            Categorization(ids[3], "null"),
            Categorization(ids[4], "NEW: Pet Care"),
            Categorization(ids[5], "Crypto"),
        ]])

        modified = await AutoCategorizer(db_session, gateway).categorize(family.id, ids)

        assert modified == 1
        first = db_session.get(Transaction, ids[0])
        assert first.category.name == "Groceries"
        assert first.category_source == "ai"
        assert first.is_locked("category_id")
        others = [db_session.get(Transaction, i) for i in ids[1:]]
        assert all(t.category_id is None and not t.is_locked("category_id") for t in others)

    @pytest.mark.asyncio
    async def test_learns_rule_from_categorizations(self, db_session, family):
        ids = seed_transactions(db_session, family.id, 3, name="UPI/SWIGGY INSTAMART/ref 998877/Payment")
        gateway = FakeGateway(batches=[categorize_all_as("Groceries")])

        await AutoCategorizer(db_session, gateway).categorize(family.id, ids)

        rule = db_session.query(CategoryRule).one()
        assert rule.pattern == "swiggy instamart"
        assert rule.source == "ai"
        assert rule.times_matched == 2
        assert rule.status == "active"

    @pytest.mark.asyncio
    async def test_rule_failure_does_not_fail_the_batch(self, db_session, family, monkeypatch):
        def broken(*args, **kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr("services.auto_categorizer.learn_from_ai_categorization", broken)
        ids = seed_transactions(db_session, family.id, 3)
        gateway = FakeGateway(batches=[categorize_all_as("Groceries")])

        modified = await AutoCategorizer(db_session, gateway).categorize(family.id, ids)

        assert modified == 3
        assert metrics.counters["best_effort.failed:step=category_rule"] == 3
        assert db_session.query(CategoryRule).count() == 0


class TestCategoryRules:
    """Tests for rule extraction and lifecycle."""

    @pytest.mark.parametrize("description,pattern", [
        ("UPI/SWIGGY INSTAMART/ref 998877/Payment", "swiggy instamart"),
        ("NEFT 123456789012 SALARY ACME", "salary acme"),
        ("", None),
    ])
    def test_extract_pattern(self, description, pattern):
        assert extract_pattern(description) == pattern

    def test_promotion(self):
        rule = CategoryRule(status="candidate", probationary=True, confidence=0.65, times_matched=0)
        for _ in range(5):
            record_match(rule)

        assert rule.status == "active"
        assert rule.probationary is False
        assert rule.confidence == pytest.approx(0.65 + 0.05 * 3 + 0.02 * 2)

    def test_manual_rule_is_not_overridden(self, db_session, family):
        groceries = category_named(db_session, family.id, "Groceries")
        food = category_named(db_session, family.id, "Swiggy/Zomato")
        db_session.add(CategoryRule(family_id=family.id, category_id=groceries.id,
                                    pattern="swiggy instamart", source="manual", status="active"))
        db_session.commit()

        learned = learn_from_ai_categorization(db_session, family.id, "SWIGGY INSTAMART", food)

        assert learned is None
        rule = db_session.query(CategoryRule).one()
        assert rule.category_id == groceries.id
        assert rule.times_matched == 0


class TestCategorizationJob:
    """Tests for run_auto_categorize_job import tracking."""

    @pytest.mark.asyncio
    async def test_marks_import_complete(self, db_session, family):
        record = Import(family_id=family.id, filename="hdfc_june.csv")
        db_session.add(record)
        db_session.commit()
        ids = seed_transactions(db_session, family.id, 4)

        modified = await run_auto_categorize_job(
            db_session, FakeGateway(batches=[categorize_all_as("Groceries")] * 2),
            family.id, ids, import_id=record.id, batch_size=2,
        )

        db_session.refresh(record)
        assert modified == 4
        assert record.categorization_status == "complete"
        assert record.categorized_count == 4
        assert record.categorization_error is None

    @pytest.mark.asyncio
    async def test_marks_import_failed_and_reraises(self, db_session, family):
        record = Import(family_id=family.id, filename="hdfc_june.csv")
        db_session.add(record)
        db_session.commit()

        with pytest.raises(AutoCategorizationError):
            await run_auto_categorize_job(db_session, None, family.id, [1], import_id=record.id)

        db_session.refresh(record)
        assert record.categorization_status == "failed"
        assert "No LLM provider" in record.categorization_error

    @pytest.mark.asyncio
    async def test_partial_run_is_complete_not_failed(self, db_session, family):
        record = Import(family_id=family.id, filename="icici_may.csv")
        db_session.add(record)
        db_session.commit()
        ids = seed_transactions(db_session, family.id, 4)
        gateway = FakeGateway(batches=[KeyError("categorizations"), categorize_all_as("Groceries")])

        modified = await run_auto_categorize_job(db_session, gateway, family.id, ids,
                                                 import_id=record.id, batch_size=2)

        db_session.refresh(record)
        assert modified == 2
        assert record.categorization_status == "complete"
        assert record.categorized_count == 2
