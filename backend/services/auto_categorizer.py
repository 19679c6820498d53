"""Batched AI categorization of a family's uncategorized transactions."""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from models import Category, Transaction
from services.category_rules import learn_from_ai_categorization
from services.finance_data import FamilyFinanceData
from services.llm_gateway import Categorization, GatewayError, LLMGateway
from services.observability import log_categorization_batch, logger, metrics, run_best_effort

DEFAULT_BATCH_SIZE = 25


class AutoCategorizationError(Exception):
    """Categorization cannot run at all (no provider, no categories)."""
    pass


@dataclass
class BatchOutcome:
    index: int
    size: int
    modified: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class AutoCategorizer:
    """
    Sends uncategorized transactions to the LLM in fixed-size batches.

    A failed batch is logged, reported through on_batch and skipped; the
    remaining batches still run. Each transaction is committed on its own.
    """

    def __init__(self, db: DBSession, gateway: Optional[LLMGateway],
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 on_batch: Optional[Callable[[BatchOutcome], None]] = None):
        self.db = db
        self.gateway = gateway
        self.batch_size = max(batch_size, 1)
        self.on_batch = on_batch

    async def categorize(self, family_id: int, transaction_ids: List[int]) -> int:
        """Returns the number of transactions that received a category."""
        if self.gateway is None:
            raise AutoCategorizationError("No LLM provider for auto-categorization")

        data = FamilyFinanceData(self.db, family_id)
        categories = data.categories()
        if not categories:
            raise AutoCategorizationError(f"Family {family_id} has no categories")

        transactions = data.uncategorized_transactions(transaction_ids)
        if not transactions:
            logger.info("No transactions to auto-categorize", family_id=family_id)
            return 0

        by_name = {c.name: c for c in categories}
        categories_input = [
            {"id": c.id, "name": c.name, "classification": c.classification, "parent_id": c.parent_id}
            for c in categories
        ]
        batches = [
            transactions[i:i + self.batch_size]
            for i in range(0, len(transactions), self.batch_size)
        ]
        logger.info("Auto-categorizing", family_id=family_id, transactions=len(transactions),
                    batches=len(batches))

        total_modified = 0
        for index, batch in enumerate(batches, start=1):
            outcome = BatchOutcome(index=index, size=len(batch))
            try:
                results = await self.gateway.categorize(
                    [self._transaction_input(t) for t in batch], categories_input
                )
            except GatewayError as e:
                outcome.error = str(e) or type(e).__name__
            except Exception as e:
                logger.exception("Unexpected categorization batch failure", family_id=family_id, batch=index)
                outcome.error = f"Unexpected error: {e}"

            if outcome.error is not None:
                log_categorization_batch(family_id, index, len(batch), 0, outcome.error)
                self._report(outcome)
                continue

            outcome.modified = self._apply(family_id, batch, results, by_name)
            total_modified += outcome.modified
            log_categorization_batch(family_id, index, len(batch), outcome.modified)
            self._report(outcome)

        metrics.gauge("categorization.last_run_modified", total_modified)
        logger.info("Auto-categorization complete", family_id=family_id, modified=total_modified)
        return total_modified

    # ==========================================================================
    # Internals
    # ==========================================================================

    @staticmethod
    def _transaction_input(transaction: Transaction) -> dict:
        description = " ".join(part for part in (transaction.name, transaction.notes) if part)
        return {
            "id": transaction.id,
            "amount": abs(transaction.amount),
            "classification": transaction.classification,
            "description": description,
            "merchant": transaction.merchant_name,
        }

    @staticmethod
    def _resolve(name: Optional[str], by_name: Dict[str, Category]) -> Optional[Category]:
        # Exact, case-sensitive; suggestions for new categories are not applied
        if not name or name == "null" or name.startswith("NEW:"):
            return None
        return by_name.get(name)

    def _apply(self, family_id: int, batch: List[Transaction], results: List[Categorization],
               by_name: Dict[str, Category]) -> int:
        assigned = {r.transaction_id: r.category_name for r in results}
        modified = 0

        for transaction in batch:
            category = self._resolve(assigned.get(transaction.id), by_name)
            if category is None:
                continue

            try:
                transaction.category_id = category.id
                transaction.category_source = "ai"
                transaction.lock("category_id")
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("Failed to save categorization", transaction_id=transaction.id, error=str(e))
                continue

            modified += 1
            run_best_effort("category_rule", self._learn_rule, family_id, transaction.name, category)

        return modified

    def _learn_rule(self, family_id: int, description: str, category: Category) -> None:
        try:
            with self.db.begin_nested():
                learn_from_ai_categorization(self.db, family_id, description, category)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _report(self, outcome: BatchOutcome) -> None:
        if self.on_batch is not None:
            run_best_effort("on_batch", self.on_batch, outcome)
