"""
Module: categorization_job.py
Description: Background job wrapping AutoCategorizer with import status tracking.

The import record moves pending -> running -> complete|failed. Per-batch
progress is written to the import as a best-effort side effect; a failed
progress write never fails the job.

Author: RUPI Assistant Team
"""

from typing import List, Optional

from sqlalchemy.orm import Session as DBSession

from models import Import
from services.auto_categorizer import DEFAULT_BATCH_SIZE, AutoCategorizer, BatchOutcome
from services.llm_gateway import LLMGateway
from services.observability import logger, metrics, run_best_effort, timed_block


def _find_import(db: DBSession, family_id: int, import_id: Optional[int]) -> Optional[Import]:
    if import_id is None:
        return None
    return (
        db.query(Import)
        .filter(Import.id == import_id, Import.family_id == family_id)
        .first()
    )


def _set_status(db: DBSession, record: Import, status: str, **fields) -> None:
    record.categorization_status = status
    for key, value in fields.items():
        setattr(record, key, value)
    db.commit()


async def run_auto_categorize_job(db: DBSession, gateway: Optional[LLMGateway], family_id: int,
                                  transaction_ids: List[int], import_id: Optional[int] = None,
                                  batch_size: int = DEFAULT_BATCH_SIZE) -> int:
    """
    Categorize transactions and record the outcome on the import, if any.

    Raises whatever the categorizer raises, after marking the import failed.
    """
    record = _find_import(db, family_id, import_id)
    if import_id is not None and record is None:
        logger.warning("Import not found for categorization job", import_id=import_id, family_id=family_id)

    progress = {"modified": 0}

    def on_batch(outcome: BatchOutcome) -> None:
        progress["modified"] += outcome.modified
        if record is not None:
            record.categorized_count = progress["modified"]
            db.commit()

    if record is not None:
        _set_status(db, record, "running", categorization_error=None, categorized_count=0)

    categorizer = AutoCategorizer(db, gateway, batch_size=batch_size, on_batch=on_batch)
    try:
        with timed_block("categorization_job"):
            modified = await categorizer.categorize(family_id, transaction_ids)
    except Exception as e:
        db.rollback()
        metrics.increment("categorization_job.failed")
        logger.error("Auto-categorization job failed", family_id=family_id, import_id=import_id, error=str(e))
        if record is not None:
            run_best_effort("import_failed_status", _set_status, db, record, "failed",
                            categorization_error=str(e))
        raise

    if record is not None:
        _set_status(db, record, "complete", categorized_count=modified)
    metrics.increment("categorization_job.completed")
    logger.info("Auto-categorization job complete", family_id=family_id, import_id=import_id, modified=modified)
    return modified
