"""
Module: function_executor.py
Description: Runs the function calls requested by the LLM against one family's data.

Guarantees:
    - execute() never raises; every failure becomes {"error": "..."} output
    - arguments are validated against the function's pydantic model
    - handlers only ever see a FamilyFinanceData bound to context.family_id

Author: RUPI Assistant Team

Usage:
    executor = FunctionExecutor(catalog, db)
    results = executor.execute_all(requests, FamilyContext(family_id=1))
"""

import time
from typing import List

from pydantic import ValidationError
from sqlalchemy.orm import Session as DBSession

from services.finance_data import FamilyFinanceData
from services.observability import log_tool_call, logger
from services.tool_registry import (
    FamilyContext, ToolCatalog, ToolCallRequest, ToolCallResult, ToolName
)

__all__ = ["FamilyContext", "FunctionExecutor"]


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        field = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        if item.get("type") == "missing":
            problems.append(f"missing required argument '{field}'")
        else:
            problems.append(f"invalid value for '{field}': {item.get('msg')}")
    return "; ".join(problems)


class FunctionExecutor:
    """Dispatches ToolCallRequests to catalog handlers."""

    def __init__(self, catalog: ToolCatalog, db: DBSession):
        self.catalog = catalog
        self.db = db

    def execute(self, request: ToolCallRequest, context: FamilyContext) -> ToolCallResult:
        output = self._run(request, context)
        return ToolCallResult(
            call_id=request.call_id,
            name=request.name,
            arguments=request.arguments,
            output=output,
            thought_signature=request.thought_signature,
        )

    def execute_all(self, requests: List[ToolCallRequest], context: FamilyContext) -> List[ToolCallResult]:
        """Execute sequentially; results are in request order."""
        return [self.execute(request, context) for request in requests]

    def _run(self, request: ToolCallRequest, context: FamilyContext) -> dict:
        definition = self.catalog.lookup(request.name) if ToolName.parse(request.name) else None
        if definition is None:
            logger.warning("Unknown function requested", tool=request.name, family_id=context.family_id)
            return {"error": f"unknown function {request.name}"}

        try:
            args = definition.args_model.model_validate(request.arguments or {})
        except ValidationError as e:
            message = _describe_validation_error(e)
            logger.warning("Invalid function arguments", tool=request.name, error=message)
            return {"error": f"Invalid arguments for {request.name}: {message}"}

        data = FamilyFinanceData(self.db, context.family_id)
        start = time.perf_counter()
        try:
            output = definition.handler(data, args, context)
            log_tool_call(request.name, "error" not in output, (time.perf_counter() - start) * 1000)
            return output
        except Exception as e:
            log_tool_call(request.name, False, (time.perf_counter() - start) * 1000)
            logger.exception("Function execution failed", tool=request.name, family_id=context.family_id)
            # Leave the session usable for the next call in this turn
            self.db.rollback()
            return {"error": f"Failed to execute {request.name}: {e}"}
