"""
Module: responder.py
Description: Drives one conversation turn across the LLM gateway and function executor.

Turn lifecycle:

    AWAITING_FIRST_RESPONSE --(no tool calls)--> COMPLETE
    AWAITING_FIRST_RESPONSE --(tool calls)--> EXECUTING_TOOLS
        --> AWAITING_FOLLOW_UP --> COMPLETE
    any gateway failure --> FAILED

First-round text is buffered. If that round ends in tool calls the buffer is
dropped, so the only text the user sees comes from the follow-up round that
already knows the function results. Follow-up text is forwarded live.

Author: RUPI Assistant Team

Usage:
    responder = Responder(gateway, executor, catalog)
    async for event in responder.respond(prompt, instructions, history, context):
        ...
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from services.function_executor import FunctionExecutor
from services.llm_gateway import Done, GatewayError, LLMGateway, TextDelta, ToolCallAnnounced
from services.observability import logger, metrics
from services.tool_registry import FamilyContext, ToolCatalog, ToolCallRequest, ToolCallResult


class TurnState(str, Enum):
    AWAITING_FIRST_RESPONSE = "awaiting_first_response"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FOLLOW_UP = "awaiting_follow_up"
    COMPLETE = "complete"
    FAILED = "failed"


# =============================================================================
# Turn events
# =============================================================================

@dataclass
class OutputText:
    text: str


@dataclass
class ToolCallsExecuted:
    response_id: str
    results: List[ToolCallResult]


@dataclass
class TurnCompleted:
    response_id: str
    tool_results: List[ToolCallResult] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None


@dataclass
class TurnFailed:
    message: str


TurnEvent = Union[OutputText, ToolCallsExecuted, TurnCompleted, TurnFailed]


# =============================================================================
# Fallback text
# =============================================================================

NO_INVESTMENTS_MESSAGE = (
    "I couldn't find any investment holdings yet. Import a broker or mutual fund statement "
    "(Zerodha, Groww, CAS) and I can break down your portfolio, or ask me about stock or SIP "
    "payments in your bank transactions instead."
)
NO_LOANS_MESSAGE = (
    "I don't see any loan or EMI details in your data. Add your loan accounts to track EMIs, "
    "or ask me to search your transactions for EMI payments."
)
NO_TRANSACTIONS_MESSAGE = (
    "I couldn't find any transactions matching that. Try a different time period such as "
    "last month or the last 3 months, or a broader category."
)
NO_SPENDING_MESSAGE = (
    "There's no spending recorded for that period. If you asked about the current month it may "
    "be too early, so try last month or the last 3 months."
)
GENERIC_FALLBACK_MESSAGE = (
    "I processed your request but couldn't put together a detailed answer. You can ask things "
    "like \"How much did I spend last month?\", \"What are my upcoming EMIs?\" or "
    "\"What's my net worth?\"."
)


def _output_for(results: List[ToolCallResult], *names: str) -> Optional[dict]:
    for result in results:
        if result.name in names and isinstance(result.output, dict):
            return result.output
    return None


def fallback_message(results: List[ToolCallResult]) -> str:
    """Context-aware text for a follow-up round that produced no text."""
    investments = _output_for(results, "get_investments")
    if investments is not None and (
        investments.get("holdings_count") == 0 or investments.get("total_investment_value") == 0
    ):
        return NO_INVESTMENTS_MESSAGE

    loans = _output_for(results, "get_loans", "get_upcoming_emis")
    if loans is not None and (loans.get("loans") == [] or loans.get("upcoming_emis") == [] or not loans):
        return NO_LOANS_MESSAGE

    transactions = _output_for(results, "get_transactions")
    if transactions is not None and (
        transactions.get("transactions") == [] or transactions.get("total_results") == 0
    ):
        return NO_TRANSACTIONS_MESSAGE

    spending = _output_for(results, "analyze_spending")
    if spending is not None and spending.get("total_spent") == 0:
        return NO_SPENDING_MESSAGE

    return GENERIC_FALLBACK_MESSAGE


# =============================================================================
# Responder
# =============================================================================

class Responder:
    """Runs one turn. Create a new Responder (or reuse; state resets) per turn."""

    def __init__(self, gateway: LLMGateway, executor: FunctionExecutor, catalog: ToolCatalog):
        self.gateway = gateway
        self.executor = executor
        self.catalog = catalog
        self.state = TurnState.AWAITING_FIRST_RESPONSE

    def _fail(self, stage: str, error: Exception) -> TurnFailed:
        self.state = TurnState.FAILED
        metrics.increment("responder.failed", tags={"stage": stage})
        if isinstance(error, GatewayError):
            logger.error("LLM gateway failed", stage=stage, request_id=error.request_id, error=str(error))
            return TurnFailed(str(error))
        logger.exception("Unexpected failure during turn", stage=stage)
        return TurnFailed(f"Unexpected error: {error}")

    async def respond(self, prompt: str, instructions: Optional[str],
                      chat_history: List[Dict[str, str]],
                      context: FamilyContext) -> AsyncIterator[TurnEvent]:
        self.state = TurnState.AWAITING_FIRST_RESPONSE

        # ---- first round -------------------------------------------------
        buffered: List[str] = []
        announced: List[ToolCallRequest] = []
        first_done: Optional[Done] = None
        try:
            async for event in self.gateway.chat(prompt, instructions, self.catalog, [], chat_history):
                if first_done is not None:
                    continue
                if isinstance(event, TextDelta):
                    buffered.append(event.text)
                elif isinstance(event, ToolCallAnnounced):
                    announced.extend(event.requests)
                elif isinstance(event, Done):
                    first_done = event
        except Exception as e:
            yield self._fail("first_response", e)
            return

        if first_done is None:
            yield self._fail("first_response", GatewayError("LLM response ended without completion"))
            return

        requests = first_done.tool_requests or announced
        if not requests:
            for text in buffered:
                yield OutputText(text)
            self.state = TurnState.COMPLETE
            yield TurnCompleted(first_done.response_id, [], first_done.usage)
            return

        if buffered:
            logger.debug("Discarding first-round text before tool execution", chars=sum(map(len, buffered)))

        # ---- tools -------------------------------------------------------
        self.state = TurnState.EXECUTING_TOOLS
        results = self.executor.execute_all(requests, context)
        yield ToolCallsExecuted(first_done.response_id, results)

        # ---- follow-up ---------------------------------------------------
        self.state = TurnState.AWAITING_FOLLOW_UP
        streamed_text = False
        follow_up_done: Optional[Done] = None
        try:
            async for event in self.gateway.chat(prompt, instructions, None, results, chat_history,
                                                 previous_response_id=first_done.response_id):
                if follow_up_done is not None:
                    continue
                if isinstance(event, TextDelta) and event.text:
                    streamed_text = True
                    yield OutputText(event.text)
                elif isinstance(event, Done):
                    follow_up_done = event
        except Exception as e:
            yield self._fail("follow_up", e)
            return

        if not streamed_text:
            logger.warning("Follow-up produced no text, using fallback",
                           tools=",".join(r.name for r in results))
            metrics.increment("responder.fallback_text")
            yield OutputText(fallback_message(results))

        self.state = TurnState.COMPLETE
        response_id = follow_up_done.response_id if follow_up_done else f"fallback-{first_done.response_id}"
        yield TurnCompleted(response_id, results, follow_up_done.usage if follow_up_done else None)
