"""
OpenAI provider with retry logic, rate limiting, and error handling.

Speaks the same event contract as the engine gateway so the responder does
not care which provider is configured:

    - first round: one non-streamed completion with tools, replayed as
      TextDelta + Done or ToolCallAnnounced + Done
    - follow-up round: tool results appended as tool messages, streamed
    - categorize: forced function call returning one category per transaction

Features:
    - Exponential backoff retry for rate limits, 5xx and timeouts
    - Token usage tracking
    - openai exceptions normalised into GatewayError subclasses

Author: RUPI Assistant Team
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from config import OpenAIConfig
from services.llm_gateway import (
    Categorization, Done, GatewayConnectionError, GatewayError, GatewayResponseError,
    GatewayTimeoutError, LLMGateway, TextDelta, ToolCallAnnounced
)
from services.observability import logger, metrics, timed
from services.tool_registry import ToolCallRequest


RETRYABLE_ERRORS = (
    openai.RateLimitError,
    openai.InternalServerError,
    openai.APITimeoutError,
    openai.APIConnectionError,
)


def _to_gateway_error(error: Exception) -> GatewayError:
    if isinstance(error, openai.APITimeoutError):
        return GatewayTimeoutError(f"OpenAI request timed out: {error}")
    if isinstance(error, openai.APIConnectionError):
        return GatewayConnectionError(f"Could not reach OpenAI: {error}")
    if isinstance(error, openai.APIStatusError):
        return GatewayResponseError(f"OpenAI error: {error}", status_code=error.status_code)
    return GatewayError(f"OpenAI error: {error}")


class OpenAIGateway(LLMGateway):
    """Chat completions with function calling."""

    name = "openai"

    def __init__(self, config: OpenAIConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.model = config.model
        # Retries are handled here, not inside the SDK
        self.client = client or AsyncOpenAI(api_key=config.api_key, max_retries=0)

    def _track_usage(self, response) -> None:
        if getattr(response, "usage", None):
            metrics.increment("openai.tokens", response.usage.total_tokens)

    async def _call_with_retry(self, **kwargs) -> Any:
        """
        Make an OpenAI API call with exponential backoff.

        Rate limits wait twice as long as other transient errors. Anything
        non-retryable, or the last failed attempt, is raised as GatewayError.
        """
        delay = self.config.initial_delay

        for attempt in range(self.config.max_retries + 1):
            try:
                response = await self.client.chat.completions.create(model=self.model, **kwargs)
                if not kwargs.get("stream"):
                    self._track_usage(response)
                return response

            except RETRYABLE_ERRORS as e:
                if attempt >= self.config.max_retries:
                    raise _to_gateway_error(e) from e
                is_rate_limit = isinstance(e, openai.RateLimitError)
                wait_time = delay * (2 if is_rate_limit else 1)
                logger.warning("OpenAI call failed, retrying", wait_s=f"{wait_time:.1f}",
                               attempt=f"{attempt + 1}/{self.config.max_retries + 1}",
                               error=type(e).__name__)
                metrics.increment("openai.retries")
                await asyncio.sleep(wait_time)
                delay = min(delay * 2, self.config.max_delay)

            except openai.OpenAIError as e:
                raise _to_gateway_error(e) from e

        raise GatewayError("OpenAI retries exhausted")

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    @staticmethod
    def _tools(tool_catalog) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": definition.name.value,
                    "description": definition.description,
                    "parameters": definition.params_schema,
                },
            }
            for definition in tool_catalog.all()
        ]

    def _messages(self, prompt, instructions, tool_results, chat_history) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if instructions:
            messages.append({"role": "system", "content": instructions})
        for message in chat_history:
            if message.get("role") in ("user", "assistant"):
                messages.append({"role": message["role"], "content": message.get("content", "")})
        messages.append({"role": "user", "content": prompt})

        if tool_results:
            messages.append({
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {
                        "id": result.call_id,
                        "type": "function",
                        "function": {"name": result.name, "arguments": json.dumps(result.arguments)},
                    }
                    for result in tool_results
                ],
            })
            for result in tool_results:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": json.dumps(result.output, default=str),
                })
        return messages

    async def chat(self, prompt, instructions, tool_catalog, tool_results, chat_history,
                   previous_response_id=None):
        messages = self._messages(prompt, instructions, tool_results, chat_history)

        if tool_results:
            stream = await self._call_with_retry(messages=messages, stream=True)
            collected = []
            response_id = None
            try:
                async for chunk in stream:
                    response_id = response_id or chunk.id
                    if chunk.choices and chunk.choices[0].delta.content:
                        content = chunk.choices[0].delta.content
                        collected.append(content)
                        yield TextDelta(content)
            except openai.OpenAIError as e:
                raise _to_gateway_error(e) from e
            yield Done(response_id=response_id or "openai-stream", final_text="".join(collected))
            return

        kwargs: Dict[str, Any] = {"messages": messages}
        if tool_catalog is not None and len(tool_catalog):
            kwargs["tools"] = self._tools(tool_catalog)
            kwargs["tool_choice"] = "auto"
        response = await self._call_with_retry(**kwargs)

        message = response.choices[0].message
        usage = response.usage.model_dump() if getattr(response, "usage", None) else None

        if message.tool_calls:
            requests = []
            for call in message.tool_calls:
                try:
                    arguments = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                requests.append(ToolCallRequest(call_id=call.id, name=call.function.name,
                                                arguments=arguments if isinstance(arguments, dict) else {}))
            yield ToolCallAnnounced(requests)
            yield Done(response_id=response.id, tool_requests=requests, usage=usage)
            return

        text = message.content or ""
        if text:
            yield TextDelta(text)
        yield Done(response_id=response.id, final_text=text, usage=usage)

    # -------------------------------------------------------------------------
    # Categorization
    # -------------------------------------------------------------------------

    @timed("openai.categorize")
    async def categorize(self, transactions, categories):
        names = [c["name"] for c in categories]
        lines = "\n".join(
            f"{t['id']}: {t.get('description', '')} | {t.get('classification', '')} | "
            f"amount {t.get('amount')} | merchant {t.get('merchant') or '-'}"
            for t in transactions
        )

        response = await self._call_with_retry(
            messages=[
                {
                    "role": "system",
                    "content": (
                        "You are a financial transaction categorizer for an Indian household. "
                        "Assign each transaction exactly one of the given categories, or null "
                        "when none fits."
                    ),
                },
                {
                    "role": "user",
                    "content": f"Categories: {', '.join(names)}\n\nTransactions (id: details):\n{lines}",
                },
            ],
            tools=[
                {
                    "type": "function",
                    "function": {
                        "name": "categorize_transactions",
                        "description": "Assign a category to each transaction",
                        "parameters": {
                            "type": "object",
                            "properties": {
                                "categorizations": {
                                    "type": "array",
                                    "items": {
                                        "type": "object",
                                        "properties": {
                                            "transaction_id": {"type": "integer"},
                                            "category_name": {"type": ["string", "null"], "enum": names + [None]},
                                        },
                                        "required": ["transaction_id", "category_name"],
                                    },
                                }
                            },
                            "required": ["categorizations"],
                        },
                    },
                }
            ],
            tool_choice={"type": "function", "function": {"name": "categorize_transactions"}},
        )

        try:
            tool_call = response.choices[0].message.tool_calls[0]
            payload = json.loads(tool_call.function.arguments)
        except (IndexError, TypeError, json.JSONDecodeError) as e:
            raise GatewayResponseError(f"OpenAI returned no categorizations: {e}") from e

        if not isinstance(payload, dict):
            raise GatewayResponseError("OpenAI returned an unexpected categorization payload")

        results = []
        for item in payload.get("categorizations") or []:
            if not isinstance(item, dict):
                raise GatewayResponseError("OpenAI returned a malformed categorization")
            try:
                results.append(Categorization(int(item["transaction_id"]), item.get("category_name")))
            except (KeyError, TypeError, ValueError):
                continue
        return results
