"""
Module: llm_gateway.py
Description: Client for the remote RUPI engine (LLM proxy) over HTTP and SSE.

The gateway turns one chat round into an async stream of events:

    TextDelta(text)              incremental assistant text
    ToolCallAnnounced(requests)  the model asked for function calls
    Done(response_id, ...)       exactly once, always last

Transport:
    POST {base}/chat/stream   Server-Sent Events (delta / tool_call / done / error)
    POST {base}/chat          synchronous fallback, replayed as events
    POST {base}/categorize    batch transaction categorization

If the streaming transport fails before any event was yielded the same
request is retried once against /chat. After the first yielded event a
failure surfaces as GatewayError; replaying would duplicate text.

Author: RUPI Assistant Team

Usage:
    gateway = build_gateway(load_config())
    async for event in gateway.chat(prompt, instructions, catalog, [], history):
        ...
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import httpx

from config import AppConfig, EngineConfig
from services.observability import log_gateway_call, logger, metrics, timed
from services.tool_registry import ToolCatalog, ToolCallRequest, ToolCallResult


# =============================================================================
# Events
# =============================================================================

@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallAnnounced:
    requests: List[ToolCallRequest]


@dataclass
class Done:
    response_id: str
    final_text: str = ""
    tool_requests: List[ToolCallRequest] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None


GatewayEvent = Union[TextDelta, ToolCallAnnounced, Done]


@dataclass
class Categorization:
    transaction_id: int
    category_name: Optional[str]


# =============================================================================
# Errors
# =============================================================================

class GatewayError(Exception):
    """Base class for every failure talking to an LLM provider."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id


class GatewayTimeoutError(GatewayError):
    pass


class GatewayConnectionError(GatewayError):
    pass


class GatewayResponseError(GatewayError):
    """Non-2xx status, an `error` event, or a malformed response body."""

    def __init__(self, message: str, request_id: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, request_id)
        self.status_code = status_code


# =============================================================================
# Request body
# =============================================================================

def build_chat_request_body(prompt: str, instructions: Optional[str],
                            tool_catalog: Optional[ToolCatalog],
                            tool_results: List[ToolCallResult],
                            chat_history: List[Dict[str, str]]) -> Dict[str, Any]:
    """
    Build the /chat payload.

    Carries either available_tools or tool_results, never both. When results
    are present the model must answer in text, so the catalog is withheld.
    """
    body: Dict[str, Any] = {
        "message": prompt,
        "chat_history": [
            {"role": str(m.get("role", "")), "content": str(m.get("content", ""))}
            for m in chat_history
        ],
    }
    if instructions:
        body["instructions"] = instructions

    if tool_results:
        body["tool_results"] = [result.to_wire() for result in tool_results]
    elif tool_catalog is not None and len(tool_catalog):
        body["available_tools"] = tool_catalog.to_wire()

    return body


def new_request_id() -> str:
    return f"rupi-{uuid.uuid4()}"


# =============================================================================
# SSE parsing
# =============================================================================

class SSEParser:
    """
    Incremental Server-Sent Events parser.

    feed() accepts arbitrary text chunks and returns the (event, data) pairs
    completed by that chunk. Frames without an event name or data are dropped.
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> List[Tuple[str, str]]:
        self._buffer += chunk.replace("\r\n", "\n")
        frames = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            frame = self._parse_frame(raw)
            if frame:
                frames.append(frame)
        return frames

    def flush(self) -> List[Tuple[str, str]]:
        raw, self._buffer = self._buffer, ""
        frame = self._parse_frame(raw)
        return [frame] if frame else []

    @staticmethod
    def _parse_frame(raw: str) -> Optional[Tuple[str, str]]:
        event_type = None
        data_lines = []
        for line in raw.split("\n"):
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_type = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:"):].strip())
        if not event_type or not data_lines:
            return None
        return event_type, "\n".join(data_lines)


def _parse_tool_calls(payload: Dict[str, Any]) -> List[ToolCallRequest]:
    return [
        ToolCallRequest.from_wire(call)
        for call in payload.get("tool_calls") or []
        if isinstance(call, dict)
    ]


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or default
    if isinstance(payload, dict):
        return payload.get("message") or payload.get("error") or default
    return default


# =============================================================================
# Gateways
# =============================================================================

class LLMGateway:
    """Interface shared by every provider."""

    name = "base"

    def chat(self, prompt: str, instructions: Optional[str], tool_catalog: Optional[ToolCatalog],
             tool_results: List[ToolCallResult], chat_history: List[Dict[str, str]],
             previous_response_id: Optional[str] = None) -> AsyncIterator[GatewayEvent]:
        raise NotImplementedError

    async def categorize(self, transactions: List[Dict[str, Any]],
                         categories: List[Dict[str, Any]]) -> List[Categorization]:
        raise NotImplementedError


class EngineGateway(LLMGateway):
    """HTTP/SSE client for the RUPI engine."""

    name = "engine"

    def __init__(self, config: EngineConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.transport = transport

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _client(self, read_timeout: float) -> httpx.AsyncClient:
        timeout = httpx.Timeout(read_timeout, connect=self.config.connect_timeout)
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    def _headers(self, request_id: str, accept: str = "application/json") -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": accept,
            "X-Api-Key": self.config.api_key,
            "X-Request-ID": request_id,
        }

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    @staticmethod
    def _translate(error: httpx.HTTPError, request_id: str, endpoint: str) -> GatewayError:
        if isinstance(error, httpx.TimeoutException):
            return GatewayTimeoutError(f"{endpoint} timed out", request_id)
        if isinstance(error, httpx.TransportError):
            return GatewayConnectionError(f"Could not reach engine at {endpoint}: {error}", request_id)
        return GatewayError(f"{endpoint} failed: {error}", request_id)

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def chat(self, prompt, instructions, tool_catalog, tool_results, chat_history,
                   previous_response_id=None):
        body = build_chat_request_body(prompt, instructions, tool_catalog, tool_results, chat_history)

        if not self.config.stream_chat:
            async for event in self._chat_sync(body):
                yield event
            return

        yielded = False
        try:
            async for event in self._chat_stream(body):
                yielded = True
                yield event
            return
        except GatewayError as e:
            if yielded:
                raise
            logger.warning("Streaming failed before first event, falling back to /chat",
                           request_id=e.request_id, error=str(e))
            metrics.increment("gateway.stream_fallbacks")

        async for event in self._chat_sync(body):
            yield event

    async def _chat_stream(self, body: Dict[str, Any]) -> AsyncIterator[GatewayEvent]:
        request_id = new_request_id()
        endpoint = "/chat/stream"
        start = time.perf_counter()

        collected: List[str] = []
        requests: List[ToolCallRequest] = []
        response_id = request_id
        done_seen = False
        usage_tokens = 0

        try:
            async with self._client(self.config.chat_timeout) as client:
                async with client.stream("POST", self._url(endpoint), json=body,
                                         headers=self._headers(request_id, "text/event-stream")) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise GatewayResponseError(
                            f"Engine streaming failed ({response.status_code}): "
                            f"{_error_message(response, 'stream error')}",
                            request_id, response.status_code,
                        )

                    parser = SSEParser()
                    async for chunk in response.aiter_text():
                        for event_type, data in parser.feed(chunk):
                            for event in self._handle_sse(event_type, data, request_id,
                                                          collected, requests, done_seen):
                                if isinstance(event, Done):
                                    done_seen = True
                                    response_id = event.response_id
                                    usage_tokens = (event.usage or {}).get("total_tokens", 0) or 0
                                yield event

                    for event_type, data in parser.flush():
                        for event in self._handle_sse(event_type, data, request_id,
                                                      collected, requests, done_seen):
                            if isinstance(event, Done):
                                done_seen = True
                                response_id = event.response_id
                            yield event
        except httpx.HTTPError as e:
            raise self._translate(e, request_id, endpoint) from e

        if not done_seen:
            logger.warning("Stream ended without done event", request_id=request_id)
            yield Done(response_id=response_id, final_text="".join(collected),
                       tool_requests=list(requests), usage=None)

        log_gateway_call(endpoint, request_id, (time.perf_counter() - start) * 1000, usage_tokens)

    def _handle_sse(self, event_type: str, data: str, request_id: str,
                    collected: List[str], requests: List[ToolCallRequest],
                    done_seen: bool) -> List[GatewayEvent]:
        """Translate one SSE frame. Mutates collected/requests."""
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Skipping unparseable SSE data", request_id=request_id,
                           event=event_type, error=str(e))
            return []
        if not isinstance(payload, dict):
            payload = {}

        if event_type == "delta":
            text = payload.get("content")
            if not text or done_seen:
                return []
            collected.append(text)
            return [TextDelta(text)]

        if event_type == "tool_call":
            if done_seen:
                return []
            announced = _parse_tool_calls(payload)
            if not announced:
                return []
            requests.extend(announced)
            return [ToolCallAnnounced(announced)]

        if event_type == "done":
            if done_seen:
                logger.debug("Ignoring duplicate done event", request_id=request_id)
                return []
            response_id = payload.get("response_id") or payload.get("request_id") or request_id
            return [Done(response_id=response_id, final_text="".join(collected),
                         tool_requests=list(requests), usage=payload.get("usage"))]

        if event_type == "error":
            raise GatewayResponseError(payload.get("message") or "Engine stream error", request_id)

        logger.debug("Ignoring unknown SSE event", request_id=request_id, event=event_type)
        return []

    async def _chat_sync(self, body: Dict[str, Any]) -> AsyncIterator[GatewayEvent]:
        request_id = new_request_id()
        endpoint = "/chat"
        start = time.perf_counter()

        try:
            async with self._client(self.config.chat_timeout) as client:
                response = await client.post(self._url(endpoint), json=body,
                                             headers=self._headers(request_id))
        except httpx.HTTPError as e:
            raise self._translate(e, request_id, endpoint) from e

        if response.status_code >= 400:
            raise GatewayResponseError(
                f"Engine chat failed ({response.status_code}): {_error_message(response, 'chat error')}",
                request_id, response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayResponseError("Engine returned invalid JSON", request_id) from e

        if not isinstance(payload, dict):
            raise GatewayResponseError("Engine returned an unexpected payload", request_id)

        usage = payload.get("usage")
        response_id = payload.get("request_id") or request_id
        log_gateway_call(endpoint, request_id, (time.perf_counter() - start) * 1000,
                         (usage or {}).get("total_tokens", 0) or 0)

        kind = payload.get("type")
        if kind == "tool_call":
            requests = _parse_tool_calls(payload)
            yield ToolCallAnnounced(requests)
            yield Done(response_id=response_id, final_text="", tool_requests=requests, usage=usage)
        elif kind == "message":
            text = payload.get("content") or ""
            if text:
                yield TextDelta(text)
            yield Done(response_id=response_id, final_text=text, tool_requests=[], usage=usage)
        else:
            raise GatewayResponseError(f"Unknown response type: {kind}", request_id)

    # -------------------------------------------------------------------------
    # Categorization
    # -------------------------------------------------------------------------

    @timed("gateway.categorize")
    async def categorize(self, transactions, categories):
        request_id = new_request_id()
        endpoint = "/categorize"
        start = time.perf_counter()
        logger.info("Categorizing transactions", request_id=request_id, count=len(transactions))

        try:
            async with self._client(self.config.categorize_timeout) as client:
                response = await client.post(
                    self._url(endpoint),
                    json={"transactions": transactions, "categories": categories},
                    headers=self._headers(request_id),
                )
        except httpx.HTTPError as e:
            raise self._translate(e, request_id, endpoint) from e

        if response.status_code >= 400:
            raise GatewayResponseError(
                f"Categorization failed ({response.status_code}): "
                f"{_error_message(response, 'categorize error')}",
                request_id, response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayResponseError("Engine returned invalid JSON", request_id) from e

        if not isinstance(payload, dict):
            raise GatewayResponseError("Engine returned an unexpected payload", request_id)

        log_gateway_call(endpoint, request_id, (time.perf_counter() - start) * 1000)

        results = []
        for item in payload.get("categorizations") or []:
            if not isinstance(item, dict):
                raise GatewayResponseError("Engine returned a malformed categorization", request_id)
            try:
                transaction_id = int(item.get("transaction_id"))
            except (TypeError, ValueError):
                continue
            results.append(Categorization(transaction_id, item.get("category_name")))
        return results


# =============================================================================
# Provider selection
# =============================================================================

def build_gateway(config: AppConfig) -> Optional[LLMGateway]:
    """Gateway for the configured provider, or None when it is not configured."""
    if config.llm_provider == "openai":
        if not config.openai.is_configured:
            logger.warning("OpenAI provider selected but OPENAI_API_KEY is not set")
            return None
        from services.openai_gateway import OpenAIGateway
        return OpenAIGateway(config.openai)

    if not config.engine.is_configured:
        logger.warning("Engine provider selected but RUPI_ENGINE_URL is not set")
        return None
    return EngineGateway(config.engine)
