"""
Module: main.py
Description: FastAPI application entry point for the RUPI assistant.

This module provides REST API endpoints for:
    - Chat creation and history
    - Streaming (SSE) and non-streaming assistant turns
    - Batch auto-categorization of imported transactions
    - Health and metrics

Author: RUPI Assistant Team

Dependencies:
    - FastAPI for REST API framework
    - SQLAlchemy for database operations
    - httpx / OpenAI for the LLM provider

Usage:
    uvicorn main:app --reload --host 0.0.0.0 --port 8000
"""

import json
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Dict, Optional

from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from sqlalchemy import text
from sqlalchemy.orm import Session as DBSession

from config import AppConfig, load_config
from database import get_db, init_db
from models import Family
from schemas import (
    AutoCategorizeRequest, AutoCategorizeResponse, ChatCreateRequest, ChatOut,
    ChatRequest, ChatResponse, HealthResponse, MessageListResponse, MessageOut
)
from services import (
    AutoCategorizationError, ChatNotFoundError, ChatService, FamilyNotFoundError,
    LLMGateway, ToolCatalog, build_default_catalog, build_gateway, run_auto_categorize_job
)
from services.observability import logger, metrics
from services.responder import OutputText, ToolCallsExecuted, TurnCompleted, TurnEvent, TurnFailed


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """
    In-memory sliding-window limiter, keyed by chat id.

    Every assistant turn costs at least one LLM round trip, so a runaway
    client is cut off before it drains the provider budget.
    """

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, list] = defaultdict(list)

    def is_allowed(self, identifier: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds
        self.requests[identifier] = [t for t in self.requests[identifier] if t > window_start]

        if len(self.requests[identifier]) >= self.max_requests:
            return False
        self.requests[identifier].append(now)
        return True

    def get_reset_time(self, identifier: str) -> float:
        """Seconds until the oldest request leaves the window."""
        if not self.requests.get(identifier):
            return 0
        oldest = min(self.requests[identifier])
        return max(0, oldest + self.window_seconds - time.time())


chat_rate_limiter = RateLimiter(max_requests=30, window_seconds=60)


# =============================================================================
# Application Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting RUPI assistant API")
    init_db()
    yield
    logger.info("Shutting down RUPI assistant API")


app = FastAPI(
    title="RUPI Assistant API",
    description="""
    AI money-managing buddy for Indian households.

    ## Features
    - Conversational assistant with function calling over family finances
    - Streaming replies over Server-Sent Events
    - Batch AI categorization of imported transactions
    """,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Dependency Injection
# =============================================================================

_config: Optional[AppConfig] = None
_catalog: Optional[ToolCatalog] = None
_gateway: Optional[LLMGateway] = None
_gateway_built = False


def get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_catalog() -> ToolCatalog:
    """The function catalog is immutable after startup and shared by all requests."""
    global _catalog
    if _catalog is None:
        _catalog = build_default_catalog()
    return _catalog


def get_gateway(config: AppConfig = Depends(get_config)) -> Optional[LLMGateway]:
    """Gateway for the configured provider; None when no provider is configured."""
    global _gateway, _gateway_built
    if not _gateway_built:
        _gateway = build_gateway(config)
        _gateway_built = True
    return _gateway


def get_chat_service(
    db: DBSession = Depends(get_db),
    gateway: Optional[LLMGateway] = Depends(get_gateway),
    catalog: ToolCatalog = Depends(get_catalog),
    config: AppConfig = Depends(get_config),
) -> ChatService:
    return ChatService(db, gateway, catalog, config)


def _check_rate_limit(chat_id: str) -> None:
    if not chat_rate_limiter.is_allowed(chat_id):
        reset_time = chat_rate_limiter.get_reset_time(chat_id)
        metrics.increment("chat.rate_limited")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Try again in {reset_time:.0f} seconds.",
            headers={"X-RateLimit-Reset": str(int(reset_time))},
        )


def _load_chat(chat_service: ChatService, family_id: int, chat_id: str):
    try:
        chat_service.family_context(family_id)
        return chat_service.get_chat(family_id, chat_id)
    except (FamilyNotFoundError, ChatNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# =============================================================================
# System Endpoints
# =============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["System"],
    summary="Health check endpoint",
)
async def health_check(
    db: DBSession = Depends(get_db),
    gateway: Optional[LLMGateway] = Depends(get_gateway),
) -> HealthResponse:
    """
    Check the database connection and whether an LLM provider is configured.

    Example:
        GET /health
        Response: {"status": "healthy", "database": "connected", "llm_provider": "engine"}
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)}"

    provider = getattr(gateway, "name", None) or "not configured"
    overall_status = "healthy" if db_status == "connected" and gateway is not None else "degraded"

    return HealthResponse(status=overall_status, database=db_status, llm_provider=provider)


@app.get("/metrics", tags=["System"], summary="Get application metrics")
async def get_metrics():
    """Counters, gauges and timing summaries collected since startup."""
    return metrics.get_summary()


# =============================================================================
# Chat Endpoints
# =============================================================================

@app.post(
    "/families/{family_id}/chats",
    response_model=ChatOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Chat"],
    summary="Start a new chat",
)
async def create_chat(
    family_id: int,
    request: ChatCreateRequest,
    chat_service: ChatService = Depends(get_chat_service),
) -> ChatOut:
    try:
        chat = chat_service.create_chat(family_id, request.title)
    except FamilyNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return ChatOut.model_validate(chat)


@app.get(
    "/families/{family_id}/chats/{chat_id}/messages",
    response_model=MessageListResponse,
    tags=["Chat"],
    summary="Chat history",
)
async def list_messages(
    family_id: int,
    chat_id: str,
    chat_service: ChatService = Depends(get_chat_service),
) -> MessageListResponse:
    chat = _load_chat(chat_service, family_id, chat_id)
    messages = chat_service.list_messages(family_id, chat.id)
    return MessageListResponse(
        chat_id=chat.id,
        messages=[MessageOut.model_validate(m) for m in messages],
    )


def _sse_frame(event: TurnEvent) -> str:
    """Encode one turn event as a Server-Sent Events frame."""
    if isinstance(event, OutputText):
        name, payload = "output_text", {"text": event.text}
    elif isinstance(event, ToolCallsExecuted):
        name, payload = "tool_calls", {
            "response_id": event.response_id,
            "tool_calls": [result.to_wire() for result in event.results],
        }
    elif isinstance(event, TurnCompleted):
        name, payload = "completed", {
            "response_id": event.response_id,
            "tool_results": [result.to_wire() for result in event.tool_results],
            "usage": event.usage,
        }
    elif isinstance(event, TurnFailed):
        name, payload = "failed", asdict(event)
    else:
        raise TypeError(f"Unknown turn event: {type(event).__name__}")
    return f"event: {name}\ndata: {json.dumps(payload, default=str)}\n\n"


@app.post(
    "/families/{family_id}/chats/{chat_id}/messages",
    tags=["Chat"],
    summary="Send a message (streaming)",
    description="Runs one assistant turn and streams its events as Server-Sent Events.",
)
async def send_message(
    family_id: int,
    chat_id: str,
    request: ChatRequest,
    chat_service: ChatService = Depends(get_chat_service),
):
    chat = _load_chat(chat_service, family_id, chat_id)
    _check_rate_limit(chat.id)
    metrics.increment("chat.requests", tags={"mode": "stream"})

    async def generate():
        async for event in chat_service.stream_reply(family_id, chat.id, request.message):
            yield _sse_frame(event)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post(
    "/families/{family_id}/chats/{chat_id}/messages/sync",
    response_model=ChatResponse,
    tags=["Chat"],
    summary="Send a message (non-streaming)",
    description="Same as the streaming endpoint but returns the persisted assistant message.",
)
async def send_message_sync(
    family_id: int,
    chat_id: str,
    request: ChatRequest,
    chat_service: ChatService = Depends(get_chat_service),
) -> ChatResponse:
    chat = _load_chat(chat_service, family_id, chat_id)
    _check_rate_limit(chat.id)
    metrics.increment("chat.requests", tags={"mode": "sync"})

    message = await chat_service.reply(family_id, chat.id, request.message)
    return ChatResponse(
        chat_id=chat.id,
        message=MessageOut.model_validate(message),
        error=chat.error,
    )


# =============================================================================
# Categorization Endpoints
# =============================================================================

@app.post(
    "/families/{family_id}/auto_categorize",
    response_model=AutoCategorizeResponse,
    tags=["Categorization"],
    summary="Categorize transactions with AI",
)
async def auto_categorize(
    family_id: int,
    request: AutoCategorizeRequest,
    db: DBSession = Depends(get_db),
    gateway: Optional[LLMGateway] = Depends(get_gateway),
    config: AppConfig = Depends(get_config),
) -> AutoCategorizeResponse:
    """
    Assign categories to uncategorized, unlocked transactions.

    Raises:
        HTTPException: 404 for an unknown family, 503 when no LLM provider
            is configured, 422 when the family has no categories.
    """
    if db.query(Family).filter(Family.id == family_id).first() is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Family {family_id} not found")
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No LLM provider is configured for auto-categorization",
        )

    try:
        modified = await run_auto_categorize_job(
            db, gateway, family_id, request.transaction_ids,
            import_id=request.import_id,
            batch_size=config.categorization_batch_size,
        )
    except AutoCategorizationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return AutoCategorizeResponse(family_id=family_id, import_id=request.import_id, modified=modified)
