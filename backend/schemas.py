"""Pydantic request/response schemas for type safety."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


# =============================================================================
# System Schemas
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    database: str
    llm_provider: str


# =============================================================================
# Chat Schemas
# =============================================================================

class ChatCreateRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class ChatOut(BaseModel):
    id: str
    family_id: int
    title: Optional[str] = None
    latest_assistant_response_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChatRequest(BaseModel):
    """Request schema for the message endpoints."""
    message: str = Field(..., min_length=1, max_length=2000, description="User's message")


class MessageOut(BaseModel):
    id: int
    role: str  # 'user' | 'assistant'
    content: str = ""
    status: str
    ai_model: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageListResponse(BaseModel):
    chat_id: str
    messages: List[MessageOut]


class ChatResponse(BaseModel):
    """Response schema for the non-streaming message endpoint."""
    chat_id: str
    message: MessageOut
    error: Optional[str] = None


# =============================================================================
# Categorization Schemas
# =============================================================================

class AutoCategorizeRequest(BaseModel):
    transaction_ids: List[int] = Field(..., min_length=1)
    import_id: Optional[int] = None


class AutoCategorizeResponse(BaseModel):
    family_id: int
    import_id: Optional[int] = None
    modified: int
