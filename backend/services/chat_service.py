"""
Module: chat_service.py
Description: Conversational AI service with function calling for family finances.

This service provides:
    - Chat and message persistence
    - Chat history for the LLM (most recent messages, oldest first)
    - Per-family instructions (currency, date format, current date)
    - Streaming turns through the Responder, persisting the final answer

Author: RUPI Assistant Team

Usage:
    chat_service = ChatService(db, gateway, catalog, config)
    async for event in chat_service.stream_reply(family_id, chat_id, "What are my EMIs?"):
        ...
"""

import uuid
from datetime import date
from typing import AsyncIterator, Dict, List, Optional

from sqlalchemy.orm import Session as DBSession

from config import AppConfig
from models import Chat, Family, Message
from services.function_executor import FunctionExecutor
from services.instructions import build_instructions
from services.llm_gateway import LLMGateway
from services.observability import (
    log_chat_turn_complete, log_chat_turn_failed, log_chat_turn_start, logger
)
from services.responder import (
    OutputText, Responder, ToolCallsExecuted, TurnCompleted, TurnEvent, TurnFailed
)
from services.tool_registry import FamilyContext, ToolCatalog

NO_PROVIDER_MESSAGE = "No LLM provider is configured for the assistant"
TITLE_LENGTH = 60


class FamilyNotFoundError(Exception):
    pass


class ChatNotFoundError(Exception):
    pass


class ChatService:
    """
    Conversational AI service for family finances.

    Owns persistence; the Responder owns the turn itself.
    """

    def __init__(self, db: DBSession, gateway: Optional[LLMGateway], catalog: ToolCatalog,
                 config: AppConfig, today: Optional[date] = None):
        self.db = db
        self.gateway = gateway
        self.catalog = catalog
        self.config = config
        self.today = today

    # ==========================================================================
    # Lookups
    # ==========================================================================

    def family_context(self, family_id: int) -> FamilyContext:
        family = self.db.query(Family).filter(Family.id == family_id).first()
        if family is None:
            raise FamilyNotFoundError(f"Family {family_id} not found")
        return FamilyContext(
            family_id=family.id,
            currency=family.currency or self.config.default_currency,
            date_format=family.date_format or "%d-%m-%Y",
            timezone=family.timezone or self.config.default_timezone,
            today=self.today,
        )

    def create_chat(self, family_id: int, title: Optional[str] = None) -> Chat:
        self.family_context(family_id)
        chat = Chat(id=str(uuid.uuid4()), family_id=family_id, title=title)
        self.db.add(chat)
        self.db.commit()
        return chat

    def get_chat(self, family_id: int, chat_id: str) -> Chat:
        chat = (
            self.db.query(Chat)
            .filter(Chat.id == chat_id, Chat.family_id == family_id)
            .first()
        )
        if chat is None:
            raise ChatNotFoundError(f"Chat {chat_id} not found")
        return chat

    def list_messages(self, family_id: int, chat_id: str) -> List[Message]:
        chat = self.get_chat(family_id, chat_id)
        return (
            self.db.query(Message)
            .filter(Message.chat_id == chat.id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    # ==========================================================================
    # History
    # ==========================================================================

    def build_chat_history(self, chat: Chat, exclude_message_id: Optional[int] = None) -> List[Dict[str, str]]:
        """Most recent messages (up to the configured limit), oldest first, blanks removed."""
        query = self.db.query(Message).filter(Message.chat_id == chat.id)
        if exclude_message_id is not None:
            query = query.filter(Message.id != exclude_message_id)

        recent = (
            query.order_by(Message.created_at.desc(), Message.id.desc())
            .limit(self.config.chat_history_limit)
            .all()
        )
        return [
            {"role": m.role, "content": m.content}
            for m in reversed(recent)
            if m.content and m.content.strip()
        ]

    def _save_message(self, chat: Chat, role: str, content: str, status: str = "complete") -> Message:
        message = Message(chat_id=chat.id, role=role, content=content, status=status,
                          ai_model=getattr(self.gateway, "name", None) if role == "assistant" else None)
        self.db.add(message)
        self.db.commit()
        return message

    # ==========================================================================
    # Turns
    # ==========================================================================

    async def stream_reply(self, family_id: int, chat_id: str, content: str) -> AsyncIterator[TurnEvent]:
        """
        Run one turn and yield its events.

        The user message and the final assistant message are persisted; a
        failed turn leaves a failed assistant message and sets chat.error.
        """
        context = self.family_context(family_id)
        chat = self.get_chat(family_id, chat_id)
        log_chat_turn_start(chat.id, family_id, len(content))

        user_message = self._save_message(chat, "user", content)
        if not chat.title:
            chat.title = content.strip()[:TITLE_LENGTH]
        history = self.build_chat_history(chat, exclude_message_id=user_message.id)
        assistant = self._save_message(chat, "assistant", "", status="pending")

        if self.gateway is None:
            self._finish_failed(chat, assistant, NO_PROVIDER_MESSAGE)
            yield TurnFailed(NO_PROVIDER_MESSAGE)
            return

        instructions = build_instructions(context, self.catalog)
        responder = Responder(self.gateway, FunctionExecutor(self.catalog, self.db), self.catalog)

        parts: List[str] = []
        async for event in responder.respond(content, instructions, history, context):
            if isinstance(event, OutputText):
                parts.append(event.text)
            elif isinstance(event, ToolCallsExecuted):
                assistant.tool_calls = [result.to_wire() for result in event.results]
                self.db.commit()
            elif isinstance(event, TurnCompleted):
                assistant.content = "".join(parts)
                assistant.status = "complete"
                chat.latest_assistant_response_id = event.response_id
                chat.error = None
                self.db.commit()
                log_chat_turn_complete(chat.id, event.response_id, len(event.tool_results))
            elif isinstance(event, TurnFailed):
                self._finish_failed(chat, assistant, event.message, "".join(parts))
            yield event

    async def reply(self, family_id: int, chat_id: str, content: str) -> Message:
        """Non-streaming variant; returns the persisted assistant message."""
        last: Optional[TurnEvent] = None
        async for event in self.stream_reply(family_id, chat_id, content):
            last = event
        logger.debug("Turn finished", chat_id=chat_id[:8], outcome=type(last).__name__)
        return (
            self.db.query(Message)
            .filter(Message.chat_id == chat_id, Message.role == "assistant")
            .order_by(Message.created_at.desc(), Message.id.desc())
            .first()
        )

    def _finish_failed(self, chat: Chat, assistant: Message, error: str, partial: str = "") -> None:
        assistant.content = partial
        assistant.status = "failed"
        chat.error = error
        self.db.commit()
        log_chat_turn_failed(chat.id, error)
