"""Backend services for the RUPI assistant."""

from .tool_registry import FamilyContext, ToolCatalog, ToolName
from .functions import build_default_catalog
from .function_executor import FunctionExecutor
from .llm_gateway import EngineGateway, GatewayError, LLMGateway, build_gateway
from .openai_gateway import OpenAIGateway
from .responder import Responder
from .chat_service import ChatService, ChatNotFoundError, FamilyNotFoundError
from .auto_categorizer import AutoCategorizationError, AutoCategorizer
from .categorization_job import run_auto_categorize_job

__all__ = [
    "FamilyContext",
    "ToolCatalog",
    "ToolName",
    "build_default_catalog",
    "FunctionExecutor",
    "EngineGateway",
    "GatewayError",
    "LLMGateway",
    "build_gateway",
    "OpenAIGateway",
    "Responder",
    "ChatService",
    "ChatNotFoundError",
    "FamilyNotFoundError",
    "AutoCategorizationError",
    "AutoCategorizer",
    "run_auto_categorize_job",
]
