"""
Module: config.py
Description: Application configuration loaded once from the environment.

All settings that used to be read ad hoc with os.getenv() live here and are
passed explicitly to the services that need them (the LLM gateways in
particular), so request-building code never touches the environment.

Author: RUPI Assistant Team

Usage:
    config = load_config()
    gateway = build_gateway(config)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


DEFAULT_ENGINE_URL = "http://localhost:4000/api/v1/ai"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineConfig:
    """Connection settings for the remote RUPI engine (LLM proxy)."""
    base_url: str = DEFAULT_ENGINE_URL
    api_key: str = ""
    stream_chat: bool = True
    chat_timeout: float = 120.0        # model latency on first-call prompts
    categorize_timeout: float = 60.0
    connect_timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)


@dataclass(frozen=True)
class OpenAIConfig:
    """Settings for talking to OpenAI directly instead of the engine."""
    api_key: Optional[str] = None
    model: str = "gpt-4o"
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0

    @property
    def is_configured(self) -> bool:
        # Only treat well-formed keys as configured
        return bool(self.api_key) and self.api_key.startswith("sk-")


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration object."""
    database_url: str = "sqlite:///./rupi_assistant.db"
    llm_provider: str = "engine"  # engine|openai
    engine: EngineConfig = field(default_factory=EngineConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    chat_history_limit: int = 20
    categorization_batch_size: int = 25
    default_currency: str = "INR"
    default_timezone: str = "Asia/Kolkata"


def load_config() -> AppConfig:
    """Build an AppConfig from environment variables (and a .env file if present)."""
    load_dotenv()

    raw_openai_key = os.getenv("OPENAI_API_KEY", "")

    engine = EngineConfig(
        base_url=os.getenv("RUPI_ENGINE_URL", DEFAULT_ENGINE_URL).rstrip("/"),
        api_key=os.getenv("RUPI_ENGINE_API_KEY", ""),
        stream_chat=_env_bool("USE_ENGINE_CHAT_STREAM", True),
        chat_timeout=_env_float("ENGINE_CHAT_TIMEOUT", 120.0),
        categorize_timeout=_env_float("ENGINE_CATEGORIZE_TIMEOUT", 60.0),
    )

    openai = OpenAIConfig(
        api_key=raw_openai_key.strip() or None,
        model=os.getenv("OPENAI_MODEL", "gpt-4o"),
    )

    return AppConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./rupi_assistant.db"),
        llm_provider=os.getenv("LLM_PROVIDER", "engine").strip().lower(),
        engine=engine,
        openai=openai,
        chat_history_limit=_env_int("CHAT_HISTORY_LIMIT", 20),
        categorization_batch_size=_env_int("CATEGORIZATION_BATCH_SIZE", 25),
        default_currency=os.getenv("DEFAULT_CURRENCY", "INR"),
        default_timezone=os.getenv("DEFAULT_TIMEZONE", "Asia/Kolkata"),
    )
