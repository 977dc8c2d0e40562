import logging
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)


@dataclass
class AISettings:
    """AI-related environment configuration."""

    openai_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    explanation_max_tokens: int = 600
    chat_max_tokens: int = 800
    chat_history_limit: int = 10

    def __post_init__(self):
        """Initialize fields from environment variables after instantiation."""
        # Only override if field has default value (not explicitly set)
        if self.openai_api_key is None:
            self.openai_api_key = os.getenv("OPENAI_API_KEY") or None
            if not self.openai_api_key:
                logger.warning("⚠️ OPENAI_API_KEY is not set, AI endpoints will return 503")
        if self.llm_model == "gpt-4o-mini":
            self.llm_model = os.getenv("LLM_MODEL", "gpt-4o-mini")

    @property
    def configured(self) -> bool:
        return bool(self.openai_api_key)


def get_ai_settings(request: Request) -> AISettings:
    return request.app.state.ai_settings
