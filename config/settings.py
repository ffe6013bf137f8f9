"""Application settings."""

import os
from typing import List, Optional, Tuple
from pydantic import BaseModel, field_validator


class Settings(BaseModel):
    """Application configuration settings."""

    # LLM Provider settings
    llm_provider: str = "openai"  # "openai" or "anthropic"
    llm_model: Optional[str] = None  # Override default model

    # API Keys
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    bot_api_keys: List[str] = []  # Round-robin pool for agent replies

    # Generation
    generation_timeout: float = 30.0
    decision_temperature: float = 0.8
    memory_temperature: float = 0.3

    # Turn orchestration
    selection_mode: str = "per_agent"  # "per_agent" or "moderator"
    max_reply_depth: int = 2  # Bounds bot-to-bot chains
    history_window: int = 4
    summary_window: int = 5
    ai_limit: int = 5
    thinking_delay_range: Tuple[float, float] = (0.3, 1.5)
    typing_delay_range: Tuple[float, float] = (0.5, 3.0)

    # Memory settings
    memory_prune_threshold: int = 5
    memory_prune_count: int = 3

    # Storage
    db_path: str = "data/chat.db"
    assistants_path: str = "data/assistants.yaml"

    # Logging
    verbose: bool = False

    def __init__(self, **data):
        # Auto-load API keys from environment if not provided
        if "openai_api_key" not in data or data["openai_api_key"] is None:
            data["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

        if "anthropic_api_key" not in data or data["anthropic_api_key"] is None:
            data["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")

        if not data.get("bot_api_keys"):
            raw = os.environ.get("BOT_API_KEYS", "")
            data["bot_api_keys"] = [k.strip() for k in raw.split(",") if k.strip()]

        super().__init__(**data)

    @field_validator("selection_mode")
    @classmethod
    def _check_selection_mode(cls, value: str) -> str:
        if value not in ("per_agent", "moderator"):
            raise ValueError(f"Unknown selection mode: {value}")
        return value

    @field_validator("thinking_delay_range", "typing_delay_range")
    @classmethod
    def _check_delay_range(cls, value: Tuple[float, float]) -> Tuple[float, float]:
        low, high = value
        if low < 0 or high < low:
            raise ValueError(f"Invalid delay range: {value}")
        return value

    @field_validator("memory_prune_count")
    @classmethod
    def _check_prune_count(cls, value: int) -> int:
        if value < 2:
            raise ValueError("memory_prune_count must be at least 2")
        return value

    def get_llm_api_key(self) -> Optional[str]:
        """Get the API key for the configured LLM provider."""
        if self.llm_provider == "openai":
            return self.openai_api_key
        elif self.llm_provider == "anthropic":
            return self.anthropic_api_key
        return None
