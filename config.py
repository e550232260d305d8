"""Global configuration for StoryLoop — narrative session state engine."""
from pathlib import Path
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Centralised settings read from .env file automatically."""

    # ── Paths ──────────────────────────────────────────────
    PROJECT_ROOT: Path = Path(__file__).parent
    DRAFT_DIR: Path = Path(__file__).parent / "data" / "drafts"

    # ── OpenAI / LLM API ──────────────────────────────────
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_BASE_URL: str = Field(default="", description="OpenAI-compatible API base URL (e.g. https://your-server.com/v1)")
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_MAX_TOKENS: int = 1024
    OPENAI_TEMPERATURE: float = 0.85
    OPENAI_TOP_P: float = 0.95
    OPENAI_TIMEOUT_SECONDS: float = 60.0
    # One attempt: a failed call falls through to the engine's fallback turn
    OPENAI_MAX_ATTEMPTS: int = 1

    # ── Creativity ────────────────────────────────────────
    CREATIVITY_TEMPERATURES: Dict[str, float] = {
        "faithful": 0.6,
        "balanced": 0.85,
        "creative": 1.0,
    }

    # ── Context window ────────────────────────────────────
    CONTEXT_TOKEN_CEILING: int = 128000
    CONTEXT_WARN_RATIO: float = 0.9

    # ── Durable store ─────────────────────────────────────
    DATABASE_URL: str = "sqlite:///./storyloop.db"
    DATABASE_ECHO: bool = False

    # ── Draft recovery cache ──────────────────────────────
    DRAFT_MIN_LENGTH: int = 3
    DRAFT_DEBOUNCE_SECONDS: float = 1.0
    DRAFT_TTL_SECONDS: int = 86400

    # ── Logging ───────────────────────────────────────────
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


# Singleton settings instance used by every module
settings = Settings()
