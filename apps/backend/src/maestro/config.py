from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

ROOT_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Direct Anthropic API
    anthropic_api_key: Optional[str] = None

    # OpenRouter (alternative)
    openrouter_api_key: Optional[str] = None
    anthropic_base_url: Optional[str] = None
    anthropic_auth_token: Optional[str] = None

    # Agent config
    default_model: str = "haiku"
    planner_max_turns: int = 5
    agent_max_turns: int = 10

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    database_path: Path = ROOT_DIR / "data" / "maestro.db"

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    max_concurrent_steps: int = 5
    max_fix_attempts: int = 2          # quality gate retries before human review
    max_rate_limit_retries: int = 5
    recover_on_startup: bool = True

    # ------------------------------------------------------------------
    # Human-in-the-loop approvals
    # ------------------------------------------------------------------
    approval_poll_interval_seconds: float = 2.0
    approval_timeout_seconds: float = 300.0

    # ------------------------------------------------------------------
    # Event sink
    # ------------------------------------------------------------------
    event_webhook_url: Optional[str] = None   # POSTs every lifecycle event as JSON

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
